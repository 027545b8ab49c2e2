"""
Destroyer P2P Transport Test Suite

Tests for the node identity issuer, the TLS policy, the byte-replay
connection, server-side TLS, the protocol-sniffing listener and
the transport node.

Run with ``python -m pytest`` or ``python -m unittest discover tests``.
"""

# Version of the test suite
__version__ = '2.0.0'

# Test categories available
TEST_CATEGORIES = [
    'tls_policy',
    'tls_identity',
    'replay_connection',
    'tls_connection',
    'downgrading_listener',
    'transport_node',
]
