"""
Downgrading listener tests

Protocol classification by first byte, the fail-open path for peers that
send nothing, error propagation from the inner listener, and end-to-end
plaintext and TLS sessions through the listener.
"""

import unittest
import os
import sys
import ssl
import time
import socket
import logging
import tempfile
import threading

from cryptography.hazmat.primitives import serialization

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from downgrading_listener import DowngradingListener, IdentificationFailed, TLS_HANDSHAKE_RECORD
from replay_connection import ReplayConnection
from tls_connection import TLSServerConnection
from tls_identity import issue_certificate
from tls_policy import minimal_tls13_policy, compatible_tls12_policy

# Configure test logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def recv_exactly(conn, n):
    received = bytearray()
    while len(received) < n:
        data = conn.recv(n - len(received))
        if not data:
            break
        received += data
    return bytes(received)


class ListenerTestCase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.tmpdir = tempfile.TemporaryDirectory()
        cert_path = os.path.join(cls.tmpdir.name, "cert.pem")
        key_path = os.path.join(cls.tmpdir.name, "key.pem")
        cls.identity = issue_certificate(cert_path, key_path, "node1", 30)

    @classmethod
    def tearDownClass(cls):
        cls.tmpdir.cleanup()

    def make_listener(self, settings=None, sniff_timeout=1.0):
        settings = settings or minimal_tls13_policy()
        context = settings.server_context(self.identity.cert_path, self.identity.key_path)
        sock = socket.create_server(("127.0.0.1", 0))
        listener = DowngradingListener(sock, context, sniff_timeout=sniff_timeout)
        self.addCleanup(listener.close)
        return listener

    def connect(self, listener):
        client = socket.create_connection(listener.getsockname(), timeout=5.0)
        self.addCleanup(client.close)
        return client


class TestSniffing(ListenerTestCase):
    """Classification of accepted connections"""

    def test_classification_by_first_byte(self):
        """A connection is TLS iff its first byte is 0x16"""
        listener = self.make_listener()
        for value in range(256):
            with self.subTest(first_byte=value):
                client = socket.create_connection(listener.getsockname(), timeout=5.0)
                try:
                    client.sendall(bytes([value]) + b"tail")
                    conn, address, is_tls = listener.accept_no_wrap_tls()
                    try:
                        self.assertEqual(is_tls, value == TLS_HANDSHAKE_RECORD)
                        self.assertIsInstance(conn, ReplayConnection)
                        self.assertEqual(recv_exactly(conn, 5), bytes([value]) + b"tail")
                    finally:
                        conn.close()
                finally:
                    client.close()

    def test_idle_peer_fails_identification(self):
        """No byte within the sniff timeout raises IdentificationFailed"""
        listener = self.make_listener()
        client = self.connect(listener)

        started = time.monotonic()
        with self.assertRaises(IdentificationFailed) as cm:
            listener.accept_no_wrap_tls()
        elapsed = time.monotonic() - started

        self.assertGreaterEqual(elapsed, 0.9)
        self.assertLess(elapsed, 5.0)
        failure = cm.exception
        self.addCleanup(failure.connection.close)
        self.assertIsInstance(failure.connection, socket.socket)
        self.assertIsInstance(failure.cause, socket.timeout)
        self.assertEqual(failure.address, client.getsockname())

    def test_timeout_restored_after_sniffing(self):
        """The sniff deadline never leaks into the handed out connection"""
        listener = self.make_listener(sniff_timeout=0.2)
        self.connect(listener)
        with self.assertRaises(IdentificationFailed) as cm:
            listener.accept_no_wrap_tls()
        self.addCleanup(cm.exception.connection.close)
        self.assertIsNone(cm.exception.connection.gettimeout())

        client = self.connect(listener)
        client.sendall(b"x")
        conn, _, _ = listener.accept_no_wrap_tls()
        self.addCleanup(conn.close)
        self.assertIsNone(conn.gettimeout())

    def test_early_close_fails_identification(self):
        """A peer closing before sending anything is not identified"""
        listener = self.make_listener()
        client = self.connect(listener)
        client.close()
        with self.assertRaises(IdentificationFailed) as cm:
            listener.accept_no_wrap_tls()
        self.addCleanup(cm.exception.connection.close)

    def test_accept_fails_open(self):
        """accept() hands out the raw connection when identification fails"""
        listener = self.make_listener(sniff_timeout=0.2)
        client = self.connect(listener)

        conn, address = listener.accept()
        self.addCleanup(conn.close)
        self.assertIsInstance(conn, socket.socket)
        self.assertNotIsInstance(conn, ReplayConnection)
        self.assertEqual(address, client.getsockname())

        # The connection is still usable by the handler
        client.sendall(b"late")
        conn.settimeout(5.0)
        self.assertEqual(recv_exactly(conn, 4), b"late")

    def test_listener_errors_propagate(self):
        """A closed inner listener is a hard accept failure"""
        listener = self.make_listener()
        listener.close()
        with self.assertRaises(OSError) as cm:
            listener.accept()
        self.assertNotIsInstance(cm.exception, IdentificationFailed)
        with self.assertRaises(OSError):
            listener.accept_no_wrap_tls()


class TestEndToEnd(ListenerTestCase):
    """Full sessions through the listener"""

    def test_plaintext_ping(self):
        """A plaintext PING arrives unchanged at the handler"""
        listener = self.make_listener()
        client = self.connect(listener)
        client.sendall(b"PING")

        conn, _ = listener.accept()
        self.addCleanup(conn.close)
        self.assertIsInstance(conn, ReplayConnection)
        self.assertEqual(recv_exactly(conn, 4), b"PING")

        conn.sendall(b"PONG")
        self.assertEqual(recv_exactly(client, 4), b"PONG")

    def _serve_once(self, listener, results):
        try:
            conn, _ = listener.accept()
            results["conn_type"] = type(conn)
            with conn:
                data = recv_exactly(conn, 14)
                results["received"] = data
                results["version"] = conn.version()
                conn.sendall(data.upper())
        except Exception as e:
            logger.error(f"Server side failed: {e}", exc_info=True)
            results["error"] = e

    def _tls_round_trip(self, server_settings, client_context):
        listener = self.make_listener(server_settings)
        results = {}
        server = threading.Thread(target=self._serve_once, args=(listener, results), daemon=True)
        server.start()

        raw = socket.create_connection(listener.getsockname(), timeout=5.0)
        with client_context.wrap_socket(raw, server_hostname="node1") as client:
            client.sendall(b"hello over tls")
            reply = recv_exactly(client, 14)
            peer_der = client.getpeercert(binary_form=True)
            client_version = client.version()
            client_cipher = client.cipher()

        server.join(5.0)
        self.assertFalse(server.is_alive())
        self.assertNotIn("error", results)
        self.assertIs(results["conn_type"], TLSServerConnection)
        self.assertEqual(results["received"], b"hello over tls")
        self.assertEqual(reply, b"HELLO OVER TLS")
        self.assertEqual(peer_der, self.identity.certificate.public_bytes(serialization.Encoding.DER))
        self.assertEqual(results["version"], client_version)
        return client_version, client_cipher

    def test_tls13_session(self):
        """A TLS 1.3 client handshakes and exchanges data through the listener"""
        settings = minimal_tls13_policy()
        version, _ = self._tls_round_trip(settings, settings.client_context())
        self.assertEqual(version, "TLSv1.3")

    def test_tls12_session_uses_server_order(self):
        """A TLS 1.2 client gets the server's first matching suite"""
        client_context = compatible_tls12_policy().client_context()
        client_context.maximum_version = ssl.TLSVersion.TLSv1_2
        version, cipher = self._tls_round_trip(compatible_tls12_policy(), client_context)
        self.assertEqual(version, "TLSv1.2")
        self.assertEqual(cipher[0], "ECDHE-ECDSA-AES256-GCM-SHA384")

    def test_tls13_rejects_tls12_client(self):
        """A TLS 1.2-only client cannot complete a handshake with the TLS 1.3 policy"""
        listener = self.make_listener(minimal_tls13_policy())
        results = {}
        server = threading.Thread(target=self._serve_once, args=(listener, results), daemon=True)
        server.start()

        client_context = compatible_tls12_policy().client_context()
        client_context.maximum_version = ssl.TLSVersion.TLSv1_2
        raw = socket.create_connection(listener.getsockname(), timeout=5.0)
        with self.assertRaises((ssl.SSLError, OSError)):
            with client_context.wrap_socket(raw, server_hostname="node1"):
                pass
        raw.close()

        server.join(5.0)
        self.assertIsInstance(results.get("error"), ssl.SSLError)


if __name__ == "__main__":
    unittest.main()
