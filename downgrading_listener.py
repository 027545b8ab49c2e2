"""
Protocol-sniffing listener.

A node serves TLS and its plaintext protocol on the same port. The
``DowngradingListener`` wraps a listening socket and, for every accepted
connection, reads the first byte to decide which one the peer speaks:

- ``0x16`` (TLS handshake record) -> the connection is returned wrapped in a
  lazy server-side TLS session;
- anything else -> the connection is returned as plaintext, with the
  sniffed byte replayed to the first reader.

Identification that yields no byte at all (idle peer, early close, read
error) is not an accept error. The raw connection is handed out as if
nothing happened and the handler has to cope with it (fail-open).
"""

import ssl
import socket
import logging
from typing import Tuple

from replay_connection import ReplayConnection
from tls_connection import TLSServerConnection

log = logging.getLogger(__name__)

# First byte of a TLS handshake record (ClientHello)
TLS_HANDSHAKE_RECORD = 0x16

# How long a new connection gets to send its first byte
SNIFF_TIMEOUT = 1.0


class IdentificationFailed(Exception):
    """The protocol of an accepted connection could not be determined.

    Carries the accepted, unwrapped connection and peer address so the
    caller can still hand it on.
    """

    def __init__(self, connection: socket.socket, address, cause: object = None):
        super().__init__("failed to identify socket type")
        self.connection = connection
        self.address = address
        self.cause = cause


class DowngradingListener:
    """Drop-in replacement for a listening socket that tells TLS from plaintext.

    Args:
        listener: Listening socket (or anything with ``accept()`` and
                  ``close()``); owned by this object from now on
        ssl_context: Server context used for TLS connections, shared read-only
        sniff_timeout: Seconds to wait for the first byte of a connection
    """

    def __init__(self, listener, ssl_context: ssl.SSLContext, sniff_timeout: float = SNIFF_TIMEOUT):
        self.listener = listener
        self.ssl_context = ssl_context
        self.sniff_timeout = sniff_timeout

    def accept(self) -> Tuple[object, object]:
        """Accept a connection and return ``(connection, address)``.

        Raises whatever the inner listener raises (e.g. ``OSError`` once it
        is closed). Never raises for an unidentifiable connection.
        """
        try:
            conn, address, is_tls = self.accept_no_wrap_tls()
        except IdentificationFailed as e:
            # We failed to identify the socket type; pretend that everything
            # is fine and let the handler deal with it.
            log.debug(f"Could not identify protocol of {e.address} ({e.cause}); passing it on unwrapped")
            return e.connection, e.address

        if is_tls:
            return TLSServerConnection(conn, self.ssl_context), address
        return conn, address

    def accept_no_wrap_tls(self) -> Tuple[ReplayConnection, object, bool]:
        """Accept a connection and sniff its protocol without starting TLS.

        Returns:
            ``(connection, address, is_tls)`` where ``connection`` replays
            the sniffed byte

        Raises:
            IdentificationFailed: If no byte arrived within ``sniff_timeout``,
                the peer closed first, or the read failed
        """
        conn, address = self.listener.accept()

        cause = None
        previous_timeout = conn.gettimeout()
        conn.settimeout(self.sniff_timeout)
        try:
            first = conn.recv(1)
        except OSError as e:
            first = b""
            cause = e
        finally:
            conn.settimeout(previous_timeout)

        if not first:
            raise IdentificationFailed(conn, address, cause or "connection closed before first byte")

        is_tls = first[0] == TLS_HANDSHAKE_RECORD
        log.debug(f"Accepted {'TLS' if is_tls else 'plaintext'} connection from {address} (first byte 0x{first[0]:02x})")
        return ReplayConnection(conn, first), address, is_tls

    def close(self):
        self.listener.close()

    def __getattr__(self, name):
        if name == "listener":
            raise AttributeError(name)
        return getattr(self.listener, name)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
