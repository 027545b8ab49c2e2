"""
TLS server connection tests

Runs the memory-BIO TLS server over a socket pair whose first byte was
already consumed, the way the listener does after sniffing.
"""

import unittest
import os
import sys
import socket
import logging
import tempfile
import threading

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from replay_connection import ReplayConnection
from tls_connection import TLSServerConnection
from tls_identity import issue_certificate
from tls_policy import minimal_tls13_policy

# Configure test logging
logging.basicConfig(level=logging.INFO)


class TestTLSServerConnection(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.tmpdir = tempfile.TemporaryDirectory()
        cert_path = os.path.join(cls.tmpdir.name, "cert.pem")
        key_path = os.path.join(cls.tmpdir.name, "key.pem")
        cls.identity = issue_certificate(cert_path, key_path, "node1", 30)
        cls.settings = minimal_tls13_policy()
        cls.server_context = cls.settings.server_context(cert_path, key_path)

    @classmethod
    def tearDownClass(cls):
        cls.tmpdir.cleanup()

    def setUp(self):
        self.local, self.remote = socket.socketpair()
        self.local.settimeout(5.0)
        self.remote.settimeout(5.0)
        self.addCleanup(self.local.close)
        self.addCleanup(self.remote.close)
        self.client = None
        self.client_error = None

    def _client_handshake(self):
        try:
            self.client = self.settings.client_context().wrap_socket(self.remote, server_hostname="node1")
        except Exception as e:
            self.client_error = e

    def _connect(self):
        """Start a client handshake and return the sniffed server connection."""
        thread = threading.Thread(target=self._client_handshake, daemon=True)
        thread.start()
        first = self.local.recv(1)
        self.assertEqual(first, b"\x16")
        conn = TLSServerConnection(ReplayConnection(self.local, first), self.server_context)
        return conn, thread

    def test_lazy_handshake(self):
        """Nothing is negotiated until the connection is used"""
        conn, thread = self._connect()
        self.assertIsNone(conn.version())
        self.assertIn("pending", repr(conn))

        conn.do_handshake()
        thread.join(5.0)
        self.assertIsNone(self.client_error)
        self.assertEqual(conn.version(), "TLSv1.3")
        self.assertIsNotNone(conn.cipher())

        # Idempotent
        conn.do_handshake()
        self.assertIn("established", repr(conn))

    def test_data_both_ways(self):
        conn, thread = self._connect()
        conn.do_handshake()
        thread.join(5.0)

        self.client.sendall(b"ping")
        buffer = bytearray(16)
        n = conn.recv_into(buffer)
        self.assertEqual(bytes(buffer[:n]), b"ping"[:n])

        payload = os.urandom(100000)
        sender = threading.Thread(target=conn.sendall, args=(payload,), daemon=True)
        sender.start()
        received = bytearray()
        while len(received) < len(payload):
            received += self.client.recv(65536)
        sender.join(5.0)
        self.assertEqual(bytes(received), payload)

    def test_eof_reads_empty(self):
        """A peer that goes away reads as end of stream"""
        conn, thread = self._connect()
        conn.do_handshake()
        thread.join(5.0)

        # Drain the session tickets so closing does not reset the pair
        conn.sendall(b"bye")
        self.assertEqual(self.client.recv(16), b"bye")

        self.client.close()
        self.remote.close()
        self.assertEqual(conn.recv(1024), b"")

    def test_zero_length_read(self):
        conn, thread = self._connect()
        conn.do_handshake()
        thread.join(5.0)
        self.assertEqual(conn.recv(0), b"")
        self.assertEqual(conn.recv_into(bytearray()), 0)

    def test_rejects_flags(self):
        conn, thread = self._connect()
        with self.assertRaises(ValueError):
            conn.recv(1, socket.MSG_PEEK)
        conn.close()
        thread.join(5.0)

    def test_rejects_calls_that_bypass_tls(self):
        """Datagram and ancillary-data calls never expose ciphertext"""
        conn, thread = self._connect()
        with self.assertRaises(ValueError):
            conn.recvfrom(16)
        with self.assertRaises(ValueError):
            conn.recvfrom_into(bytearray(16))
        with self.assertRaises(ValueError):
            conn.sendto(b"x", ("127.0.0.1", 9))
        with self.assertRaises(NotImplementedError):
            conn.recvmsg(16)
        with self.assertRaises(NotImplementedError):
            conn.recvmsg_into([bytearray(16)])
        with self.assertRaises(NotImplementedError):
            conn.sendmsg([b"x"])
        with self.assertRaises(ValueError):
            conn.recv(-1)
        with self.assertRaises(ValueError):
            conn.recv_into(bytearray(), 4)
        conn.close()
        thread.join(5.0)

    def test_close_sends_close_notify(self):
        """Closing an established session ends the client's stream cleanly"""
        conn, thread = self._connect()
        conn.do_handshake()
        thread.join(5.0)

        conn.close()
        self.assertEqual(self.client.recv(1024), b"")

    def test_delegates_socket_operations(self):
        conn, thread = self._connect()
        conn.settimeout(3.0)
        self.assertEqual(self.local.gettimeout(), 3.0)
        self.assertEqual(conn.fileno(), self.local.fileno())
        self.assertTrue(conn.server_side)
        conn.close()
        thread.join(5.0)


if __name__ == "__main__":
    unittest.main()
