"""
Server-side TLS over an arbitrary stream connection.

``ssl.SSLContext.wrap_socket()`` only accepts real sockets, and reads from
the socket directly, which would lose a byte that was consumed while
sniffing the protocol. ``TLSServerConnection`` runs an ``ssl.SSLObject``
over a pair of memory BIOs instead and moves the ciphertext through the
wrapped connection's ``recv()``/``sendall()``, so any socket-like object
(a ``ReplayConnection`` in particular) can carry TLS.

The handshake is lazy: it happens on the first read or write, or on an
explicit ``do_handshake()`` call.
"""

import ssl
import logging
from typing import Optional

from replay_connection import socket_makefile

log = logging.getLogger(__name__)

# Largest TLS record plus header and some slack
RECORD_READ_SIZE = 16 * 1024 + 2048


class TLSServerConnection:
    """Server end of a TLS session running over ``conn``.

    Read/write errors of ``conn`` (including timeouts set on it) propagate
    unchanged. Handshake failures surface as ``ssl.SSLError`` on first use.
    """

    def __init__(self, conn, ssl_context: ssl.SSLContext):
        self._conn = conn
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        self._tls = ssl_context.wrap_bio(self._incoming, self._outgoing, server_side=True)
        self._handshake_done = False
        self._closed = False

    @property
    def connection(self):
        """The wrapped (ciphertext) connection."""
        return self._conn

    @property
    def server_side(self) -> bool:
        return True

    def _flush(self):
        data = self._outgoing.read()
        if data:
            self._conn.sendall(data)

    def _fill(self):
        data = self._conn.recv(RECORD_READ_SIZE)
        if data:
            self._incoming.write(data)
        else:
            self._incoming.write_eof()

    def _drive(self, operation, *args):
        # Run an SSLObject operation, shuttling records until it completes
        while True:
            try:
                result = operation(*args)
            except ssl.SSLWantReadError:
                self._flush()
                if self._incoming.eof:
                    raise ssl.SSLEOFError("EOF occurred in violation of protocol")
                self._fill()
            except ssl.SSLError:
                # Let the peer see our alert before failing
                try:
                    self._flush()
                except OSError as e:
                    log.debug(f"Could not send TLS alert: {e}")
                raise
            else:
                self._flush()
                return result

    def do_handshake(self):
        if self._handshake_done:
            return
        self._drive(self._tls.do_handshake)
        self._handshake_done = True
        log.debug(f"TLS handshake complete: {self._tls.version()} {self._tls.cipher()}")

    def version(self) -> Optional[str]:
        return self._tls.version()

    def cipher(self):
        return self._tls.cipher()

    def getpeercert(self, binary_form: bool = False):
        return self._tls.getpeercert(binary_form)

    def recv(self, bufsize: int, flags: int = 0) -> bytes:
        if flags != 0:
            raise ValueError("non-zero flags not allowed in calls to recv() on TLSServerConnection")
        if bufsize < 0:
            raise ValueError("negative buffersize in recv")
        self.do_handshake()
        if bufsize == 0:
            return b""
        try:
            return self._drive(self._tls.read, bufsize)
        except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
            return b""

    def recv_into(self, buffer, nbytes: int = 0, flags: int = 0) -> int:
        if flags != 0:
            raise ValueError("non-zero flags not allowed in calls to recv_into() on TLSServerConnection")
        size = len(memoryview(buffer).cast("B"))
        if nbytes < 0:
            raise ValueError("negative buffersize in recv_into")
        if nbytes == 0:
            nbytes = size
        elif nbytes > size:
            raise ValueError("buffer too small for requested bytes")
        self.do_handshake()
        if nbytes == 0:
            return 0
        try:
            return self._drive(self._tls.read, nbytes, buffer)
        except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
            return 0

    def send(self, data, flags: int = 0) -> int:
        if flags != 0:
            raise ValueError("non-zero flags not allowed in calls to send() on TLSServerConnection")
        self.do_handshake()
        return self._drive(self._tls.write, data)

    def sendall(self, data, flags: int = 0):
        view = memoryview(data).cast("B")
        while view:
            sent = self.send(view, flags)
            view = view[sent:]

    # Datagram and ancillary-data calls would bypass the TLS session
    def recvfrom(self, bufsize, flags=0):
        raise ValueError("recvfrom not allowed on instances of TLSServerConnection")

    def recvfrom_into(self, buffer, nbytes=None, flags=0):
        raise ValueError("recvfrom_into not allowed on instances of TLSServerConnection")

    def sendto(self, data, flags_or_addr, addr=None):
        raise ValueError("sendto not allowed on instances of TLSServerConnection")

    def recvmsg(self, *args, **kwargs):
        raise NotImplementedError("recvmsg not allowed on instances of TLSServerConnection")

    def recvmsg_into(self, *args, **kwargs):
        raise NotImplementedError("recvmsg_into not allowed on instances of TLSServerConnection")

    def sendmsg(self, *args, **kwargs):
        raise NotImplementedError("sendmsg not allowed on instances of TLSServerConnection")

    def makefile(self, mode: str = "r", buffering: Optional[int] = None, *,
                 encoding: Optional[str] = None, errors: Optional[str] = None,
                 newline: Optional[str] = None):
        return socket_makefile(self, mode, buffering, encoding, errors, newline)

    def close(self):
        """Send close_notify (if the session was established) and close ``conn``."""
        if self._handshake_done and not self._closed:
            try:
                self._tls.unwrap()
            except ssl.SSLWantReadError:
                # The peer's close_notify is not awaited
                pass
            except ssl.SSLError as e:
                log.debug(f"TLS shutdown failed: {e}")
            try:
                self._flush()
            except OSError as e:
                log.debug(f"Could not send close_notify: {e}")
        self._closed = True
        self._conn.close()

    def __getattr__(self, name):
        if name in ("_conn", "_tls", "_incoming", "_outgoing"):
            raise AttributeError(name)
        return getattr(self._conn, name)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self) -> str:
        state = "established" if self._handshake_done else "pending"
        return f"<TLSServerConnection handshake={state} conn={self._conn!r}>"
