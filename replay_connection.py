"""
Byte-replay connection wrapper.

Sniffing the protocol of a new connection consumes its first byte. The
``ReplayConnection`` hands that byte back to the first reader and then gets
out of the way: every later read goes straight to the wrapped connection.
All other socket operations (send, close, timeouts, addresses, ...) are
passed through unchanged.
"""

import io
import socket
from typing import Optional


def socket_makefile(conn, mode: str = "r", buffering: Optional[int] = None,
                    encoding: Optional[str] = None, errors: Optional[str] = None,
                    newline: Optional[str] = None):
    """``socket.makefile()`` for socket-like wrappers.

    The file reads through ``conn.recv_into()`` and writes through
    ``conn.send()``, so wrappers that override those see all traffic.
    """
    if not set(mode) <= {"r", "w", "b"}:
        raise ValueError(f"invalid mode {mode!r} (only r, w, b allowed)")
    reading = "r" in mode
    writing = "w" in mode
    if not reading and not writing:
        reading = True
    rawmode = ("r" if reading else "") + ("w" if writing else "")
    raw = socket.SocketIO(conn, rawmode)
    if buffering is None:
        buffering = -1
    if buffering < 0:
        buffering = io.DEFAULT_BUFFER_SIZE
    if buffering == 0:
        if "b" not in mode:
            raise ValueError("unbuffered streams must be binary")
        return raw
    if reading and writing:
        buffer = io.BufferedRWPair(raw, raw, buffering)
    elif reading:
        buffer = io.BufferedReader(raw, buffering)
    else:
        buffer = io.BufferedWriter(raw, buffering)
    if "b" in mode:
        return buffer
    text = io.TextIOWrapper(buffer, encoding, errors, newline)
    text.mode = mode
    return text


class ReplayConnection:
    """A connection whose already-consumed first byte is read again.

    The pending byte is delivered whole and exactly once, before any data
    from the wrapped connection. A zero-length read while it is pending
    returns nothing and keeps it. Only one reader at a time is supported,
    as with a plain socket.
    """

    def __init__(self, conn: socket.socket, first: Optional[bytes] = None):
        if first is not None and len(first) != 1:
            raise ValueError(f"replay buffer holds exactly one byte, got {len(first)}")
        self._conn = conn
        self._first = first

    @property
    def pending(self) -> bool:
        """True while the replayed byte has not been read yet."""
        return self._first is not None

    @property
    def connection(self) -> socket.socket:
        """The wrapped connection."""
        return self._conn

    def _take(self, flags: int) -> bytes:
        first = self._first
        if not flags & socket.MSG_PEEK:
            self._first = None
        return first

    def recv(self, bufsize: int, flags: int = 0) -> bytes:
        if self._first is None:
            return self._conn.recv(bufsize, flags)
        if bufsize < 0:
            raise ValueError("negative buffersize in recv")
        if bufsize == 0:
            return b""
        return self._take(flags)

    def recv_into(self, buffer, nbytes: int = 0, flags: int = 0) -> int:
        if self._first is None:
            return self._conn.recv_into(buffer, nbytes, flags)
        view = memoryview(buffer).cast("B")
        if nbytes < 0:
            raise ValueError("negative buffersize in recv_into")
        if nbytes == 0:
            nbytes = len(view)
        elif nbytes > len(view):
            raise ValueError("buffer too small for requested bytes")
        if nbytes == 0:
            return 0
        view[0] = self._take(flags)[0]
        return 1

    # Stream sockets report no sender address, so the replayed byte has none
    def recvfrom(self, bufsize: int, flags: int = 0):
        if self._first is None:
            return self._conn.recvfrom(bufsize, flags)
        return self.recv(bufsize, flags), None

    def recvfrom_into(self, buffer, nbytes: int = 0, flags: int = 0):
        if self._first is None:
            return self._conn.recvfrom_into(buffer, nbytes, flags)
        return self.recv_into(buffer, nbytes, flags), None

    def recvmsg(self, bufsize: int, ancbufsize: int = 0, flags: int = 0):
        if self._first is None:
            return self._conn.recvmsg(bufsize, ancbufsize, flags)
        return self.recv(bufsize, flags), [], 0, None

    def recvmsg_into(self, buffers, ancbufsize: int = 0, flags: int = 0):
        if self._first is None:
            return self._conn.recvmsg_into(buffers, ancbufsize, flags)
        for buffer in buffers:
            if len(memoryview(buffer).cast("B")):
                return self.recv_into(buffer, 0, flags), [], 0, None
        return 0, [], 0, None

    def makefile(self, mode: str = "r", buffering: Optional[int] = None, *,
                 encoding: Optional[str] = None, errors: Optional[str] = None,
                 newline: Optional[str] = None):
        return socket_makefile(self, mode, buffering, encoding, errors, newline)

    def __getattr__(self, name):
        if name in ("_conn", "_first"):
            raise AttributeError(name)
        return getattr(self._conn, name)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self) -> str:
        return f"<ReplayConnection pending={self.pending} conn={self._conn!r}>"
