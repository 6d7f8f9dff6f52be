from __future__ import annotations

import logging
import select
import socket
import threading

from .constants import LINE_ENCODING, LINE_SEPARATOR


class LineTimeout(TimeoutError):
    """No inbound data arrived within the requested time."""


def format_peer(sock: socket.socket) -> str:
    try:
        addr = sock.getpeername()
    except OSError:
        return "-"
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr) or "-"


class Connection:
    """
    One peer's bidirectional line stream.

    Lines are UTF-8 text terminated by ``\\n``. The separator (and a
    preceding ``\\r``) is stripped on read and appended on write. Sends are
    serialised so that concurrent writers never interleave two lines.
    """

    def __init__(self, sock: socket.socket, *, peer: str | None = None) -> None:
        self._sock = sock
        self.peer = peer if peer is not None else format_peer(sock)
        self.log = logging.getLogger("chatrelay.connection")
        self._reader = sock.makefile(
            "r", encoding=LINE_ENCODING, errors="replace", newline=LINE_SEPARATOR
        )
        self._send_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def read_line(self, timeout: float | None = None) -> str | None:
        """
        Read the next line.

        Returns None on end-of-stream or after close(). Raises LineTimeout
        when ``timeout`` elapses with nothing to read, OSError on other
        I/O failures.
        """
        if self._closed:
            return None

        if timeout is not None and not self._wait_readable(timeout):
            raise LineTimeout(f"no data from {self.peer} within {timeout}s")

        try:
            line = self._reader.readline()
        except ValueError:
            # The reader was closed underneath us.
            if self._closed:
                return None
            raise OSError(f"stream for {self.peer} is no longer readable")
        except OSError:
            if self._closed:
                return None
            raise

        if not line:
            return None

        if line.endswith("\n"):
            line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
        return line

    def _wait_readable(self, timeout: float) -> bool:
        # Text already buffered by the reader is invisible to select(), so
        # this is only exact before the first read.
        try:
            readable, _, _ = select.select([self._sock], [], [], max(0.0, timeout))
        except (OSError, ValueError):
            return True
        return bool(readable)

    def send_line(self, text: str) -> bool:
        if self._closed:
            return False

        payload = (text + LINE_SEPARATOR).encode(LINE_ENCODING, "replace")
        try:
            with self._send_lock:
                self._sock.sendall(payload)
        except OSError as e:
            self.log.debug("Send failed peer=%s bytes=%s err=%s", self.peer, len(payload), e)
            return False
        return True

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        # shutdown() wakes a reader blocked in readline() before the
        # reader object is closed.
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._reader.close()
        except OSError:
            pass
        self._sock.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Connection peer={self.peer} {state}>"
