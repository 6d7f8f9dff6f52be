from __future__ import annotations

import socket
import threading
import time

import pytest

from chatrelay.connection import Connection
from chatrelay.session import Session

IO_TIMEOUT_S = 5.0


class RecordingPeer:
    """Stand-in for a Session that records the lines it is sent."""

    def __init__(self, name: str = "peer", *, fail: bool = False) -> None:
        self.id: int | None = None
        self.display_name = name
        self.fail = fail
        self.lines: list[str] = []
        self._cond = threading.Condition()

    def send_line(self, text: str) -> bool:
        if self.fail:
            return False
        with self._cond:
            self.lines.append(text)
            self._cond.notify_all()
        return True

    def wait_for(self, text: str, timeout: float = IO_TIMEOUT_S) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while text not in self.lines:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True


class LineClient:
    """Test-side end of a line stream."""

    def __init__(self, sock: socket.socket) -> None:
        sock.settimeout(IO_TIMEOUT_S)
        self.sock = sock
        self._file = sock.makefile("r", encoding="utf-8", newline="\n")

    def send(self, text: str) -> None:
        self.sock.sendall((text + "\n").encode("utf-8"))

    def read(self) -> str | None:
        line = self._file.readline()
        if not line:
            return None
        return line.rstrip("\n")

    def read_until(self, text: str) -> list[str]:
        seen: list[str] = []
        while True:
            line = self.read()
            if line is None:
                raise AssertionError(f"stream ended before {text!r}; got {seen!r}")
            seen.append(line)
            if line == text:
                return seen

    def close(self) -> None:
        try:
            self._file.close()
        except OSError:
            pass
        self.sock.close()


def wait_until(predicate, timeout: float = IO_TIMEOUT_S) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture
def recording_peer():
    return RecordingPeer


@pytest.fixture
def line_client():
    return LineClient


@pytest.fixture
def waiter():
    return wait_until


@pytest.fixture
def spawn_session():
    """Start Session.run() on one end of a socketpair; yields a factory."""
    started: list[tuple[Session, LineClient, threading.Thread]] = []

    def factory(registry, *, config=None, stats=None):
        server_sock, client_sock = socket.socketpair()
        session = Session(
            Connection(server_sock, peer="test-peer"),
            registry,
            config=config,
            stats=stats,
        )
        t = threading.Thread(target=session.run, daemon=True)
        t.start()
        client = LineClient(client_sock)
        started.append((session, client, t))
        return session, client, t

    yield factory

    for session, client, t in started:
        client.close()
        session.close()
        t.join(timeout=IO_TIMEOUT_S)
