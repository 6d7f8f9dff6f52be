import errno
import io
import socket
import threading
import time

import pytest

from chatrelay.client import ChatClient
from chatrelay.config import RelayRuntimeConfig
from chatrelay.server import RelayServer, ServerStartupError


@pytest.fixture
def server():
    svc = RelayServer(RelayRuntimeConfig(host="127.0.0.1", port=0))
    svc.start()
    yield svc
    svc.stop()


@pytest.fixture
def connect(server, line_client):
    clients = []

    def factory(name: str | None = None):
        c = line_client(socket.create_connection(server.address, timeout=5.0))
        clients.append(c)
        if name is not None:
            c.send(f"/name {name}")
            c.read_until(f"Welcome, {name}! Type /quit to leave.")
        return c

    yield factory

    for c in clients:
        c.close()


def test_two_party_scenario(server, connect, waiter) -> None:
    alice = connect()
    alice.send("/name Alice")
    assert alice.read() == "Welcome, Alice! Type /quit to leave."

    bob = connect()
    bob.send("/name Bob")
    # No replay of Alice's earlier join.
    assert bob.read() == "Welcome, Bob! Type /quit to leave."
    assert alice.read() == "Bob joined the chat"

    alice.send("hello")
    assert bob.read() == "Alice: hello"

    bob.send("/quit")
    # Alice's next line is the leave announcement, not an echo of her own chat.
    assert alice.read() == "Bob left the chat"
    assert bob.read() is None
    assert waiter(lambda: len(server.registry) == 1)


def test_abrupt_disconnect_looks_like_quit(server, connect, waiter) -> None:
    alice = connect("Alice")
    bob = connect("Bob")
    assert alice.read() == "Bob joined the chat"

    bob.close()

    assert alice.read() == "Bob left the chat"
    assert waiter(lambda: len(server.registry) == 1)


def test_rename_is_visible_to_others(server, connect) -> None:
    alice = connect("Alice")
    bob = connect("Bob")
    alice.read_until("Bob joined the chat")

    bob.send("/name Robert")
    assert alice.read() == "Bob is now known as Robert"
    bob.send("hi")
    assert alice.read() == "Robert: hi"


def test_join_announcement_is_seen_once_and_never_by_self(server, connect) -> None:
    first = connect("first")
    names = [f"u{i}" for i in range(5)]
    for name in names:
        connect(name)

    seen = [first.read() for _ in names]
    assert seen == [f"{name} joined the chat" for name in names]
    assert "first joined the chat" not in seen


def test_concurrent_joins_and_quits(server, connect, waiter) -> None:
    total = 30
    quitting = 12
    clients: list = [None] * total
    errors: list[BaseException] = []

    def join(i: int) -> None:
        try:
            clients[i] = connect(f"user{i}")
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=join, args=(i,)) for i in range(total)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)
    assert errors == []
    assert waiter(lambda: len(server.registry) == total)

    quitters = [threading.Thread(target=clients[i].send, args=("/quit",)) for i in range(quitting)]
    for t in quitters:
        t.start()
    for t in quitters:
        t.join(timeout=10.0)

    assert waiter(lambda: len(server.registry) == total - quitting)

    survivor = clients[-1]
    leaves: set[str] = set()
    while len(leaves) < quitting:
        line = survivor.read()
        assert line is not None
        if line.endswith(" left the chat"):
            assert line not in leaves
            leaves.add(line)
    assert leaves == {f"user{i} left the chat" for i in range(quitting)}


def test_stop_disconnects_everyone(connect, server) -> None:
    alice = connect("Alice")

    server.stop()

    assert alice.read() is None
    assert len(server.registry) == 0
    assert not server.running


def test_stats_follow_activity(server, connect, waiter) -> None:
    alice = connect("Alice")
    bob = connect("Bob")
    alice.read_until("Bob joined the chat")
    alice.send("ping")
    assert bob.read() == "Alice: ping"

    stats = server.stats_manager
    assert stats.get("connections_accepted") == 2
    assert stats.get("joins") == 2
    assert stats.get("msgs_relayed") == 1
    assert "joins=2" in server.format_stats()


def test_startup_fails_on_busy_port() -> None:
    blocker = socket.create_server(("127.0.0.1", 0))
    try:
        port = blocker.getsockname()[1]
        svc = RelayServer(RelayRuntimeConfig(host="127.0.0.1", port=port))
        with pytest.raises(ServerStartupError):
            svc.start()
    finally:
        blocker.close()


def test_console_client_round_trip(server, connect) -> None:
    observer = connect("observer")
    host, port = server.address
    out = io.StringIO()
    client = ChatClient(host, port, "Tester", stdin=io.StringIO("hello\n/quit\n"), stdout=out)

    assert client.start() == 0

    assert observer.read_until("Tester left the chat") == [
        "Tester joined the chat",
        "Tester: hello",
        "Tester left the chat",
    ]
    assert out.getvalue().startswith(f"[Client] Connected to {host}:{port}")


def test_console_client_reports_connect_failure(capsys) -> None:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()

    client = ChatClient("127.0.0.1", port, "nobody", stdin=io.StringIO(""), stdout=io.StringIO())
    assert client.start() == 1
    assert "[Client] Error:" in capsys.readouterr().err


def _read_or_eof(client) -> str | None:
    try:
        return client.read()
    except ConnectionResetError:
        return None


def test_stop_closes_sessions_that_never_named_themselves(server, connect, waiter) -> None:
    silent = connect()
    assert waiter(lambda: server.session_count == 1)

    server.stop()

    try:
        silent.send("/name Ghost")
    except OSError:
        pass
    assert _read_or_eof(silent) is None
    assert waiter(lambda: server.session_count == 0)
    assert len(server.registry) == 0


class ScriptedListener:
    """Listener stand-in whose accept() raises the given errors in order."""

    def __init__(self, *errors: OSError) -> None:
        self.errors = list(errors)
        self.calls = 0

    def accept(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        time.sleep(0.01)
        raise TimeoutError


def _run_accept_loop(listener: ScriptedListener):
    svc = RelayServer(RelayRuntimeConfig(host="127.0.0.1", port=0))
    svc._listener = listener
    t = threading.Thread(target=svc._accept_loop, daemon=True)
    t.start()
    return svc, t


def test_aborted_connection_keeps_accepting(waiter) -> None:
    listener = ScriptedListener(ConnectionAbortedError("peer gave up"))
    svc, t = _run_accept_loop(listener)
    try:
        assert waiter(lambda: listener.calls >= 3)
        assert t.is_alive()
        assert svc.running
        assert svc._accept_error is None
    finally:
        svc._shutdown.set()
        t.join(timeout=5.0)

    assert svc.stats_manager.get("connections_failed") == 1


def test_listener_failure_is_fatal() -> None:
    listener = ScriptedListener(OSError(errno.EBADF, "Bad file descriptor"))
    svc, t = _run_accept_loop(listener)
    t.join(timeout=5.0)

    assert not t.is_alive()
    assert isinstance(svc._accept_error, OSError)
    assert not svc.running
