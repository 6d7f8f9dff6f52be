from __future__ import annotations

import itertools
import logging
import signal
import socket
import threading
import time
from typing import Any

from .config import RelayRuntimeConfig
from .connection import Connection
from .constants import ACCEPT_POLL_S
from .registry import Registry
from .session import Session
from .stats import StatsManager


class ServerError(RuntimeError):
    """The relay cannot keep accepting connections."""


class ServerStartupError(ServerError):
    """The listening socket could not be created."""


def _fmt_addr(addr: Any) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr) or "-"


class RelayServer:
    def __init__(self, config: RelayRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("chatrelay.server")

        self.stats_manager = StatsManager()

        # The only membership state shared between session threads; every
        # session gets this instance at construction.
        self.registry = Registry(
            max_sessions=config.max_sessions, stats=self.stats_manager
        )

        self._shutdown = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False

        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._accept_error: OSError | None = None
        self._session_seq = itertools.count(1)

        # Every spawned session, named or not; stop() closes all of them.
        self._live_lock = threading.Lock()
        self._live: set[Session] = set()

    @property
    def address(self) -> tuple[str, int]:
        if self._listener is None:
            raise RuntimeError("server is not started")
        host, port = self._listener.getsockname()[:2]
        return host, port

    def start(self) -> None:
        if self._listener is not None:
            return

        host = self.config.host
        port = int(self.config.port)
        try:
            listener = socket.create_server((host, port))
        except OSError as e:
            raise ServerStartupError(f"cannot listen on {host}:{port}: {e}") from e

        # accept() wakes up periodically so stop() is noticed.
        listener.settimeout(ACCEPT_POLL_S)
        self._listener = listener
        self.stats_manager.set_start_time()

        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="chatrelay-accept", daemon=True
        )
        self._accept_thread.start()

        self.log.info("Relay listening on %s:%s", *self.address)
        self.log.info(
            "Policy max_sessions=%s name_timeout_s=%s name_max_chars=%s tcp_nodelay=%s",
            self.config.max_sessions,
            self.config.name_timeout_s,
            self.config.name_max_chars,
            self.config.tcp_nodelay,
        )

    def _accept_loop(self) -> None:
        listener = self._listener
        if listener is None:
            return

        while not self._shutdown.is_set():
            try:
                sock, addr = listener.accept()
            except TimeoutError:
                continue
            except ConnectionAbortedError as e:
                # The peer gave up while queued; the listener is fine.
                self.stats_manager.inc("connections_failed")
                self.log.info("Connection aborted before accept: %s", e)
                continue
            except OSError as e:
                if self._shutdown.is_set():
                    break
                self._accept_error = e
                self.log.exception("Accept failed; shutting down")
                self._shutdown.set()
                break

            self._handle_accepted(sock, addr)

    def _handle_accepted(self, sock: socket.socket, addr: Any) -> None:
        peer = _fmt_addr(addr)
        self.stats_manager.inc("connections_accepted")
        try:
            if self.config.tcp_nodelay:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            conn = Connection(sock, peer=peer)
            session = Session(
                conn, self.registry, config=self.config, stats=self.stats_manager
            )
            with self._live_lock:
                if self._shutdown.is_set():
                    conn.close()
                    return
                self._live.add(session)
            t = threading.Thread(
                target=self._run_session,
                args=(session,),
                name=f"chatrelay-session-{next(self._session_seq)}",
                daemon=True,
            )
            t.start()
        except Exception:
            self.stats_manager.inc("connections_failed")
            self.log.exception("Failed to set up connection peer=%s", peer)
            try:
                sock.close()
            except OSError:
                pass
            return

        self.log.info("Connection accepted peer=%s", peer)

    def _run_session(self, session: Session) -> None:
        try:
            session.run()
        finally:
            with self._live_lock:
                self._live.discard(session)

    @property
    def session_count(self) -> int:
        """Sessions spawned and not yet finished, including unnamed ones."""
        with self._live_lock:
            return len(self._live)

    def run_forever(self) -> None:
        if self._listener is None:
            self.start()

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, lambda *_: self.stop())
            signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

        self.stop()

        if self._accept_error is not None:
            raise ServerError(f"accept failed: {self._accept_error}") from self._accept_error

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        self._shutdown.set()

        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass

        registered = self.registry.shutdown()
        with self._live_lock:
            sessions = set(self._live) | set(registered)
        for session in sessions:
            try:
                session.close()
            except Exception:
                self.log.debug("Session close failed id=%s", session.id, exc_info=True)

        t = self._accept_thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=ACCEPT_POLL_S * 4)

        self.log.info("Relay stopped; closed %d session(s)", len(sessions))
        self.log.info("%s", self.format_stats())

    def format_stats(self) -> str:
        return self.stats_manager.format_stats(sessions=len(self.registry))

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._shutdown.is_set()
