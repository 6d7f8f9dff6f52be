from __future__ import annotations

import itertools
import logging
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .session import Session
    from .stats import StatsManager


class RegistryFull(RuntimeError):
    """The configured session limit has been reached."""


class RegistryClosed(RuntimeError):
    """The registry was shut down and takes no new sessions."""


class Registry:
    """
    Live sessions of one relay, keyed by session id.

    This class is responsible for:
    - Assigning session ids (never reused within one registry)
    - Membership add/remove, safe to call from any session thread
    - Best-effort fan-out of a line to every session but one

    One lock guards the membership map. It is held only while mutating or
    snapshotting the map, never across a network send.
    """

    def __init__(
        self, *, max_sessions: int = 0, stats: StatsManager | None = None
    ) -> None:
        self.max_sessions = int(max_sessions)
        self.stats = stats
        self.log = logging.getLogger("chatrelay.registry")
        self._lock = threading.Lock()
        self._sessions: dict[int, Session] = {}
        self._ids = itertools.count(1)
        self._closed = False

    def register(self, session: Session) -> int:
        """
        Add a session and return its id.

        Raises RegistryFull when a positive ``max_sessions`` is reached and
        RegistryClosed after shutdown().
        Registering an already registered session returns its existing id.
        """
        with self._lock:
            sid = session.id
            if sid is not None and self._sessions.get(sid) is session:
                return sid

            if self._closed:
                raise RegistryClosed("registry is shut down")

            if self.max_sessions > 0 and len(self._sessions) >= self.max_sessions:
                raise RegistryFull(f"session limit {self.max_sessions} reached")

            sid = next(self._ids)
            session.id = sid
            self._sessions[sid] = session
            total = len(self._sessions)

        self.log.debug("Registered session id=%s total=%s", sid, total)
        return sid

    def unregister(self, session: Session) -> bool:
        """Remove a session. Returns False if it was not registered."""
        sid = session.id
        if sid is None:
            return False

        with self._lock:
            if self._sessions.get(sid) is not session:
                return False
            del self._sessions[sid]
            total = len(self._sessions)

        self.log.debug("Unregistered session id=%s total=%s", sid, total)
        return True

    def broadcast_except(self, sender_id: int | None, text: str) -> int:
        """
        Send ``text`` to every registered session except ``sender_id``.

        Returns the number of successful deliveries. A recipient whose send
        fails is skipped; the failure is logged and never propagated.
        """
        recipients = self.snapshot()

        delivered = 0
        failed = 0
        for sid, session in recipients:
            if sid == sender_id:
                continue
            try:
                ok = session.send_line(text)
            except Exception:
                self.log.debug("Broadcast send raised id=%s", sid, exc_info=True)
                ok = False

            if ok:
                delivered += 1
            else:
                failed += 1
                self.log.debug("Broadcast send failed id=%s", sid)

        if self.stats is not None:
            self.stats.inc("deliveries", delivered)
            if failed:
                self.stats.inc("send_failures", failed)

        return delivered

    def snapshot(self) -> list[tuple[int, Session]]:
        with self._lock:
            return list(self._sessions.items())

    def get(self, session_id: int) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def clear_all(self) -> list[Session]:
        """Remove every session and return them for teardown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions

    def shutdown(self) -> list[Session]:
        """Refuse further registrations, then remove and return every session."""
        with self._lock:
            self._closed = True
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions

    @property
    def closed(self) -> bool:
        return self._closed

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            names = [s.display_name for s in self._sessions.values()]
        return {
            "total": len(names),
            "max_sessions": self.max_sessions,
            "names": sorted(names),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
