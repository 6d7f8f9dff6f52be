from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING

from . import messages
from .commands import CommandKind, parse_line, parse_name_declaration
from .config import RelayRuntimeConfig
from .connection import LineTimeout
from .constants import DEFAULT_DISPLAY_NAME, ROOM_LOGGER
from .registry import RegistryClosed, RegistryFull
from .util import InvalidName, normalize_name

if TYPE_CHECKING:
    from .connection import Connection
    from .registry import Registry
    from .stats import StatsManager


class SessionState(Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    """
    Server-side state and protocol loop for one chat participant.

    A session starts CONNECTING, reads the peer's optional ``/name``
    declaration, registers itself and announces its join (ACTIVE), relays
    chat lines and renames, and finally unregisters and announces its
    departure (CLOSED). run() is meant to own a thread of its own.
    """

    def __init__(
        self,
        connection: Connection,
        registry: Registry,
        *,
        config: RelayRuntimeConfig | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.connection = connection
        self.registry = registry
        self.config = config if config is not None else RelayRuntimeConfig()
        self.stats = stats
        self.log = logging.getLogger("chatrelay.session")
        self.room_log = logging.getLogger(ROOM_LOGGER)

        self.id: int | None = None
        self.display_name = DEFAULT_DISPLAY_NAME
        self.state = SessionState.CONNECTING

        self._state_lock = threading.Lock()
        self._announced = False
        self._intro_error: str | None = None

    @property
    def peer(self) -> str:
        return self.connection.peer

    def run(self) -> None:
        try:
            ready, pending = self._read_intro()
            if not ready:
                self.log.info("Peer left before naming peer=%s", self.peer)
                return

            if not self._activate():
                return

            if self._intro_error is not None:
                self.send_line(messages.invalid_name(self._intro_error))
            if pending is not None:
                self._handle_line(pending)

            while self.state is SessionState.ACTIVE:
                line = self.connection.read_line()
                if line is None:
                    break
                self._inc("lines_in")
                self._handle_line(line)
        except OSError as e:
            self.log.warning(
                "Connection problem peer=%s name=%r err=%s",
                self.peer,
                self.display_name,
                e,
            )
        finally:
            self.close()

    def _read_intro(self) -> tuple[bool, str | None]:
        """
        Read the first line while CONNECTING.

        Returns (ready, pending). ``ready`` is False when the peer went away
        before saying anything. ``pending`` is a first line that was not a
        name declaration and still has to be handled as a normal line.
        """
        timeout = float(self.config.name_timeout_s or 0.0)
        try:
            line = self.connection.read_line(timeout=timeout if timeout > 0 else None)
        except LineTimeout:
            self.log.info(
                "No name declared within %ss peer=%s; using default", timeout, self.peer
            )
            return True, None

        if line is None:
            return False, None

        self._inc("lines_in")
        declared = parse_name_declaration(line)
        if declared is None:
            return True, line

        try:
            self.display_name = normalize_name(declared, self.config.name_max_chars)
        except InvalidName as e:
            self._intro_error = str(e)
            self.log.info("Rejected initial name peer=%s err=%s", self.peer, e)
        return True, None

    def _activate(self) -> bool:
        try:
            self.registry.register(self)
        except RegistryFull as e:
            self.log.warning("Refusing peer=%s: %s", self.peer, e)
            self.send_line(messages.server_full())
            return False
        except RegistryClosed:
            self.log.info("Relay is shutting down; dropping peer=%s", self.peer)
            return False

        with self._state_lock:
            closed = self.state is SessionState.CLOSED
            if not closed:
                self.state = SessionState.ACTIVE
                self._announced = True

        if closed:
            # close() ran before register(); undo the registration it missed.
            self.registry.unregister(self)
            return False

        self._inc("joins")
        self.log.info(
            "Session joined id=%s name=%r peer=%s", self.id, self.display_name, self.peer
        )
        self.registry.broadcast_except(self.id, messages.joined(self.display_name))
        self.send_line(messages.welcome(self.display_name))
        return True

    def _handle_line(self, line: str) -> None:
        cmd = parse_line(line)

        if cmd.kind is CommandKind.EMPTY:
            return

        if cmd.kind is CommandKind.QUIT:
            self.log.debug("Quit requested id=%s", self.id)
            self.close()
            return

        if cmd.kind is CommandKind.NAME:
            if not cmd.text:
                self.send_line(messages.name_usage())
                return
            try:
                new_name = normalize_name(cmd.text, self.config.name_max_chars)
            except InvalidName as e:
                self.send_line(messages.invalid_name(str(e)))
                return
            self.rename(new_name)
            return

        msg = messages.chat(self.display_name, cmd.text)
        self.room_log.info("[Room] %s", msg)
        self._inc("msgs_relayed")
        self.registry.broadcast_except(self.id, msg)

    def rename(self, new_name: str) -> None:
        old = self.display_name
        self.display_name = new_name
        self._inc("renames")
        self.log.info("Rename id=%s %r -> %r", self.id, old, new_name)
        self.registry.broadcast_except(self.id, messages.renamed(old, new_name))

    def send_line(self, text: str) -> bool:
        return self.connection.send_line(text)

    def close(self) -> None:
        """
        Move to CLOSED: unregister, close the connection and announce the
        departure if the join was announced. Safe to call more than once
        and from any thread.
        """
        with self._state_lock:
            if self.state is SessionState.CLOSED:
                return
            announced = self._announced
            self.state = SessionState.CLOSED

        self.registry.unregister(self)
        self.connection.close()

        if announced:
            self._inc("parts")
            self.registry.broadcast_except(self.id, messages.left(self.display_name))

        self.log.info(
            "Session closed id=%s name=%r peer=%s", self.id, self.display_name, self.peer
        )

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def __repr__(self) -> str:
        return (
            f"<Session id={self.id} name={self.display_name!r} "
            f"state={self.state.value} peer={self.peer}>"
        )
