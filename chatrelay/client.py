from __future__ import annotations

import logging
import socket
import sys
import threading
from typing import TextIO

from .connection import Connection
from .constants import CMD_NAME, CMD_QUIT

QUIT_GRACE_S = 2.0


class ChatClient:
    """
    Interactive console client.

    Declares ``name`` on connect, prints every line the relay sends and
    forwards console input line by line. Stops after ``/quit`` is sent,
    when the console reaches end-of-file, or when the relay hangs up.
    """

    def __init__(
        self,
        host: str,
        port: int,
        name: str,
        *,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.name = name
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.log = logging.getLogger("chatrelay.client")

        self._done = threading.Event()
        self._quitting = False
        self._out_lock = threading.Lock()

    def _print(self, text: str) -> None:
        with self._out_lock:
            print(text, file=self.stdout, flush=True)

    def start(self) -> int:
        """Run until quit or disconnect. Returns a process exit status."""
        try:
            sock = socket.create_connection((self.host, self.port))
        except OSError as e:
            print(f"[Client] Error: {e}", file=sys.stderr)
            return 1

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        conn = Connection(sock, peer=f"{self.host}:{self.port}")
        self._print(f"[Client] Connected to {self.host}:{self.port}")

        conn.send_line(f"{CMD_NAME} {self.name}")

        reader = threading.Thread(
            target=self._read_loop, args=(conn,), name="server-listener", daemon=True
        )
        reader.start()

        self._print(f"Type messages. Use {CMD_QUIT} to exit, {CMD_NAME} <new> to rename.")
        writer = threading.Thread(
            target=self._input_loop, args=(conn,), name="console-input", daemon=True
        )
        writer.start()

        self._done.wait()
        if self._quitting:
            # Let the relay hang up first so its last lines are still printed.
            reader.join(timeout=QUIT_GRACE_S)
        conn.close()
        reader.join(timeout=1.0)
        return 0

    def _read_loop(self, conn: Connection) -> None:
        try:
            while True:
                line = conn.read_line()
                if line is None:
                    break
                self._print(line)
            if not self._quitting and not conn.closed:
                self._print("[Client] Disconnected by server")
        except OSError as e:
            if not self._quitting:
                self._print(f"[Client] Disconnected: {e}")
        finally:
            self._done.set()

    def _input_loop(self, conn: Connection) -> None:
        try:
            for raw in self.stdin:
                text = raw.rstrip("\r\n")
                if text.strip().lower() == CMD_QUIT:
                    self._quitting = True
                if not conn.send_line(text):
                    self.log.debug("Send failed; relay connection is gone")
                    break
                if self._quitting:
                    break
        finally:
            self._done.set()
