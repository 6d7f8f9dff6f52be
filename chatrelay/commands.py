"""Classification of inbound protocol lines."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .constants import CMD_NAME, CMD_QUIT


class CommandKind(Enum):
    QUIT = "quit"
    NAME = "name"
    CHAT = "chat"
    EMPTY = "empty"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    text: str = ""


def parse_line(line: str) -> Command:
    """
    Classify one inbound line.

    ``/quit`` matches case-insensitively. ``/name`` must be followed by
    whitespace or end the line; its argument is returned stripped and may
    be empty. Any other slash-prefixed line is ordinary chat text.
    """
    if not line:
        return Command(CommandKind.EMPTY)

    if line.strip().lower() == CMD_QUIT:
        return Command(CommandKind.QUIT)

    if line == CMD_NAME or line.startswith(CMD_NAME + " "):
        return Command(CommandKind.NAME, line[len(CMD_NAME) :].strip())

    return Command(CommandKind.CHAT, line)


def parse_name_declaration(line: str) -> str | None:
    """Return the declared name if ``line`` is a ``/name`` command."""
    cmd = parse_line(line)
    if cmd.kind is CommandKind.NAME:
        return cmd.text
    return None
