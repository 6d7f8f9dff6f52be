"""Outbound line formats."""

from __future__ import annotations

from .constants import CMD_NAME, CMD_QUIT


def welcome(name: str) -> str:
    return f"Welcome, {name}! Type {CMD_QUIT} to leave."


def joined(name: str) -> str:
    return f"{name} joined the chat"


def left(name: str) -> str:
    return f"{name} left the chat"


def renamed(old: str, new: str) -> str:
    return f"{old} is now known as {new}"


def chat(name: str, text: str) -> str:
    return f"{name}: {text}"


def name_usage() -> str:
    return f"Usage: {CMD_NAME} <newname>"


def invalid_name(reason: str) -> str:
    return f"Invalid name: {reason}"


def server_full() -> str:
    return "Server is full, try again later."
