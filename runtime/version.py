"""Runtime version metadata for StreamChat.

Import-safe; the console POC prints the banner string and the backend client
sends the client info header.
"""

from __future__ import annotations

PROJECT_NAME = "StreamChat Runtime"
VERSION = "v0.1.0-alpha"
BUILD = "2026.10"

__all__ = ["PROJECT_NAME", "VERSION", "BUILD", "as_string", "client_info"]


def as_string() -> str:
    return f"{PROJECT_NAME} {VERSION} (Build {BUILD})"


def client_info() -> str:
    """Value sent as the X-Client-Info header on backend requests."""

    return f"streamchat-py/{VERSION.lstrip('v')}"
