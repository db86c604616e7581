"""Discord adapter: the ``ChatTransport`` implementation and UI builders."""

from __future__ import annotations

from .builders import build_poll, build_view, poll_duration_hours
from .transport import DiscordTransport, map_discord_error

__all__ = [
    "DiscordTransport",
    "build_poll",
    "build_view",
    "map_discord_error",
    "poll_duration_hours",
]
