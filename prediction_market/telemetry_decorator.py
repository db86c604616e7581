"""Slash command telemetry for the Discord adapter."""
from __future__ import annotations

import functools
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar, overload

import discord

from .telemetry import get_telemetry

logger = logging.getLogger(__name__)

Handler = TypeVar("Handler", bound=Callable[..., Awaitable[Any]])


def _command_name(interaction: discord.Interaction, fallback: str) -> str:
    command = getattr(interaction, "command", None)
    return getattr(command, "qualified_name", None) or fallback


def _where(interaction: discord.Interaction) -> Tuple[str, Optional[str]]:
    guild_id = getattr(interaction, "guild_id", None)
    channel_id = getattr(interaction, "channel_id", None)
    return (
        str(guild_id) if guild_id else "dm",
        str(channel_id) if channel_id is not None else None,
    )


@overload
def track_command(func: Handler) -> Handler: ...


@overload
def track_command(*, name: Optional[str] = None) -> Callable[[Handler], Handler]: ...


def track_command(func=None, *, name=None):
    """Record usage, latency and failures of a slash command handler.

    Usable bare (``@track_command``) or with an explicit metric name
    (``@track_command(name="rating")``). Without a name the registered
    command name is used, falling back to the handler's name.
    """

    def decorate(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(interaction: discord.Interaction, *args, **kwargs) -> Any:
            telemetry = get_telemetry()
            command = name or _command_name(interaction, handler.__name__)
            guild_id, channel_id = _where(interaction)
            user_id = str(interaction.user.id)
            started = time.perf_counter()
            success = False
            try:
                result = await handler(interaction, *args, **kwargs)
                success = True
                return result
            except Exception as exc:
                logger.exception("/%s failed for user %s", command, user_id)
                telemetry.track_error(
                    type(exc).__name__,
                    command=command,
                    user_id=user_id,
                    error_details=str(exc),
                )
                raise
            finally:
                telemetry.track_command(
                    command,
                    user_id,
                    guild_id,
                    success=success,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    channel_id=channel_id,
                )

        return wrapper  # type: ignore[return-value]

    if func is not None:
        return decorate(func)
    return decorate


__all__ = ["track_command"]
