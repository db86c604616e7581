"""``ChatTransport`` implementation on top of discord.py.

The flow core is synchronous and runs in worker threads; every outbound call
is scheduled on the bot's event loop with ``asyncio.run_coroutine_threadsafe``
and waited on, so flows see ordinary blocking calls and transport errors.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union

import discord
from discord.ext import commands

from ...transport import (
    ButtonRows,
    MessageDeleteForbiddenError,
    MessageNotFoundError,
    RateLimitError,
    SentPoll,
    TransportError,
)
from .builders import MAX_POLL_HOURS, build_poll, build_view, poll_duration_hours

logger = logging.getLogger(__name__)

Messageable = Union[discord.abc.Messageable, discord.Thread]


def map_discord_error(exc: Exception) -> TransportError:
    """Translate a discord.py exception into the transport error hierarchy."""

    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, discord.RateLimited):
        return RateLimitError(str(exc), retry_after=exc.retry_after)
    if isinstance(exc, discord.NotFound):
        return MessageNotFoundError(str(exc))
    if isinstance(exc, discord.Forbidden):
        return MessageDeleteForbiddenError(str(exc))
    if isinstance(exc, discord.HTTPException) and exc.status == 429:
        retry_after = None
        headers = getattr(exc.response, "headers", None) or {}
        raw = headers.get("Retry-After") if hasattr(headers, "get") else None
        if raw is not None:
            try:
                retry_after = float(raw)
            except (TypeError, ValueError):
                retry_after = None
        return RateLimitError(str(exc), retry_after=retry_after)
    return TransportError(str(exc))


class DiscordTransport:
    """Blocking facade over the bot's async API."""

    def __init__(
        self,
        bot: commands.Bot,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        *,
        poll_duration_hours: int = MAX_POLL_HOURS,
        timeout: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None,
        max_tracked_messages: int = 5000,
    ) -> None:
        self._bot = bot
        self._loop = loop
        self._poll_duration_hours = poll_duration_hours
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: Dict[str, discord.Interaction] = {}
        # Discord message ids are global; remember where recent ones were
        # posted so deletes and poll closes reach threads and DMs. Callers
        # pass the thread explicitly for anything older or from before a
        # restart.
        self._message_channels: "OrderedDict[int, int]" = OrderedDict()
        self._max_tracked = max_tracked_messages

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or self._bot.loop

    # Interaction bookkeeping --------------------------------------------
    def register_interaction(self, interaction: discord.Interaction) -> str:
        callback_id = str(interaction.id)
        self._pending[callback_id] = interaction
        return callback_id

    def forget_interaction(self, callback_id: str) -> None:
        self._pending.pop(callback_id, None)

    # Plumbing ------------------------------------------------------------
    def _call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(self._timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise TransportError("discord call timed out") from exc
        except (discord.DiscordException, TransportError) as exc:
            raise map_discord_error(exc) from exc

    async def _resolve(self, target_id: int) -> Messageable:
        channel = self._bot.get_channel(target_id)
        if channel is not None:
            return channel
        user = self._bot.get_user(target_id)
        if user is None:
            try:
                return await self._bot.fetch_channel(target_id)
            except discord.NotFound:
                user = await self._bot.fetch_user(target_id)
        return user.dm_channel or await user.create_dm()

    def _remember(self, message: discord.Message) -> None:
        self._message_channels[message.id] = message.channel.id
        while len(self._message_channels) > self._max_tracked:
            self._message_channels.popitem(last=False)

    def _target(self, chat_id: int, message_id: int, thread_id: Optional[int]) -> int:
        return self._message_channels.pop(message_id, None) or thread_id or chat_id

    # ChatTransport -------------------------------------------------------
    def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: Optional[ButtonRows] = None,
        thread_id: Optional[int] = None,
    ) -> int:
        async def _send() -> discord.Message:
            channel = await self._resolve(thread_id or chat_id)
            view = build_view(buttons)
            if view is None:
                return await channel.send(text)
            return await channel.send(text, view=view)

        message = self._call(_send())
        self._remember(message)
        return message.id

    def delete_message(
        self, chat_id: int, message_id: int, thread_id: Optional[int] = None
    ) -> None:
        target = self._target(chat_id, message_id, thread_id)

        async def _delete() -> None:
            channel = await self._resolve(target)
            await channel.get_partial_message(message_id).delete()

        self._call(_delete())

    def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        interaction = self._pending.pop(callback_id, None)
        if interaction is None or not text:
            return
        self._call(interaction.followup.send(text, ephemeral=True))

    def send_poll(
        self,
        chat_id: int,
        question: str,
        options: List[str],
        thread_id: Optional[int] = None,
        closes_at: Optional[datetime] = None,
    ) -> SentPoll:
        hours = poll_duration_hours(closes_at, self._clock(), self._poll_duration_hours)

        async def _send() -> discord.Message:
            channel = await self._resolve(thread_id or chat_id)
            return await channel.send(poll=build_poll(question, options, hours))

        message = self._call(_send())
        self._remember(message)
        logger.info("Published poll %s in %s for %d hours", message.id, message.channel.id, hours)
        return SentPoll(poll_id=str(message.id), message_id=message.id)

    def stop_poll(
        self, chat_id: int, message_id: int, thread_id: Optional[int] = None
    ) -> None:
        target = self._target(chat_id, message_id, thread_id)

        async def _stop() -> None:
            channel = await self._resolve(target)
            await channel.get_partial_message(message_id).end_poll()

        self._call(_stop())

    def leave_chat(self, chat_id: int) -> None:
        async def _leave() -> None:
            guild = self._bot.get_guild(chat_id)
            if guild is None:
                channel = await self._resolve(chat_id)
                guild = getattr(channel, "guild", None)
            if guild is None:
                raise TransportError(f"{chat_id} is not a server channel")
            await guild.leave()
            logger.info("Left server %s", guild.id)

        self._call(_leave())


__all__ = ["DiscordTransport", "map_discord_error"]
