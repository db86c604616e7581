"""Best-effort deletion of transient flow messages."""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from .telemetry import TelemetryCollector, get_telemetry
from .transport import (
    ChatTransport,
    MessageDeleteForbiddenError,
    MessageNotFoundError,
    RateLimitError,
    TransportError,
)

logger = logging.getLogger(__name__)


class MessageCleaner:
    """Deletes prompts and replies so finished steps leave no chat noise.

    Every id is attempted independently. A rate-limited delete is retried
    exactly once after the server's retry hint (or the configured default)
    and then abandoned. Failures never propagate to the calling flow.
    """

    def __init__(
        self,
        transport: ChatTransport,
        *,
        default_backoff: float = 1.0,
        sleeper: Callable[[float], None] = time.sleep,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._transport = transport
        self._default_backoff = default_backoff
        self._sleep = sleeper
        self._telemetry = telemetry

    @property
    def telemetry(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    def delete_messages(
        self, chat_id: int, *message_ids: Optional[int], thread_id: Optional[int] = None
    ) -> None:
        self.delete_many(chat_id, message_ids, thread_id=thread_id)

    def delete_many(
        self,
        chat_id: int,
        message_ids: Iterable[Optional[int]],
        thread_id: Optional[int] = None,
    ) -> None:
        seen = set()
        for message_id in message_ids:
            if not message_id or message_id in seen:
                continue
            seen.add(message_id)
            self._delete_one(chat_id, message_id, thread_id)

    def _delete_one(self, chat_id: int, message_id: int, thread_id: Optional[int]) -> None:
        try:
            self._transport.delete_message(chat_id, message_id, thread_id=thread_id)
            self.telemetry.track_cleanup("deleted")
            return
        except RateLimitError as exc:
            backoff = exc.retry_after if exc.retry_after is not None else self._default_backoff
            logger.info(
                "Rate limited deleting message %s in %s; retrying in %.2fs",
                message_id,
                chat_id,
                backoff,
            )
        except TransportError as exc:
            self._log_failure(chat_id, message_id, exc)
            return

        self._sleep(backoff)
        try:
            self._transport.delete_message(chat_id, message_id, thread_id=thread_id)
            self.telemetry.track_cleanup("deleted", retried=True)
        except TransportError as exc:
            logger.info("Giving up on message %s in %s after retry: %s", message_id, chat_id, exc)
            self.telemetry.track_cleanup("abandoned", retried=True)

    def _log_failure(self, chat_id: int, message_id: int, exc: TransportError) -> None:
        if isinstance(exc, MessageNotFoundError):
            logger.info("Message %s in %s already gone", message_id, chat_id)
            self.telemetry.track_cleanup("not_found")
        elif isinstance(exc, MessageDeleteForbiddenError):
            logger.info("Message %s in %s cannot be deleted: %s", message_id, chat_id, exc)
            self.telemetry.track_cleanup("forbidden")
        else:
            logger.warning("Failed to delete message %s in %s: %s", message_id, chat_id, exc)
            self.telemetry.track_cleanup("failed")


__all__ = ["MessageCleaner"]
