"""Chat transport contract used by the flows and notification services.

The core never talks to a chat API directly. Everything outbound goes
through a ``ChatTransport`` implementation (the Discord adapter in
production, a recording fake in tests). Calls are synchronous: a flow step
blocks until the outbound call completes or raises ``TransportError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence


class TransportError(RuntimeError):
    """Base error for failed outbound chat calls."""


class RateLimitError(TransportError):
    """The chat API asked us to slow down."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MessageNotFoundError(TransportError):
    """The message is already gone."""


class MessageDeleteForbiddenError(TransportError):
    """The message is too old to delete or the bot lacks permission."""


@dataclass(frozen=True)
class Button:
    label: str
    data: str


ButtonRows = Sequence[Sequence[Button]]


@dataclass(frozen=True)
class SentPoll:
    poll_id: str
    message_id: int


@dataclass(frozen=True)
class InboundMessage:
    user_id: int
    chat_id: int
    message_id: int
    text: str
    display_name: str = ""


@dataclass(frozen=True)
class CallbackQuery:
    callback_id: str
    user_id: int
    chat_id: int
    message_id: int
    data: str
    display_name: str = ""


@dataclass(frozen=True)
class PollAnswer:
    poll_id: str
    user_id: int
    option: int
    display_name: str = ""


class ChatTransport(Protocol):
    def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: Optional[ButtonRows] = None,
        thread_id: Optional[int] = None,
    ) -> int:
        ...

    def delete_message(
        self, chat_id: int, message_id: int, thread_id: Optional[int] = None
    ) -> None:
        ...

    def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        ...

    def send_poll(
        self,
        chat_id: int,
        question: str,
        options: List[str],
        thread_id: Optional[int] = None,
        closes_at: Optional[datetime] = None,
    ) -> SentPoll:
        """Publish a native poll. ``closes_at`` is the event deadline; transports
        whose polls carry their own duration should end them no later than that.
        """

    def stop_poll(
        self, chat_id: int, message_id: int, thread_id: Optional[int] = None
    ) -> None:
        ...

    def leave_chat(self, chat_id: int) -> None:
        """Make the bot leave the chat (or the server holding it)."""


def single_column(buttons: Sequence[Button]) -> List[List[Button]]:
    """Lay buttons out one per row."""

    return [[button] for button in buttons]


__all__ = [
    "Button",
    "ButtonRows",
    "CallbackQuery",
    "ChatTransport",
    "InboundMessage",
    "MessageDeleteForbiddenError",
    "MessageNotFoundError",
    "PollAnswer",
    "RateLimitError",
    "SentPoll",
    "TransportError",
    "single_column",
]
