"""Shared plumbing for the conversational flows.

Each flow is a small state machine persisted through ``SessionStore``. The
controllers here only know how to move between states; the router decides
which controller receives an update and turns ``DomainError`` into replies.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ClassVar, Iterable, Optional, Tuple, Type

from ..achievements import AchievementTracker
from ..callbacks import CallbackPayload
from ..cleanup import MessageCleaner
from ..config import Settings
from ..contexts import FlowContext, FlowKind, FlowState
from ..errors import DomainError, ErrorKind
from ..events import EventManager
from ..groups import GroupContextResolver, GroupDirectory
from ..notifications import NotificationService
from ..permissions import EventPermissionValidator
from ..scoring import RatingCalculator
from ..sessions import Session, SessionStore
from ..state import MarketState
from ..telemetry import TelemetryCollector, get_telemetry
from ..transport import ButtonRows, CallbackQuery, ChatTransport, InboundMessage, TransportError

logger = logging.getLogger(__name__)

USE_BUTTONS = "Please choose one of the buttons above."


@dataclass
class FlowServices:
    """Collaborators every flow controller can reach."""

    settings: Settings
    state: MarketState
    store: SessionStore
    transport: ChatTransport
    cleaner: MessageCleaner
    events: EventManager
    permissions: EventPermissionValidator
    groups: GroupContextResolver
    directory: GroupDirectory
    scoring: RatingCalculator
    achievements: AchievementTracker
    notifications: NotificationService
    clock: Callable[[], datetime]
    telemetry: Optional[TelemetryCollector] = None

    def now(self) -> datetime:
        return self.clock()


class FlowController(ABC):
    """Base class for one conversational flow."""

    kind: ClassVar[FlowKind]
    callback_types: ClassVar[Tuple[Type, ...]] = ()
    expired_text: ClassVar[str] = "Your session expired. Please start again."

    def __init__(self, services: FlowServices) -> None:
        self.services = services

    @property
    def telemetry(self) -> TelemetryCollector:
        return self.services.telemetry or get_telemetry()

    def accepts(self, payload: CallbackPayload) -> bool:
        return isinstance(payload, self.callback_types)

    # Inbound -----------------------------------------------------------
    @abstractmethod
    def handle_message(self, session: Session, message: InboundMessage) -> None:
        """Consume free text sent while the session waits in ``session.state``."""

    @abstractmethod
    def handle_callback(
        self, session: Session, query: CallbackQuery, payload: CallbackPayload
    ) -> None:
        """Consume a button press that belongs to this flow."""

    @abstractmethod
    def resend_prompt(self, session: Session) -> None:
        """Send the prompt for the current state again."""

    # Outbound ----------------------------------------------------------
    def _send(
        self,
        chat_id: int,
        text: str,
        buttons: Optional[ButtonRows] = None,
        thread_id: Optional[int] = None,
    ) -> int:
        """Send a required message; a failure aborts the current step."""

        try:
            return self.services.transport.send_message(
                chat_id, text, buttons=buttons, thread_id=thread_id
            )
        except TransportError as exc:
            raise DomainError(
                ErrorKind.TRANSPORT_FAILURE,
                f"failed to send message to {chat_id}",
                {"flow": self.kind.value, "error": str(exc)},
            ) from exc

    def _cleanup(self, chat_id: int, message_ids: Iterable[Optional[int]]) -> None:
        self.services.cleaner.delete_many(chat_id, message_ids)

    # State changes -----------------------------------------------------
    def _transition(
        self,
        owner_id: int,
        from_state: Optional[FlowState],
        to_state: FlowState,
        context: FlowContext,
    ) -> None:
        self.services.store.set(owner_id, to_state, context)
        if from_state is not to_state:
            logger.debug(
                "%s: user %s moved %s -> %s",
                self.kind.value,
                owner_id,
                from_state.value if from_state else "start",
                to_state.value,
            )
            self.telemetry.track_flow_transition(
                self.kind.value,
                from_state.value if from_state else None,
                to_state.value,
                owner_id,
            )

    def _finish(self, owner_id: int, from_state: Optional[FlowState]) -> None:
        self.services.store.delete(owner_id)
        logger.debug(
            "%s: user %s finished from %s",
            self.kind.value,
            owner_id,
            from_state.value if from_state else "start",
        )
        self.telemetry.track_flow_transition(
            self.kind.value, from_state.value if from_state else None, None, owner_id
        )

    def _reprompt(
        self,
        owner_id: int,
        state: FlowState,
        context: FlowContext,
        error_text: str,
        user_message_id: Optional[int] = None,
    ) -> None:
        """Replace the previous error with ``error_text``; the state is kept."""

        self._cleanup(context.chat_id, (context.last_error_message_id, user_message_id))
        context.last_user_message_id = None
        context.last_error_message_id = self._send(context.chat_id, error_text)
        self._transition(owner_id, state, state, context)

    def _advance(
        self,
        owner_id: int,
        from_state: Optional[FlowState],
        to_state: FlowState,
        context: FlowContext,
        text: str,
        buttons: Optional[ButtonRows] = None,
        user_message_id: Optional[int] = None,
    ) -> None:
        """Clear the finished step's messages, then prompt for ``to_state``."""

        self._cleanup(
            context.chat_id,
            (context.last_bot_message_id, user_message_id, context.last_error_message_id),
        )
        context.last_error_message_id = None
        context.last_user_message_id = None
        context.last_bot_message_id = self._send(context.chat_id, text, buttons)
        self._transition(owner_id, from_state, to_state, context)


__all__ = ["FlowController", "FlowServices", "USE_BUTTONS"]
