"""Dispatch of inbound updates to flows, and error-to-reply translation."""
from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, Optional

from .admin import GroupAdministration
from .callbacks import (
    ADMIN_PAYLOADS,
    EditEvent,
    GroupAdmin,
    ResolveEvent,
    SessionConflictChoice,
    TopicAdmin,
    parse_callback,
)
from .conflicts import ConflictDetector
from .contexts import FlowKind
from .errors import DomainError, ErrorKind
from .flows import (
    EventCreationFlow,
    EventEditFlow,
    EventResolutionFlow,
    FlowController,
    FlowServices,
    GroupRegistrationFlow,
    RenameFlow,
)
from .services.formatting import participation_denied
from .sessions import Session
from .telemetry import TelemetryCollector, get_telemetry
from .transport import Button, CallbackQuery, InboundMessage, PollAnswer, TransportError

logger = logging.getLogger(__name__)

GENERIC_APOLOGY = "Sorry, something went wrong on our side. Please run the command again."
INVALID_CONTEXT_TEXT = "Your session data could not be read. Please restart the command."

_ERROR_TEXT: Dict[ErrorKind, str] = {
    ErrorKind.NO_GROUP_MEMBERSHIP: (
        "You are not a member of any group yet. Ask an admin for an invite code and use /join."
    ),
    ErrorKind.UNAUTHORIZED: "You are not allowed to do that.",
    ErrorKind.EVENT_NOT_FOUND: "That event does not exist.",
    ErrorKind.EVENT_NOT_ACTIVE: "That event is already resolved.",
    ErrorKind.EVENT_HAS_VOTES: "That event already has votes and can no longer be edited.",
    ErrorKind.NO_MANAGEABLE_EVENTS: "You have no active events to resolve.",
    ErrorKind.GROUP_NOT_FOUND: "That invite code is not valid.",
    ErrorKind.TARGET_NOT_FOUND: "That group or topic no longer exists.",
    ErrorKind.INVALID_OPTION: "That answer option is not valid.",
    ErrorKind.ALREADY_SCORED: "That event has already been scored.",
    ErrorKind.INVALID_CALLBACK: "This button is no longer valid.",
    ErrorKind.INVALID_CONTEXT: INVALID_CONTEXT_TEXT,
}


def error_text(exc: DomainError) -> str:
    """User-facing explanation for a domain error."""

    if exc.kind is ErrorKind.INSUFFICIENT_PARTICIPATION:
        return participation_denied(
            int(exc.details.get("required", 0)), int(exc.details.get("current", 0))
        )
    if exc.kind is ErrorKind.UNAUTHORIZED and exc.message:
        return f"{_ERROR_TEXT[ErrorKind.UNAUTHORIZED]} ({exc.message})"
    if exc.kind is ErrorKind.VALIDATION:
        return exc.message or "That input is not valid."
    return _ERROR_TEXT.get(exc.kind, GENERIC_APOLOGY)


class FlowRouter:
    """Routes messages, button presses and poll answers.

    Authorization failures surface before any session exists; everything a
    flow raises while running is reported to the user here, so adapters never
    see ``DomainError``.
    """

    def __init__(
        self,
        services: FlowServices,
        *,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self.services = services
        self.creation = EventCreationFlow(services)
        self.editing = EventEditFlow(services)
        self.resolution = EventResolutionFlow(services)
        self.registration = GroupRegistrationFlow(services)
        self.renaming = RenameFlow(services)
        self.admin = GroupAdministration(services)
        self._flows: Dict[FlowKind, FlowController] = {
            flow.kind: flow
            for flow in (self.creation, self.editing, self.resolution, self.registration, self.renaming)
        }
        self._conflicts = ConflictDetector(services.store)
        self._telemetry = telemetry or services.telemetry

    @property
    def telemetry(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    # Commands ------------------------------------------------------------
    def start_event_creation(self, user_id: int, chat_id: int) -> None:
        self._start(FlowKind.EVENT_CREATION, user_id, chat_id, lambda: self.creation.start(user_id, chat_id))

    def start_event_edit(self, user_id: int, chat_id: int, event_id: int) -> None:
        self._start(
            FlowKind.EVENT_EDIT, user_id, chat_id, lambda: self.editing.start(user_id, chat_id, event_id)
        )

    def start_event_resolution(self, user_id: int, chat_id: int, event_id: Optional[int] = None) -> None:
        self._start(
            FlowKind.EVENT_RESOLUTION,
            user_id,
            chat_id,
            lambda: self.resolution.start(user_id, chat_id, event_id),
        )

    def start_group_creation(
        self, user_id: int, chat_id: int, detected_is_forum: Optional[bool] = None
    ) -> None:
        self._start(
            FlowKind.GROUP_CREATION,
            user_id,
            chat_id,
            lambda: self.registration.start(user_id, chat_id, detected_is_forum),
        )

    def start_rename_group(self, user_id: int, chat_id: int, group_id: int) -> None:
        self._start(
            FlowKind.RENAME, user_id, chat_id, lambda: self.renaming.start_group(user_id, chat_id, group_id)
        )

    def start_rename_topic(self, user_id: int, chat_id: int, topic_id: int) -> None:
        self._start(
            FlowKind.RENAME, user_id, chat_id, lambda: self.renaming.start_topic(user_id, chat_id, topic_id)
        )

    def list_groups(self, user_id: int, chat_id: int) -> None:
        self._guard(chat_id, lambda: self.admin.list_groups(user_id, chat_id), command="list_groups", user_id=user_id)

    def choose_group(self, user_id: int, chat_id: int, action: str) -> None:
        """Admin group picker behind /group_members and /remove_member."""

        self._guard(
            chat_id,
            lambda: self.admin.choose_group(user_id, chat_id, action),
            command=f"group_{action}",
            user_id=user_id,
        )

    def bot_added(self, chat_id: int, title: str, added_by: Optional[int] = None) -> int:
        return self.admin.bot_added(chat_id, title, added_by)

    def cancel(self, user_id: int, chat_id: int) -> None:
        kind = self.services.store.peek_kind(user_id)
        if kind is None:
            self._reply(chat_id, "There is nothing to cancel.")
            return
        self.services.store.delete(user_id)
        self.telemetry.track_flow_transition(kind.value, "cancel", None, user_id)
        logger.info("User %s cancelled %s", user_id, kind.value)
        self._reply(chat_id, f"Cancelled {kind.label}.")

    def _start(self, kind: FlowKind, user_id: int, chat_id: int, begin: Callable[[], None]) -> None:
        conflict = self._conflicts.detect(user_id, kind)
        if conflict is not None:
            buttons = [
                [Button("Continue", SessionConflictChoice().encode())],
                [Button(f"Start {kind.label}", SessionConflictChoice(kind).encode())],
            ]
            self._reply(
                chat_id,
                f"You already have {conflict.label} in progress. "
                "Continue it, or drop it and start over?",
                buttons,
            )
            return
        self._guard(chat_id, begin, command=kind.value, user_id=user_id)

    # Inbound -------------------------------------------------------------
    def handle_message(self, message: InboundMessage) -> None:
        session = self._load(message.user_id, message.chat_id)
        if session is None:
            return
        flow = self._flows[session.flow_kind]
        self._guard(
            message.chat_id,
            lambda: flow.handle_message(session, message),
            command=session.flow_kind.value,
            user_id=message.user_id,
        )

    def handle_callback(self, query: CallbackQuery) -> None:
        try:
            payload = parse_callback(query.data)
        except DomainError as exc:
            logger.warning("Rejected callback from %s: %s", query.user_id, exc.message)
            self.telemetry.track_error("invalid_callback", user_id=str(query.user_id), error_details=query.data)
            self._answer(query, error_text(exc))
            return

        if isinstance(payload, SessionConflictChoice):
            self._answer(query)
            self._guard(
                query.chat_id,
                lambda: self._resolve_conflict(query, payload),
                command="session_conflict",
                user_id=query.user_id,
            )
            return

        starts_flow = isinstance(payload, (EditEvent, ResolveEvent) + ADMIN_PAYLOADS)
        session = self._load(query.user_id, query.chat_id, quiet=starts_flow)
        if session is not None and self._flows[session.flow_kind].accepts(payload):
            flow = self._flows[session.flow_kind]
            self._answer(query)
            self._guard(
                query.chat_id,
                lambda: flow.handle_callback(session, query, payload),
                command=session.flow_kind.value,
                user_id=query.user_id,
            )
        elif isinstance(payload, EditEvent):
            self._answer(query)
            self.start_event_edit(query.user_id, query.chat_id, payload.event_id)
        elif isinstance(payload, ResolveEvent):
            self._answer(query)
            self.start_event_resolution(query.user_id, query.chat_id, payload.event_id)
        elif isinstance(payload, GroupAdmin) and payload.action == "rename":
            self._answer(query)
            self.start_rename_group(query.user_id, query.chat_id, payload.group_id)
        elif isinstance(payload, TopicAdmin) and payload.action == "rename":
            self._answer(query)
            self.start_rename_topic(query.user_id, query.chat_id, payload.topic_id)
        elif isinstance(payload, ADMIN_PAYLOADS):
            self._answer(query)
            self._guard(
                query.chat_id,
                lambda: self.admin.handle(query.user_id, query.chat_id, payload),
                command="group_admin",
                user_id=query.user_id,
            )
        elif session is None:
            self._answer(query, "This button has expired.")
        else:
            self._answer(query, "This button is not part of your current step.")

    def handle_poll_answer(self, answer: PollAnswer) -> bool:
        outcome = self.services.events.record_vote(
            answer.poll_id, answer.user_id, answer.option, answer.display_name
        )
        return outcome.recorded

    def handle_poll_retraction(self, poll_id: str, user_id: int) -> bool:
        return self.services.events.retract_vote(poll_id, user_id)

    def _resolve_conflict(self, query: CallbackQuery, payload: SessionConflictChoice) -> None:
        self.services.cleaner.delete_messages(query.chat_id, query.message_id)
        if not payload.restart:
            session = self._load(query.user_id, query.chat_id)
            if session is not None:
                self._flows[session.flow_kind].resend_prompt(session)
            return
        self.services.store.delete(query.user_id)
        logger.info("User %s restarted with %s", query.user_id, payload.restart_kind.value)
        kind = payload.restart_kind
        if kind is FlowKind.EVENT_CREATION:
            self.creation.start(query.user_id, query.chat_id)
        elif kind is FlowKind.EVENT_RESOLUTION:
            self.resolution.start(query.user_id, query.chat_id)
        elif kind is FlowKind.GROUP_CREATION:
            self.registration.start(query.user_id, query.chat_id)
        elif kind is FlowKind.RENAME:
            self._reply(query.chat_id, "The previous flow was dropped. Press Rename again.")
        else:
            self._reply(query.chat_id, "The previous flow was dropped. Press Edit on the event again.")

    # Helpers -------------------------------------------------------------
    def _load(self, user_id: int, chat_id: int, *, quiet: bool = False) -> Optional[Session]:
        """Fetch the live session, explaining expiry or corruption to the user."""

        try:
            return self.services.store.get(user_id)
        except DomainError as exc:
            if exc.kind is ErrorKind.SESSION_NOT_FOUND:
                return None
            if exc.kind is ErrorKind.SESSION_EXPIRED:
                if not quiet:
                    try:
                        kind = FlowKind(exc.details.get("flow_kind"))
                        text = self._flows[kind].expired_text
                    except ValueError:
                        text = "Your session expired. Please start again."
                    self._reply(chat_id, text)
                return None
            if exc.kind is ErrorKind.INVALID_CONTEXT:
                self.telemetry.track_error("invalid_context", user_id=str(user_id), error_details=exc.message)
                if not quiet:
                    self._reply(chat_id, INVALID_CONTEXT_TEXT)
                return None
            raise

    def _guard(self, chat_id: int, action: Callable[[], None], *, command: str, user_id: int) -> None:
        try:
            action()
        except DomainError as exc:
            if exc.kind is ErrorKind.TRANSPORT_FAILURE:
                logger.exception("Transport failure during %s for user %s", command, user_id)
            else:
                logger.info("%s refused for user %s: %s %s", command, user_id, exc.kind.value, exc.message)
            self.telemetry.track_error(
                exc.kind.value, command=command, user_id=str(user_id), error_details=exc.message
            )
            self._reply(chat_id, error_text(exc))
        except sqlite3.Error as exc:
            logger.exception("Database failure during %s for user %s", command, user_id)
            self.telemetry.track_error("database", command=command, user_id=str(user_id), error_details=str(exc))
            self._reply(chat_id, GENERIC_APOLOGY)

    def _reply(self, chat_id: int, text: str, buttons=None) -> None:
        try:
            self.services.transport.send_message(chat_id, text, buttons=buttons)
        except TransportError as exc:
            logger.warning("Failed to reply in %s: %s", chat_id, exc)

    def _answer(self, query: CallbackQuery, text: Optional[str] = None) -> None:
        try:
            self.services.transport.answer_callback(query.callback_id, text)
        except TransportError as exc:
            logger.warning("Failed to answer callback %s: %s", query.callback_id, exc)


__all__ = ["FlowRouter", "GENERIC_APOLOGY", "error_text"]
