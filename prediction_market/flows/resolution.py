"""Event resolution: choose the event, choose the correct answer, score."""
from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional, Tuple

from ..callbacks import CallbackPayload, ResolveEvent, ResolveOption
from ..contexts import EventResolutionContext, FlowKind, ResolutionState
from ..errors import DomainError, ErrorKind
from ..models import Event
from ..services.deadlines import format_deadline
from ..services.formatting import numbered_options
from ..sessions import Session
from ..transport import Button, CallbackQuery, InboundMessage, single_column
from .base import USE_BUTTONS, FlowController

logger = logging.getLogger(__name__)

_LABEL_LENGTH = 60


def _short(text: str) -> str:
    return text if len(text) <= _LABEL_LENGTH else text[: _LABEL_LENGTH - 1] + "…"


class EventResolutionFlow(FlowController):
    kind = FlowKind.EVENT_RESOLUTION
    callback_types = (ResolveEvent, ResolveOption)
    expired_text = "Your resolution session expired. Use /resolve_event to start again."

    def manageable_events(self, user_id: int) -> List[Event]:
        services = self.services
        group_ids = [group.id for group in services.state.groups_for_user(user_id)]
        if not group_ids:
            return []
        return services.events.list_events_for_resolution(
            user_id, group_ids, is_admin=services.permissions.is_admin(user_id)
        )

    def _checked_event(self, user_id: int, event_id: int) -> Event:
        event = self.services.events.get_event(event_id)
        self.services.permissions.require_can_manage(user_id, event)
        if not event.is_active:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is already resolved")
        return event

    def start(self, user_id: int, chat_id: int, event_id: Optional[int] = None) -> None:
        context = EventResolutionContext(chat_id=chat_id)
        if event_id is not None:
            event = self._checked_event(user_id, event_id)
            context.event_id = event.id
            self._prompt(user_id, None, ResolutionState.SELECT_OPTION, context)
            return
        if not self.manageable_events(user_id):
            raise DomainError(ErrorKind.NO_MANAGEABLE_EVENTS, "no active events to resolve")
        self._prompt(user_id, None, ResolutionState.SELECT_EVENT, context)

    # Prompts -------------------------------------------------------------
    def _prompt_for(
        self, user_id: int, state: ResolutionState, context: EventResolutionContext
    ) -> Tuple[str, List[List[Button]]]:
        if state is ResolutionState.SELECT_EVENT:
            tz = self.services.settings.timezone
            events = self.manageable_events(user_id)
            if not events:
                raise DomainError(ErrorKind.NO_MANAGEABLE_EVENTS, "no active events to resolve")
            buttons = single_column(
                [
                    Button(
                        f"{_short(event.question)} ({format_deadline(event.deadline, tz)})",
                        ResolveEvent(event.id).encode(),
                    )
                    for event in events
                ]
            )
            return "Which event do you want to resolve?", buttons
        event = self.services.events.get_event(context.event_id)
        lines = [f"What was the correct answer to: {event.question}"]
        lines.extend(numbered_options(event.options))
        buttons = single_column(
            [Button(option, ResolveOption(index).encode()) for index, option in enumerate(event.options)]
        )
        return "\n".join(lines), buttons

    def _prompt(self, owner: int, from_state, to_state: ResolutionState, context: EventResolutionContext) -> None:
        text, buttons = self._prompt_for(owner, to_state, context)
        context.last_bot_message_id = self._send(context.chat_id, text, buttons)
        context.remember(context.last_bot_message_id)
        self._transition(owner, from_state, to_state, context)

    def resend_prompt(self, session: Session) -> None:
        self._prompt(session.owner_id, session.state, session.state, session.context)

    # Inbound -------------------------------------------------------------
    def handle_message(self, session: Session, message: InboundMessage) -> None:
        self._reprompt(session.owner_id, session.state, session.context, USE_BUTTONS, message.message_id)

    def handle_callback(self, session: Session, query: CallbackQuery, payload: CallbackPayload) -> None:
        context: EventResolutionContext = session.context
        owner = session.owner_id
        if isinstance(payload, ResolveEvent):
            event = self._checked_event(owner, payload.event_id)
            context.event_id = event.id
            self._prompt(owner, session.state, ResolutionState.SELECT_OPTION, context)
        elif isinstance(payload, ResolveOption) and session.state is ResolutionState.SELECT_OPTION:
            self._resolve(owner, context, payload.index)
        else:
            raise DomainError(ErrorKind.INVALID_CALLBACK, f"button {query.data!r} does not match this step")

    # Resolution ----------------------------------------------------------
    def _resolve(self, owner: int, context: EventResolutionContext, index: int) -> None:
        services = self.services
        state = ResolutionState.SELECT_OPTION
        self._cleanup(
            context.chat_id,
            list(context.message_ids) + [context.last_bot_message_id, context.last_error_message_id],
        )
        try:
            event, deltas = services.scoring.resolve_and_score(context.event_id, index)
        finally:
            self._finish(owner, state)

        threshold = services.permissions.min_events_to_create
        for delta in deltas:
            try:
                completed = services.state.count_completed_participations(delta.user_id, event.group_id)
                if completed == threshold and not services.permissions.is_admin(delta.user_id):
                    services.notifications.notify_permission_granted(delta.user_id, event.group_id)
                codes = services.achievements.check_and_award(delta.user_id, event.group_id)
                if codes:
                    rating = services.state.get_rating(delta.user_id, event.group_id)
                    services.notifications.notify_achievements(
                        delta.user_id, event.group_id, codes, rating.username if rating else ""
                    )
            except sqlite3.Error:
                logger.exception("Post-resolution checks failed for user %s", delta.user_id)

        services.notifications.close_poll(event)
        services.notifications.publish_results(event, services.events.vote_distribution(event), deltas)
        self._send(
            context.chat_id,
            f"Event #{event.id} resolved. Correct answer: {event.options[index]}. "
            f"{len(deltas)} predictions scored.",
        )


__all__ = ["EventResolutionFlow"]
