"""Event creation: group, question, type, options, deadline, confirmation."""
from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from ..callbacks import (
    CallbackPayload,
    ChooseEventType,
    Confirm,
    DeadlinePreset,
    EditEvent,
    ResolveEvent,
    SelectGroup,
)
from ..contexts import CreationState, EventCreationContext, FlowKind
from ..errors import DomainError, ErrorKind
from ..events import normalize_question, parse_option_lines
from ..groups import GroupChoice
from ..models import EventType
from ..services.deadlines import parse_deadline, preset_deadline, preset_label, validate_preset
from ..services.formatting import event_summary
from ..sessions import Session
from ..transport import Button, CallbackQuery, InboundMessage, TransportError, single_column
from .base import USE_BUTTONS, FlowController

logger = logging.getLogger(__name__)

QUESTION_PROMPT = "What is the question? Send it as a single message."
TYPE_PROMPT = "What kind of event is it?"
OPTIONS_PROMPT = "Send the answer options, one per line (2 to 6 options)."
DEADLINE_PROMPT = (
    "When does voting close? Send a date as DD.MM.YYYY HH:MM ({tz}) or pick a preset."
)


def deadline_buttons(presets) -> List[List[Button]]:
    buttons = [Button(preset_label(days), DeadlinePreset(days).encode()) for days in presets]
    return [buttons[index:index + 2] for index in range(0, len(buttons), 2)]


class EventCreationFlow(FlowController):
    kind = FlowKind.EVENT_CREATION
    callback_types = (SelectGroup, ChooseEventType, DeadlinePreset, Confirm)
    expired_text = "Your event draft expired after a period of inactivity. Use /create_event to start again."

    # Start ---------------------------------------------------------------
    def eligible_choices(self, user_id: int) -> List[GroupChoice]:
        """Groups (and forum topics) the user may create events in.

        Raises ``NO_GROUP_MEMBERSHIP`` for users outside every group and
        ``INSUFFICIENT_PARTICIPATION`` (with the best counts) when no group
        qualifies.
        """

        services = self.services
        groups = services.groups.groups_for_user(user_id)
        if not groups:
            raise DomainError(ErrorKind.NO_GROUP_MEMBERSHIP, "user is not in any group")
        decisions = [(group, services.permissions.can_create_event(user_id, group.id)) for group in groups]
        eligible = [group for group, decision in decisions if decision.allowed]
        if not eligible:
            best = max((decision for _, decision in decisions), key=lambda d: d.current)
            raise DomainError(
                ErrorKind.INSUFFICIENT_PARTICIPATION,
                "not enough completed predictions to create events",
                {"required": best.required, "current": best.current},
            )
        return services.groups.choices_for(eligible)

    def start(self, user_id: int, chat_id: int) -> None:
        choices = self.eligible_choices(user_id)
        context = EventCreationContext(chat_id=chat_id)
        if len(choices) == 1:
            self._apply_choice(context, choices[0])
            context.last_bot_message_id = self._send(chat_id, QUESTION_PROMPT)
            self._transition(user_id, None, CreationState.ASK_QUESTION, context)
            return
        context.last_bot_message_id = self._send(
            chat_id, "Which group is this event for?", self._group_buttons(choices)
        )
        self._transition(user_id, None, CreationState.SELECT_GROUP, context)

    # Prompts -------------------------------------------------------------
    def _group_buttons(self, choices: List[GroupChoice]) -> List[List[Button]]:
        return single_column(
            [Button(choice.label, SelectGroup(choice.group_id, choice.thread_id).encode()) for choice in choices]
        )

    def _type_buttons(self) -> List[List[Button]]:
        return [
            [
                Button("Yes / No", ChooseEventType(EventType.BINARY).encode()),
                Button("Multiple choice", ChooseEventType(EventType.MULTI_OPTION).encode()),
                Button("Probability", ChooseEventType(EventType.PROBABILITY).encode()),
            ]
        ]

    def _deadline_prompt(self) -> str:
        return DEADLINE_PROMPT.format(tz=self.services.settings.timezone_name)

    def _confirm_text(self, context: EventCreationContext) -> str:
        group = self.services.state.get_group(context.group_id) if context.group_id else None
        return event_summary(
            header="Please check your event:",
            question=context.question,
            event_type=EventType(context.event_type),
            options=context.options,
            deadline=context.deadline,
            tz=self.services.settings.timezone,
            group_name=group.name if group else None,
        )

    def _confirm_buttons(self) -> List[List[Button]]:
        return [[Button("Create", Confirm(True).encode()), Button("Cancel", Confirm(False).encode())]]

    def resend_prompt(self, session: Session) -> None:
        context: EventCreationContext = session.context
        state = session.state
        if state is CreationState.SELECT_GROUP:
            choices = self.eligible_choices(session.owner_id)
            text, buttons = "Which group is this event for?", self._group_buttons(choices)
        elif state is CreationState.ASK_QUESTION:
            text, buttons = QUESTION_PROMPT, None
        elif state is CreationState.ASK_EVENT_TYPE:
            text, buttons = TYPE_PROMPT, self._type_buttons()
        elif state is CreationState.ASK_OPTIONS:
            text, buttons = OPTIONS_PROMPT, None
        elif state is CreationState.ASK_DEADLINE:
            text, buttons = self._deadline_prompt(), deadline_buttons(self.services.settings.deadline_presets)
        else:
            text, buttons = self._confirm_text(context), self._confirm_buttons()
        self._advance(session.owner_id, state, state, context, text, buttons)

    # Inbound -------------------------------------------------------------
    def handle_message(self, session: Session, message: InboundMessage) -> None:
        context: EventCreationContext = session.context
        state = session.state
        owner = session.owner_id
        if state is CreationState.ASK_QUESTION:
            try:
                context.question = normalize_question(message.text)
            except DomainError as exc:
                self._reprompt(owner, state, context, exc.message, message.message_id)
                return
            self._advance(
                owner, state, CreationState.ASK_EVENT_TYPE, context,
                TYPE_PROMPT, self._type_buttons(), message.message_id,
            )
        elif state is CreationState.ASK_OPTIONS:
            try:
                context.options = parse_option_lines(message.text)
            except DomainError as exc:
                self._reprompt(owner, state, context, f"{exc.message}. {OPTIONS_PROMPT}", message.message_id)
                return
            self._to_deadline(owner, state, context, message.message_id)
        elif state is CreationState.ASK_DEADLINE:
            services = self.services
            try:
                context.deadline = parse_deadline(message.text, services.settings.timezone, services.now())
            except DomainError as exc:
                hint = exc.message
                if "example" in exc.details:
                    hint = f"{hint}, for example {exc.details['example']}"
                self._reprompt(owner, state, context, hint, message.message_id)
                return
            self._to_confirm(owner, state, context, message.message_id)
        else:
            self._reprompt(owner, state, context, USE_BUTTONS, message.message_id)

    def handle_callback(self, session: Session, query: CallbackQuery, payload: CallbackPayload) -> None:
        context: EventCreationContext = session.context
        state = session.state
        owner = session.owner_id
        if isinstance(payload, SelectGroup) and state is CreationState.SELECT_GROUP:
            self._select_group(owner, context, payload)
        elif isinstance(payload, ChooseEventType) and state is CreationState.ASK_EVENT_TYPE:
            context.event_type = payload.event_type.value
            fixed = payload.event_type.fixed_options
            if fixed is None:
                self._advance(owner, state, CreationState.ASK_OPTIONS, context, OPTIONS_PROMPT)
            else:
                context.options = list(fixed)
                self._to_deadline(owner, state, context)
        elif isinstance(payload, DeadlinePreset) and state is CreationState.ASK_DEADLINE:
            settings = self.services.settings
            validate_preset(payload.days, settings.deadline_presets)
            context.deadline = preset_deadline(
                payload.days, settings.timezone, self.services.now(), hour=settings.deadline_preset_hour
            )
            self._to_confirm(owner, state, context)
        elif isinstance(payload, Confirm) and state is CreationState.CONFIRM:
            if payload.accepted:
                self._create(owner, context)
            else:
                self._cleanup(context.chat_id, (context.last_bot_message_id, context.last_error_message_id))
                self._send(context.chat_id, "Event creation cancelled.")
                self._finish(owner, state)
        else:
            raise DomainError(
                ErrorKind.INVALID_CALLBACK,
                f"button {query.data!r} does not match step {state.value}",
            )

    # Steps ---------------------------------------------------------------
    def _apply_choice(self, context: EventCreationContext, choice: GroupChoice) -> None:
        context.group_id = choice.group_id
        context.thread_id = choice.thread_id
        context.forum_topic_id = choice.forum_topic_id

    def _select_group(self, owner: int, context: EventCreationContext, payload: SelectGroup) -> None:
        self.services.permissions.require_can_create(owner, payload.group_id)
        group = self.services.state.get_group(payload.group_id)
        choices = self.services.groups.choices_for([group]) if group else []
        choice = next(
            (c for c in choices if c.group_id == payload.group_id and c.thread_id == payload.thread_id),
            None,
        )
        if choice is None:
            raise DomainError(ErrorKind.INVALID_CALLBACK, "unknown group or topic selection")
        self._apply_choice(context, choice)
        self._advance(owner, CreationState.SELECT_GROUP, CreationState.ASK_QUESTION, context, QUESTION_PROMPT)

    def _to_deadline(
        self,
        owner: int,
        from_state: CreationState,
        context: EventCreationContext,
        user_message_id: Optional[int] = None,
    ) -> None:
        self._advance(
            owner, from_state, CreationState.ASK_DEADLINE, context,
            self._deadline_prompt(),
            deadline_buttons(self.services.settings.deadline_presets),
            user_message_id,
        )

    def _to_confirm(
        self,
        owner: int,
        from_state: CreationState,
        context: EventCreationContext,
        user_message_id: Optional[int] = None,
    ) -> None:
        self._advance(
            owner, from_state, CreationState.CONFIRM, context,
            self._confirm_text(context), self._confirm_buttons(), user_message_id,
        )

    def _create(self, owner: int, context: EventCreationContext) -> None:
        services = self.services
        state = CreationState.CONFIRM
        if context.deadline is None or context.deadline <= services.now():
            # The draft sat at confirmation past its own deadline.
            context.deadline = None
            self._advance(
                owner, state, CreationState.ASK_DEADLINE, context,
                f"Deadline must be in the future. {self._deadline_prompt()}",
                deadline_buttons(services.settings.deadline_presets),
            )
            return
        event = services.events.create_event(
            group_id=context.group_id,
            question=context.question,
            event_type=EventType(context.event_type),
            options=context.options,
            deadline=context.deadline,
            created_by=owner,
            forum_topic_id=context.forum_topic_id,
        )
        self._cleanup(context.chat_id, (context.last_bot_message_id, context.last_error_message_id))
        group = services.state.get_group(event.group_id)
        try:
            sent = services.transport.send_poll(
                group.chat_id,
                event.question,
                list(event.options),
                thread_id=context.thread_id,
                closes_at=event.deadline,
            )
        except TransportError as exc:
            logger.error("Failed to publish poll for event %s: %s", event.id, exc)
            self.telemetry.track_error(
                "poll_publish_failed", command="create_event", user_id=str(owner), error_details=str(exc)
            )
            self._finish(owner, state)
            self._send(
                context.chat_id,
                f"The event was saved (#{event.id}) but its poll could not be published in {group.name}. "
                "Please ask an admin to check the bot's permissions.",
            )
            return
        services.events.attach_poll(event.id, sent.poll_id, sent.message_id)
        summary = event_summary(
            header=f"✅ Event #{event.id} created and published.",
            question=event.question,
            event_type=event.event_type,
            options=event.options,
            deadline=event.deadline,
            tz=services.settings.timezone,
            group_name=group.name,
        )
        buttons = [
            [
                Button("Edit", EditEvent(event.id).encode()),
                Button("Resolve", ResolveEvent(event.id).encode()),
            ]
        ]
        self._finish(owner, state)
        self._send(context.chat_id, summary, buttons)
        try:
            codes = services.achievements.check_creator_achievements(owner, event.group_id)
            services.notifications.notify_achievements(owner, event.group_id, codes)
        except (DomainError, sqlite3.Error):
            logger.exception("Creator achievement check failed for user %s", owner)


__all__ = ["EventCreationFlow", "deadline_buttons"]
