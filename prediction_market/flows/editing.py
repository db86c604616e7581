"""Editing an event before anyone has voted on it."""
from __future__ import annotations

import logging
from typing import List

from ..callbacks import CallbackPayload, DeadlinePreset, EditField
from ..contexts import EditState, EventEditContext, FlowKind
from ..errors import DomainError, ErrorKind
from ..events import normalize_question, parse_option_lines
from ..models import Event, EventType
from ..services.deadlines import format_deadline, parse_deadline, preset_deadline, validate_preset
from ..services.formatting import edit_diff, event_summary
from ..sessions import Session
from ..transport import Button, CallbackQuery, InboundMessage, TransportError
from .base import USE_BUTTONS, FlowController
from .creation import OPTIONS_PROMPT, deadline_buttons

logger = logging.getLogger(__name__)


class EventEditFlow(FlowController):
    kind = FlowKind.EVENT_EDIT
    callback_types = (EditField, DeadlinePreset)
    expired_text = "Your edit session expired. Press Edit on the event to start again."

    def start(self, user_id: int, chat_id: int, event_id: int) -> None:
        """Open the edit menu; every refusal happens before a session exists."""

        services = self.services
        event = services.events.get_event(event_id)
        services.permissions.require_can_manage(user_id, event)
        if not event.is_active:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is resolved")
        if services.events.vote_count(event_id) > 0:
            raise DomainError(ErrorKind.EVENT_HAS_VOTES, f"event {event_id} already has votes")
        context = EventEditContext(
            chat_id=chat_id,
            event_id=event.id,
            group_id=event.group_id,
            event_type=event.event_type.value,
            original_question=event.question,
            original_options=list(event.options),
            original_deadline=event.deadline,
        )
        context.last_bot_message_id = self._send(chat_id, self._menu_text(context), self._menu_buttons(context))
        self._transition(user_id, None, EditState.MENU, context)

    # Prompts -------------------------------------------------------------
    def _menu_text(self, context: EventEditContext) -> str:
        return event_summary(
            header=f"Editing event #{context.event_id}. What would you like to change?",
            question=context.question,
            event_type=EventType(context.event_type),
            options=context.options,
            deadline=context.deadline,
            tz=self.services.settings.timezone,
        )

    def _menu_buttons(self, context: EventEditContext) -> List[List[Button]]:
        event_id = context.event_id
        fields = [Button("Question", EditField("question", event_id).encode())]
        if context.event_type == EventType.MULTI_OPTION.value:
            fields.append(Button("Options", EditField("options", event_id).encode()))
        fields.append(Button("Deadline", EditField("deadline", event_id).encode()))
        return [
            fields,
            [
                Button("Save", EditField("save", event_id).encode()),
                Button("Cancel", EditField("cancel", event_id).encode()),
            ],
        ]

    def _deadline_prompt(self) -> str:
        return (
            "Send the new deadline as DD.MM.YYYY HH:MM "
            f"({self.services.settings.timezone_name}) or pick a preset."
        )

    def resend_prompt(self, session: Session) -> None:
        context: EventEditContext = session.context
        state = session.state
        if state is EditState.ASK_QUESTION:
            text, buttons = "Send the new question.", None
        elif state is EditState.ASK_OPTIONS:
            text, buttons = OPTIONS_PROMPT, None
        elif state is EditState.ASK_DEADLINE:
            text, buttons = self._deadline_prompt(), deadline_buttons(self.services.settings.deadline_presets)
        else:
            text, buttons = self._menu_text(context), self._menu_buttons(context)
        self._advance(session.owner_id, state, state, context, text, buttons)

    def _back_to_menu(self, owner: int, from_state: EditState, context: EventEditContext, user_message_id=None) -> None:
        self._advance(
            owner, from_state, EditState.MENU, context,
            self._menu_text(context), self._menu_buttons(context), user_message_id,
        )

    # Inbound -------------------------------------------------------------
    def handle_message(self, session: Session, message: InboundMessage) -> None:
        context: EventEditContext = session.context
        state = session.state
        owner = session.owner_id
        try:
            if state is EditState.ASK_QUESTION:
                context.new_question = normalize_question(message.text)
            elif state is EditState.ASK_OPTIONS:
                context.new_options = parse_option_lines(message.text)
            elif state is EditState.ASK_DEADLINE:
                services = self.services
                context.new_deadline = parse_deadline(message.text, services.settings.timezone, services.now())
            else:
                self._reprompt(owner, state, context, USE_BUTTONS, message.message_id)
                return
        except DomainError as exc:
            if exc.kind is not ErrorKind.VALIDATION:
                raise
            self._reprompt(owner, state, context, exc.message, message.message_id)
            return
        self._back_to_menu(owner, state, context, message.message_id)

    def handle_callback(self, session: Session, query: CallbackQuery, payload: CallbackPayload) -> None:
        context: EventEditContext = session.context
        state = session.state
        owner = session.owner_id
        if isinstance(payload, DeadlinePreset) and state is EditState.ASK_DEADLINE:
            settings = self.services.settings
            validate_preset(payload.days, settings.deadline_presets)
            context.new_deadline = preset_deadline(
                payload.days, settings.timezone, self.services.now(), hour=settings.deadline_preset_hour
            )
            self._back_to_menu(owner, state, context)
            return
        if not isinstance(payload, EditField) or payload.event_id != context.event_id:
            raise DomainError(ErrorKind.INVALID_CALLBACK, f"button {query.data!r} is not part of this edit")
        field = payload.field
        if field == "save":
            self._save(owner, state, context)
        elif field == "cancel":
            self._cleanup(context.chat_id, (context.last_bot_message_id, context.last_error_message_id))
            self._finish(owner, state)
            self._send(context.chat_id, "Editing cancelled. The event was not changed.")
        elif state is not EditState.MENU:
            raise DomainError(ErrorKind.INVALID_CALLBACK, "finish the current field first")
        elif field == "question":
            self._advance(owner, state, EditState.ASK_QUESTION, context, "Send the new question.")
        elif field == "options":
            if context.event_type != EventType.MULTI_OPTION.value:
                raise DomainError(ErrorKind.INVALID_CALLBACK, "options are fixed for this event type")
            self._advance(owner, state, EditState.ASK_OPTIONS, context, OPTIONS_PROMPT)
        else:
            self._advance(
                owner, state, EditState.ASK_DEADLINE, context,
                self._deadline_prompt(), deadline_buttons(self.services.settings.deadline_presets),
            )

    # Save ----------------------------------------------------------------
    def _save(self, owner: int, state: EditState, context: EventEditContext) -> None:
        services = self.services
        self._cleanup(context.chat_id, (context.last_bot_message_id, context.last_error_message_id))
        changed = context.changed_fields()
        if not changed:
            self._finish(owner, state)
            self._send(context.chat_id, "Nothing changed.")
            return
        try:
            event = services.events.edit_event(
                context.event_id,
                question=context.new_question if "question" in changed else None,
                options=context.new_options if "options" in changed else None,
                deadline=context.new_deadline if "deadline" in changed else None,
            )
        except DomainError:
            self._finish(owner, state)
            raise
        self._finish(owner, state)
        republished = self._replace_poll(event)
        tz = services.settings.timezone
        before = {
            "question": context.original_question,
            "options": ", ".join(context.original_options),
            "deadline": format_deadline(context.original_deadline, tz) if context.original_deadline else "",
        }
        after = {
            "question": event.question,
            "options": ", ".join(event.options),
            "deadline": format_deadline(event.deadline, tz),
        }
        text = edit_diff(changed=changed, before=before, after=after)
        if not republished:
            text += "\nThe poll could not be republished; ask an admin to check the bot's permissions."
        self._send(context.chat_id, text)

    def _replace_poll(self, event: Event) -> bool:
        """Swap the published poll for one that shows the edited content."""

        services = self.services
        group = services.state.get_group(event.group_id)
        if group is None:
            return False
        thread_id = services.state.thread_for_event(event)
        if event.poll_message_id:
            services.cleaner.delete_messages(group.chat_id, event.poll_message_id, thread_id=thread_id)
        try:
            sent = services.transport.send_poll(
                group.chat_id,
                event.question,
                list(event.options),
                thread_id=thread_id,
                closes_at=event.deadline,
            )
        except TransportError as exc:
            logger.error("Failed to republish poll for event %s: %s", event.id, exc)
            return False
        services.events.attach_poll(event.id, sent.poll_id, sent.message_id)
        logger.info("Replaced poll for event %s", event.id)
        return True


__all__ = ["EventEditFlow"]
