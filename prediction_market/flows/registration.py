"""Admin-only registration of a group chat (optionally a forum topic)."""
from __future__ import annotations

import logging
from typing import List, Optional

from ..callbacks import CallbackPayload, GroupIsForum, SkipThread
from ..contexts import FlowKind, GroupRegistrationContext, RegistrationState
from ..errors import DomainError, ErrorKind
from ..sessions import Session
from ..transport import Button, CallbackQuery, InboundMessage
from .base import USE_BUTTONS, FlowController

logger = logging.getLogger(__name__)

MAX_GROUP_NAME_LENGTH = 128

NAME_PROMPT = "What should the group be called?"
CHAT_ID_PROMPT = "Send the numeric chat id of the group."
FORUM_PROMPT = "Is this chat a forum with topics?"
THREAD_PROMPT = "Send the topic (thread) id events should be posted to, or skip."


def _parse_int(text: str) -> Optional[int]:
    raw = text.strip()
    digits = raw[1:] if raw.startswith("-") else raw
    if not digits or not (digits.isascii() and digits.isdigit()):
        return None
    return int(raw)


class GroupRegistrationFlow(FlowController):
    kind = FlowKind.GROUP_CREATION
    callback_types = (GroupIsForum, SkipThread)
    expired_text = "Group registration expired. Use /create_group to start again."

    def start(self, user_id: int, chat_id: int, detected_is_forum: Optional[bool] = None) -> None:
        self.services.permissions.require_admin(user_id)
        context = GroupRegistrationContext(chat_id=chat_id)
        if detected_is_forum is not None:
            context.is_forum = detected_is_forum
            context.forum_detected = True
        self._prompt(user_id, None, RegistrationState.ASK_NAME, context)

    # Prompts -------------------------------------------------------------
    def _prompt_for(self, state: RegistrationState):
        if state is RegistrationState.ASK_NAME:
            return NAME_PROMPT, None
        if state is RegistrationState.ASK_CHAT_ID:
            return CHAT_ID_PROMPT, None
        if state is RegistrationState.ASK_IS_FORUM:
            buttons: List[List[Button]] = [
                [
                    Button("Yes", GroupIsForum(True).encode()),
                    Button("No", GroupIsForum(False).encode()),
                ]
            ]
            return FORUM_PROMPT, buttons
        return THREAD_PROMPT, [[Button("Skip", SkipThread().encode())]]

    def _prompt(
        self,
        owner: int,
        from_state: Optional[RegistrationState],
        to_state: RegistrationState,
        context: GroupRegistrationContext,
    ) -> None:
        text, buttons = self._prompt_for(to_state)
        context.last_bot_message_id = self._send(context.chat_id, text, buttons)
        context.remember(context.last_bot_message_id)
        self._transition(owner, from_state, to_state, context)

    def resend_prompt(self, session: Session) -> None:
        self._prompt(session.owner_id, session.state, session.state, session.context)

    # Inbound -------------------------------------------------------------
    def handle_message(self, session: Session, message: InboundMessage) -> None:
        context: GroupRegistrationContext = session.context
        state = session.state
        owner = session.owner_id
        if state is RegistrationState.ASK_NAME:
            name = message.text.strip()
            if not name or len(name) > MAX_GROUP_NAME_LENGTH:
                self._reprompt(
                    owner, state, context,
                    f"The name must be between 1 and {MAX_GROUP_NAME_LENGTH} characters.",
                    message.message_id,
                )
                return
            context.name = name
            context.remember(message.message_id)
            self._prompt(owner, state, RegistrationState.ASK_CHAT_ID, context)
        elif state is RegistrationState.ASK_CHAT_ID:
            chat_id = _parse_int(message.text)
            if chat_id is None:
                self._reprompt(owner, state, context, "The chat id must be a whole number.", message.message_id)
                return
            context.group_chat_id = chat_id
            context.remember(message.message_id)
            if context.forum_detected:
                self._after_forum(owner, state, context)
            else:
                self._prompt(owner, state, RegistrationState.ASK_IS_FORUM, context)
        elif state is RegistrationState.ASK_THREAD_ID:
            thread_id = _parse_int(message.text)
            if thread_id is None or thread_id <= 0:
                self._reprompt(owner, state, context, "The topic id must be a positive number.", message.message_id)
                return
            context.remember(message.message_id)
            self._complete(owner, state, context, thread_id)
        else:
            self._reprompt(owner, state, context, USE_BUTTONS, message.message_id)

    def handle_callback(self, session: Session, query: CallbackQuery, payload: CallbackPayload) -> None:
        context: GroupRegistrationContext = session.context
        state = session.state
        owner = session.owner_id
        if isinstance(payload, GroupIsForum) and state is RegistrationState.ASK_IS_FORUM:
            context.is_forum = payload.is_forum
            self._after_forum(owner, state, context)
        elif isinstance(payload, SkipThread) and state is RegistrationState.ASK_THREAD_ID:
            self._complete(owner, state, context, None)
        else:
            raise DomainError(ErrorKind.INVALID_CALLBACK, f"button {query.data!r} does not match this step")

    # Steps ---------------------------------------------------------------
    def _after_forum(self, owner: int, state: RegistrationState, context: GroupRegistrationContext) -> None:
        if context.is_forum:
            self._prompt(owner, state, RegistrationState.ASK_THREAD_ID, context)
        else:
            self._complete(owner, state, context, None)

    def _complete(
        self,
        owner: int,
        state: RegistrationState,
        context: GroupRegistrationContext,
        thread_id: Optional[int],
    ) -> None:
        services = self.services
        group, created = services.directory.register(
            context.group_chat_id, context.name, owner, is_forum=bool(context.is_forum)
        )
        now = services.now()
        services.state.add_membership(group.id, owner, now)
        topic = None
        if group.is_forum and thread_id is not None:
            topic = services.state.get_or_create_forum_topic(
                group.id, thread_id, f"{context.name} #{thread_id}", now
            )
        if created:
            services.notifications.notify_group_created(group, owner, services.settings.admin_ids)
        code = services.directory.invite_code(group.id)
        self._cleanup(
            context.chat_id,
            list(context.message_ids) + [context.last_bot_message_id, context.last_error_message_id],
        )
        self._finish(owner, state)
        lines = [
            f"Group {group.name} is {'registered' if created else 'already registered'} (chat {group.chat_id}).",
        ]
        if topic is not None:
            lines.append(f"Events will be posted to topic {topic.thread_id}.")
        lines.append(f"Invite code: {code}")
        lines.append(f"Members join with /join {code}")
        self._send(context.chat_id, "\n".join(lines))


__all__ = ["GroupRegistrationFlow"]
