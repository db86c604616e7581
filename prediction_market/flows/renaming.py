"""Admin renaming of a registered group or one of its forum topics."""
from __future__ import annotations

import logging

from ..callbacks import CallbackPayload
from ..contexts import FlowKind, RenameContext, RenameState
from ..errors import DomainError, ErrorKind
from ..sessions import Session
from ..transport import CallbackQuery, InboundMessage
from .base import FlowController
from .registration import MAX_GROUP_NAME_LENGTH

logger = logging.getLogger(__name__)


def _missing(what: str, target_id: int) -> DomainError:
    return DomainError(ErrorKind.TARGET_NOT_FOUND, f"{what} {target_id} not found")


class RenameFlow(FlowController):
    kind = FlowKind.RENAME
    expired_text = "Renaming expired. Use /list_groups to start again."

    def start_group(self, user_id: int, chat_id: int, group_id: int) -> None:
        self.services.permissions.require_admin(user_id)
        group = self.services.state.get_group(group_id)
        if group is None:
            raise _missing("group", group_id)
        context = RenameContext(chat_id=chat_id, target_id=group.id, old_name=group.name)
        self._advance(user_id, None, RenameState.ASK_GROUP_NAME, context, self._prompt_text(context))

    def start_topic(self, user_id: int, chat_id: int, topic_id: int) -> None:
        self.services.permissions.require_admin(user_id)
        topic = self.services.state.get_forum_topic(topic_id)
        if topic is None:
            raise _missing("topic", topic_id)
        context = RenameContext(chat_id=chat_id, target_id=topic.id, old_name=topic.name)
        self._advance(user_id, None, RenameState.ASK_TOPIC_NAME, context, self._prompt_text(context))

    @staticmethod
    def _prompt_text(context: RenameContext) -> str:
        return f'Send the new name for "{context.old_name}".'

    def resend_prompt(self, session: Session) -> None:
        self._advance(
            session.owner_id, session.state, session.state, session.context,
            self._prompt_text(session.context),
        )

    def handle_callback(self, session: Session, query: CallbackQuery, payload: CallbackPayload) -> None:
        raise DomainError(ErrorKind.INVALID_CALLBACK, f"button {query.data!r} does not match this step")

    def handle_message(self, session: Session, message: InboundMessage) -> None:
        context: RenameContext = session.context
        state = session.state
        owner = session.owner_id
        name = message.text.strip()
        if not name or len(name) > MAX_GROUP_NAME_LENGTH:
            self._reprompt(
                owner, state, context,
                f"The name must be between 1 and {MAX_GROUP_NAME_LENGTH} characters.",
                message.message_id,
            )
            return

        state_store = self.services.state
        if state is RenameState.ASK_GROUP_NAME:
            what, renamed = "group", state_store.rename_group(context.target_id, name)
        else:
            what, renamed = "topic", state_store.rename_forum_topic(context.target_id, name)
        self._cleanup(
            context.chat_id,
            (context.last_bot_message_id, message.message_id, context.last_error_message_id),
        )
        self._finish(owner, state)
        if not renamed:
            raise _missing(what, context.target_id)
        logger.info("Admin %s renamed %s %s to %r", owner, what, context.target_id, name)
        self._send(context.chat_id, f'Renamed {what} "{context.old_name}" to "{name}".')


__all__ = ["RenameFlow"]
