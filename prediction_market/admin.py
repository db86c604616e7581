"""Admin management of registered groups, their members and forum topics.

Every action here is a single button press or command: nothing is kept in
the session store. Renaming is the exception and lives in
``flows.renaming`` because it waits for a typed name.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .callbacks import AdminMenu, GroupAdmin, LeaveChat, RemoveMember, TopicAdmin
from .errors import DomainError, ErrorKind
from .flows import FlowServices
from .models import Group, GroupStatus, MembershipStatus
from .services.formatting import format_lines
from .telemetry import get_telemetry
from .transport import Button, ButtonRows, TransportError, single_column

logger = logging.getLogger(__name__)

_GROUP_PROMPTS: Dict[str, str] = {
    "members": "Whose members do you want to see?",
    "remove": "Remove a member from which group?",
    "deactivate": "Which group should be deactivated?",
    "restore": "Which group should be restored?",
    "rename": "Which group do you want to rename?",
    "topics": "Manage the topics of which forum?",
}

_NOTHING_TO_PICK: Dict[str, str] = {
    "deactivate": "There are no active groups to deactivate.",
    "restore": "There are no deactivated groups to restore.",
    "topics": "No forum groups are registered.",
}

NO_GROUPS = "No groups are registered yet."


def member_label(user_id: int, username: str = "") -> str:
    return username or f"<@{user_id}>"


class GroupAdministration:
    """Handlers behind /list_groups, /group_members, /remove_member and their buttons."""

    def __init__(self, services: FlowServices) -> None:
        self.services = services

    # Plumbing ------------------------------------------------------------
    def _send(self, chat_id: int, text: str, buttons: Optional[ButtonRows] = None) -> int:
        try:
            return self.services.transport.send_message(chat_id, text, buttons=buttons)
        except TransportError as exc:
            raise DomainError(
                ErrorKind.TRANSPORT_FAILURE,
                f"failed to send admin reply to {chat_id}",
                {"error": str(exc)},
            ) from exc

    def _group(self, group_id: int) -> Group:
        group = self.services.state.get_group(group_id)
        if group is None:
            raise DomainError(ErrorKind.TARGET_NOT_FOUND, f"group {group_id} not found")
        return group

    def _audit(self, admin_id: int, action: str, target: str) -> None:
        logger.info("Admin %s: %s %s", admin_id, action, target)
        (self.services.telemetry or get_telemetry()).track_system_event(
            f"admin_{action}", source=str(admin_id), reason=target
        )

    # Listings ------------------------------------------------------------
    def group_overview(self) -> Tuple[str, ButtonRows]:
        state = self.services.state
        groups = state.list_groups(active_only=False)
        if not groups:
            return NO_GROUPS, []
        lines: List[Optional[str]] = ["Registered groups:"]
        for number, group in enumerate(groups, start=1):
            active = group.status is GroupStatus.ACTIVE
            lines.append(f"{number}. {'✅' if active else '🗑'} {group.name}{'' if active else ' (deactivated)'}")
            lines.append(f"   Members: {state.count_active_members(group.id)}")
            lines.append(f"   Invite code: {self.services.directory.invite_code(group.id)}")
            lines.append(f"   ID: {group.id}, chat {group.chat_id}")
            if group.is_forum:
                topics = state.list_forum_topics(group.id)
                if topics:
                    lines.append("   Forum topics:")
                    lines.extend(
                        f"      • {topic.name} (thread {topic.thread_id}, ID {topic.id})" for topic in topics
                    )
                else:
                    lines.append("   Forum without registered topics")
        buttons = [
            [Button("Rename group", AdminMenu("rename").encode()), Button("Topics", AdminMenu("topics").encode())],
            [Button("Deactivate", AdminMenu("deactivate").encode()), Button("Restore", AdminMenu("restore").encode())],
        ]
        return format_lines(lines), buttons

    def list_groups(self, user_id: int, chat_id: int) -> None:
        self.services.permissions.require_admin(user_id)
        text, buttons = self.group_overview()
        self._send(chat_id, text, buttons or None)

    def choose_group(self, user_id: int, chat_id: int, action: str) -> None:
        """Offer the groups ``action`` can apply to as buttons."""

        self.services.permissions.require_admin(user_id)
        groups = self.services.state.list_groups(active_only=False)
        if action == "deactivate":
            groups = [group for group in groups if group.status is GroupStatus.ACTIVE]
        elif action == "restore":
            groups = [group for group in groups if group.status is GroupStatus.INACTIVE]
        elif action == "topics":
            groups = [group for group in groups if group.is_forum]
        if not groups:
            self._send(chat_id, _NOTHING_TO_PICK.get(action, NO_GROUPS))
            return
        buttons = single_column([Button(group.name, GroupAdmin(action, group.id).encode()) for group in groups])
        self._send(chat_id, _GROUP_PROMPTS[action], buttons)

    def members_text(self, group: Group) -> str:
        state = self.services.state
        members = state.group_members(group.id)
        if not members:
            return f"{group.name} has no members yet."
        lines: List[Optional[str]] = [f"Members of {group.name}:"]
        for number, member in enumerate(members, start=1):
            rating = state.get_rating(member.user_id, group.id)
            active = member.status is MembershipStatus.ACTIVE
            lines.append(
                f"{number}. {'✅' if active else '🚫'} {member_label(member.user_id, rating.username if rating else '')}"
            )
            lines.append(
                f"   Score {rating.score if rating else 0}, "
                f"achievements {len(state.achievements_for(member.user_id, group.id))}, "
                f"joined {member.joined_at.astimezone(self.services.settings.timezone):%d.%m.%Y}"
            )
        return format_lines(lines)

    # Button actions ------------------------------------------------------
    def handle(self, user_id: int, chat_id: int, payload) -> None:
        self.services.permissions.require_admin(user_id)
        if isinstance(payload, AdminMenu):
            self.choose_group(user_id, chat_id, payload.action)
        elif isinstance(payload, GroupAdmin):
            self._group_action(user_id, chat_id, payload)
        elif isinstance(payload, RemoveMember):
            self.remove_member(user_id, chat_id, payload.group_id, payload.user_id)
        elif isinstance(payload, TopicAdmin) and payload.action == "delete":
            self.delete_topic(user_id, chat_id, payload.topic_id)
        elif isinstance(payload, LeaveChat):
            self.leave_chat(user_id, chat_id, payload.chat_id)
        else:
            raise DomainError(ErrorKind.INVALID_CALLBACK, f"unexpected admin payload {payload!r}")

    def _group_action(self, user_id: int, chat_id: int, payload: GroupAdmin) -> None:
        group = self._group(payload.group_id)
        if payload.action == "members":
            self._send(chat_id, self.members_text(group))
        elif payload.action == "remove":
            self._offer_removal(chat_id, group)
        elif payload.action in ("deactivate", "restore"):
            self.set_group_active(user_id, chat_id, group, payload.action == "restore")
        elif payload.action == "topics":
            self._offer_topics(chat_id, group)
        else:
            raise DomainError(ErrorKind.INVALID_CALLBACK, f"{payload.action} is started by the router")

    def _offer_removal(self, chat_id: int, group: Group) -> None:
        state = self.services.state
        active = [m for m in state.group_members(group.id) if m.status is MembershipStatus.ACTIVE]
        if not active:
            self._send(chat_id, f"{group.name} has no active members.")
            return
        buttons = []
        for member in active:
            rating = state.get_rating(member.user_id, group.id)
            label = member_label(member.user_id, rating.username if rating else "")
            buttons.append(Button(label, RemoveMember(group.id, member.user_id).encode()))
        self._send(chat_id, f"Who should be removed from {group.name}?", single_column(buttons))

    def _offer_topics(self, chat_id: int, group: Group) -> None:
        topics = self.services.state.list_forum_topics(group.id)
        if not topics:
            self._send(chat_id, f"{group.name} has no registered topics.")
            return
        buttons = [
            [
                Button(f"✏ {topic.name}", TopicAdmin("rename", topic.id).encode()),
                Button(f"🗑 {topic.name}", TopicAdmin("delete", topic.id).encode()),
            ]
            for topic in topics
        ]
        self._send(chat_id, f"Topics of {group.name}: rename or delete one.", buttons)

    def remove_member(self, user_id: int, chat_id: int, group_id: int, member_id: int) -> None:
        group = self._group(group_id)
        rating = self.services.state.get_rating(member_id, group.id)
        label = member_label(member_id, rating.username if rating else "")
        if not self.services.state.remove_membership(group.id, member_id):
            self._send(chat_id, f"{label} is not an active member of {group.name}.")
            return
        self._audit(user_id, "remove_member", f"{member_id} from group {group.id}")
        self._send(chat_id, f"Removed {label} from {group.name}. They can rejoin with the invite code.")

    def set_group_active(self, user_id: int, chat_id: int, group: Group, active: bool) -> None:
        status = GroupStatus.ACTIVE if active else GroupStatus.INACTIVE
        if not self.services.state.set_group_status(group.id, status):
            self._send(chat_id, f"{group.name} is already {'active' if active else 'deactivated'}.")
            return
        self._audit(user_id, "restore_group" if active else "deactivate_group", str(group.id))
        if active:
            self._send(chat_id, f"Restored {group.name}.")
        else:
            self._send(
                chat_id,
                f"Deactivated {group.name}. It is hidden from members and its invite code stops working.",
            )

    def delete_topic(self, user_id: int, chat_id: int, topic_id: int) -> None:
        state = self.services.state
        topic = state.get_forum_topic(topic_id)
        if topic is None or not state.delete_forum_topic(topic_id):
            raise DomainError(ErrorKind.TARGET_NOT_FOUND, f"topic {topic_id} not found")
        self._audit(user_id, "delete_topic", f"{topic.name} ({topic_id})")
        self._send(chat_id, f"Deleted topic {topic.name}. Its events now post to the group chat.")

    def leave_chat(self, user_id: int, chat_id: int, target_chat_id: int) -> None:
        try:
            self.services.transport.leave_chat(target_chat_id)
        except TransportError as exc:
            logger.warning("Failed to leave chat %s: %s", target_chat_id, exc)
            self._send(chat_id, f"Could not leave chat {target_chat_id}.")
            return
        self._audit(user_id, "leave_chat", str(target_chat_id))
        group = self.services.state.get_group_by_chat(target_chat_id)
        if group is not None:
            self.services.state.set_group_status(group.id, GroupStatus.INACTIVE)
        self._send(chat_id, f"Left chat {target_chat_id}.")

    # Bot membership ------------------------------------------------------
    def bot_added(self, chat_id: int, title: str, added_by: Optional[int] = None) -> int:
        """Tell every admin the bot joined a chat, with a button to leave it."""

        logger.info("Bot added to chat %s (%s) by %s", chat_id, title, added_by)
        return self.services.notifications.notify_bot_added(
            chat_id, title, self.services.settings.admin_ids, added_by=added_by
        )


__all__ = ["GroupAdministration", "NO_GROUPS", "member_label"]
