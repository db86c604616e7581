"""Button payload encoding and strict parsing.

Payloads are colon-delimited tokens, e.g. ``select_group:12:345`` or
``resolve:option:2``. Any payload that does not match a known shape raises
``DomainError(INVALID_CALLBACK)``; flows treat that as fatal for the
interaction.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .contexts import FlowKind
from .errors import DomainError, ErrorKind
from .models import EventType

EDIT_FIELDS = ("question", "options", "deadline", "save", "cancel")
# Group actions offered from the admin group list.
GROUP_ACTIONS = ("members", "remove", "deactivate", "restore", "rename", "topics")
TOPIC_ACTIONS = ("rename", "delete")

_EVENT_TYPE_TOKENS = {
    "binary": EventType.BINARY,
    "multi": EventType.MULTI_OPTION,
    "probability": EventType.PROBABILITY,
}
_EVENT_TYPE_NAMES = {value: key for key, value in _EVENT_TYPE_TOKENS.items()}


@dataclass(frozen=True)
class SelectGroup:
    group_id: int
    thread_id: Optional[int] = None

    def encode(self) -> str:
        if self.thread_id is None:
            return f"select_group:{self.group_id}"
        return f"select_group:{self.group_id}:{self.thread_id}"


@dataclass(frozen=True)
class ChooseEventType:
    event_type: EventType

    def encode(self) -> str:
        return f"event_type:{_EVENT_TYPE_NAMES[self.event_type]}"


@dataclass(frozen=True)
class DeadlinePreset:
    days: int

    def encode(self) -> str:
        return f"deadline_preset:{self.days}d"


@dataclass(frozen=True)
class Confirm:
    accepted: bool

    def encode(self) -> str:
        return f"confirm:{'yes' if self.accepted else 'no'}"


@dataclass(frozen=True)
class ResolveEvent:
    event_id: int

    def encode(self) -> str:
        return f"resolve:{self.event_id}"


@dataclass(frozen=True)
class ResolveOption:
    index: int

    def encode(self) -> str:
        return f"resolve:option:{self.index}"


@dataclass(frozen=True)
class EditField:
    field: str
    event_id: int

    def encode(self) -> str:
        return f"edit_field:{self.field}:{self.event_id}"


@dataclass(frozen=True)
class EditEvent:
    event_id: int

    def encode(self) -> str:
        return f"edit_event:{self.event_id}"


@dataclass(frozen=True)
class GroupIsForum:
    is_forum: bool

    def encode(self) -> str:
        return f"group_is_forum:{'yes' if self.is_forum else 'no'}"


@dataclass(frozen=True)
class SkipThread:
    def encode(self) -> str:
        return "group_thread:skip"


@dataclass(frozen=True)
class SessionConflictChoice:
    restart_kind: Optional[FlowKind] = None

    @property
    def restart(self) -> bool:
        return self.restart_kind is not None

    def encode(self) -> str:
        if self.restart_kind is None:
            return "session_conflict:continue"
        return f"session_conflict:restart:{self.restart_kind.value}"


@dataclass(frozen=True)
class AdminMenu:
    """Pick a group for ``action`` from the admin list."""

    action: str

    def encode(self) -> str:
        return f"group_menu:{self.action}"


@dataclass(frozen=True)
class GroupAdmin:
    action: str
    group_id: int

    def encode(self) -> str:
        return f"group_admin:{self.action}:{self.group_id}"


@dataclass(frozen=True)
class RemoveMember:
    group_id: int
    user_id: int

    def encode(self) -> str:
        return f"remove_member:{self.group_id}:{self.user_id}"


@dataclass(frozen=True)
class TopicAdmin:
    action: str
    topic_id: int

    def encode(self) -> str:
        return f"topic_admin:{self.action}:{self.topic_id}"


@dataclass(frozen=True)
class LeaveChat:
    chat_id: int

    def encode(self) -> str:
        return f"leave_chat:{self.chat_id}"


CallbackPayload = Union[
    SelectGroup,
    ChooseEventType,
    DeadlinePreset,
    Confirm,
    ResolveEvent,
    ResolveOption,
    EditField,
    EditEvent,
    GroupIsForum,
    SkipThread,
    SessionConflictChoice,
    AdminMenu,
    GroupAdmin,
    RemoveMember,
    TopicAdmin,
    LeaveChat,
]

# Payloads handled without a session: each press is a complete admin action.
ADMIN_PAYLOADS = (AdminMenu, GroupAdmin, RemoveMember, TopicAdmin, LeaveChat)


def _invalid(data: str, reason: str) -> DomainError:
    return DomainError(ErrorKind.INVALID_CALLBACK, f"{reason}: {data!r}", {"data": data})


def _non_negative_int(token: str, data: str) -> int:
    if not (token.isascii() and token.isdigit()):
        raise _invalid(data, "expected a non-negative integer")
    return int(token)


def _signed_int(token: str, data: str) -> int:
    return -_non_negative_int(token[1:], data) if token.startswith("-") else _non_negative_int(token, data)


def _yes_no(token: str, data: str) -> bool:
    if token == "yes":
        return True
    if token == "no":
        return False
    raise _invalid(data, "expected yes or no")


def parse_callback(data: str) -> CallbackPayload:
    """Decode a button payload into its typed form."""

    if not data:
        raise _invalid(data, "empty payload")
    parts = data.split(":")
    head, args = parts[0], parts[1:]

    if head == "select_group" and len(args) in (1, 2):
        group_id = _non_negative_int(args[0], data)
        thread_id = _non_negative_int(args[1], data) if len(args) == 2 else None
        return SelectGroup(group_id, thread_id)
    if head == "event_type" and len(args) == 1:
        try:
            return ChooseEventType(_EVENT_TYPE_TOKENS[args[0]])
        except KeyError:
            raise _invalid(data, "unknown event type") from None
    if head == "deadline_preset" and len(args) == 1:
        token = args[0]
        if not token.endswith("d"):
            raise _invalid(data, "preset must end with 'd'")
        days = _non_negative_int(token[:-1], data)
        if days <= 0:
            raise _invalid(data, "preset must be positive")
        return DeadlinePreset(days)
    if head == "confirm" and len(args) == 1:
        return Confirm(_yes_no(args[0], data))
    if head == "resolve" and len(args) == 2 and args[0] == "option":
        return ResolveOption(_non_negative_int(args[1], data))
    if head == "resolve" and len(args) == 1:
        return ResolveEvent(_non_negative_int(args[0], data))
    if head == "edit_field" and len(args) == 2:
        if args[0] not in EDIT_FIELDS:
            raise _invalid(data, "unknown edit field")
        return EditField(args[0], _non_negative_int(args[1], data))
    if head == "edit_event" and len(args) == 1:
        return EditEvent(_non_negative_int(args[0], data))
    if head == "group_is_forum" and len(args) == 1:
        return GroupIsForum(_yes_no(args[0], data))
    if head == "group_thread" and args == ["skip"]:
        return SkipThread()
    if head == "group_menu" and len(args) == 1:
        if args[0] not in GROUP_ACTIONS:
            raise _invalid(data, "unknown group action")
        return AdminMenu(args[0])
    if head == "group_admin" and len(args) == 2:
        if args[0] not in GROUP_ACTIONS:
            raise _invalid(data, "unknown group action")
        return GroupAdmin(args[0], _non_negative_int(args[1], data))
    if head == "remove_member" and len(args) == 2:
        return RemoveMember(_non_negative_int(args[0], data), _non_negative_int(args[1], data))
    if head == "topic_admin" and len(args) == 2:
        if args[0] not in TOPIC_ACTIONS:
            raise _invalid(data, "unknown topic action")
        return TopicAdmin(args[0], _non_negative_int(args[1], data))
    if head == "leave_chat" and len(args) == 1:
        return LeaveChat(_signed_int(args[0], data))
    if head == "session_conflict":
        if args == ["continue"]:
            return SessionConflictChoice()
        if len(args) == 2 and args[0] == "restart":
            try:
                return SessionConflictChoice(FlowKind(args[1]))
            except ValueError:
                raise _invalid(data, "unknown flow kind") from None
    raise _invalid(data, "unrecognised payload")


__all__ = [
    "ADMIN_PAYLOADS",
    "AdminMenu",
    "CallbackPayload",
    "ChooseEventType",
    "Confirm",
    "DeadlinePreset",
    "EDIT_FIELDS",
    "EditEvent",
    "EditField",
    "GROUP_ACTIONS",
    "GroupAdmin",
    "GroupIsForum",
    "LeaveChat",
    "RemoveMember",
    "ResolveEvent",
    "ResolveOption",
    "SelectGroup",
    "SessionConflictChoice",
    "SkipThread",
    "TOPIC_ACTIONS",
    "TopicAdmin",
    "parse_callback",
]
