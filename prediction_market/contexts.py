"""Flow kinds, per-flow state sets and typed session context records.

Every conversational flow owns a closed set of states (a ``str`` Enum whose
values are namespaced ``"<flow_kind>.<state>"``) and one context dataclass.
Contexts are persisted through an explicit field schema: decoding rejects
missing keys of the wrong type instead of coercing them, so a damaged row
surfaces as ``InvalidContext`` rather than as a half-populated record.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from .errors import DomainError, ErrorKind


class FlowKind(str, Enum):
    EVENT_CREATION = "event_creation"
    EVENT_EDIT = "event_edit"
    EVENT_RESOLUTION = "event_resolution"
    GROUP_CREATION = "group_creation"
    RENAME = "rename"

    @property
    def label(self) -> str:
        return _FLOW_LABELS[self]


_FLOW_LABELS = {
    FlowKind.EVENT_CREATION: "event creation",
    FlowKind.EVENT_EDIT: "event editing",
    FlowKind.EVENT_RESOLUTION: "event resolution",
    FlowKind.GROUP_CREATION: "group creation",
    FlowKind.RENAME: "renaming",
}


class CreationState(str, Enum):
    SELECT_GROUP = "event_creation.select_group"
    ASK_QUESTION = "event_creation.ask_question"
    ASK_EVENT_TYPE = "event_creation.ask_event_type"
    ASK_OPTIONS = "event_creation.ask_options"
    ASK_DEADLINE = "event_creation.ask_deadline"
    CONFIRM = "event_creation.confirm"


class EditState(str, Enum):
    MENU = "event_edit.menu"
    ASK_QUESTION = "event_edit.ask_question"
    ASK_OPTIONS = "event_edit.ask_options"
    ASK_DEADLINE = "event_edit.ask_deadline"


class ResolutionState(str, Enum):
    SELECT_EVENT = "event_resolution.select_event"
    SELECT_OPTION = "event_resolution.select_option"


class RegistrationState(str, Enum):
    ASK_NAME = "group_creation.ask_name"
    ASK_CHAT_ID = "group_creation.ask_chat_id"
    ASK_IS_FORUM = "group_creation.ask_is_forum"
    ASK_THREAD_ID = "group_creation.ask_thread_id"


class RenameState(str, Enum):
    ASK_GROUP_NAME = "rename.ask_group_name"
    ASK_TOPIC_NAME = "rename.ask_topic_name"


FlowState = Union[CreationState, EditState, ResolutionState, RegistrationState, RenameState]

_STATE_ENUMS: Dict[FlowKind, Type[Enum]] = {
    FlowKind.EVENT_CREATION: CreationState,
    FlowKind.EVENT_EDIT: EditState,
    FlowKind.EVENT_RESOLUTION: ResolutionState,
    FlowKind.GROUP_CREATION: RegistrationState,
    FlowKind.RENAME: RenameState,
}


def flow_kind_of(state_name: str) -> FlowKind:
    """Derive the flow kind from a namespaced state name."""

    namespace, _, rest = state_name.partition(".")
    if not rest:
        raise ValueError(f"State name {state_name!r} has no namespace")
    return FlowKind(namespace)


def parse_state(state_name: str) -> FlowState:
    kind = flow_kind_of(state_name)
    return _STATE_ENUMS[kind](state_name)


# Field readers ---------------------------------------------------------
def _missing(name: str) -> DomainError:
    return DomainError(ErrorKind.INVALID_CONTEXT, f"context field {name!r} is missing")


def _bad_type(name: str, expected: str, value: Any) -> DomainError:
    return DomainError(
        ErrorKind.INVALID_CONTEXT,
        f"context field {name!r} expected {expected}, got {type(value).__name__}",
    )


def _int(data: Dict[str, Any], name: str) -> int:
    if name not in data:
        raise _missing(name)
    value = data[name]
    if isinstance(value, bool) or not isinstance(value, int):
        raise _bad_type(name, "int", value)
    return value


def _opt_int(data: Dict[str, Any], name: str) -> Optional[int]:
    value = data.get(name)
    if value is None:
        return None
    return _int(data, name)


def _str(data: Dict[str, Any], name: str) -> str:
    if name not in data:
        raise _missing(name)
    value = data[name]
    if not isinstance(value, str):
        raise _bad_type(name, "str", value)
    return value


def _opt_str(data: Dict[str, Any], name: str) -> Optional[str]:
    if data.get(name) is None:
        return None
    return _str(data, name)


def _opt_bool(data: Dict[str, Any], name: str) -> Optional[bool]:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise _bad_type(name, "bool", value)
    return value


def _str_list(data: Dict[str, Any], name: str) -> List[str]:
    value = data.get(name, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise _bad_type(name, "list[str]", value)
    return list(value)


def _int_list(data: Dict[str, Any], name: str) -> List[int]:
    value = data.get(name, [])
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in value
    ):
        raise _bad_type(name, "list[int]", value)
    return list(value)


def _opt_datetime(data: Dict[str, Any], name: str) -> Optional[datetime]:
    raw = _opt_str(data, name)
    if raw is None:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise DomainError(ErrorKind.INVALID_CONTEXT, f"context field {name!r} is not a timestamp") from exc
    if parsed.tzinfo is None:
        raise DomainError(ErrorKind.INVALID_CONTEXT, f"context field {name!r} lacks a timezone")
    return parsed


def _dt_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# Context records -------------------------------------------------------
@dataclass
class MessageTrail:
    """Message ids a flow step needs to clean up before the next prompt."""

    chat_id: int = 0
    last_bot_message_id: Optional[int] = None
    last_user_message_id: Optional[int] = None
    last_error_message_id: Optional[int] = None

    def _trail_payload(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "last_bot_message_id": self.last_bot_message_id,
            "last_user_message_id": self.last_user_message_id,
            "last_error_message_id": self.last_error_message_id,
        }

    def _load_trail(self, data: Dict[str, Any]) -> None:
        self.chat_id = _int(data, "chat_id")
        self.last_bot_message_id = _opt_int(data, "last_bot_message_id")
        self.last_user_message_id = _opt_int(data, "last_user_message_id")
        self.last_error_message_id = _opt_int(data, "last_error_message_id")


@dataclass
class EventCreationContext(MessageTrail):
    group_id: Optional[int] = None
    forum_topic_id: Optional[int] = None
    thread_id: Optional[int] = None
    question: str = ""
    event_type: Optional[str] = None
    options: List[str] = field(default_factory=list)
    deadline: Optional[datetime] = None

    kind = FlowKind.EVENT_CREATION

    def to_payload(self) -> Dict[str, Any]:
        payload = self._trail_payload()
        payload.update(
            {
                "group_id": self.group_id,
                "forum_topic_id": self.forum_topic_id,
                "thread_id": self.thread_id,
                "question": self.question,
                "event_type": self.event_type,
                "options": list(self.options),
                "deadline": _dt_text(self.deadline),
            }
        )
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "EventCreationContext":
        ctx = cls(
            group_id=_opt_int(data, "group_id"),
            forum_topic_id=_opt_int(data, "forum_topic_id"),
            thread_id=_opt_int(data, "thread_id"),
            question=_str(data, "question"),
            event_type=_opt_str(data, "event_type"),
            options=_str_list(data, "options"),
            deadline=_opt_datetime(data, "deadline"),
        )
        ctx._load_trail(data)
        return ctx


@dataclass
class EventEditContext(MessageTrail):
    event_id: int = 0
    group_id: int = 0
    event_type: str = ""
    original_question: str = ""
    original_options: List[str] = field(default_factory=list)
    original_deadline: Optional[datetime] = None
    new_question: Optional[str] = None
    new_options: Optional[List[str]] = None
    new_deadline: Optional[datetime] = None

    kind = FlowKind.EVENT_EDIT

    @property
    def question(self) -> str:
        return self.new_question if self.new_question is not None else self.original_question

    @property
    def options(self) -> List[str]:
        return list(self.new_options) if self.new_options is not None else list(self.original_options)

    @property
    def deadline(self) -> Optional[datetime]:
        return self.new_deadline if self.new_deadline is not None else self.original_deadline

    def changed_fields(self) -> List[str]:
        changed: List[str] = []
        if self.new_question is not None and self.new_question != self.original_question:
            changed.append("question")
        if self.new_options is not None and self.new_options != self.original_options:
            changed.append("options")
        if self.new_deadline is not None and self.new_deadline != self.original_deadline:
            changed.append("deadline")
        return changed

    def to_payload(self) -> Dict[str, Any]:
        payload = self._trail_payload()
        payload.update(
            {
                "event_id": self.event_id,
                "group_id": self.group_id,
                "event_type": self.event_type,
                "original_question": self.original_question,
                "original_options": list(self.original_options),
                "original_deadline": _dt_text(self.original_deadline),
                "new_question": self.new_question,
                "new_options": list(self.new_options) if self.new_options is not None else None,
                "new_deadline": _dt_text(self.new_deadline),
            }
        )
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "EventEditContext":
        ctx = cls(
            event_id=_int(data, "event_id"),
            group_id=_int(data, "group_id"),
            event_type=_str(data, "event_type"),
            original_question=_str(data, "original_question"),
            original_options=_str_list(data, "original_options"),
            original_deadline=_opt_datetime(data, "original_deadline"),
            new_question=_opt_str(data, "new_question"),
            new_options=_str_list(data, "new_options") if data.get("new_options") is not None else None,
            new_deadline=_opt_datetime(data, "new_deadline"),
        )
        ctx._load_trail(data)
        return ctx


@dataclass
class EventResolutionContext(MessageTrail):
    event_id: Optional[int] = None
    message_ids: List[int] = field(default_factory=list)

    kind = FlowKind.EVENT_RESOLUTION

    def remember(self, message_id: Optional[int]) -> None:
        if message_id and message_id not in self.message_ids:
            self.message_ids.append(message_id)

    def to_payload(self) -> Dict[str, Any]:
        payload = self._trail_payload()
        payload.update({"event_id": self.event_id, "message_ids": list(self.message_ids)})
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "EventResolutionContext":
        ctx = cls(event_id=_opt_int(data, "event_id"), message_ids=_int_list(data, "message_ids"))
        ctx._load_trail(data)
        return ctx


@dataclass
class GroupRegistrationContext(MessageTrail):
    name: str = ""
    group_chat_id: Optional[int] = None
    is_forum: Optional[bool] = None
    forum_detected: bool = False
    message_ids: List[int] = field(default_factory=list)

    kind = FlowKind.GROUP_CREATION

    def remember(self, message_id: Optional[int]) -> None:
        if message_id and message_id not in self.message_ids:
            self.message_ids.append(message_id)

    def to_payload(self) -> Dict[str, Any]:
        payload = self._trail_payload()
        payload.update(
            {
                "name": self.name,
                "group_chat_id": self.group_chat_id,
                "is_forum": self.is_forum,
                "forum_detected": self.forum_detected,
                "message_ids": list(self.message_ids),
            }
        )
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GroupRegistrationContext":
        ctx = cls(
            name=_str(data, "name"),
            group_chat_id=_opt_int(data, "group_chat_id"),
            is_forum=_opt_bool(data, "is_forum"),
            forum_detected=bool(_opt_bool(data, "forum_detected")),
            message_ids=_int_list(data, "message_ids"),
        )
        ctx._load_trail(data)
        return ctx


@dataclass
class RenameContext(MessageTrail):
    """Which group or topic is being renamed, and what it was called."""

    target_id: int = 0
    old_name: str = ""

    kind = FlowKind.RENAME

    def to_payload(self) -> Dict[str, Any]:
        payload = self._trail_payload()
        payload.update({"target_id": self.target_id, "old_name": self.old_name})
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RenameContext":
        ctx = cls(target_id=_int(data, "target_id"), old_name=_str(data, "old_name"))
        ctx._load_trail(data)
        return ctx


FlowContext = Union[
    EventCreationContext,
    EventEditContext,
    EventResolutionContext,
    GroupRegistrationContext,
    RenameContext,
]

_CONTEXT_TYPES: Dict[FlowKind, Type[Any]] = {
    FlowKind.EVENT_CREATION: EventCreationContext,
    FlowKind.EVENT_EDIT: EventEditContext,
    FlowKind.EVENT_RESOLUTION: EventResolutionContext,
    FlowKind.GROUP_CREATION: GroupRegistrationContext,
    FlowKind.RENAME: RenameContext,
}

SCHEMA_VERSION = 1


def encode_context(context: FlowContext) -> str:
    return json.dumps(
        {"kind": context.kind.value, "version": SCHEMA_VERSION, "data": context.to_payload()},
        sort_keys=True,
    )


def decode_context(kind: FlowKind, raw: str) -> FlowContext:
    """Decode a stored context for ``kind``; raises ``INVALID_CONTEXT``."""

    try:
        envelope = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DomainError(ErrorKind.INVALID_CONTEXT, "context is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise DomainError(ErrorKind.INVALID_CONTEXT, "context envelope is not an object")
    if envelope.get("kind") != kind.value:
        raise DomainError(
            ErrorKind.INVALID_CONTEXT,
            f"context kind {envelope.get('kind')!r} does not match state kind {kind.value!r}",
        )
    if envelope.get("version") != SCHEMA_VERSION:
        raise DomainError(ErrorKind.INVALID_CONTEXT, "unsupported context version")
    data = envelope.get("data")
    if not isinstance(data, dict):
        raise DomainError(ErrorKind.INVALID_CONTEXT, "context data is not an object")
    return _CONTEXT_TYPES[kind].from_payload(data)


__all__ = [
    "CreationState",
    "EditState",
    "EventCreationContext",
    "EventEditContext",
    "EventResolutionContext",
    "FlowContext",
    "FlowKind",
    "FlowState",
    "GroupRegistrationContext",
    "MessageTrail",
    "RegistrationState",
    "RenameContext",
    "RenameState",
    "ResolutionState",
    "decode_context",
    "encode_context",
    "flow_kind_of",
    "parse_state",
]
