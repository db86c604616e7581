"""Structured error types shared by the prediction market services."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories surfaced by the domain layer."""

    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    INVALID_CONTEXT = "invalid_context"
    SESSION_CONFLICT = "session_conflict"
    EVENT_NOT_FOUND = "event_not_found"
    EVENT_NOT_ACTIVE = "event_not_active"
    EVENT_HAS_VOTES = "event_has_votes"
    INVALID_OPTION = "invalid_option"
    ALREADY_SCORED = "already_scored"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_PARTICIPATION = "insufficient_participation"
    NO_GROUP_MEMBERSHIP = "no_group_membership"
    NO_MANAGEABLE_EVENTS = "no_manageable_events"
    GROUP_NOT_FOUND = "group_not_found"
    TARGET_NOT_FOUND = "target_not_found"
    VALIDATION = "validation"
    INVALID_CALLBACK = "invalid_callback"
    TRANSPORT_FAILURE = "transport_failure"


class DomainError(RuntimeError):
    """Raised when a domain operation cannot be completed.

    Callers branch on ``kind`` rather than on the exception class. ``details``
    carries structured values (counts, ids) for user-facing explanations.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.details: Dict[str, Any] = dict(details or {})

    def __repr__(self) -> str:
        return f"DomainError({self.kind.value!r}, {self.message!r})"


def validation_error(message: str, **details: Any) -> DomainError:
    return DomainError(ErrorKind.VALIDATION, message, details)


__all__ = ["DomainError", "ErrorKind", "validation_error"]
