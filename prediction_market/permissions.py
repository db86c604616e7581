"""Authorization policy and event permission checks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Protocol

from .errors import DomainError, ErrorKind
from .models import Event
from .state import MarketState

logger = logging.getLogger(__name__)


class AuthorizationPolicy(Protocol):
    def is_admin(self, user_id: int) -> bool:
        ...


class StaticAdminPolicy:
    """Admin set fixed at startup from settings and the environment."""

    def __init__(self, admin_ids: Iterable[int]) -> None:
        self._admin_ids: FrozenSet[int] = frozenset(admin_ids)

    @property
    def admin_ids(self) -> FrozenSet[int]:
        return self._admin_ids

    def is_admin(self, user_id: int) -> bool:
        return user_id in self._admin_ids


@dataclass(frozen=True)
class CreationDecision:
    allowed: bool
    required: int
    current: int
    is_member: bool = True

    @property
    def remaining(self) -> int:
        return max(0, self.required - self.current)


class EventPermissionValidator:
    """Answers who may create, edit and resolve events."""

    def __init__(
        self,
        state: MarketState,
        policy: AuthorizationPolicy,
        *,
        min_events_to_create: int = 3,
    ) -> None:
        self._state = state
        self._policy = policy
        self._min_events = min_events_to_create

    @property
    def policy(self) -> AuthorizationPolicy:
        return self._policy

    @property
    def min_events_to_create(self) -> int:
        return self._min_events

    def is_admin(self, user_id: int) -> bool:
        return self._policy.is_admin(user_id)

    def can_create_event(self, user_id: int, group_id: int) -> CreationDecision:
        if not self._state.is_active_member(group_id, user_id):
            return CreationDecision(False, self._min_events, 0, is_member=False)
        if self._policy.is_admin(user_id):
            return CreationDecision(True, 0, 0)
        current = self._state.count_completed_participations(user_id, group_id)
        allowed = current >= self._min_events
        if not allowed:
            logger.debug(
                "User %s has %d/%d participations in group %s",
                user_id,
                current,
                self._min_events,
                group_id,
            )
        return CreationDecision(allowed, self._min_events, current)

    def require_can_create(self, user_id: int, group_id: int) -> None:
        decision = self.can_create_event(user_id, group_id)
        if not decision.is_member:
            raise DomainError(ErrorKind.NO_GROUP_MEMBERSHIP, "not a member of this group")
        if not decision.allowed:
            raise DomainError(
                ErrorKind.INSUFFICIENT_PARTICIPATION,
                "not enough completed predictions to create events",
                {"required": decision.required, "current": decision.current},
            )

    def can_manage_event(self, user_id: int, event: Event) -> bool:
        if not self._state.is_active_member(event.group_id, user_id):
            return False
        return self._policy.is_admin(user_id) or event.created_by == user_id

    def require_can_manage(self, user_id: int, event: Event) -> None:
        if not self.can_manage_event(user_id, event):
            raise DomainError(
                ErrorKind.UNAUTHORIZED,
                "only the event creator or an admin can manage this event",
                {"event_id": event.id},
            )

    def require_admin(self, user_id: int) -> None:
        if not self._policy.is_admin(user_id):
            raise DomainError(ErrorKind.UNAUTHORIZED, "this command is for administrators only")


__all__ = [
    "AuthorizationPolicy",
    "CreationDecision",
    "EventPermissionValidator",
    "StaticAdminPolicy",
]
