"""Event lifecycle: creation, pre-vote edits, resolution and voting."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .errors import DomainError, ErrorKind, validation_error
from .models import (
    MAX_OPTIONS,
    MIN_OPTIONS,
    Event,
    EventStatus,
    EventType,
)
from .state import MarketState

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 300
MAX_OPTION_LENGTH = 100


class VoteResult(str, Enum):
    RECORDED = "recorded"
    UNKNOWN_POLL = "unknown_poll"
    EVENT_CLOSED = "event_closed"
    DEADLINE_PASSED = "deadline_passed"
    NOT_A_MEMBER = "not_a_member"
    INVALID_OPTION = "invalid_option"


@dataclass(frozen=True)
class VoteOutcome:
    result: VoteResult
    event_id: Optional[int] = None

    @property
    def recorded(self) -> bool:
        return self.result is VoteResult.RECORDED


def normalize_question(question: str) -> str:
    cleaned = question.strip()
    if not cleaned:
        raise validation_error("Question cannot be empty")
    if len(cleaned) > MAX_QUESTION_LENGTH:
        raise validation_error(
            f"Question must be at most {MAX_QUESTION_LENGTH} characters",
            length=len(cleaned),
        )
    return cleaned


def parse_option_lines(text: str) -> List[str]:
    """Split newline-delimited free text into 2-6 trimmed, non-empty options."""

    options = [line.strip() for line in text.splitlines() if line.strip()]
    return validate_options(EventType.MULTI_OPTION, options)


def validate_options(event_type: EventType, options: Sequence[str]) -> List[str]:
    options = [option.strip() for option in options]
    fixed = event_type.fixed_options
    if fixed is not None:
        if options != fixed:
            raise validation_error(
                f"{event_type.value} events use fixed options", expected=fixed
            )
        return options
    if not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
        raise validation_error(
            f"Provide between {MIN_OPTIONS} and {MAX_OPTIONS} options",
            count=len(options),
        )
    if any(not option for option in options):
        raise validation_error("Options cannot be empty")
    too_long = [option for option in options if len(option) > MAX_OPTION_LENGTH]
    if too_long:
        raise validation_error(
            f"Each option must be at most {MAX_OPTION_LENGTH} characters"
        )
    if len({option.casefold() for option in options}) != len(options):
        raise validation_error("Options must be distinct")
    return options


class EventManager:
    """CRUD and lifecycle rules for events, independent of any chat flow."""

    def __init__(
        self,
        state: MarketState,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._state = state
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # Queries -----------------------------------------------------------
    def get_event(self, event_id: int) -> Event:
        event = self._state.get_event(event_id)
        if event is None:
            raise DomainError(ErrorKind.EVENT_NOT_FOUND, f"event {event_id} not found")
        return event

    def get_event_by_poll(self, poll_id: str) -> Optional[Event]:
        return self._state.get_event_by_poll(poll_id)

    def list_active_events(self, group_ids: Optional[Sequence[int]] = None) -> List[Event]:
        return self._state.list_events(group_ids=group_ids, status=EventStatus.ACTIVE)

    def list_events_for_resolution(
        self, user_id: int, group_ids: Sequence[int], *, is_admin: bool = False
    ) -> List[Event]:
        """Active events in ``group_ids`` that ``user_id`` may resolve."""

        events = self.list_active_events(group_ids)
        if is_admin:
            return events
        return [event for event in events if event.created_by == user_id]

    def vote_count(self, event_id: int) -> int:
        return self._state.count_predictions(event_id)

    def vote_distribution(self, event: Event) -> List[int]:
        counts = [0] * len(event.options)
        for prediction in self._state.predictions_for_event(event.id):
            if 0 <= prediction.option < len(counts):
                counts[prediction.option] += 1
        return counts

    def can_edit(self, event_id: int) -> bool:
        event = self._state.get_event(event_id)
        if event is None or not event.is_active:
            return False
        return self._state.count_predictions(event_id) == 0

    # Mutations ---------------------------------------------------------
    def create_event(
        self,
        *,
        group_id: int,
        question: str,
        event_type: EventType,
        options: Sequence[str],
        deadline: datetime,
        created_by: int,
        forum_topic_id: Optional[int] = None,
    ) -> Event:
        now = self._clock()
        question = normalize_question(question)
        cleaned = validate_options(event_type, options)
        if deadline <= now:
            raise validation_error("Deadline must be in the future")
        if self._state.get_group(group_id) is None:
            raise DomainError(ErrorKind.GROUP_NOT_FOUND, f"group {group_id} not found")
        event = Event(
            id=0,
            group_id=group_id,
            forum_topic_id=forum_topic_id,
            question=question,
            event_type=event_type,
            options=cleaned,
            deadline=deadline,
            created_by=created_by,
            created_at=now,
        )
        event = self._state.insert_event(event)
        logger.info(
            "Created %s event %s in group %s by %s",
            event_type.value,
            event.id,
            group_id,
            created_by,
        )
        return event

    def attach_poll(self, event_id: int, poll_id: str, message_id: int) -> None:
        self._state.attach_poll(event_id, poll_id, message_id)

    def edit_event(
        self,
        event_id: int,
        *,
        question: Optional[str] = None,
        options: Optional[Sequence[str]] = None,
        deadline: Optional[datetime] = None,
    ) -> Event:
        event = self.get_event(event_id)
        if not event.is_active:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is resolved")
        if self._state.count_predictions(event_id) > 0:
            raise DomainError(ErrorKind.EVENT_HAS_VOTES, f"event {event_id} already has votes")
        if question is not None:
            event.question = normalize_question(question)
        if options is not None:
            event.options = validate_options(event.event_type, options)
        if deadline is not None:
            if deadline <= self._clock():
                raise validation_error("Deadline must be in the future")
            event.deadline = deadline
        self._state.update_event_content(
            event_id,
            question=event.question,
            options=event.options,
            deadline=event.deadline,
        )
        logger.info("Edited event %s", event_id)
        return event

    def resolve_event(self, event_id: int, correct_option: int) -> Event:
        event = self.get_event(event_id)
        if not event.is_active:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is already resolved")
        if not 0 <= correct_option < len(event.options):
            raise DomainError(
                ErrorKind.INVALID_OPTION,
                f"option {correct_option} is out of range",
                {"options": len(event.options)},
            )
        now = self._clock()
        if not self._state.mark_resolved(event_id, correct_option, now):
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is already resolved")
        event.status = EventStatus.RESOLVED
        event.correct_option = correct_option
        event.resolved_at = now
        logger.info("Resolved event %s with option %s", event_id, correct_option)
        return event

    # Voting ------------------------------------------------------------
    def record_vote(
        self,
        poll_id: str,
        user_id: int,
        option: int,
        display_name: str = "",
    ) -> VoteOutcome:
        """Store (or overwrite) a user's prediction from a poll answer."""

        event = self._state.get_event_by_poll(poll_id)
        if event is None:
            return VoteOutcome(VoteResult.UNKNOWN_POLL)
        if not event.is_active:
            return VoteOutcome(VoteResult.EVENT_CLOSED, event.id)
        now = self._clock()
        if now >= event.deadline:
            logger.info("Ignoring late vote by %s on event %s", user_id, event.id)
            return VoteOutcome(VoteResult.DEADLINE_PASSED, event.id)
        if not self._state.is_active_member(event.group_id, user_id):
            logger.info("Ignoring vote by non-member %s on event %s", user_id, event.id)
            return VoteOutcome(VoteResult.NOT_A_MEMBER, event.id)
        if not 0 <= option < len(event.options):
            return VoteOutcome(VoteResult.INVALID_OPTION, event.id)
        self._state.upsert_prediction(event.id, user_id, option, now)
        self._state.touch_rating(user_id, event.group_id, display_name, now)
        logger.debug("Recorded vote %s by %s on event %s", option, user_id, event.id)
        return VoteOutcome(VoteResult.RECORDED, event.id)

    def retract_vote(self, poll_id: str, user_id: int) -> bool:
        event = self._state.get_event_by_poll(poll_id)
        if event is None or not event.is_active or self._clock() >= event.deadline:
            return False
        removed = self._state.delete_prediction(event.id, user_id)
        if removed:
            logger.debug("Retracted vote by %s on event %s", user_id, event.id)
        return removed


__all__ = [
    "EventManager",
    "VoteOutcome",
    "VoteResult",
    "normalize_question",
    "parse_option_lines",
    "validate_options",
]
