"""Score calculation at event resolution and leaderboard queries.

Scoring is split in two. ``compute_deltas`` is a pure function of the event,
its prediction snapshot and the rules; ``RatingCalculator.calculate_scores``
takes one snapshot, computes the deltas and applies them atomically. Because
the event is flagged as scored in the same transaction, a second call cannot
double-apply points. The chat flow uses ``resolve_and_score``, which also
flips the event to resolved inside that transaction.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import Settings
from .errors import DomainError, ErrorKind
from .models import Event, EventStatus, EventType, Prediction, Rating, ScoreDelta
from .state import MarketState
from .telemetry import TelemetryCollector, get_telemetry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringRules:
    participation_bonus: int = 1
    wrong_penalty: int = 3
    base_points: Dict[str, int] = field(
        default_factory=lambda: {"binary": 10, "multi_option": 15, "probability": 10}
    )
    minority_bonus: int = 5
    minority_threshold: float = 0.4
    early_bonus: int = 3
    early_window: timedelta = timedelta(hours=12)

    @staticmethod
    def from_settings(settings: Settings) -> "ScoringRules":
        return ScoringRules(
            participation_bonus=settings.participation_bonus,
            wrong_penalty=settings.wrong_penalty,
            base_points=dict(settings.base_points),
            minority_bonus=settings.minority_bonus,
            minority_threshold=settings.minority_threshold,
            early_bonus=settings.early_bonus,
            early_window=timedelta(hours=settings.early_window_hours),
        )

    def base_for(self, event_type: EventType) -> int:
        return int(self.base_points[event_type.value])


def is_minority(option_votes: int, total_votes: int, threshold: float) -> bool:
    return total_votes > 0 and option_votes / total_votes < threshold


def compute_deltas(
    event: Event,
    predictions: Sequence[Prediction],
    correct_option: int,
    rules: ScoringRules,
) -> List[ScoreDelta]:
    """Return one ``ScoreDelta`` per prediction, in the snapshot's order."""

    total = len(predictions)
    votes_per_option = Counter(prediction.option for prediction in predictions)
    deltas: List[ScoreDelta] = []
    for prediction in predictions:
        breakdown = [f"participation +{rules.participation_bonus}"]
        points = rules.participation_bonus
        correct = prediction.option == correct_option
        if correct:
            base = rules.base_for(event.event_type)
            points += base
            breakdown.append(f"correct +{base}")
            if is_minority(votes_per_option[prediction.option], total, rules.minority_threshold):
                points += rules.minority_bonus
                breakdown.append(f"minority +{rules.minority_bonus}")
            if prediction.recorded_at - event.created_at <= rules.early_window:
                points += rules.early_bonus
                breakdown.append(f"early +{rules.early_bonus}")
        else:
            points -= rules.wrong_penalty
            breakdown.append(f"wrong -{rules.wrong_penalty}")
        deltas.append(
            ScoreDelta(
                user_id=prediction.user_id,
                option=prediction.option,
                correct=correct,
                delta=points,
                breakdown=breakdown,
            )
        )
    return deltas


class RatingCalculator:
    """Applies resolution deltas and serves group leaderboards."""

    def __init__(
        self,
        state: MarketState,
        rules: Optional[ScoringRules] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._state = state
        self._rules = rules or ScoringRules()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._telemetry = telemetry

    @property
    def rules(self) -> ScoringRules:
        return self._rules

    def calculate_scores(self, event_id: int, correct_option: int) -> List[ScoreDelta]:
        event = self._state.get_event(event_id)
        if event is None:
            raise DomainError(ErrorKind.EVENT_NOT_FOUND, f"event {event_id} not found")
        if event.status is not EventStatus.RESOLVED:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is not resolved yet")
        if event.scored:
            raise DomainError(ErrorKind.ALREADY_SCORED, f"event {event_id} was already scored")
        if not 0 <= correct_option < len(event.options):
            raise DomainError(ErrorKind.INVALID_OPTION, f"option {correct_option} is out of range")
        predictions = self._state.predictions_for_event(event_id)
        deltas = compute_deltas(event, predictions, correct_option, self._rules)
        applied = self._state.apply_score_deltas(event_id, event.group_id, deltas, self._clock())
        if not applied:
            raise DomainError(ErrorKind.ALREADY_SCORED, f"event {event_id} was already scored")
        self._report(event, deltas)
        return deltas

    def resolve_and_score(self, event_id: int, correct_option: int) -> Tuple[Event, List[ScoreDelta]]:
        """Resolve an active event and apply its scores in one transaction."""

        event = self._state.get_event(event_id)
        if event is None:
            raise DomainError(ErrorKind.EVENT_NOT_FOUND, f"event {event_id} not found")
        if not event.is_active:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is already resolved")
        if not 0 <= correct_option < len(event.options):
            raise DomainError(
                ErrorKind.INVALID_OPTION,
                f"option {correct_option} is out of range",
                {"options": len(event.options)},
            )
        predictions = self._state.predictions_for_event(event_id)
        deltas = compute_deltas(event, predictions, correct_option, self._rules)
        now = self._clock()
        applied = self._state.apply_score_deltas(
            event_id, event.group_id, deltas, now, resolve_with=correct_option
        )
        if not applied:
            raise DomainError(ErrorKind.EVENT_NOT_ACTIVE, f"event {event_id} is already resolved")
        event.status = EventStatus.RESOLVED
        event.correct_option = correct_option
        event.resolved_at = now
        event.scored = True
        logger.info("Resolved event %s with option %s", event_id, correct_option)
        self._report(event, deltas)
        return event, deltas

    def _report(self, event: Event, deltas: Sequence[ScoreDelta]) -> None:
        total = sum(delta.delta for delta in deltas)
        logger.info(
            "Scored event %s: %d predictions, net %+d points",
            event.id,
            len(deltas),
            total,
        )
        (self._telemetry or get_telemetry()).track_scoring(
            event.id, event.group_id, len(deltas), total
        )

    def get_top_ratings(self, group_id: int, limit: int) -> List[Rating]:
        return self._state.top_ratings(group_id, limit)

    def get_user_rating(self, user_id: int, group_id: int) -> Optional[Rating]:
        return self._state.get_rating(user_id, group_id)


__all__ = [
    "RatingCalculator",
    "ScoringRules",
    "compute_deltas",
    "is_minority",
]
