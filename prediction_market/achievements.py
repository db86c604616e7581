"""Achievement evaluation and awarding.

Evaluation is a pure predicate over an ``AchievementSnapshot`` of the
user's current state in one group; awarding inserts only codes that are
not yet stored. Notifications are a separate concern handled by
``NotificationService``, so the tracker can be called redundantly (once per
participant per resolution, again from the weekly job) without duplicate
awards or duplicate messages.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .config import Settings
from .models import AchievementCode, Rating
from .scoring import is_minority
from .state import MarketState
from .telemetry import TelemetryCollector, get_telemetry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementRules:
    sharpshooter_streak: int = 3
    prophet_streak: int = 10
    veteran_participations: int = 50
    risk_taker_run: int = 3
    minority_threshold: float = 0.4
    event_organizer: int = 1
    active_organizer: int = 5
    master_organizer: int = 20

    @staticmethod
    def from_settings(settings: Settings) -> "AchievementRules":
        organizer = settings.organizer_thresholds
        return AchievementRules(
            sharpshooter_streak=settings.sharpshooter_streak,
            prophet_streak=settings.prophet_streak,
            veteran_participations=settings.veteran_participations,
            risk_taker_run=settings.risk_taker_run,
            minority_threshold=settings.minority_threshold,
            event_organizer=organizer["event_organizer"],
            active_organizer=organizer["active_organizer"],
            master_organizer=organizer["master_organizer"],
        )


@dataclass(frozen=True)
class AchievementSnapshot:
    """Everything the predicates need about one ``(user, group)``."""

    streak: int = 0
    participations: int = 0
    minority_run: int = 0
    events_created: int = 0
    weekly_leader: bool = False


def longest_minority_run(
    history: Iterable[Tuple[bool, int, int]], threshold: float
) -> int:
    """Longest run of consecutive correct minority predictions.

    ``history`` rows are ``(correct, option_votes, total_votes)`` in
    resolution order. A wrong or non-minority prediction breaks the run.
    """

    best = current = 0
    for correct, option_votes, total_votes in history:
        if correct and is_minority(option_votes, total_votes, threshold):
            current += 1
            best = max(best, current)
        else:
            current = 0
    return best


def evaluate(snapshot: AchievementSnapshot, rules: AchievementRules) -> FrozenSet[AchievementCode]:
    earned = set()
    if snapshot.streak >= rules.sharpshooter_streak:
        earned.add(AchievementCode.SHARPSHOOTER)
    if snapshot.streak >= rules.prophet_streak:
        earned.add(AchievementCode.PROPHET)
    if snapshot.participations >= rules.veteran_participations:
        earned.add(AchievementCode.VETERAN)
    if snapshot.minority_run >= rules.risk_taker_run:
        earned.add(AchievementCode.RISK_TAKER)
    if snapshot.weekly_leader:
        earned.add(AchievementCode.WEEKLY_ANALYST)
    earned.update(evaluate_creator(snapshot.events_created, rules))
    return frozenset(earned)


def evaluate_creator(events_created: int, rules: AchievementRules) -> FrozenSet[AchievementCode]:
    thresholds = {
        AchievementCode.EVENT_ORGANIZER: rules.event_organizer,
        AchievementCode.ACTIVE_ORGANIZER: rules.active_organizer,
        AchievementCode.MASTER_ORGANIZER: rules.master_organizer,
    }
    return frozenset(code for code, needed in thresholds.items() if events_created >= needed)


def newly_earned(
    earned: Iterable[AchievementCode], existing: Iterable[AchievementCode]
) -> List[AchievementCode]:
    """Codes in ``earned`` but not ``existing``, in a stable order."""

    have = set(existing)
    order = list(AchievementCode)
    return sorted((code for code in set(earned) if code not in have), key=order.index)


def previous_week_window(now: datetime) -> Tuple[datetime, datetime]:
    """``[Monday 00:00, next Monday 00:00)`` UTC of the ISO week before ``now``."""

    today = now.astimezone(timezone.utc).date()
    this_monday: date = today - timedelta(days=today.weekday())
    start = datetime.combine(this_monday - timedelta(days=7), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


class AchievementTracker:
    """Builds snapshots, evaluates predicates and stores new awards."""

    def __init__(
        self,
        state: MarketState,
        rules: Optional[AchievementRules] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._state = state
        self._rules = rules or AchievementRules()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._telemetry = telemetry

    @property
    def rules(self) -> AchievementRules:
        return self._rules

    def weekly_leader(self, group_id: int, now: Optional[datetime] = None) -> Optional[int]:
        """Top positive scorer of the previous week in the group, if any."""

        start, end = previous_week_window(now or self._clock())
        totals = self._state.weekly_scores(group_id, start, end)
        if not totals:
            return None
        user_id, total = totals[0]
        return user_id if total > 0 else None

    def snapshot(self, user_id: int, group_id: int) -> AchievementSnapshot:
        rating: Optional[Rating] = self._state.get_rating(user_id, group_id)
        history = self._state.resolved_prediction_history(user_id, group_id)
        return AchievementSnapshot(
            streak=rating.streak if rating else 0,
            participations=rating.participations if rating else 0,
            minority_run=longest_minority_run(history, self._rules.minority_threshold),
            events_created=self._state.count_events_created(user_id, group_id),
            weekly_leader=self.weekly_leader(group_id) == user_id,
        )

    def check_and_award(self, user_id: int, group_id: int) -> List[AchievementCode]:
        """Award every satisfied, not-yet-held code. Returns the new ones."""

        earned = evaluate(self.snapshot(user_id, group_id), self._rules)
        return self._award(user_id, group_id, earned)

    def check_creator_achievements(self, user_id: int, group_id: int) -> List[AchievementCode]:
        created = self._state.count_events_created(user_id, group_id)
        earned = evaluate_creator(created, self._rules)
        return self._award(user_id, group_id, earned)

    def award_weekly_analysts(
        self, group_ids: Sequence[int], now: Optional[datetime] = None
    ) -> Dict[int, int]:
        """Award last week's leader in each group. Returns ``{group: user}``."""

        winners: Dict[int, int] = {}
        for group_id in group_ids:
            leader = self.weekly_leader(group_id, now)
            if leader is None:
                continue
            if self._award(leader, group_id, {AchievementCode.WEEKLY_ANALYST}):
                winners[group_id] = leader
        return winners

    def _award(
        self, user_id: int, group_id: int, earned: Iterable[AchievementCode]
    ) -> List[AchievementCode]:
        existing = [a.code for a in self._state.achievements_for(user_id, group_id)]
        candidates = newly_earned(earned, existing)
        awarded: List[AchievementCode] = []
        now = self._clock()
        for code in candidates:
            if self._state.insert_achievement(user_id, group_id, code, now):
                awarded.append(code)
                logger.info("Awarded %s to %s in group %s", code.value, user_id, group_id)
                (self._telemetry or get_telemetry()).track_achievement(code.value, user_id, group_id)
        return awarded


__all__ = [
    "AchievementRules",
    "AchievementSnapshot",
    "AchievementTracker",
    "evaluate",
    "evaluate_creator",
    "longest_minority_run",
    "newly_earned",
    "previous_week_window",
]
