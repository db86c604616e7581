"""Core data models for the prediction market."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


BINARY_OPTIONS = ["Yes", "No"]
PROBABILITY_OPTIONS = ["0-25%", "25-50%", "50-75%", "75-100%"]
MIN_OPTIONS = 2
MAX_OPTIONS = 6


class EventType(str, Enum):
    BINARY = "binary"
    MULTI_OPTION = "multi_option"
    PROBABILITY = "probability"

    @property
    def fixed_options(self) -> Optional[List[str]]:
        """Return the preset option list, or None when options are free text."""

        if self is EventType.BINARY:
            return list(BINARY_OPTIONS)
        if self is EventType.PROBABILITY:
            return list(PROBABILITY_OPTIONS)
        return None


class EventStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class GroupStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class AchievementCode(str, Enum):
    SHARPSHOOTER = "sharpshooter"
    PROPHET = "prophet"
    RISK_TAKER = "risk_taker"
    WEEKLY_ANALYST = "weekly_analyst"
    VETERAN = "veteran"
    EVENT_ORGANIZER = "event_organizer"
    ACTIVE_ORGANIZER = "active_organizer"
    MASTER_ORGANIZER = "master_organizer"


@dataclass
class Group:
    id: int
    chat_id: int
    name: str
    created_by: int
    created_at: datetime
    is_forum: bool = False
    status: GroupStatus = GroupStatus.ACTIVE


@dataclass
class GroupMembership:
    group_id: int
    user_id: int
    joined_at: datetime
    status: MembershipStatus = MembershipStatus.ACTIVE


@dataclass
class ForumTopic:
    id: int
    group_id: int
    thread_id: int
    name: str
    created_at: datetime


@dataclass
class Event:
    """A forecast question published as a poll to a group or forum topic."""

    id: int
    group_id: int
    question: str
    event_type: EventType
    options: List[str]
    deadline: datetime
    created_by: int
    created_at: datetime
    status: EventStatus = EventStatus.ACTIVE
    forum_topic_id: Optional[int] = None
    poll_id: Optional[str] = None
    poll_message_id: Optional[int] = None
    correct_option: Optional[int] = None
    resolved_at: Optional[datetime] = None
    scored: bool = False

    @property
    def is_active(self) -> bool:
        return self.status is EventStatus.ACTIVE


@dataclass
class Prediction:
    event_id: int
    user_id: int
    option: int
    recorded_at: datetime


@dataclass
class Rating:
    user_id: int
    group_id: int
    username: str = ""
    score: int = 0
    correct_count: int = 0
    wrong_count: int = 0
    streak: int = 0

    @property
    def participations(self) -> int:
        return self.correct_count + self.wrong_count

    @property
    def accuracy(self) -> float:
        total = self.participations
        if total == 0:
            return 0.0
        return self.correct_count / total


@dataclass
class Achievement:
    user_id: int
    group_id: int
    code: AchievementCode
    earned_at: datetime


@dataclass
class ScoreDelta:
    """Points awarded to one predictor when an event resolves."""

    user_id: int
    option: int
    correct: bool
    delta: int
    breakdown: List[str] = field(default_factory=list)


__all__ = [
    "Achievement",
    "AchievementCode",
    "BINARY_OPTIONS",
    "Event",
    "EventStatus",
    "EventType",
    "ForumTopic",
    "Group",
    "GroupMembership",
    "GroupStatus",
    "MAX_OPTIONS",
    "MIN_OPTIONS",
    "MembershipStatus",
    "PROBABILITY_OPTIONS",
    "Prediction",
    "Rating",
    "ScoreDelta",
]
