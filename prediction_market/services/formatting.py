"""Plain-text rendering for prompts, summaries and broadcasts."""
from __future__ import annotations

from datetime import tzinfo
from typing import Dict, Iterable, List, Optional, Sequence

from ..models import AchievementCode, Event, EventType, Rating, ScoreDelta
from .deadlines import format_deadline

ACHIEVEMENT_TITLES: Dict[AchievementCode, str] = {
    AchievementCode.SHARPSHOOTER: "Sharpshooter",
    AchievementCode.PROPHET: "Prophet",
    AchievementCode.RISK_TAKER: "Risk Taker",
    AchievementCode.WEEKLY_ANALYST: "Weekly Analyst",
    AchievementCode.VETERAN: "Veteran",
    AchievementCode.EVENT_ORGANIZER: "Event Organizer",
    AchievementCode.ACTIVE_ORGANIZER: "Active Organizer",
    AchievementCode.MASTER_ORGANIZER: "Master Organizer",
}

ACHIEVEMENT_DESCRIPTIONS: Dict[AchievementCode, str] = {
    AchievementCode.SHARPSHOOTER: "3 correct predictions in a row",
    AchievementCode.PROPHET: "10 correct predictions in a row",
    AchievementCode.RISK_TAKER: "3 correct minority predictions in a row",
    AchievementCode.WEEKLY_ANALYST: "top scorer of the week",
    AchievementCode.VETERAN: "50 predictions made",
    AchievementCode.EVENT_ORGANIZER: "first event created",
    AchievementCode.ACTIVE_ORGANIZER: "5 events created",
    AchievementCode.MASTER_ORGANIZER: "20 events created",
}

EVENT_TYPE_LABELS: Dict[EventType, str] = {
    EventType.BINARY: "Yes / No",
    EventType.MULTI_OPTION: "Multiple choice",
    EventType.PROBABILITY: "Probability",
}

_MAX_MESSAGE_LENGTH = 1900


def clamp_text(text: str) -> str:
    """Ensure chat-compatible message length."""

    if len(text) <= _MAX_MESSAGE_LENGTH:
        return text
    return text[: _MAX_MESSAGE_LENGTH - 1].rstrip() + "…"


def format_lines(lines: Iterable[Optional[str]]) -> str:
    return clamp_text("\n".join(line for line in lines if line is not None))


def achievement_line(code: AchievementCode) -> str:
    return f"🏆 {ACHIEVEMENT_TITLES[code]}: {ACHIEVEMENT_DESCRIPTIONS[code]}"


def numbered_options(options: Sequence[str]) -> List[str]:
    return [f"{index + 1}. {option}" for index, option in enumerate(options)]


def event_summary(
    *,
    question: str,
    event_type: EventType,
    options: Sequence[str],
    deadline,
    tz: tzinfo,
    group_name: Optional[str] = None,
    header: Optional[str] = None,
) -> str:
    lines: List[Optional[str]] = [header] if header else []
    if group_name:
        lines.append(f"Group: {group_name}")
    lines.append(f"Question: {question}")
    lines.append(f"Type: {EVENT_TYPE_LABELS[event_type]}")
    lines.append("Options:")
    lines.extend(numbered_options(options))
    if deadline is not None:
        lines.append(f"Deadline: {format_deadline(deadline, tz)}")
    return format_lines(lines)


def edit_diff(
    *,
    changed: Sequence[str],
    before: Dict[str, str],
    after: Dict[str, str],
) -> str:
    if not changed:
        return "No changes were made."
    lines = ["Event updated:"]
    for name in changed:
        lines.append(f"{name.capitalize()}: {before[name]} → {after[name]}")
    return format_lines(lines)


def results_message(
    event: Event,
    distribution: Sequence[int],
    deltas: Sequence[ScoreDelta],
    names: Dict[int, str],
) -> str:
    total = sum(distribution)
    correct = event.correct_option if event.correct_option is not None else -1
    lines: List[Optional[str]] = [f"✅ Event resolved: {event.question}"]
    for index, option in enumerate(event.options):
        votes = distribution[index] if index < len(distribution) else 0
        share = (votes / total * 100) if total else 0.0
        marker = "✔" if index == correct else "•"
        lines.append(f"{marker} {option}: {votes} ({share:.0f}%)")
    winners = sorted((d for d in deltas if d.correct), key=lambda d: (-d.delta, d.user_id))
    if winners:
        lines.append("Top forecasters:")
        for delta in winners[:5]:
            lines.append(f"  {names.get(delta.user_id) or delta.user_id}: {delta.delta:+d}")
    else:
        lines.append("Nobody predicted this one.")
    lines.append(f"Participants: {len(deltas)}")
    return format_lines(lines)


def rating_table(ratings: Sequence[Rating], title: str = "Leaderboard") -> str:
    if not ratings:
        return f"{title}\nNo ratings yet."
    lines = [title]
    for position, rating in enumerate(ratings, start=1):
        name = rating.username or str(rating.user_id)
        lines.append(
            f"{position}. {name}: {rating.score} pts "
            f"({rating.correct_count}/{rating.participations} correct, streak {rating.streak})"
        )
    return format_lines(lines)


def participation_denied(required: int, current: int) -> str:
    remaining = max(0, required - current)
    return (
        f"You need {required} completed predictions to create events. "
        f"You have {current}; {remaining} more to go."
    )


__all__ = [
    "ACHIEVEMENT_DESCRIPTIONS",
    "ACHIEVEMENT_TITLES",
    "EVENT_TYPE_LABELS",
    "achievement_line",
    "clamp_text",
    "edit_diff",
    "event_summary",
    "format_lines",
    "numbered_options",
    "participation_denied",
    "rating_table",
    "results_message",
]
