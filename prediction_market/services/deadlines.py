"""Deadline parsing, presets and display helpers."""
from __future__ import annotations

from datetime import datetime, time, timedelta, tzinfo
from typing import Sequence

from ..errors import validation_error

DEADLINE_FORMAT = "%d.%m.%Y %H:%M"
DEFAULT_PRESETS = (1, 3, 7, 14, 30, 90, 180, 365)


def parse_deadline(text: str, tz: tzinfo, now: datetime) -> datetime:
    """Parse ``DD.MM.YYYY HH:MM`` in ``tz``; the result must lie in the future."""

    raw = " ".join(text.split())
    try:
        naive = datetime.strptime(raw, DEADLINE_FORMAT)
    except ValueError:
        example = (now.astimezone(tz) + timedelta(days=7)).replace(hour=12, minute=0)
        raise validation_error(
            "Deadline must look like DD.MM.YYYY HH:MM",
            example=example.strftime(DEADLINE_FORMAT),
        ) from None
    deadline = naive.replace(tzinfo=tz)
    ensure_future(deadline, now)
    return deadline


def preset_deadline(days: int, tz: tzinfo, now: datetime, *, hour: int = 12) -> datetime:
    """``now + days`` in local time, normalised to ``hour``:00."""

    local_day = (now.astimezone(tz) + timedelta(days=days)).date()
    return datetime.combine(local_day, time(hour=hour), tzinfo=tz)


def ensure_future(deadline: datetime, now: datetime) -> None:
    if deadline <= now:
        raise validation_error("Deadline must be in the future")


def validate_preset(days: int, presets: Sequence[int] = DEFAULT_PRESETS) -> None:
    if days not in presets:
        raise validation_error("Unknown deadline preset", days=days)


def format_deadline(deadline: datetime, tz: tzinfo) -> str:
    return deadline.astimezone(tz).strftime(DEADLINE_FORMAT)


def preset_label(days: int) -> str:
    if days % 365 == 0:
        years = days // 365
        return "1 year" if years == 1 else f"{years} years"
    if days >= 30 and days % 30 == 0:
        months = days // 30
        return "1 month" if months == 1 else f"{months} months"
    if days % 7 == 0:
        weeks = days // 7
        return "1 week" if weeks == 1 else f"{weeks} weeks"
    return "1 day" if days == 1 else f"{days} days"


__all__ = [
    "DEADLINE_FORMAT",
    "DEFAULT_PRESETS",
    "ensure_future",
    "format_deadline",
    "parse_deadline",
    "preset_deadline",
    "preset_label",
    "validate_preset",
]
