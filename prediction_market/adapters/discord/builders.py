"""Discord view/poll builders.

Pure-ish construction helpers for Discord UI objects. ``build_view`` must run
inside the bot's event loop because ``discord.ui.View`` binds to it.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional, Sequence

import discord

from ...transport import ButtonRows

MAX_BUTTON_LABEL = 80
MAX_CUSTOM_ID = 100
MAX_ROWS = 5
MAX_ROW_WIDTH = 5
MAX_POLL_QUESTION = 300
MAX_POLL_ANSWER = 55
# Discord polls run for whole hours, between one hour and 32 days.
MIN_POLL_HOURS = 1
MAX_POLL_HOURS = 768


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def build_view(rows: Optional[ButtonRows]) -> Optional[discord.ui.View]:
    """Turn rows of transport buttons into a persistent-looking component view.

    Button presses are delivered through ``on_interaction`` using the
    ``custom_id``, so the view carries no callbacks of its own.
    """

    if not rows:
        return None
    view = discord.ui.View(timeout=None)
    for row_index, row in enumerate(rows[:MAX_ROWS]):
        for button in list(row)[:MAX_ROW_WIDTH]:
            if len(button.data) > MAX_CUSTOM_ID:
                raise ValueError(f"button payload too long: {button.data!r}")
            view.add_item(
                discord.ui.Button(
                    label=_truncate(button.label, MAX_BUTTON_LABEL),
                    custom_id=button.data,
                    style=discord.ButtonStyle.secondary,
                    row=row_index,
                )
            )
    return view


def poll_duration_hours(
    closes_at: Optional[datetime], now: datetime, max_hours: int = MAX_POLL_HOURS
) -> int:
    """Whole hours until ``closes_at``, rounded up and clamped to Discord's range."""

    ceiling = max(MIN_POLL_HOURS, min(max_hours, MAX_POLL_HOURS))
    if closes_at is None:
        return ceiling
    hours = math.ceil((closes_at - now).total_seconds() / 3600)
    return max(MIN_POLL_HOURS, min(ceiling, hours))


def build_poll(question: str, options: Sequence[str], duration_hours: int) -> discord.Poll:
    poll = discord.Poll(
        question=_truncate(question, MAX_POLL_QUESTION),
        duration=timedelta(hours=duration_hours),
    )
    for option in options:
        poll.add_answer(text=_truncate(option, MAX_POLL_ANSWER))
    return poll


__all__ = ["MAX_POLL_HOURS", "build_poll", "build_view", "poll_duration_hours"]
