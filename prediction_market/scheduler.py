"""Background jobs: deadline reminders, organizer nudges and weekly awards."""
from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Dict, Optional, TypeVar

from apscheduler.schedulers.background import BackgroundScheduler

from .app import MarketApp
from .errors import DomainError
from .models import AchievementCode
from .telemetry import get_telemetry, track_duration

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MarketScheduler:
    """Runs the periodic jobs on an APScheduler background thread."""

    def __init__(
        self,
        app: MarketApp,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.app = app
        self._clock = clock or app.services.clock
        settings = app.settings
        self._interval_minutes = settings.reminder_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def start(self) -> None:
        self.scheduler.add_job(
            self.send_deadline_reminders,
            "interval",
            minutes=self._interval_minutes,
            id="deadline_reminders",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.notify_organizers,
            "interval",
            minutes=self._interval_minutes,
            id="organizer_notifications",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.award_weekly_analysts,
            "cron",
            day_of_week="mon",
            hour=0,
            minute=5,
            id="weekly_analyst",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.prune_telemetry,
            "cron",
            hour=3,
            minute=0,
            id="telemetry_retention",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Market scheduler started (every %d minutes)", self._interval_minutes)

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)

    # Jobs ----------------------------------------------------------------
    def _run(self, name: str, job: Callable[[], T], default: T) -> T:
        try:
            with track_duration(f"scheduler.{name}"):
                return job()
        except (DomainError, sqlite3.Error) as exc:
            logger.exception("Scheduled job %s failed", name)
            get_telemetry().track_error("scheduler_job", command=name, error_details=str(exc))
            return default

    def send_deadline_reminders(self) -> int:
        notifications = self.app.services.notifications
        return self._run("deadline_reminders", lambda: notifications.send_deadline_reminders(self._clock()), 0)

    def notify_organizers(self) -> int:
        notifications = self.app.services.notifications
        return self._run("organizer_notifications", lambda: notifications.notify_organizers(self._clock()), 0)

    def prune_telemetry(self) -> int:
        return self._run("telemetry_retention", get_telemetry().cleanup_old_data, 0)

    def award_weekly_analysts(self) -> Dict[int, int]:
        return self._run("weekly_analyst", self._award_weekly_analysts, {})

    def _award_weekly_analysts(self) -> Dict[int, int]:
        services = self.app.services
        group_ids = [group.id for group in services.state.list_groups()]
        winners = services.achievements.award_weekly_analysts(group_ids, self._clock())
        for group_id, user_id in winners.items():
            rating = services.state.get_rating(user_id, group_id)
            services.notifications.notify_achievements(
                user_id,
                group_id,
                [AchievementCode.WEEKLY_ANALYST],
                rating.username if rating else "",
            )
        get_telemetry().track_system_event(
            "weekly_analyst", source="scheduler", reason=f"{len(winners)} awarded"
        )
        return winners


__all__ = ["BackgroundScheduler", "MarketScheduler"]
