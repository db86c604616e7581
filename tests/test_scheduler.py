"""Tests for MarketScheduler job registration and job bodies."""

from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

import prediction_market.scheduler as scheduler_module
from prediction_market.models import AchievementCode
from prediction_market.scheduler import MarketScheduler

from conftest import GROUP_CHAT_ID


class FakeBackgroundScheduler:
    """Records jobs instead of running them on a thread."""

    def __init__(self, timezone=None) -> None:
        self.timezone = timezone
        self.jobs: dict = {}
        self.started = False
        self.stopped = False

    def add_job(self, func, trigger, **kwargs):
        self.jobs[kwargs["id"]] = (func, trigger, kwargs)

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.stopped = True


@pytest.fixture
def scheduler(market, monkeypatch):
    monkeypatch.setattr(scheduler_module, "BackgroundScheduler", FakeBackgroundScheduler)
    return MarketScheduler(market.app)


def test_start_registers_every_job(scheduler):
    scheduler.start()
    jobs = scheduler.scheduler.jobs

    assert scheduler.scheduler.started
    assert set(jobs) == {
        "deadline_reminders",
        "organizer_notifications",
        "weekly_analyst",
        "telemetry_retention",
    }
    func, trigger, kwargs = jobs["deadline_reminders"]
    assert (func, trigger, kwargs["minutes"]) == (scheduler.send_deadline_reminders, "interval", 10)
    _, trigger, kwargs = jobs["weekly_analyst"]
    assert trigger == "cron"
    assert (kwargs["day_of_week"], kwargs["hour"], kwargs["minute"]) == ("mon", 0, 5)

    scheduler.shutdown()
    assert scheduler.scheduler.stopped


def test_reminder_and_nudge_jobs(market, scheduler):
    group = market.group(members=[10])
    market.event(group, creator=10, deadline=market.clock() + timedelta(hours=2))

    assert scheduler.send_deadline_reminders() == 1
    assert market.last_text(GROUP_CHAT_ID).startswith("⏰ Voting closes")
    assert scheduler.notify_organizers() == 0

    market.clock.advance(hours=3)
    assert scheduler.notify_organizers() == 1


def test_weekly_job_announces_the_winner(market, scheduler, telemetry):
    group = market.group(members=[10])
    market.complete_participations(group, 10, 1)
    market.clock.advance(days=7)

    assert scheduler.award_weekly_analysts() == {group.id: 10}

    assert "Weekly Analyst" in market.last_text(10)
    codes = [a.code for a in market.state.achievements_for(10, group.id)]
    assert AchievementCode.WEEKLY_ANALYST in codes
    telemetry.flush()
    with sqlite3.connect(telemetry.db_path) as conn:
        row = conn.execute(
            "SELECT COUNT(*) FROM metrics WHERE metric_type = 'system_event' AND name = 'weekly_analyst'"
        ).fetchone()
    assert row[0] == 1


def test_failing_job_is_logged_and_contained(market, scheduler, monkeypatch, telemetry):
    def broken(now):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(market.services.notifications, "send_deadline_reminders", broken)

    assert scheduler.send_deadline_reminders() == 0
    telemetry.flush()
    assert telemetry.get_error_summary().get("scheduler_job") == 1


def test_telemetry_retention_job(scheduler, telemetry):
    telemetry.track_cleanup("deleted")
    telemetry.flush()
    assert scheduler.prune_telemetry() == 0
