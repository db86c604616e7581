"""Tests for telemetry and metrics tracking."""
import asyncio
import json
import sqlite3
import tempfile
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from prediction_market.telemetry import (
    MetricEvent,
    MetricType,
    TelemetryCollector,
    get_telemetry,
    set_telemetry,
    track_duration,
)
from prediction_market.telemetry_decorator import track_command


def test_metric_event_creation():
    """Test MetricEvent dataclass creation."""
    event = MetricEvent(
        timestamp=time.time(),
        metric_type=MetricType.FLOW_TRANSITION,
        name="event_creation",
        value=1.0,
        tags={"from": "start"},
        metadata={"user": 5},
    )

    assert event.metric_type == MetricType.FLOW_TRANSITION
    assert event.tags["from"] == "start"
    assert event.metadata["user"] == 5


def test_telemetry_collector_init():
    """Test TelemetryCollector initialization."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_telemetry.db"
        collector = TelemetryCollector(db_path)

        assert collector.db_path == db_path
        assert db_path.exists()
        assert len(collector._metrics_buffer) == 0


def test_track_command():
    """Command usage is buffered, then stored with its tags."""
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_command("create_event", "10", "guild1", success=True, duration_ms=150.5, channel_id="c1")
        collector.track_command("create_event", "11", "dm", success=False)

        assert len(collector._metrics_buffer) == 2
        collector.flush()
        assert collector._metrics_buffer == []

        stats = collector.get_command_stats()
        assert stats["create_event"]["usage_count"] == 2
        assert stats["create_event"]["unique_users"] == 2
        assert stats["create_event"]["success_rate"] == pytest.approx(0.5)


def test_flow_summary_counts_starts_and_finishes():
    """Flow transitions from start and to end are counted separately."""
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        collector.track_flow_transition("event_creation", None, "event_creation.ask_question", 1)
        collector.track_flow_transition(
            "event_creation", "event_creation.ask_question", "event_creation.ask_event_type", 1
        )
        collector.track_flow_transition("event_creation", "event_creation.confirm", None, 1)
        collector.track_flow_transition("group_creation", None, "group_creation.ask_name", 2)
        collector.flush()

        summary = collector.get_flow_summary()
        assert summary["event_creation"] == {"started": 1, "finished": 1, "transitions": 3}
        assert summary["group_creation"]["finished"] == 0


def test_error_summary_and_metadata():
    """Errors are grouped by type; details land in the metadata column."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        collector = TelemetryCollector(db_path)
        collector.track_error("invalid_callback", user_id="10", error_details="bogus")
        collector.track_error("invalid_callback")
        collector.track_error("transport_failure", command="create_event")
        collector.flush()

        assert collector.get_error_summary() == {"invalid_callback": 2, "transport_failure": 1}
        with sqlite3.connect(db_path) as conn:
            metadata = conn.execute(
                "SELECT metadata FROM metrics WHERE name = 'invalid_callback' ORDER BY id LIMIT 1"
            ).fetchone()[0]
        assert json.loads(metadata) == {"error_details": "bogus"}


def test_domain_trackers_record_their_metric_types():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        collector.track_cleanup("abandoned", retried=True)
        collector.track_scoring(event_id=3, group_id=1, participants=4, total_delta=20)
        collector.track_achievement("sharpshooter", 10, 1)
        collector.track_system_event("weekly_analyst", source="scheduler", reason="1 awarded")

        types = [event.metric_type for event in collector._metrics_buffer]
        assert types == [
            MetricType.CLEANUP,
            MetricType.SCORING,
            MetricType.ACHIEVEMENT,
            MetricType.SYSTEM_EVENT,
        ]
        assert collector._metrics_buffer[0].tags == {"retried": "true"}
        assert collector._metrics_buffer[1].value == 4.0


def test_buffer_auto_flushes_at_one_hundred():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        for _ in range(100):
            collector.track_cleanup("deleted")

        assert collector._metrics_buffer == []
        with sqlite3.connect(collector.db_path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM metrics").fetchone()[0] == 100


def test_cleanup_old_data():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        collector.track_cleanup("deleted")
        collector._metrics_buffer[0].timestamp = time.time() - 40 * 86400
        collector.track_cleanup("deleted")
        collector.flush()

        assert collector.cleanup_old_data(days_to_keep=30) == 1


def test_track_duration_records_performance_and_errors(telemetry):
    with track_duration("scheduler.job", {"source": "test"}):
        pass
    with pytest.raises(ValueError):
        with track_duration("scheduler.job"):
            raise ValueError("boom")

    names = [(event.metric_type, event.name) for event in telemetry._metrics_buffer]
    assert names == [
        (MetricType.PERFORMANCE, "scheduler.job"),
        (MetricType.PERFORMANCE, "scheduler.job"),
        (MetricType.ERROR_RATE, "ValueError"),
    ]


def test_singleton_can_be_replaced(tmp_path):
    replacement = TelemetryCollector(tmp_path / "other.db")
    set_telemetry(replacement)
    assert get_telemetry() is replacement


def test_track_command_decorator(telemetry):
    """The decorator records usage for successful and failing commands."""
    interaction = SimpleNamespace(user=SimpleNamespace(id=42), guild_id=None, channel_id=7)

    @track_command
    async def events(inter):
        return "ok"

    @track_command
    async def broken(inter):
        raise RuntimeError("nope")

    assert asyncio.run(events(interaction)) == "ok"
    with pytest.raises(RuntimeError):
        asyncio.run(broken(interaction))

    telemetry.flush()
    stats = telemetry.get_command_stats()
    assert stats["events"]["success_rate"] == 1.0
    assert stats["broken"]["success_rate"] == 0.0
    assert telemetry.get_error_summary() == {"RuntimeError": 1}


def test_track_command_uses_the_registered_name(telemetry):
    """The slash command's name wins over the handler name unless one is given."""
    interaction = SimpleNamespace(
        user=SimpleNamespace(id=42),
        guild_id=900,
        channel_id=7,
        command=SimpleNamespace(qualified_name="resolve_event"),
    )

    @track_command
    async def handler(inter):
        return None

    @track_command(name="leaderboard")
    async def rating(inter):
        return None

    asyncio.run(handler(interaction))
    asyncio.run(rating(interaction))

    telemetry.flush()
    assert set(telemetry.get_command_stats()) == {"resolve_event", "leaderboard"}
    with sqlite3.connect(telemetry.db_path) as conn:
        tags = json.loads(conn.execute("SELECT tags FROM metrics LIMIT 1").fetchone()[0])
    assert tags["guild_id"] == "900"
    assert tags["channel_id"] == "7"


def test_generate_report_bundles_the_summaries(telemetry):
    telemetry.track_command("events", "10", "dm")
    telemetry.track_flow_transition("rename", None, "rename.ask_group_name", 1)
    telemetry.track_flow_transition("rename", "rename.ask_group_name", None, 1)
    telemetry.track_error("unauthorized", command="list_groups", user_id="10")

    report = telemetry.generate_report()

    assert telemetry._metrics_buffer == []
    assert report["total_events"] == 4
    assert report["unique_users"] == 2
    assert report["command_stats"]["events"]["usage_count"] == 1
    assert report["flows"] == {"rename": {"started": 1, "finished": 1, "transitions": 2}}
    assert report["errors"] == {"unauthorized": 1}
    assert report["uptime_seconds"] >= 0
