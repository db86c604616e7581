"""Telemetry and operational metrics for the prediction market bot."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    COMMAND_USAGE = "command_usage"
    FLOW_TRANSITION = "flow_transition"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    CLEANUP = "cleanup"
    SCORING = "scoring"
    ACHIEVEMENT = "achievement"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry data for the bot."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path(
            os.environ.get("PREDICTION_MARKET_TELEMETRY_DB", "telemetry.db")
        )
        self._init_database()
        self._start_time = time.time()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # Flush to DB every 60 seconds
        self._last_flush = time.time()

    def _init_database(self):
        """Initialize telemetry database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_timestamp
                ON metrics(timestamp DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_command(
        self,
        command_name: str,
        user_id: str,
        guild_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
        channel_id: Optional[str] = None,
    ):
        """Track slash command usage."""
        tags = {
            "user_id": user_id,
            "guild_id": guild_id,
            "success": str(success),
        }
        if channel_id:
            tags["channel_id"] = channel_id

        self.record(
            MetricType.COMMAND_USAGE,
            command_name,
            1.0,
            tags=tags,
            metadata={"duration_ms": duration_ms} if duration_ms else {}
        )

    def track_flow_transition(
        self,
        flow: str,
        from_state: Optional[str],
        to_state: Optional[str],
        user_id: Optional[int] = None,
    ):
        """Track a conversational state machine transition.

        ``to_state`` of None marks a terminal transition (session deleted).
        """
        tags = {
            "flow": flow,
            "from": from_state or "start",
            "to": to_state or "end",
        }
        if user_id is not None:
            tags["user_id"] = str(user_id)
        self.record(MetricType.FLOW_TRANSITION, flow, 1.0, tags=tags)

    def track_error(
        self,
        error_type: str,
        command: Optional[str] = None,
        user_id: Optional[str] = None,
        error_details: Optional[str] = None
    ):
        """Track errors and failures."""
        tags = {}
        if command:
            tags["command"] = command
        if user_id:
            tags["user_id"] = user_id

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None
    ):
        """Track performance metrics."""
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"}
        )

    def track_cleanup(self, outcome: str, retried: bool = False):
        """Track the outcome of a transient message deletion."""
        self.record(
            MetricType.CLEANUP,
            outcome,
            1.0,
            tags={"retried": "true" if retried else "false"},
        )

    def track_scoring(
        self,
        event_id: int,
        group_id: int,
        participants: int,
        total_delta: int,
    ):
        """Track a completed score calculation for a resolved event."""
        self.record(
            MetricType.SCORING,
            "event_scored",
            float(participants),
            tags={"event_id": str(event_id), "group_id": str(group_id)},
            metadata={"total_delta": total_delta},
        )

    def track_achievement(self, code: str, user_id: int, group_id: int):
        """Track an awarded achievement."""
        self.record(
            MetricType.ACHIEVEMENT,
            code,
            1.0,
            tags={"user_id": str(user_id), "group_id": str(group_id)},
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Track operational events such as scheduler jobs."""
        tags: Dict[str, str] = {}
        if source:
            tags["source"] = source
        metadata: Dict[str, Any] = {}
        if reason:
            metadata["reason"] = reason
        self.record(MetricType.SYSTEM_EVENT, event, 1.0, tags=tags, metadata=metadata)

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        # Auto-flush if buffer is getting large or enough time has passed
        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()

            logger.info("Flushed %d metrics to database", len(self._metrics_buffer))
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as e:
            logger.error("Failed to flush metrics: %s", e)

    def get_command_stats(
        self,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None
    ) -> Dict[str, Dict[str, Any]]:
        """Get command usage statistics."""
        query = """
            SELECT
                name as command,
                COUNT(*) as usage_count,
                AVG(CASE WHEN json_extract(tags, '$.success') = 'True'
                    THEN 1 ELSE 0 END) as success_rate,
                COUNT(DISTINCT json_extract(tags, '$.user_id')) as unique_users
            FROM metrics
            WHERE metric_type = ?
        """
        params: List[Any] = [MetricType.COMMAND_USAGE.value]

        if start_time:
            query += " AND timestamp >= ?"
            params.append(start_time)
        if end_time:
            query += " AND timestamp <= ?"
            params.append(end_time)

        query += " GROUP BY name"

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, params)
            results = {}
            for row in cursor.fetchall():
                results[row[0]] = {
                    "usage_count": row[1],
                    "success_rate": row[2],
                    "unique_users": row[3]
                }
            return results

    def get_error_summary(
        self,
        hours: int = 24
    ) -> Dict[str, int]:
        """Get error counts for the last N hours."""
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT name, COUNT(*) as error_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
            ORDER BY error_count DESC
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.ERROR_RATE.value,
                start_time
            ])
            return {row[0]: row[1] for row in cursor.fetchall()}

    def get_flow_summary(self, hours: int = 24) -> Dict[str, Dict[str, int]]:
        """Count transitions per flow, split into started and completed."""
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT name,
                   SUM(CASE WHEN json_extract(tags, '$.from') = 'start' THEN 1 ELSE 0 END),
                   SUM(CASE WHEN json_extract(tags, '$.to') = 'end' THEN 1 ELSE 0 END),
                   COUNT(*)
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """

        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(query, [MetricType.FLOW_TRANSITION.value, start_time]).fetchall()
        return {
            row[0]: {"started": int(row[1] or 0), "finished": int(row[2] or 0), "transitions": int(row[3])}
            for row in rows
        }

    def generate_report(self, hours: int = 24) -> Dict[str, Any]:
        """Bundle command, flow and error summaries for the admin report."""
        self.flush()
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT json_extract(tags, '$.user_id')) FROM metrics"
            ).fetchone()
        return {
            "uptime_seconds": time.time() - self._start_time,
            "total_events": row[0],
            "unique_users": row[1],
            "command_stats": self.get_command_stats(),
            "flows": self.get_flow_summary(hours),
            "errors": self.get_error_summary(hours),
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            conn.commit()

        logger.info("Cleaned up %d old metric events", deleted)
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


def set_telemetry(collector: Optional[TelemetryCollector]) -> None:
    """Replace the singleton collector (used by tests and bootstrap)."""
    global _telemetry
    _telemetry = collector


# Context manager for timing operations
class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(self, operation: str, tags: Optional[Dict[str, str]] = None):
        self.operation = operation
        self.tags = tags or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        telemetry = get_telemetry()
        telemetry.track_performance(self.operation, duration_ms, self.tags)

        # Track error if exception occurred
        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                command=self.operation,
                error_details=str(exc_val)
            )


__all__ = [
    "MetricEvent",
    "MetricType",
    "TelemetryCollector",
    "get_telemetry",
    "set_telemetry",
    "track_duration",
]
