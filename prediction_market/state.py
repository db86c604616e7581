"""Persistent market state backed by SQLite."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .models import (
    Achievement,
    AchievementCode,
    Event,
    EventStatus,
    EventType,
    ForumTopic,
    Group,
    GroupMembership,
    GroupStatus,
    MembershipStatus,
    Prediction,
    Rating,
    ScoreDelta,
)

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id INTEGER NOT NULL UNIQUE,
    name TEXT NOT NULL,
    is_forum INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS group_memberships (
    group_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (group_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_group_memberships_user
    ON group_memberships (user_id, status);
CREATE TABLE IF NOT EXISTS forum_topics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL,
    thread_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (group_id, thread_id)
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL,
    forum_topic_id INTEGER,
    question TEXT NOT NULL,
    event_type TEXT NOT NULL,
    options TEXT NOT NULL,
    deadline TEXT NOT NULL,
    status TEXT NOT NULL,
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    poll_id TEXT,
    poll_message_id INTEGER,
    correct_option INTEGER,
    resolved_at TEXT,
    scored INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_events_group_status
    ON events (group_id, status);
CREATE INDEX IF NOT EXISTS idx_events_poll
    ON events (poll_id);
CREATE TABLE IF NOT EXISTS predictions (
    event_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    option INTEGER NOT NULL,
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (event_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_predictions_user
    ON predictions (user_id);
CREATE TABLE IF NOT EXISTS ratings (
    user_id INTEGER NOT NULL,
    group_id INTEGER NOT NULL,
    username TEXT NOT NULL DEFAULT '',
    score INTEGER NOT NULL DEFAULT 0,
    correct_count INTEGER NOT NULL DEFAULT 0,
    wrong_count INTEGER NOT NULL DEFAULT 0,
    streak INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, group_id)
);
CREATE INDEX IF NOT EXISTS idx_ratings_group_score
    ON ratings (group_id, score DESC);
CREATE TABLE IF NOT EXISTS score_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    group_id INTEGER NOT NULL,
    delta INTEGER NOT NULL,
    correct INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_score_entries_group_time
    ON score_entries (group_id, applied_at);
CREATE TABLE IF NOT EXISTS achievements (
    user_id INTEGER NOT NULL,
    group_id INTEGER NOT NULL,
    code TEXT NOT NULL,
    earned_at TEXT NOT NULL,
    PRIMARY KEY (user_id, group_id, code)
);
CREATE TABLE IF NOT EXISTS event_reminders (
    event_id INTEGER PRIMARY KEY,
    reminder_sent INTEGER NOT NULL DEFAULT 0,
    organizer_notified INTEGER NOT NULL DEFAULT 0
);
"""

_EVENT_COLUMNS = (
    "id, group_id, forum_topic_id, question, event_type, options, deadline, status, "
    "created_by, created_at, poll_id, poll_message_id, correct_option, resolved_at, scored"
)


def to_db_time(value: datetime) -> str:
    """Serialise an aware datetime as a sortable UTC ISO string."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_event(row: Sequence) -> Event:
    return Event(
        id=row[0],
        group_id=row[1],
        forum_topic_id=row[2],
        question=row[3],
        event_type=EventType(row[4]),
        options=list(json.loads(row[5])),
        deadline=from_db_time(row[6]),
        status=EventStatus(row[7]),
        created_by=row[8],
        created_at=from_db_time(row[9]),
        poll_id=row[10],
        poll_message_id=row[11],
        correct_option=row[12],
        resolved_at=from_db_time(row[13]) if row[13] else None,
        scored=bool(row[14]),
    )


def _row_to_group(row: Sequence) -> Group:
    return Group(
        id=row[0],
        chat_id=row[1],
        name=row[2],
        is_forum=bool(row[3]),
        status=GroupStatus(row[4]),
        created_by=row[5],
        created_at=from_db_time(row[6]),
    )


def _row_to_rating(row: Sequence) -> Rating:
    return Rating(
        user_id=row[0],
        group_id=row[1],
        username=row[2],
        score=row[3],
        correct_count=row[4],
        wrong_count=row[5],
        streak=row[6],
    )


_GROUP_COLUMNS = "id, chat_id, name, is_forum, status, created_by, created_at"
_RATING_COLUMNS = "user_id, group_id, username, score, correct_count, wrong_count, streak"


class MarketState:
    """High level interface for working with persistent market state."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection holding the write lock until commit."""

        with closing(sqlite3.connect(self._db_path, isolation_level=None)) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # Groups ------------------------------------------------------------
    def create_group(
        self,
        chat_id: int,
        name: str,
        created_by: int,
        *,
        is_forum: bool = False,
        now: Optional[datetime] = None,
    ) -> Group:
        now = now or datetime.now(timezone.utc)
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "INSERT INTO groups (chat_id, name, is_forum, status, created_by, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (chat_id, name, int(is_forum), GroupStatus.ACTIVE.value, created_by, to_db_time(now)),
            )
            conn.commit()
            group_id = cursor.lastrowid
        return Group(
            id=group_id,
            chat_id=chat_id,
            name=name,
            is_forum=is_forum,
            created_by=created_by,
            created_at=now,
        )

    def get_group(self, group_id: int) -> Optional[Group]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM groups WHERE id = ?", (group_id,)
            ).fetchone()
        return _row_to_group(row) if row else None

    def get_group_by_chat(self, chat_id: int) -> Optional[Group]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM groups WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return _row_to_group(row) if row else None

    def list_groups(self, *, active_only: bool = True) -> List[Group]:
        query = f"SELECT {_GROUP_COLUMNS} FROM groups"
        params: Tuple = ()
        if active_only:
            query += " WHERE status = ?"
            params = (GroupStatus.ACTIVE.value,)
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_group(row) for row in rows]

    def set_group_forum(self, group_id: int, is_forum: bool) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute("UPDATE groups SET is_forum = ? WHERE id = ?", (int(is_forum), group_id))
            conn.commit()

    def set_group_status(self, group_id: int, status: GroupStatus) -> bool:
        """Returns False when the group is missing or already in ``status``."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "UPDATE groups SET status = ? WHERE id = ? AND status != ?",
                (status.value, group_id, status.value),
            )
            conn.commit()
        return cursor.rowcount == 1

    def rename_group(self, group_id: int, name: str) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute("UPDATE groups SET name = ? WHERE id = ?", (name, group_id))
            conn.commit()
        return cursor.rowcount == 1

    # Memberships -------------------------------------------------------
    def add_membership(
        self, group_id: int, user_id: int, now: Optional[datetime] = None
    ) -> bool:
        """Create or reactivate a membership. Returns True when anything changed."""

        now = now or datetime.now(timezone.utc)
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT status FROM group_memberships WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
            if row and row[0] == MembershipStatus.ACTIVE.value:
                return False
            conn.execute(
                "REPLACE INTO group_memberships (group_id, user_id, status, joined_at) "
                "VALUES (?, ?, ?, ?)",
                (group_id, user_id, MembershipStatus.ACTIVE.value, to_db_time(now)),
            )
            conn.commit()
        return True

    def remove_membership(self, group_id: int, user_id: int) -> bool:
        """Mark an active membership removed. Returns False if there was none."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "UPDATE group_memberships SET status = ? "
                "WHERE group_id = ? AND user_id = ? AND status = ?",
                (MembershipStatus.REMOVED.value, group_id, user_id, MembershipStatus.ACTIVE.value),
            )
            conn.commit()
        return cursor.rowcount == 1

    def group_members(self, group_id: int) -> List[GroupMembership]:
        """Every membership of a group, removed ones included, oldest first."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT group_id, user_id, status, joined_at FROM group_memberships "
                "WHERE group_id = ? ORDER BY joined_at, user_id",
                (group_id,),
            ).fetchall()
        return [
            GroupMembership(
                group_id=row[0],
                user_id=row[1],
                status=MembershipStatus(row[2]),
                joined_at=from_db_time(row[3]),
            )
            for row in rows
        ]

    def count_active_members(self, group_id: int) -> int:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM group_memberships WHERE group_id = ? AND status = ?",
                (group_id, MembershipStatus.ACTIVE.value),
            ).fetchone()
        return int(row[0])

    def get_membership(self, group_id: int, user_id: int) -> Optional[GroupMembership]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT group_id, user_id, status, joined_at FROM group_memberships "
                "WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
        if not row:
            return None
        return GroupMembership(
            group_id=row[0],
            user_id=row[1],
            status=MembershipStatus(row[2]),
            joined_at=from_db_time(row[3]),
        )

    def is_active_member(self, group_id: int, user_id: int) -> bool:
        membership = self.get_membership(group_id, user_id)
        return membership is not None and membership.status is MembershipStatus.ACTIVE

    def groups_for_user(self, user_id: int) -> List[Group]:
        """Active groups in which the user holds an active membership."""

        columns = ", ".join(f"g.{name.strip()}" for name in _GROUP_COLUMNS.split(","))
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                f"SELECT {columns} FROM groups g "
                "JOIN group_memberships m ON m.group_id = g.id "
                "WHERE m.user_id = ? AND m.status = ? AND g.status = ? ORDER BY g.id",
                (user_id, MembershipStatus.ACTIVE.value, GroupStatus.ACTIVE.value),
            ).fetchall()
        return [_row_to_group(row) for row in rows]

    # Forum topics ------------------------------------------------------
    def get_or_create_forum_topic(
        self,
        group_id: int,
        thread_id: int,
        name: str,
        now: Optional[datetime] = None,
    ) -> ForumTopic:
        now = now or datetime.now(timezone.utc)
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO forum_topics (group_id, thread_id, name, created_at) "
                "VALUES (?, ?, ?, ?)",
                (group_id, thread_id, name, to_db_time(now)),
            )
            conn.commit()
            row = conn.execute(
                "SELECT id, group_id, thread_id, name, created_at FROM forum_topics "
                "WHERE group_id = ? AND thread_id = ?",
                (group_id, thread_id),
            ).fetchone()
        return ForumTopic(
            id=row[0], group_id=row[1], thread_id=row[2], name=row[3], created_at=from_db_time(row[4])
        )

    def get_forum_topic(self, topic_id: int) -> Optional[ForumTopic]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT id, group_id, thread_id, name, created_at FROM forum_topics WHERE id = ?",
                (topic_id,),
            ).fetchone()
        if not row:
            return None
        return ForumTopic(
            id=row[0], group_id=row[1], thread_id=row[2], name=row[3], created_at=from_db_time(row[4])
        )

    def thread_for_event(self, event: Event) -> Optional[int]:
        """Thread id of the forum topic an event was posted in, if any."""

        if event.forum_topic_id is None:
            return None
        topic = self.get_forum_topic(event.forum_topic_id)
        return topic.thread_id if topic else None

    def rename_forum_topic(self, topic_id: int, name: str) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute("UPDATE forum_topics SET name = ? WHERE id = ?", (name, topic_id))
            conn.commit()
        return cursor.rowcount == 1

    def delete_forum_topic(self, topic_id: int) -> bool:
        """Forget a topic. Its events keep their id and fall back to the group chat."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute("DELETE FROM forum_topics WHERE id = ?", (topic_id,))
            conn.commit()
        return cursor.rowcount == 1

    def list_forum_topics(self, group_id: int) -> List[ForumTopic]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT id, group_id, thread_id, name, created_at FROM forum_topics "
                "WHERE group_id = ? ORDER BY id",
                (group_id,),
            ).fetchall()
        return [
            ForumTopic(id=r[0], group_id=r[1], thread_id=r[2], name=r[3], created_at=from_db_time(r[4]))
            for r in rows
        ]

    # Events ------------------------------------------------------------
    def insert_event(self, event: Event) -> Event:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "INSERT INTO events (group_id, forum_topic_id, question, event_type, options, "
                "deadline, status, created_by, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.group_id,
                    event.forum_topic_id,
                    event.question,
                    event.event_type.value,
                    json.dumps(event.options),
                    to_db_time(event.deadline),
                    event.status.value,
                    event.created_by,
                    to_db_time(event.created_at),
                ),
            )
            conn.commit()
            event.id = cursor.lastrowid
        return event

    def get_event(self, event_id: int) -> Optional[Event]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def get_event_by_poll(self, poll_id: str) -> Optional[Event]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE poll_id = ?", (poll_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def list_events(
        self,
        *,
        group_ids: Optional[Sequence[int]] = None,
        status: Optional[EventStatus] = None,
    ) -> List[Event]:
        clauses: List[str] = []
        params: List[object] = []
        if group_ids is not None:
            if not group_ids:
                return []
            clauses.append(f"group_id IN ({', '.join('?' for _ in group_ids)})")
            params.extend(group_ids)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        query = f"SELECT {_EVENT_COLUMNS} FROM events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY deadline, id"
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def update_event_content(
        self,
        event_id: int,
        *,
        question: str,
        options: List[str],
        deadline: datetime,
    ) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "UPDATE events SET question = ?, options = ?, deadline = ? WHERE id = ?",
                (question, json.dumps(options), to_db_time(deadline), event_id),
            )
            conn.execute("DELETE FROM event_reminders WHERE event_id = ?", (event_id,))
            conn.commit()

    def attach_poll(self, event_id: int, poll_id: str, message_id: int) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "UPDATE events SET poll_id = ?, poll_message_id = ? WHERE id = ?",
                (poll_id, message_id, event_id),
            )
            conn.commit()

    def mark_resolved(self, event_id: int, correct_option: int, now: datetime) -> bool:
        """Flip an active event to resolved. Returns False if it was not active."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "UPDATE events SET status = ?, correct_option = ?, resolved_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    EventStatus.RESOLVED.value,
                    correct_option,
                    to_db_time(now),
                    event_id,
                    EventStatus.ACTIVE.value,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def count_events_created(self, user_id: int, group_id: int) -> int:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM events WHERE created_by = ? AND group_id = ?",
                (user_id, group_id),
            ).fetchone()
        return int(row[0])

    # Predictions -------------------------------------------------------
    def upsert_prediction(
        self, event_id: int, user_id: int, option: int, now: datetime
    ) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO predictions (event_id, user_id, option, recorded_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT (event_id, user_id) DO UPDATE SET "
                "option = excluded.option, recorded_at = excluded.recorded_at",
                (event_id, user_id, option, to_db_time(now)),
            )
            conn.commit()

    def delete_prediction(self, event_id: int, user_id: int) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "DELETE FROM predictions WHERE event_id = ? AND user_id = ?",
                (event_id, user_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_prediction(self, event_id: int, user_id: int) -> Optional[Prediction]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT event_id, user_id, option, recorded_at FROM predictions "
                "WHERE event_id = ? AND user_id = ?",
                (event_id, user_id),
            ).fetchone()
        if not row:
            return None
        return Prediction(event_id=row[0], user_id=row[1], option=row[2], recorded_at=from_db_time(row[3]))

    def predictions_for_event(self, event_id: int) -> List[Prediction]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT event_id, user_id, option, recorded_at FROM predictions "
                "WHERE event_id = ? ORDER BY recorded_at, user_id",
                (event_id,),
            ).fetchall()
        return [
            Prediction(event_id=r[0], user_id=r[1], option=r[2], recorded_at=from_db_time(r[3]))
            for r in rows
        ]

    def count_predictions(self, event_id: int) -> int:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM predictions WHERE event_id = ?", (event_id,)
            ).fetchone()
        return int(row[0])

    def count_completed_participations(self, user_id: int, group_id: int) -> int:
        """Predictions the user made on resolved events of the group."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM predictions p JOIN events e ON e.id = p.event_id "
                "WHERE p.user_id = ? AND e.group_id = ? AND e.status = ?",
                (user_id, group_id, EventStatus.RESOLVED.value),
            ).fetchone()
        return int(row[0])

    def resolved_prediction_history(
        self, user_id: int, group_id: int
    ) -> List[Tuple[bool, int, int]]:
        """Return ``(correct, option_votes, total_votes)`` per resolved event.

        Rows are ordered by resolution time, oldest first.
        """

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                """
                SELECT p.option = e.correct_option,
                       (SELECT COUNT(*) FROM predictions p2
                         WHERE p2.event_id = p.event_id AND p2.option = p.option),
                       (SELECT COUNT(*) FROM predictions p3 WHERE p3.event_id = p.event_id)
                FROM predictions p JOIN events e ON e.id = p.event_id
                WHERE p.user_id = ? AND e.group_id = ? AND e.status = ?
                ORDER BY e.resolved_at, e.id
                """,
                (user_id, group_id, EventStatus.RESOLVED.value),
            ).fetchall()
        return [(bool(row[0]), int(row[1]), int(row[2])) for row in rows]

    # Ratings -----------------------------------------------------------
    def touch_rating(
        self, user_id: int, group_id: int, username: str, now: Optional[datetime] = None
    ) -> None:
        """Ensure a rating row exists and refresh its cached display name."""

        stamp = to_db_time(now or datetime.now(timezone.utc))
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO ratings (user_id, group_id, username, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT (user_id, group_id) DO UPDATE SET "
                "username = CASE WHEN excluded.username != '' THEN excluded.username ELSE ratings.username END",
                (user_id, group_id, username, stamp, stamp),
            )
            conn.commit()

    def get_rating(self, user_id: int, group_id: int) -> Optional[Rating]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_RATING_COLUMNS} FROM ratings WHERE user_id = ? AND group_id = ?",
                (user_id, group_id),
            ).fetchone()
        return _row_to_rating(row) if row else None

    def top_ratings(self, group_id: int, limit: int) -> List[Rating]:
        if limit <= 0:
            return []
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                f"SELECT {_RATING_COLUMNS} FROM ratings WHERE group_id = ? "
                "ORDER BY score DESC, rowid ASC LIMIT ?",
                (group_id, limit),
            ).fetchall()
        return [_row_to_rating(row) for row in rows]

    def apply_score_deltas(
        self,
        event_id: int,
        group_id: int,
        deltas: Sequence[ScoreDelta],
        now: datetime,
        *,
        resolve_with: Optional[int] = None,
    ) -> bool:
        """Apply every delta of one resolution atomically.

        With ``resolve_with`` the active event is also flipped to resolved in
        the same transaction, so an event is never resolved without its
        points. Returns False without writing anything when the event was
        already scored (or, with ``resolve_with``, is no longer active).
        """

        stamp = to_db_time(now)
        with self._transaction() as conn:
            row = conn.execute("SELECT scored, status FROM events WHERE id = ?", (event_id,)).fetchone()
            if row is None or row[0]:
                return False
            if resolve_with is not None:
                if row[1] != EventStatus.ACTIVE.value:
                    return False
                conn.execute(
                    "UPDATE events SET status = ?, correct_option = ?, resolved_at = ? WHERE id = ?",
                    (EventStatus.RESOLVED.value, resolve_with, stamp, event_id),
                )
            for delta in deltas:
                conn.execute(
                    "INSERT INTO ratings (user_id, group_id, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?) ON CONFLICT (user_id, group_id) DO NOTHING",
                    (delta.user_id, group_id, stamp, stamp),
                )
                if delta.correct:
                    conn.execute(
                        "UPDATE ratings SET score = score + ?, correct_count = correct_count + 1, "
                        "streak = streak + 1, updated_at = ? WHERE user_id = ? AND group_id = ?",
                        (delta.delta, stamp, delta.user_id, group_id),
                    )
                else:
                    conn.execute(
                        "UPDATE ratings SET score = score + ?, wrong_count = wrong_count + 1, "
                        "streak = 0, updated_at = ? WHERE user_id = ? AND group_id = ?",
                        (delta.delta, stamp, delta.user_id, group_id),
                    )
                conn.execute(
                    "INSERT INTO score_entries (event_id, user_id, group_id, delta, correct, applied_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (event_id, delta.user_id, group_id, delta.delta, int(delta.correct), stamp),
                )
            conn.execute("UPDATE events SET scored = 1 WHERE id = ?", (event_id,))
        return True

    def score_entries_for_event(self, event_id: int) -> Dict[int, int]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT user_id, SUM(delta) FROM score_entries WHERE event_id = ? GROUP BY user_id",
                (event_id,),
            ).fetchall()
        return {int(row[0]): int(row[1]) for row in rows}

    def weekly_scores(
        self, group_id: int, start: datetime, end: datetime
    ) -> List[Tuple[int, int]]:
        """Sum applied deltas per user in ``[start, end)``, best first."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT user_id, SUM(delta) AS total, MIN(id) AS first_entry FROM score_entries "
                "WHERE group_id = ? AND applied_at >= ? AND applied_at < ? "
                "GROUP BY user_id ORDER BY total DESC, first_entry ASC",
                (group_id, to_db_time(start), to_db_time(end)),
            ).fetchall()
        return [(int(row[0]), int(row[1])) for row in rows]

    # Achievements ------------------------------------------------------
    def insert_achievement(
        self, user_id: int, group_id: int, code: AchievementCode, now: datetime
    ) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO achievements (user_id, group_id, code, earned_at) "
                "VALUES (?, ?, ?, ?)",
                (user_id, group_id, code.value, to_db_time(now)),
            )
            conn.commit()
            return cursor.rowcount == 1

    def achievements_for(self, user_id: int, group_id: int) -> List[Achievement]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT user_id, group_id, code, earned_at FROM achievements "
                "WHERE user_id = ? AND group_id = ? ORDER BY earned_at, code",
                (user_id, group_id),
            ).fetchall()
        achievements: List[Achievement] = []
        for row in rows:
            try:
                code = AchievementCode(row[2])
            except ValueError:
                logger.warning("Skipping unknown achievement code %s", row[2])
                continue
            achievements.append(
                Achievement(user_id=row[0], group_id=row[1], code=code, earned_at=from_db_time(row[3]))
            )
        return achievements

    # Reminders ---------------------------------------------------------
    def events_needing_reminder(self, now: datetime, lead: timedelta) -> List[Event]:
        columns = ", ".join(f"e.{name.strip()}" for name in _EVENT_COLUMNS.split(","))
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                f"SELECT {columns} FROM events e "
                "LEFT JOIN event_reminders r ON r.event_id = e.id "
                "WHERE e.status = ? AND e.deadline > ? AND e.deadline <= ? "
                "AND COALESCE(r.reminder_sent, 0) = 0 ORDER BY e.deadline, e.id",
                (EventStatus.ACTIVE.value, to_db_time(now), to_db_time(now + lead)),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def events_awaiting_resolution(self, now: datetime) -> List[Event]:
        columns = ", ".join(f"e.{name.strip()}" for name in _EVENT_COLUMNS.split(","))
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                f"SELECT {columns} FROM events e "
                "LEFT JOIN event_reminders r ON r.event_id = e.id "
                "WHERE e.status = ? AND e.deadline <= ? "
                "AND COALESCE(r.organizer_notified, 0) = 0 ORDER BY e.deadline, e.id",
                (EventStatus.ACTIVE.value, to_db_time(now)),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def mark_reminder_sent(self, event_id: int) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO event_reminders (event_id, reminder_sent) VALUES (?, 1) "
                "ON CONFLICT (event_id) DO UPDATE SET reminder_sent = 1",
                (event_id,),
            )
            conn.commit()

    def mark_organizer_notified(self, event_id: int) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT INTO event_reminders (event_id, organizer_notified) VALUES (?, 1) "
                "ON CONFLICT (event_id) DO UPDATE SET organizer_notified = 1",
                (event_id,),
            )
            conn.commit()


__all__ = ["MarketState", "from_db_time", "to_db_time"]
