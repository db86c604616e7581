"""Durable per-user conversation sessions with TTL expiry.

A session is the persisted ``(state, context)`` pair tracking one user's
progress through a flow. There is no timer: expiry is checked lazily when a
session is read, and an expired session is purged and reported as
``SESSION_EXPIRED`` so the caller can explain the timeout.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .contexts import (
    FlowContext,
    FlowKind,
    FlowState,
    decode_context,
    encode_context,
    flow_kind_of,
    parse_state,
)
from .errors import DomainError, ErrorKind
from .state import from_db_time, to_db_time

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(minutes=30)

_SESSION_SCHEMA = """
CREATE TABLE IF NOT EXISTS fsm_sessions (
    owner_id INTEGER PRIMARY KEY,
    flow_kind TEXT NOT NULL,
    state TEXT NOT NULL,
    context_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    owner_id: int
    flow_kind: FlowKind
    state: FlowState
    context: FlowContext
    created_at: datetime
    expires_at: datetime


class SessionStore:
    """SQLite-backed session table keyed by owner id."""

    def __init__(
        self,
        db_path: Path,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db_path = db_path
        self._ttl = ttl
        self._clock = clock or _utcnow
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_SESSION_SCHEMA)
            conn.commit()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, owner_id: int) -> Session:
        """Return the owner's live session.

        Raises ``DomainError`` with ``SESSION_NOT_FOUND``, ``SESSION_EXPIRED``
        or ``INVALID_CONTEXT``. The last two delete the row.
        """

        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT flow_kind, state, context_json, created_at, expires_at "
                "FROM fsm_sessions WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None:
            raise DomainError(ErrorKind.SESSION_NOT_FOUND, "no active session")
        flow_kind_raw, state_raw, context_raw, created_raw, expires_raw = row
        try:
            expires_at = from_db_time(expires_raw)
            created_at = from_db_time(created_raw)
        except (TypeError, ValueError):
            self.delete(owner_id)
            raise DomainError(ErrorKind.INVALID_CONTEXT, "session timestamps are unreadable")
        if expires_at <= self._clock():
            self.delete(owner_id)
            logger.info("Session for %s expired in state %s", owner_id, state_raw)
            try:
                kind = FlowKind(flow_kind_raw)
            except ValueError:
                kind = None
            raise DomainError(
                ErrorKind.SESSION_EXPIRED,
                "session expired",
                {"flow_kind": kind.value if kind else None, "state": state_raw},
            )
        try:
            state = parse_state(state_raw)
            kind = flow_kind_of(state_raw)
            if kind.value != flow_kind_raw:
                raise ValueError("flow kind column disagrees with state namespace")
        except ValueError as exc:
            self.delete(owner_id)
            logger.warning("Dropping session for %s with unknown state %s: %s", owner_id, state_raw, exc)
            raise DomainError(ErrorKind.INVALID_CONTEXT, "session state is unknown") from exc
        try:
            context = decode_context(kind, context_raw)
        except DomainError:
            self.delete(owner_id)
            logger.warning("Dropping session for %s with corrupted context", owner_id)
            raise
        return Session(
            owner_id=owner_id,
            flow_kind=kind,
            state=state,
            context=context,
            created_at=created_at,
            expires_at=expires_at,
        )

    def set(self, owner_id: int, state: FlowState, context: FlowContext) -> Session:
        """Upsert the owner's session and push its expiry forward.

        Raises ``SESSION_CONFLICT`` if a live session of another flow kind
        exists; callers must ``delete`` it explicitly to restart.
        """

        kind = flow_kind_of(state.value)
        if context.kind is not kind:
            raise DomainError(
                ErrorKind.INVALID_CONTEXT,
                f"{type(context).__name__} cannot back state {state.value}",
            )
        now = self._clock()
        expires_at = now + self._ttl
        payload = encode_context(context)
        with closing(sqlite3.connect(self._db_path, isolation_level=None)) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT flow_kind, created_at, expires_at FROM fsm_sessions WHERE owner_id = ?",
                    (owner_id,),
                ).fetchone()
                created_at = now
                if row is not None:
                    existing_kind, created_raw, expires_raw = row
                    live = from_db_time(expires_raw) > now
                    if live and existing_kind != kind.value:
                        raise DomainError(
                            ErrorKind.SESSION_CONFLICT,
                            f"owner already has an active {existing_kind} session",
                            {"existing_kind": existing_kind, "requested_kind": kind.value},
                        )
                    if live:
                        created_at = from_db_time(created_raw)
                conn.execute(
                    "INSERT INTO fsm_sessions "
                    "(owner_id, flow_kind, state, context_json, created_at, updated_at, expires_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (owner_id) DO UPDATE SET flow_kind = excluded.flow_kind, "
                    "state = excluded.state, context_json = excluded.context_json, "
                    "created_at = excluded.created_at, updated_at = excluded.updated_at, "
                    "expires_at = excluded.expires_at",
                    (
                        owner_id,
                        kind.value,
                        state.value,
                        payload,
                        to_db_time(created_at),
                        to_db_time(now),
                        to_db_time(expires_at),
                    ),
                )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return Session(
            owner_id=owner_id,
            flow_kind=kind,
            state=state,
            context=context,
            created_at=created_at,
            expires_at=expires_at,
        )

    def delete(self, owner_id: int) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute("DELETE FROM fsm_sessions WHERE owner_id = ?", (owner_id,))
            conn.commit()

    def peek_kind(self, owner_id: int) -> Optional[FlowKind]:
        """Flow kind of the owner's live session, or None.

        Expired and corrupted sessions are purged here as a side effect of
        ``get``.
        """

        try:
            return self.get(owner_id).flow_kind
        except DomainError as exc:
            if exc.kind in (
                ErrorKind.SESSION_NOT_FOUND,
                ErrorKind.SESSION_EXPIRED,
                ErrorKind.INVALID_CONTEXT,
            ):
                return None
            raise


__all__ = ["DEFAULT_SESSION_TTL", "Session", "SessionStore"]
