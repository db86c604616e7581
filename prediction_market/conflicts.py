"""Detection of concurrent flows for the same user."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .contexts import FlowKind
from .sessions import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conflict:
    existing_kind: FlowKind
    requested_kind: FlowKind

    @property
    def label(self) -> str:
        """Human-readable name of the flow already in progress."""

        return self.existing_kind.label


class ConflictDetector:
    """Reports when a user asks for a flow while another kind is live."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def detect(self, owner_id: int, requested: FlowKind) -> Optional[Conflict]:
        existing = self._store.peek_kind(owner_id)
        if existing is None or existing is requested:
            return None
        logger.info(
            "User %s requested %s while %s is in progress",
            owner_id,
            requested.value,
            existing.value,
        )
        return Conflict(existing_kind=existing, requested_kind=requested)


__all__ = ["Conflict", "ConflictDetector"]
