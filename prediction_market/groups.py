"""Group membership helpers, forum-topic choices and invite codes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .errors import DomainError, ErrorKind
from .models import Group, GroupStatus
from .state import MarketState

logger = logging.getLogger(__name__)

INVITE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
INVITE_MIN_LENGTH = 4


class InviteCodes:
    """Reversible base-N encoding of group ids.

    Codes are short, case-insensitive and avoid the ambiguous characters
    ``0 O 1 I``. They are left-padded with the first alphabet symbol.
    """

    def __init__(self, alphabet: str = INVITE_ALPHABET, min_length: int = INVITE_MIN_LENGTH) -> None:
        if len(alphabet) < 2 or len(set(alphabet)) != len(alphabet):
            raise ValueError("alphabet must contain at least 2 unique characters")
        self._alphabet = alphabet
        self._base = len(alphabet)
        self._index = {char: pos for pos, char in enumerate(alphabet)}
        self._min_length = min_length

    def encode(self, number: int) -> str:
        if number < 0:
            raise ValueError("cannot encode negative numbers")
        digits: List[str] = []
        while number > 0:
            number, remainder = divmod(number, self._base)
            digits.append(self._alphabet[remainder])
        encoded = "".join(reversed(digits))
        return encoded.rjust(self._min_length, self._alphabet[0])

    def decode(self, code: str) -> int:
        code = code.strip().upper()
        if not code:
            raise ValueError("empty code")
        value = 0
        for char in code:
            try:
                value = value * self._base + self._index[char]
            except KeyError:
                raise ValueError(f"invalid character {char!r} in code") from None
        return value


@dataclass(frozen=True)
class GroupChoice:
    """One selectable target for a new event: a group, or a topic within it."""

    group_id: int
    label: str
    thread_id: Optional[int] = None
    forum_topic_id: Optional[int] = None


class GroupContextResolver:
    """Works out which groups (and forum topics) a user can post into."""

    def __init__(self, state: MarketState) -> None:
        self._state = state

    def groups_for_user(self, user_id: int) -> List[Group]:
        return self._state.groups_for_user(user_id)

    def choices_for(self, groups: List[Group]) -> List[GroupChoice]:
        choices: List[GroupChoice] = []
        for group in groups:
            if group.is_forum:
                topics = self._state.list_forum_topics(group.id)
                if topics:
                    for topic in topics:
                        choices.append(
                            GroupChoice(
                                group_id=group.id,
                                label=f"{group.name} / {topic.name}",
                                thread_id=topic.thread_id,
                                forum_topic_id=topic.id,
                            )
                        )
                    continue
            choices.append(GroupChoice(group_id=group.id, label=group.name))
        return choices


class GroupDirectory:
    """Registration and joining of groups."""

    def __init__(
        self,
        state: MarketState,
        *,
        codes: Optional[InviteCodes] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._state = state
        self._codes = codes or InviteCodes()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def invite_code(self, group_id: int) -> str:
        return self._codes.encode(group_id)

    def register(
        self,
        chat_id: int,
        name: str,
        created_by: int,
        *,
        is_forum: bool = False,
    ) -> tuple[Group, bool]:
        """Return ``(group, created)``; an already-registered chat is reused."""

        existing = self._state.get_group_by_chat(chat_id)
        if existing is not None:
            if is_forum and not existing.is_forum:
                self._state.set_group_forum(existing.id, True)
                existing.is_forum = True
            logger.info("Chat %s already registered as group %s", chat_id, existing.id)
            return existing, False
        group = self._state.create_group(
            chat_id, name, created_by, is_forum=is_forum, now=self._clock()
        )
        logger.info("Registered group %s (%s) for chat %s", group.id, name, chat_id)
        return group, True

    def join(self, user_id: int, code: str) -> tuple[Group, bool]:
        """Join the group behind ``code``. Returns ``(group, newly_joined)``."""

        try:
            group_id = self._codes.decode(code)
        except ValueError as exc:
            raise DomainError(ErrorKind.GROUP_NOT_FOUND, "invite code is not valid") from exc
        group = self._state.get_group(group_id)
        if group is None or group.status is not GroupStatus.ACTIVE:
            raise DomainError(ErrorKind.GROUP_NOT_FOUND, "invite code is not valid")
        joined = self._state.add_membership(group.id, user_id, self._clock())
        if joined:
            logger.info("User %s joined group %s", user_id, group.id)
        return group, joined


__all__ = [
    "GroupChoice",
    "GroupContextResolver",
    "GroupDirectory",
    "INVITE_ALPHABET",
    "InviteCodes",
]
