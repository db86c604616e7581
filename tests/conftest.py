"""Shared fixtures: a recording chat transport, a manual clock and an app harness."""
from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from prediction_market.app import MarketApp, build_app
from prediction_market.config import DEFAULT_SETTINGS_PATH, Settings, SettingsLoader
from prediction_market.models import Event, EventType, Group
from prediction_market.telemetry import TelemetryCollector, set_telemetry
from prediction_market.transport import (
    ButtonRows,
    CallbackQuery,
    InboundMessage,
    PollAnswer,
    SentPoll,
    TransportError,
)

ADMIN_ID = 1
GROUP_CHAT_ID = -1001
OTHER_CHAT_ID = -1002


@dataclass
class SentMessage:
    chat_id: int
    text: str
    buttons: Optional[ButtonRows]
    thread_id: Optional[int]
    message_id: int

    def button_data(self) -> List[str]:
        return [button.data for row in self.buttons or [] for button in row]

    def button_labels(self) -> List[str]:
        return [button.label for row in self.buttons or [] for button in row]


@dataclass
class PublishedPoll:
    chat_id: int
    question: str
    options: List[str]
    thread_id: Optional[int]
    poll_id: str
    message_id: int
    closes_at: Optional[datetime] = None


class FakeTransport:
    """Records outbound calls; failures can be scripted per chat or message."""

    def __init__(self) -> None:
        self.sent: List[SentMessage] = []
        self.deleted: List[Tuple[int, int]] = []
        self.delete_attempts: List[Tuple[int, int]] = []
        self.polls: List[PublishedPoll] = []
        self.stopped: List[Tuple[int, int]] = []
        self.left: List[int] = []
        self.leave_error: Optional[TransportError] = None
        # message id -> thread id, for deletes and poll closes aimed at a thread
        self.thread_targets: Dict[int, int] = {}
        self.answers: List[Tuple[str, Optional[str]]] = []
        self.send_errors: Dict[int, TransportError] = {}
        self.delete_errors: Dict[int, List[TransportError]] = {}
        self.poll_error: Optional[TransportError] = None
        self._ids = itertools.count(1000)

    def send_message(self, chat_id, text, buttons=None, thread_id=None) -> int:
        if chat_id in self.send_errors:
            raise self.send_errors[chat_id]
        message_id = next(self._ids)
        self.sent.append(SentMessage(chat_id, text, buttons, thread_id, message_id))
        return message_id

    def delete_message(self, chat_id, message_id, thread_id=None) -> None:
        self.delete_attempts.append((chat_id, message_id))
        if thread_id is not None:
            self.thread_targets[message_id] = thread_id
        errors = self.delete_errors.get(message_id)
        if errors:
            raise errors.pop(0)
        self.deleted.append((chat_id, message_id))

    def answer_callback(self, callback_id, text=None) -> None:
        self.answers.append((callback_id, text))

    def send_poll(self, chat_id, question, options, thread_id=None, closes_at=None) -> SentPoll:
        if self.poll_error is not None:
            raise self.poll_error
        message_id = next(self._ids)
        poll = PublishedPoll(
            chat_id, question, list(options), thread_id, f"poll-{message_id}", message_id, closes_at
        )
        self.polls.append(poll)
        return SentPoll(poll_id=poll.poll_id, message_id=message_id)

    def stop_poll(self, chat_id, message_id, thread_id=None) -> None:
        self.stopped.append((chat_id, message_id))
        if thread_id is not None:
            self.thread_targets[message_id] = thread_id

    def leave_chat(self, chat_id) -> None:
        if self.leave_error is not None:
            raise self.leave_error
        self.left.append(chat_id)

    # Inspection ----------------------------------------------------------
    def messages_to(self, chat_id: int) -> List[SentMessage]:
        return [message for message in self.sent if message.chat_id == chat_id]

    def texts_to(self, chat_id: int) -> List[str]:
        return [message.text for message in self.messages_to(chat_id)]

    def last_to(self, chat_id: int) -> SentMessage:
        messages = self.messages_to(chat_id)
        assert messages, f"nothing was sent to {chat_id}"
        return messages[-1]

    def deleted_ids(self) -> List[int]:
        return [message_id for _, message_id in self.deleted]


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        # A Monday morning, so weekly windows are easy to reason about.
        self.now = start or datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    base = SettingsLoader(DEFAULT_SETTINGS_PATH).load(force=True)
    overrides.setdefault("admin_ids", frozenset({ADMIN_ID}))
    return replace(base, **overrides)


class MarketHarness:
    """Drives the router the way the chat adapter does."""

    def __init__(self, app: MarketApp, transport: FakeTransport, clock: FakeClock, sleeps: List[float]) -> None:
        self.app = app
        self.transport = transport
        self.clock = clock
        self.sleeps = sleeps
        self._callback_ids = itertools.count(1)
        self._user_message_ids = itertools.count(5000)

    @property
    def router(self):
        return self.app.router

    @property
    def services(self):
        return self.app.services

    @property
    def state(self):
        return self.app.state

    # Seeding -------------------------------------------------------------
    def group(
        self,
        *,
        chat_id: int = GROUP_CHAT_ID,
        name: str = "Forecasters",
        members: Sequence[int] = (),
        is_forum: bool = False,
        topics: Sequence[int] = (),
    ) -> Group:
        group, _ = self.services.directory.register(chat_id, name, ADMIN_ID, is_forum=is_forum)
        for user_id in (ADMIN_ID, *members):
            self.state.add_membership(group.id, user_id, self.clock())
        for thread_id in topics:
            self.state.get_or_create_forum_topic(group.id, thread_id, f"Topic {thread_id}", self.clock())
        return group

    def event(
        self,
        group: Group,
        *,
        creator: int = ADMIN_ID,
        question: str = "Will it rain tomorrow?",
        event_type: EventType = EventType.BINARY,
        options: Optional[List[str]] = None,
        deadline: Optional[datetime] = None,
        publish: bool = True,
    ) -> Event:
        event = self.services.events.create_event(
            group_id=group.id,
            question=question,
            event_type=event_type,
            options=options or event_type.fixed_options or ["Red", "Green", "Blue"],
            deadline=deadline or self.clock() + timedelta(days=3),
            created_by=creator,
        )
        if publish:
            sent = self.transport.send_poll(group.chat_id, event.question, event.options, closes_at=event.deadline)
            self.services.events.attach_poll(event.id, sent.poll_id, sent.message_id)
        return self.state.get_event(event.id)

    def complete_participations(self, group: Group, user_id: int, count: int) -> None:
        """Have ``user_id`` vote on ``count`` events that then resolve."""

        for index in range(count):
            event = self.event(group, question=f"Warm-up question {index}?")
            self.vote(event, user_id, 0)
            self.services.events.resolve_event(event.id, 0)
            self.services.scoring.calculate_scores(event.id, 0)

    # Inbound updates -----------------------------------------------------
    def vote(self, event: Event, user_id: int, option: int, name: str = "") -> bool:
        return self.router.handle_poll_answer(PollAnswer(event.poll_id, user_id, option, name))

    def say(self, user_id: int, text: str, chat_id: Optional[int] = None) -> int:
        message_id = next(self._user_message_ids)
        self.router.handle_message(
            InboundMessage(user_id=user_id, chat_id=chat_id or user_id, message_id=message_id, text=text)
        )
        return message_id

    def press(self, user_id: int, data: str, *, message_id: Optional[int] = None) -> str:
        callback_id = f"cb-{next(self._callback_ids)}"
        if message_id is None:
            messages = self.transport.messages_to(user_id)
            message_id = messages[-1].message_id if messages else 0
        self.router.handle_callback(
            CallbackQuery(
                callback_id=callback_id,
                user_id=user_id,
                chat_id=user_id,
                message_id=message_id,
                data=data,
            )
        )
        return callback_id

    def answers_for(self, callback_id: str) -> List[Optional[str]]:
        return [text for cid, text in self.transport.answers if cid == callback_id]

    def last_text(self, user_id: int) -> str:
        return self.transport.last_to(user_id).text


@pytest.fixture(autouse=True)
def telemetry(tmp_path):
    collector = TelemetryCollector(tmp_path / "telemetry.db")
    set_telemetry(collector)
    yield collector
    set_telemetry(None)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def market(tmp_path, transport, clock, settings) -> MarketHarness:
    sleeps: List[float] = []
    app = build_app(
        tmp_path / "market.db",
        transport,
        settings=settings,
        clock=clock,
        sleeper=sleeps.append,
    )
    return MarketHarness(app, transport, clock, sleeps)
