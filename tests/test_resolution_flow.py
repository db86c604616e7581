"""Tests for the resolution flow: pick an event, pick the answer, score."""
from __future__ import annotations

import sqlite3
from datetime import timedelta

from prediction_market.callbacks import ResolveEvent, ResolveOption
from prediction_market.contexts import ResolutionState
from prediction_market.flows.base import USE_BUTTONS
from prediction_market.models import EventStatus
from prediction_market.router import GENERIC_APOLOGY

from conftest import ADMIN_ID, GROUP_CHAT_ID


def test_admin_resolves_and_everyone_hears_about_it(market):
    transport = market.transport
    group = market.group(members=[10, 11])
    market.complete_participations(group, 10, 2)
    event = market.event(group, question="Launch on time?", deadline=market.clock() + timedelta(days=3))
    market.vote(event, 10, 0, "Ann")
    market.vote(event, 11, 1, "Bob")

    market.router.start_event_resolution(ADMIN_ID, ADMIN_ID)
    picker = transport.last_to(ADMIN_ID)
    assert picker.text == "Which event do you want to resolve?"
    assert picker.button_data() == [ResolveEvent(event.id).encode()]
    assert picker.button_labels() == ["Launch on time? (07.03.2024 09:00)"]

    market.press(ADMIN_ID, ResolveEvent(event.id).encode())
    options = transport.last_to(ADMIN_ID)
    assert options.text.startswith("What was the correct answer to: Launch on time?")
    assert options.button_data() == [ResolveOption(0).encode(), ResolveOption(1).encode()]

    market.press(ADMIN_ID, ResolveOption(0).encode())

    assert market.last_text(ADMIN_ID) == f"Event #{event.id} resolved. Correct answer: Yes. 2 predictions scored."
    assert {picker.message_id, options.message_id} <= set(transport.deleted_ids())
    assert market.app.store.peek_kind(ADMIN_ID) is None

    stored = market.state.get_event(event.id)
    assert stored.status is EventStatus.RESOLVED
    assert stored.correct_option == 0
    assert (GROUP_CHAT_ID, event.poll_message_id) in transport.stopped
    assert any(text.startswith("✅ Event resolved: Launch on time?") for text in transport.texts_to(GROUP_CHAT_ID))

    ann_texts = transport.texts_to(10)
    assert any("You can now create events in Forecasters" in text for text in ann_texts)
    assert any(text.startswith("New achievements in Forecasters:") and "Sharpshooter" in text for text in ann_texts)
    assert transport.messages_to(11) == []


def test_creators_only_see_their_own_events(market):
    group = market.group(members=[10])
    market.event(group, question="Admin's question?")
    own = market.event(group, creator=10, question="My question?")

    market.router.start_event_resolution(10, 10)

    assert market.transport.last_to(10).button_data() == [ResolveEvent(own.id).encode()]


def test_resolve_button_jumps_straight_to_the_answer(market):
    group = market.group(members=[10])
    event = market.event(group, creator=10)

    market.press(10, ResolveEvent(event.id).encode())

    assert market.app.store.get(10).state is ResolutionState.SELECT_OPTION
    assert market.last_text(10).startswith("What was the correct answer to: Will it rain tomorrow?")


def test_nothing_to_resolve(market):
    market.group(members=[10])
    market.router.start_event_resolution(10, 10)

    assert market.last_text(10) == "You have no active events to resolve."
    assert market.app.store.peek_kind(10) is None


def test_other_members_cannot_resolve(market):
    group = market.group(members=[10, 11])
    event = market.event(group, creator=10)

    market.press(11, ResolveEvent(event.id).encode())

    assert market.last_text(11).startswith("You are not allowed to do that.")
    assert market.state.get_event(event.id).is_active


def test_resolved_events_cannot_be_resolved_again(market):
    group = market.group(members=[10])
    event = market.event(group, creator=10)
    market.services.events.resolve_event(event.id, 1)
    market.services.scoring.calculate_scores(event.id, 1)

    market.router.start_event_resolution(10, 10, event.id)

    assert market.last_text(10) == "That event is already resolved."


def test_typing_instead_of_pressing(market):
    group = market.group(members=[10])
    market.event(group, creator=10)
    market.router.start_event_resolution(10, 10)
    market.say(10, "the first one")

    assert market.last_text(10) == USE_BUTTONS
    assert market.app.store.get(10).state is ResolutionState.SELECT_EVENT


def test_answer_button_before_choosing_an_event(market):
    group = market.group(members=[10])
    market.event(group, creator=10)
    market.router.start_event_resolution(10, 10)
    market.press(10, ResolveOption(0).encode())

    assert market.last_text(10) == "This button is no longer valid."
    assert market.app.store.get(10).state is ResolutionState.SELECT_EVENT


def test_failed_scoring_leaves_the_event_open(market, monkeypatch):
    group = market.group(members=[10, 11])
    event = market.event(group, creator=10)
    market.vote(event, 11, 0, "Bob")

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    with monkeypatch.context() as patch:
        patch.setattr(market.state, "apply_score_deltas", broken)
        market.press(10, ResolveEvent(event.id).encode())
        market.press(10, ResolveOption(0).encode())

    assert market.last_text(10) == GENERIC_APOLOGY
    assert market.app.store.peek_kind(10) is None
    stored = market.state.get_event(event.id)
    assert stored.status is EventStatus.ACTIVE
    assert not stored.scored

    market.press(10, ResolveEvent(event.id).encode())
    market.press(10, ResolveOption(0).encode())

    assert market.last_text(10) == f"Event #{event.id} resolved. Correct answer: Yes. 1 predictions scored."
    stored = market.state.get_event(event.id)
    assert stored.status is EventStatus.RESOLVED and stored.scored
    assert market.state.get_rating(11, group.id).correct_count == 1
