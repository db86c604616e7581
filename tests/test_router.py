"""Tests for update dispatch, flow conflicts and error replies."""
from __future__ import annotations

import sqlite3
from contextlib import closing

import pytest

from prediction_market.callbacks import (
    ChooseEventType,
    Confirm,
    GroupIsForum,
    SessionConflictChoice,
)
from prediction_market.contexts import FlowKind
from prediction_market.errors import DomainError, ErrorKind
from prediction_market.flows.creation import QUESTION_PROMPT
from prediction_market.flows.registration import NAME_PROMPT
from prediction_market.models import EventType
from prediction_market.router import GENERIC_APOLOGY, INVALID_CONTEXT_TEXT, error_text
from prediction_market.transport import PollAnswer, TransportError

from conftest import ADMIN_ID

CREATION_EXPIRED = "Your event draft expired after a period of inactivity. Use /create_event to start again."


@pytest.fixture
def drafting(market):
    market.group()
    market.router.start_event_creation(ADMIN_ID, ADMIN_ID)
    return market


def test_other_flow_kind_asks_what_to_do(drafting):
    market = drafting
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)

    prompt = market.transport.last_to(ADMIN_ID)
    assert prompt.text == (
        "You already have event creation in progress. Continue it, or drop it and start over?"
    )
    assert prompt.button_labels() == ["Continue", "Start group creation"]
    assert prompt.button_data() == [
        "session_conflict:continue",
        "session_conflict:restart:group_creation",
    ]
    assert market.app.store.peek_kind(ADMIN_ID) is FlowKind.EVENT_CREATION


def test_continue_resends_the_current_prompt(drafting):
    market = drafting
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)
    conflict = market.transport.last_to(ADMIN_ID)

    market.press(ADMIN_ID, SessionConflictChoice().encode())

    assert conflict.message_id in market.transport.deleted_ids()
    assert market.last_text(ADMIN_ID) == QUESTION_PROMPT
    assert market.app.store.peek_kind(ADMIN_ID) is FlowKind.EVENT_CREATION


def test_restart_drops_the_old_flow(drafting):
    market = drafting
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)
    market.press(ADMIN_ID, SessionConflictChoice(FlowKind.GROUP_CREATION).encode())

    assert market.last_text(ADMIN_ID) == NAME_PROMPT
    assert market.app.store.peek_kind(ADMIN_ID) is FlowKind.GROUP_CREATION


def test_restarting_into_an_edit_needs_the_event_again(drafting):
    market = drafting
    market.press(ADMIN_ID, SessionConflictChoice(FlowKind.EVENT_EDIT).encode())

    assert market.last_text(ADMIN_ID) == "The previous flow was dropped. Press Edit on the event again."
    assert market.app.store.peek_kind(ADMIN_ID) is None


def test_cancel(drafting):
    market = drafting
    market.router.cancel(ADMIN_ID, ADMIN_ID)
    assert market.last_text(ADMIN_ID) == "Cancelled event creation."
    assert market.app.store.peek_kind(ADMIN_ID) is None

    market.router.cancel(ADMIN_ID, ADMIN_ID)
    assert market.last_text(ADMIN_ID) == "There is nothing to cancel."


def test_expired_session_is_explained_once(drafting):
    market = drafting
    market.clock.advance(minutes=31)

    market.say(ADMIN_ID, "Rain tomorrow?")

    assert market.last_text(ADMIN_ID) == CREATION_EXPIRED
    assert market.app.store.peek_kind(ADMIN_ID) is None
    sent_before = len(market.transport.sent)
    market.say(ADMIN_ID, "hello?")
    assert len(market.transport.sent) == sent_before


def test_activity_extends_the_session(drafting):
    market = drafting
    market.clock.advance(minutes=20)
    market.say(ADMIN_ID, "Rain tomorrow?")
    market.clock.advance(minutes=20)

    market.press(ADMIN_ID, ChooseEventType(EventType.BINARY).encode())

    assert market.app.store.peek_kind(ADMIN_ID) is FlowKind.EVENT_CREATION


def test_button_after_expiry(drafting):
    market = drafting
    market.say(ADMIN_ID, "Rain tomorrow?")
    market.clock.advance(hours=1)

    callback = market.press(ADMIN_ID, ChooseEventType(EventType.BINARY).encode())

    assert market.answers_for(callback) == ["This button has expired."]
    assert market.last_text(ADMIN_ID) == CREATION_EXPIRED


def test_button_without_any_session(market):
    callback = market.press(10, Confirm(True).encode())
    assert market.answers_for(callback) == ["This button has expired."]
    assert market.transport.messages_to(10) == []


def test_button_of_another_flow(drafting):
    market = drafting
    callback = market.press(ADMIN_ID, GroupIsForum(True).encode())
    assert market.answers_for(callback) == ["This button is not part of your current step."]


def test_garbage_callback_is_answered(market, telemetry):
    callback = market.press(10, "select_group:abc")

    assert market.answers_for(callback) == ["This button is no longer valid."]
    telemetry.flush()
    assert telemetry.get_error_summary().get("invalid_callback") == 1


def test_text_without_a_session_is_ignored(market):
    market.say(10, "hello")
    assert market.transport.sent == []


def test_corrupted_context_is_reported(drafting, tmp_path):
    market = drafting
    with closing(sqlite3.connect(tmp_path / "market.db")) as conn:
        conn.execute("UPDATE fsm_sessions SET context_json = ? WHERE owner_id = ?", ("{not json", ADMIN_ID))
        conn.commit()

    market.say(ADMIN_ID, "Rain tomorrow?")

    assert market.last_text(ADMIN_ID) == INVALID_CONTEXT_TEXT
    assert market.app.store.peek_kind(ADMIN_ID) is None


def test_database_failure_becomes_an_apology(market, monkeypatch, telemetry):
    market.group()

    def broken(event_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(market.services.events, "get_event", broken)
    market.router.start_event_edit(ADMIN_ID, ADMIN_ID, 1)

    assert market.last_text(ADMIN_ID) == GENERIC_APOLOGY
    telemetry.flush()
    assert telemetry.get_error_summary().get("database") == 1


def test_unreachable_user_leaves_no_session(market, telemetry):
    market.group()
    market.transport.send_errors[ADMIN_ID] = TransportError("blocked")

    market.router.start_event_creation(ADMIN_ID, ADMIN_ID)

    assert market.app.store.peek_kind(ADMIN_ID) is None
    telemetry.flush()
    assert telemetry.get_error_summary().get("transport_failure") == 1


def test_poll_answers_and_retractions(market):
    group = market.group(members=[10])
    event = market.event(group)

    assert market.vote(event, 10, 0, "Ann")
    assert not market.router.handle_poll_answer(PollAnswer("unknown-poll", 10, 0, ""))
    assert market.router.handle_poll_retraction(event.poll_id, 10)
    assert not market.router.handle_poll_retraction(event.poll_id, 10)


@pytest.mark.parametrize(
    "kind, message, expected",
    [
        (ErrorKind.EVENT_HAS_VOTES, "", "That event already has votes and can no longer be edited."),
        (ErrorKind.UNAUTHORIZED, "admins only", "You are not allowed to do that. (admins only)"),
        (ErrorKind.VALIDATION, "Question cannot be empty", "Question cannot be empty"),
        (ErrorKind.TRANSPORT_FAILURE, "send failed", GENERIC_APOLOGY),
    ],
)
def test_error_text(kind, message, expected):
    assert error_text(DomainError(kind, message)) == expected


def test_insufficient_participation_text():
    exc = DomainError(ErrorKind.INSUFFICIENT_PARTICIPATION, "", {"required": 3, "current": 1})
    assert error_text(exc) == "You need 3 completed predictions to create events. You have 1; 2 more to go."
