"""End-to-end tests for the event creation flow."""
from __future__ import annotations

import pytest

from prediction_market.callbacks import (
    ChooseEventType,
    Confirm,
    DeadlinePreset,
    EditEvent,
    ResolveEvent,
    SelectGroup,
)
from prediction_market.contexts import CreationState
from prediction_market.flows.base import USE_BUTTONS
from prediction_market.flows.creation import OPTIONS_PROMPT, QUESTION_PROMPT, TYPE_PROMPT
from prediction_market.models import AchievementCode, EventType
from prediction_market.transport import TransportError

from conftest import GROUP_CHAT_ID, OTHER_CHAT_ID

USER = 10


@pytest.fixture
def group(market):
    group = market.group(members=[USER])
    market.complete_participations(group, USER, 3)
    return group


def _state(market):
    return market.app.store.get(USER).state


def test_full_multi_option_walkthrough(market, group):
    transport = market.transport
    market.router.start_event_creation(USER, USER)
    question_prompt = transport.last_to(USER)
    assert question_prompt.text == QUESTION_PROMPT
    assert _state(market) is CreationState.ASK_QUESTION

    reply_id = market.say(USER, "  Which colour wins?  ")
    assert transport.last_to(USER).text == TYPE_PROMPT
    assert {question_prompt.message_id, reply_id} <= set(transport.deleted_ids())

    callback = market.press(USER, ChooseEventType(EventType.MULTI_OPTION).encode())
    assert market.answers_for(callback) == [None]
    assert transport.last_to(USER).text == OPTIONS_PROMPT

    market.say(USER, "\n".join(f"Colour {n}" for n in range(7)))
    error = transport.last_to(USER)
    assert error.text.startswith("Provide between 2 and 6 options")
    assert _state(market) is CreationState.ASK_OPTIONS

    market.say(USER, "Red\nGreen\nBlue")
    assert error.message_id in transport.deleted_ids()
    assert _state(market) is CreationState.ASK_DEADLINE
    assert DeadlinePreset(7).encode() in transport.last_to(USER).button_data()

    market.press(USER, DeadlinePreset(7).encode())
    confirm = transport.last_to(USER)
    assert "Question: Which colour wins?" in confirm.text
    assert "Deadline: 11.03.2024 12:00" in confirm.text
    assert confirm.button_data() == [Confirm(True).encode(), Confirm(False).encode()]

    market.press(USER, Confirm(True).encode())

    poll = transport.polls[-1]
    assert (poll.chat_id, poll.question, poll.options) == (GROUP_CHAT_ID, "Which colour wins?", ["Red", "Green", "Blue"])
    event = market.state.get_event_by_poll(poll.poll_id)
    assert event.created_by == USER
    assert poll.closes_at == event.deadline
    assert event.event_type is EventType.MULTI_OPTION
    assert market.app.store.peek_kind(USER) is None

    summary = next(m for m in transport.messages_to(USER) if m.text.startswith(f"✅ Event #{event.id}"))
    assert summary.button_data() == [EditEvent(event.id).encode(), ResolveEvent(event.id).encode()]
    assert [a.code for a in market.state.achievements_for(USER, group.id)] == [AchievementCode.EVENT_ORGANIZER]


def test_binary_event_skips_the_options_step(market, group):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.press(USER, ChooseEventType(EventType.BINARY).encode())

    assert _state(market) is CreationState.ASK_DEADLINE
    assert market.app.store.get(USER).context.options == ["Yes", "No"]


def test_typed_deadline_and_invalid_format(market, group):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.press(USER, ChooseEventType(EventType.PROBABILITY).encode())

    market.say(USER, "next friday")
    assert "DD.MM.YYYY HH:MM" in market.last_text(USER)
    assert "for example" in market.last_text(USER)
    assert _state(market) is CreationState.ASK_DEADLINE

    market.say(USER, "01.01.2020 10:00")
    assert market.last_text(USER) == "Deadline must be in the future"

    market.say(USER, "31.12.2024 18:30")
    assert _state(market) is CreationState.CONFIRM
    assert "Deadline: 31.12.2024 18:30" in market.last_text(USER)


def test_text_while_buttons_are_expected(market, group):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.say(USER, "binary please")

    assert market.last_text(USER) == USE_BUTTONS
    assert _state(market) is CreationState.ASK_EVENT_TYPE


def test_button_from_another_step_is_refused(market, group):
    market.router.start_event_creation(USER, USER)
    market.press(USER, DeadlinePreset(3).encode())

    assert market.last_text(USER) == "This button is no longer valid."
    assert _state(market) is CreationState.ASK_QUESTION


def test_cancel_at_confirmation(market, group):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.press(USER, ChooseEventType(EventType.BINARY).encode())
    market.press(USER, DeadlinePreset(1).encode())
    market.press(USER, Confirm(False).encode())

    assert market.last_text(USER) == "Event creation cancelled."
    assert market.app.store.peek_kind(USER) is None
    assert market.state.count_events_created(USER, group.id) == 0


def test_choosing_between_groups_and_topics(market, group):
    forum = market.group(chat_id=OTHER_CHAT_ID, name="Forum", is_forum=True, topics=[900], members=[USER])
    market.complete_participations(forum, USER, 3)

    market.router.start_event_creation(USER, USER)
    prompt = market.transport.last_to(USER)
    assert prompt.button_labels() == ["Forecasters", "Forum / Topic 900"]
    assert _state(market) is CreationState.SELECT_GROUP

    market.press(USER, SelectGroup(forum.id, 900).encode())
    context = market.app.store.get(USER).context
    assert (context.group_id, context.thread_id) == (forum.id, 900)

    market.say(USER, "Topic question?")
    market.press(USER, ChooseEventType(EventType.BINARY).encode())
    market.press(USER, DeadlinePreset(1).encode())
    market.press(USER, Confirm(True).encode())

    poll = market.transport.polls[-1]
    assert (poll.chat_id, poll.thread_id) == (OTHER_CHAT_ID, 900)
    event = market.state.get_event_by_poll(poll.poll_id)
    assert event.forum_topic_id == market.state.list_forum_topics(forum.id)[0].id


def test_users_below_the_threshold_are_told_how_far_they_are(market):
    group = market.group(members=[USER])
    market.complete_participations(group, USER, 1)

    market.router.start_event_creation(USER, USER)

    assert market.last_text(USER) == (
        "You need 3 completed predictions to create events. You have 1; 2 more to go."
    )
    assert market.app.store.peek_kind(USER) is None


def test_non_members_are_pointed_to_join(market):
    market.group()
    market.router.start_event_creation(USER, USER)
    assert "/join" in market.last_text(USER)
    assert market.app.store.peek_kind(USER) is None


def test_poll_failure_keeps_the_event(market, group, telemetry):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.press(USER, ChooseEventType(EventType.BINARY).encode())
    market.press(USER, DeadlinePreset(1).encode())
    market.transport.poll_error = TransportError("missing permissions")

    market.press(USER, Confirm(True).encode())

    assert "could not be published" in market.last_text(USER)
    assert market.state.count_events_created(USER, group.id) == 1
    assert market.app.store.peek_kind(USER) is None
    telemetry.flush()
    assert telemetry.get_error_summary().get("poll_publish_failed") == 1


def test_restarting_the_same_flow_starts_over(market, group):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.router.start_event_creation(USER, USER)

    assert market.last_text(USER) == QUESTION_PROMPT
    assert market.app.store.get(USER).context.question == ""


def test_deadline_that_passes_at_confirmation_is_asked_again(market, group):
    market.router.start_event_creation(USER, USER)
    market.say(USER, "Rain tomorrow?")
    market.press(USER, ChooseEventType(EventType.BINARY).encode())
    market.say(USER, "04.03.2024 09:05")
    assert _state(market) is CreationState.CONFIRM

    market.clock.advance(minutes=10)
    market.press(USER, Confirm(True).encode())

    prompt = market.transport.last_to(USER)
    assert prompt.text.startswith("Deadline must be in the future.")
    assert DeadlinePreset(1).encode() in prompt.button_data()
    assert _state(market) is CreationState.ASK_DEADLINE
    assert market.app.store.get(USER).context.deadline is None
    assert market.state.count_events_created(USER, group.id) == 0

    market.press(USER, DeadlinePreset(1).encode())
    market.press(USER, Confirm(True).encode())

    assert market.state.count_events_created(USER, group.id) == 1
    assert market.app.store.peek_kind(USER) is None
