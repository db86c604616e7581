"""Tests for the admin-only group registration flow."""
from __future__ import annotations

import pytest

from prediction_market.callbacks import GroupIsForum, SkipThread
from prediction_market.contexts import RegistrationState
from prediction_market.flows.base import USE_BUTTONS
from prediction_market.flows.registration import (
    CHAT_ID_PROMPT,
    FORUM_PROMPT,
    NAME_PROMPT,
    THREAD_PROMPT,
)

from conftest import ADMIN_ID, GROUP_CHAT_ID, make_settings


@pytest.fixture
def settings():
    return make_settings(admin_ids=frozenset({ADMIN_ID, 2}))


def _state(market):
    return market.app.store.get(ADMIN_ID).state


def test_plain_group_registration(market):
    transport = market.transport
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)
    assert market.last_text(ADMIN_ID) == NAME_PROMPT

    market.say(ADMIN_ID, "  Forecasters  ")
    assert market.last_text(ADMIN_ID) == CHAT_ID_PROMPT
    market.say(ADMIN_ID, str(GROUP_CHAT_ID))
    forum_prompt = transport.last_to(ADMIN_ID)
    assert forum_prompt.text == FORUM_PROMPT
    assert forum_prompt.button_data() == [GroupIsForum(True).encode(), GroupIsForum(False).encode()]

    market.press(ADMIN_ID, GroupIsForum(False).encode())

    group = market.state.get_group_by_chat(GROUP_CHAT_ID)
    assert group.name == "Forecasters"
    assert not group.is_forum
    assert market.state.is_active_member(group.id, ADMIN_ID)
    code = market.services.directory.invite_code(group.id)
    assert market.last_text(ADMIN_ID).splitlines() == [
        f"Group Forecasters is registered (chat {GROUP_CHAT_ID}).",
        f"Invite code: {code}",
        f"Members join with /join {code}",
    ]
    assert forum_prompt.message_id in transport.deleted_ids()
    assert market.app.store.peek_kind(ADMIN_ID) is None
    assert "New group registered: Forecasters" in market.last_text(2)


def test_forum_with_topic(market):
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)
    market.say(ADMIN_ID, "Forum")
    market.say(ADMIN_ID, "-1005")
    market.press(ADMIN_ID, GroupIsForum(True).encode())
    assert market.last_text(ADMIN_ID) == THREAD_PROMPT
    assert market.transport.last_to(ADMIN_ID).button_data() == [SkipThread().encode()]

    market.say(ADMIN_ID, "0")
    assert market.last_text(ADMIN_ID) == "The topic id must be a positive number."
    market.say(ADMIN_ID, "42")

    group = market.state.get_group_by_chat(-1005)
    assert group.is_forum
    assert [topic.thread_id for topic in market.state.list_forum_topics(group.id)] == [42]
    assert "Events will be posted to topic 42." in market.last_text(ADMIN_ID)


def test_forum_without_topic(market):
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)
    market.say(ADMIN_ID, "Forum")
    market.say(ADMIN_ID, "-1005")
    market.press(ADMIN_ID, GroupIsForum(True).encode())
    market.press(ADMIN_ID, SkipThread().encode())

    group = market.state.get_group_by_chat(-1005)
    assert group.is_forum
    assert market.state.list_forum_topics(group.id) == []


def test_detected_forum_skips_the_question(market):
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID, detected_is_forum=True)
    market.say(ADMIN_ID, "Forum")
    market.say(ADMIN_ID, "-1005")

    assert market.last_text(ADMIN_ID) == THREAD_PROMPT
    assert _state(market) is RegistrationState.ASK_THREAD_ID


def test_invalid_inputs_reprompt(market):
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)

    market.say(ADMIN_ID, "   ")
    assert market.last_text(ADMIN_ID) == "The name must be between 1 and 128 characters."
    market.say(ADMIN_ID, "x" * 129)
    assert _state(market) is RegistrationState.ASK_NAME

    market.say(ADMIN_ID, "Forecasters")
    market.say(ADMIN_ID, "chat one")
    assert market.last_text(ADMIN_ID) == "The chat id must be a whole number."
    market.say(ADMIN_ID, "-")
    assert _state(market) is RegistrationState.ASK_CHAT_ID

    market.say(ADMIN_ID, "-1001")
    market.say(ADMIN_ID, "yes")
    assert market.last_text(ADMIN_ID) == USE_BUTTONS
    assert _state(market) is RegistrationState.ASK_IS_FORUM


def test_registering_a_known_chat_reuses_the_group(market):
    existing = market.group(name="Original")
    market.router.start_group_creation(ADMIN_ID, ADMIN_ID)
    market.say(ADMIN_ID, "Renamed")
    market.say(ADMIN_ID, str(GROUP_CHAT_ID))
    market.press(ADMIN_ID, GroupIsForum(False).encode())

    assert market.last_text(ADMIN_ID).startswith(
        f"Group Original is already registered (chat {GROUP_CHAT_ID})."
    )
    assert market.state.get_group_by_chat(GROUP_CHAT_ID).id == existing.id
    assert market.transport.messages_to(2) == []


def test_only_admins_may_register(market):
    market.router.start_group_creation(10, 10)

    assert market.last_text(10) == "You are not allowed to do that. (this command is for administrators only)"
    assert market.app.store.peek_kind(10) is None
