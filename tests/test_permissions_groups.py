"""Tests for permissions, group choices, invite codes and joining."""
from __future__ import annotations

import pytest

from prediction_market.errors import DomainError, ErrorKind
from prediction_market.groups import InviteCodes
from prediction_market.permissions import StaticAdminPolicy

from conftest import ADMIN_ID, OTHER_CHAT_ID


def test_admin_policy_membership():
    policy = StaticAdminPolicy([1, 2])
    assert policy.is_admin(2)
    assert not policy.is_admin(3)


def test_creation_requires_completed_participations(market):
    group = market.group(members=[10])
    permissions = market.services.permissions

    decision = permissions.can_create_event(10, group.id)
    assert not decision.allowed
    assert (decision.required, decision.current, decision.remaining) == (3, 0, 3)

    market.complete_participations(group, 10, 2)
    assert permissions.can_create_event(10, group.id).current == 2
    with pytest.raises(DomainError) as excinfo:
        permissions.require_can_create(10, group.id)
    assert excinfo.value.kind is ErrorKind.INSUFFICIENT_PARTICIPATION
    assert excinfo.value.details == {"required": 3, "current": 2}

    market.complete_participations(group, 10, 1)
    assert permissions.can_create_event(10, group.id).allowed


def test_votes_on_open_events_do_not_count(market):
    group = market.group(members=[10])
    for index in range(3):
        market.vote(market.event(group, question=f"Open {index}?"), 10, 0)

    assert market.services.permissions.can_create_event(10, group.id).current == 0


def test_admins_skip_the_participation_gate(market):
    group = market.group()
    assert market.services.permissions.can_create_event(ADMIN_ID, group.id).allowed


def test_non_members_cannot_create(market):
    group = market.group()
    with pytest.raises(DomainError) as excinfo:
        market.services.permissions.require_can_create(99, group.id)
    assert excinfo.value.kind is ErrorKind.NO_GROUP_MEMBERSHIP


def test_only_creator_or_admin_manage_events(market):
    group = market.group(members=[10, 11])
    event = market.event(group, creator=10)
    permissions = market.services.permissions

    assert permissions.can_manage_event(10, event)
    assert permissions.can_manage_event(ADMIN_ID, event)
    assert not permissions.can_manage_event(11, event)
    with pytest.raises(DomainError) as excinfo:
        permissions.require_can_manage(11, event)
    assert excinfo.value.kind is ErrorKind.UNAUTHORIZED


def test_invite_codes_round_trip_and_are_case_insensitive():
    codes = InviteCodes()
    code = codes.encode(1234)
    assert len(code) >= 4
    assert codes.decode(code.lower()) == 1234
    with pytest.raises(ValueError):
        codes.decode("O0I1")


def test_join_with_invite_code(market):
    group = market.group()
    directory = market.services.directory
    code = directory.invite_code(group.id)

    joined_group, joined = directory.join(20, code)
    assert joined and joined_group.id == group.id
    assert market.state.is_active_member(group.id, 20)
    _, joined_again = directory.join(20, code)
    assert not joined_again

    with pytest.raises(DomainError) as excinfo:
        directory.join(20, "ZZZZZZ")
    assert excinfo.value.kind is ErrorKind.GROUP_NOT_FOUND


def test_registering_a_known_chat_reuses_the_group(market):
    directory = market.services.directory
    first, created = directory.register(OTHER_CHAT_ID, "Alpha", ADMIN_ID)
    again, created_again = directory.register(OTHER_CHAT_ID, "Beta", ADMIN_ID, is_forum=True)

    assert created and not created_again
    assert again.id == first.id
    assert again.name == "Alpha"
    assert again.is_forum


def test_forum_groups_offer_one_choice_per_topic(market):
    plain = market.group(name="Plain")
    forum = market.group(chat_id=OTHER_CHAT_ID, name="Forum", is_forum=True, topics=[501, 502])

    choices = market.services.groups.choices_for([plain, forum])

    assert [choice.label for choice in choices] == ["Plain", "Forum / Topic 501", "Forum / Topic 502"]
    assert [choice.thread_id for choice in choices] == [None, 501, 502]
    assert all(choice.forum_topic_id for choice in choices[1:])


def test_removed_members_rejoin_and_regain_their_vote(market):
    group = market.group(members=[20])
    event = market.event(group)
    market.state.remove_membership(group.id, 20)

    assert not market.state.is_active_member(group.id, 20)
    assert not market.vote(event, 20, 0)

    _, joined = market.services.directory.join(20, market.services.directory.invite_code(group.id))
    assert joined
    assert market.vote(event, 20, 0)
