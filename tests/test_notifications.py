"""Tests for achievement notices, results broadcasts and scheduled reminders."""
from __future__ import annotations

from datetime import timedelta

from prediction_market.callbacks import ResolveEvent
from prediction_market.models import AchievementCode, EventType
from prediction_market.transport import TransportError

from conftest import ADMIN_ID, GROUP_CHAT_ID, OTHER_CHAT_ID


def test_achievements_go_to_the_user_and_the_group(market):
    group = market.group(members=[10])
    market.services.notifications.notify_achievements(
        10, group.id, [AchievementCode.SHARPSHOOTER], "Ann"
    )

    dm = market.transport.last_to(10).text
    assert dm.startswith("New achievements in Forecasters:")
    assert "Sharpshooter" in dm
    assert market.transport.last_to(GROUP_CHAT_ID).text.startswith("Ann earned 🏆 Sharpshooter")


def test_failed_delivery_is_swallowed(market, telemetry):
    group = market.group(members=[10])
    market.transport.send_errors[10] = TransportError("blocked")

    market.services.notifications.notify_achievements(10, group.id, [AchievementCode.VETERAN])

    assert "<@10> earned" in market.transport.last_to(GROUP_CHAT_ID).text
    telemetry.flush()
    assert telemetry.get_error_summary().get("notification_failed") == 1


def test_group_created_notice_skips_the_creator(market):
    group, _ = market.services.directory.register(OTHER_CHAT_ID, "New", ADMIN_ID)
    market.services.notifications.notify_group_created(group, ADMIN_ID, [ADMIN_ID, 2, 3])

    assert market.transport.messages_to(ADMIN_ID) == []
    assert "New group registered: New" in market.transport.last_to(2).text
    assert market.transport.messages_to(3)


def test_results_are_posted_to_the_events_thread(market):
    group = market.group(members=[10, 11], is_forum=True, topics=[777])
    topic = market.state.list_forum_topics(group.id)[0]
    event = market.services.events.create_event(
        group_id=group.id,
        question="Launch on time?",
        event_type=EventType.BINARY,
        options=["Yes", "No"],
        deadline=market.clock() + timedelta(days=1),
        created_by=ADMIN_ID,
        forum_topic_id=topic.id,
    )
    market.services.events.attach_poll(event.id, "poll-x", 55)
    event = market.state.get_event(event.id)
    market.vote(event, 10, 0, "Ann")
    market.vote(event, 11, 1, "Bob")
    event = market.services.events.resolve_event(event.id, 0)
    deltas = market.services.scoring.calculate_scores(event.id, 0)

    market.services.notifications.publish_results(
        event, market.services.events.vote_distribution(event), deltas
    )

    posted = market.transport.last_to(GROUP_CHAT_ID)
    assert posted.thread_id == 777
    assert posted.text.splitlines()[0] == "✅ Event resolved: Launch on time?"
    assert "✔ Yes: 1 (50%)" in posted.text
    assert "Ann: +14" in posted.text
    assert posted.text.endswith("Participants: 2")


def test_deadline_reminders_are_sent_once(market):
    group = market.group()
    soon = market.event(group, question="Soon?", deadline=market.clock() + timedelta(hours=5))
    market.event(group, question="Later?", deadline=market.clock() + timedelta(days=5))
    notifications = market.services.notifications

    assert notifications.send_deadline_reminders(market.clock()) == 1
    reminder = market.transport.last_to(GROUP_CHAT_ID).text
    assert reminder.startswith("⏰ Voting closes")
    assert soon.question in reminder

    assert notifications.send_deadline_reminders(market.clock()) == 0


def test_editing_the_deadline_rearms_the_reminder(market):
    group = market.group()
    event = market.event(group, deadline=market.clock() + timedelta(hours=5))
    notifications = market.services.notifications
    notifications.send_deadline_reminders(market.clock())

    market.services.events.edit_event(event.id, deadline=market.clock() + timedelta(hours=6))

    assert notifications.send_deadline_reminders(market.clock()) == 1


def test_organizers_are_asked_to_resolve_past_deadline(market):
    group = market.group(members=[10])
    event = market.event(group, creator=10, deadline=market.clock() + timedelta(hours=1))
    notifications = market.services.notifications
    assert notifications.notify_organizers(market.clock()) == 0

    market.clock.advance(hours=2)

    assert notifications.notify_organizers(market.clock()) == 1
    nudge = market.transport.last_to(10)
    assert nudge.button_data() == [ResolveEvent(event.id).encode()]
    assert notifications.notify_organizers(market.clock()) == 0
    assert market.transport.stopped == [(GROUP_CHAT_ID, event.poll_message_id)]


def test_forum_polls_close_in_their_thread_at_the_deadline(market):
    group = market.group(members=[10], is_forum=True, topics=[777])
    topic = market.state.list_forum_topics(group.id)[0]
    event = market.services.events.create_event(
        group_id=group.id,
        question="Launch on time?",
        event_type=EventType.BINARY,
        options=["Yes", "No"],
        deadline=market.clock() + timedelta(hours=1),
        created_by=10,
        forum_topic_id=topic.id,
    )
    market.services.events.attach_poll(event.id, "poll-x", 55)
    market.clock.advance(hours=2)

    assert market.services.notifications.notify_organizers(market.clock()) == 1

    assert market.transport.stopped == [(GROUP_CHAT_ID, 55)]
    assert market.transport.thread_targets == {55: 777}


def test_permission_granted_notice(market):
    group = market.group(members=[10])
    market.services.notifications.notify_permission_granted(10, group.id)
    assert "You can now create events in Forecasters" in market.transport.last_to(10).text
