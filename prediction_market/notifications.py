"""Best-effort broadcasts: achievements, results, reminders and admin notices.

Nothing here raises on delivery problems. A notice that cannot be sent is
logged and skipped so that resolution and scheduled jobs always finish.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence

from .callbacks import LeaveChat, ResolveEvent
from .models import AchievementCode, Event, Group, ScoreDelta
from .services.deadlines import format_deadline
from .services.formatting import achievement_line, format_lines, results_message
from .state import MarketState
from .telemetry import TelemetryCollector, get_telemetry
from .transport import Button, ButtonRows, ChatTransport, TransportError

logger = logging.getLogger(__name__)


class NotificationService:
    """Sends notices through the chat transport on behalf of the core."""

    def __init__(
        self,
        state: MarketState,
        transport: ChatTransport,
        *,
        tz: tzinfo,
        reminder_lead: timedelta = timedelta(hours=24),
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._state = state
        self._transport = transport
        self._tz = tz
        self._reminder_lead = reminder_lead
        self._telemetry = telemetry

    @property
    def telemetry(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    def _deliver(
        self,
        chat_id: int,
        text: str,
        *,
        purpose: str,
        buttons: Optional[ButtonRows] = None,
        thread_id: Optional[int] = None,
    ) -> Optional[int]:
        try:
            return self._transport.send_message(chat_id, text, buttons=buttons, thread_id=thread_id)
        except TransportError as exc:
            logger.warning("Failed to send %s notice to %s: %s", purpose, chat_id, exc)
            self.telemetry.track_error("notification_failed", command=purpose, error_details=str(exc))
            return None

    def _thread_for(self, event: Event) -> Optional[int]:
        return self._state.thread_for_event(event)

    def close_poll(self, event: Event) -> bool:
        """End the event's native poll. Failures are logged, never raised."""

        group = self._state.get_group(event.group_id)
        if group is None or not event.poll_message_id:
            return False
        try:
            self._transport.stop_poll(
                group.chat_id, event.poll_message_id, thread_id=self._thread_for(event)
            )
        except TransportError as exc:
            logger.warning("Failed to close poll for event %s: %s", event.id, exc)
            return False
        return True

    # Achievements and permissions ---------------------------------------
    def notify_achievements(
        self,
        user_id: int,
        group_id: int,
        codes: Sequence[AchievementCode],
        display_name: str = "",
    ) -> None:
        if not codes:
            return
        group = self._state.get_group(group_id)
        group_name = group.name if group else str(group_id)
        lines: List[Optional[str]] = [f"New achievements in {group_name}:"]
        lines.extend(achievement_line(code) for code in codes)
        self._deliver(user_id, format_lines(lines), purpose="achievement")
        if group is None:
            return
        who = display_name or f"<@{user_id}>"
        for code in codes:
            self._deliver(
                group.chat_id,
                f"{who} earned {achievement_line(code)}",
                purpose="achievement_announcement",
            )

    def notify_permission_granted(self, user_id: int, group_id: int) -> None:
        group = self._state.get_group(group_id)
        group_name = group.name if group else str(group_id)
        self._deliver(
            user_id,
            f"You can now create events in {group_name}. Use /create_event to start one.",
            purpose="permission_granted",
        )

    def notify_group_created(self, group: Group, creator_id: int, admin_ids: Iterable[int]) -> None:
        text = f"New group registered: {group.name} (chat {group.chat_id}) by <@{creator_id}>."
        for admin_id in sorted(set(admin_ids)):
            if admin_id == creator_id:
                continue
            self._deliver(admin_id, text, purpose="group_created")

    def notify_bot_added(
        self,
        chat_id: int,
        title: str,
        admin_ids: Iterable[int],
        *,
        added_by: Optional[int] = None,
    ) -> int:
        """DM each admin that the bot joined a chat. Returns how many were told."""

        lines = [f"The bot was added to {title} (chat {chat_id})."]
        if added_by is not None:
            lines.append(f"Added by <@{added_by}>.")
        lines.append("Register it with /create_group, or leave if it was added by mistake.")
        buttons = [[Button("Leave", LeaveChat(chat_id).encode())]]
        sent = 0
        for admin_id in sorted(set(admin_ids)):
            if self._deliver(admin_id, "\n".join(lines), purpose="bot_added", buttons=buttons) is not None:
                sent += 1
        return sent

    # Results ------------------------------------------------------------
    def publish_results(
        self,
        event: Event,
        distribution: Sequence[int],
        deltas: Sequence[ScoreDelta],
    ) -> Optional[int]:
        group = self._state.get_group(event.group_id)
        if group is None:
            logger.warning("Cannot publish results for event %s: group missing", event.id)
            return None
        names: Dict[int, str] = {}
        for delta in deltas:
            rating = self._state.get_rating(delta.user_id, event.group_id)
            if rating and rating.username:
                names[delta.user_id] = rating.username
        return self._deliver(
            group.chat_id,
            results_message(event, distribution, deltas, names),
            purpose="results",
            thread_id=self._thread_for(event),
        )

    # Scheduled notices ---------------------------------------------------
    def send_deadline_reminders(self, now: datetime) -> int:
        """Remind each group once about events closing within the lead time."""

        sent = 0
        for event in self._state.events_needing_reminder(now, self._reminder_lead):
            group = self._state.get_group(event.group_id)
            if group is None:
                self._state.mark_reminder_sent(event.id)
                continue
            text = (
                f"⏰ Voting closes {format_deadline(event.deadline, self._tz)}: {event.question}"
            )
            if self._deliver(
                group.chat_id, text, purpose="deadline_reminder", thread_id=self._thread_for(event)
            ) is not None:
                sent += 1
            self._state.mark_reminder_sent(event.id)
        if sent:
            logger.info("Sent %d deadline reminders", sent)
        return sent

    def notify_organizers(self, now: datetime) -> int:
        """Close polls whose deadline has passed and ask creators to resolve them."""

        sent = 0
        for event in self._state.events_awaiting_resolution(now):
            self.close_poll(event)
            buttons = [[Button("Resolve now", ResolveEvent(event.id).encode())]]
            text = f"Voting has closed for: {event.question}\nPick the correct answer to score it."
            if self._deliver(
                event.created_by, text, purpose="organizer_reminder", buttons=buttons
            ) is not None:
                sent += 1
            self._state.mark_organizer_notified(event.id)
        if sent:
            logger.info("Asked %d organizers to resolve their events", sent)
        return sent


__all__ = ["NotificationService"]
