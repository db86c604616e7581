"""One-shot commands that answer with a single message: join, events, rating, my, groups."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import DomainError
from .flows import FlowServices
from .router import error_text
from .telemetry import get_telemetry
from .services.deadlines import format_deadline
from .services.formatting import (
    ACHIEVEMENT_TITLES,
    EVENT_TYPE_LABELS,
    format_lines,
    rating_table,
)

logger = logging.getLogger(__name__)


class MarketCommands:
    """Read-mostly handlers; each returns the reply text for the adapter."""

    def __init__(self, services: FlowServices) -> None:
        self.services = services

    def join(self, user_id: int, code: str, display_name: str = "") -> str:
        try:
            group, joined = self.services.directory.join(user_id, code)
        except DomainError as exc:
            logger.info("Join with code %r failed for %s", code, user_id)
            return error_text(exc)
        self.services.state.touch_rating(user_id, group.id, display_name, self.services.now())
        if not joined:
            return f"You are already a member of {group.name}."
        return f"Welcome to {group.name}! Vote on its polls to build your rating."

    def events_overview(self, user_id: int) -> str:
        services = self.services
        groups = services.state.groups_for_user(user_id)
        if not groups:
            return "You are not a member of any group yet. Use /join with an invite code."
        names = {group.id: group.name for group in groups}
        events = services.events.list_active_events(list(names))
        if not events:
            return "There are no active events in your groups."
        tz = services.settings.timezone
        lines: List[Optional[str]] = ["Active events:"]
        for event in events:
            lines.append(
                f"#{event.id} [{names[event.group_id]}] {event.question} "
                f"({EVENT_TYPE_LABELS[event.event_type]}, closes {format_deadline(event.deadline, tz)}, "
                f"{services.events.vote_count(event.id)} votes)"
            )
        return format_lines(lines)

    def rating_overview(self, user_id: int) -> str:
        services = self.services
        groups = services.state.groups_for_user(user_id)
        if not groups:
            return "You are not a member of any group yet. Use /join with an invite code."
        limit = services.settings.top_ratings_limit
        blocks = [
            rating_table(services.scoring.get_top_ratings(group.id, limit), title=f"🏆 {group.name}")
            for group in groups
        ]
        return format_lines(blocks)

    def my_overview(self, user_id: int) -> str:
        services = self.services
        groups = services.state.groups_for_user(user_id)
        if not groups:
            return "You are not a member of any group yet. Use /join with an invite code."
        lines: List[Optional[str]] = []
        for group in groups:
            rating = services.scoring.get_user_rating(user_id, group.id)
            lines.append(f"{group.name}:")
            if rating is None or rating.participations == 0:
                lines.append("  No resolved predictions yet.")
            else:
                lines.append(
                    f"  Score {rating.score}, {rating.correct_count}/{rating.participations} correct "
                    f"({rating.accuracy:.0%}), streak {rating.streak}"
                )
            achievements = services.state.achievements_for(user_id, group.id)
            if achievements:
                titles = ", ".join(ACHIEVEMENT_TITLES[a.code] for a in achievements)
                lines.append(f"  Achievements: {titles}")
            decision = services.permissions.can_create_event(user_id, group.id)
            if not decision.allowed:
                lines.append(f"  {decision.remaining} more predictions to unlock event creation")
        return format_lines(lines)

    def groups_overview(self, user_id: int) -> str:
        state = self.services.state
        groups = state.groups_for_user(user_id)
        if not groups:
            return "You are not a member of any group yet. Use /join with an invite code."
        tz = self.services.settings.timezone
        lines: List[Optional[str]] = ["Your groups:"]
        for group in groups:
            membership = state.get_membership(group.id, user_id)
            joined = f", joined {membership.joined_at.astimezone(tz):%d.%m.%Y}" if membership else ""
            lines.append(f"• {group.name}: {state.count_active_members(group.id)} members{joined}")
        return format_lines(lines)

    def telemetry_report(self, user_id: int, hours: int = 24) -> str:
        try:
            self.services.permissions.require_admin(user_id)
        except DomainError as exc:
            return error_text(exc)
        report = (self.services.telemetry or get_telemetry()).generate_report(hours)
        return format_telemetry_report(report, hours)


def format_telemetry_report(report: Dict[str, Any], hours: int = 24) -> str:
    lines: List[Optional[str]] = [
        "📊 Telemetry report",
        f"Uptime: {report['uptime_seconds'] / 3600:.1f} hours",
        f"Total events: {report['total_events']:,}",
        f"Unique users: {report['unique_users']}",
    ]
    commands = report["command_stats"]
    if commands:
        lines.append("")
        lines.append("Commands:")
        ranked = sorted(commands.items(), key=lambda item: item[1]["usage_count"], reverse=True)
        for name, stats in ranked:
            lines.append(
                f"• /{name}: {stats['usage_count']} uses, "
                f"{stats['success_rate'] or 0:.0%} ok, {stats['unique_users']} users"
            )
    flows = report["flows"]
    if flows:
        lines.append("")
        lines.append(f"Flows ({hours}h):")
        for name, counts in sorted(flows.items()):
            lines.append(f"• {name}: {counts['started']} started, {counts['finished']} finished")
    errors = report["errors"]
    lines.append("")
    if errors:
        lines.append(f"Errors ({hours}h):")
        lines.extend(f"• {name}: {count}" for name, count in errors.items())
    else:
        lines.append(f"No errors in the last {hours}h.")
    return format_lines(lines)


__all__ = ["MarketCommands", "format_telemetry_report"]
