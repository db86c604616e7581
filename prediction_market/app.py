"""Wiring of the core services into one application bundle."""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .achievements import AchievementRules, AchievementTracker
from .cleanup import MessageCleaner
from .commands import MarketCommands
from .config import Settings, get_settings
from .events import EventManager
from .flows import FlowServices
from .groups import GroupContextResolver, GroupDirectory
from .notifications import NotificationService
from .permissions import AuthorizationPolicy, EventPermissionValidator, StaticAdminPolicy
from .router import FlowRouter
from .scoring import RatingCalculator, ScoringRules
from .sessions import SessionStore
from .state import MarketState
from .telemetry import TelemetryCollector
from .transport import ChatTransport


@dataclass
class MarketApp:
    services: FlowServices
    router: FlowRouter
    commands: MarketCommands

    @property
    def settings(self) -> Settings:
        return self.services.settings

    @property
    def state(self) -> MarketState:
        return self.services.state

    @property
    def store(self) -> SessionStore:
        return self.services.store


def build_app(
    db_path: Path,
    transport: ChatTransport,
    *,
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
    policy: Optional[AuthorizationPolicy] = None,
    telemetry: Optional[TelemetryCollector] = None,
    sleeper: Callable[[float], None] = time.sleep,
) -> MarketApp:
    settings = settings or get_settings()
    clock = clock or (lambda: datetime.now(timezone.utc))
    state = MarketState(db_path)
    store = SessionStore(db_path, ttl=timedelta(minutes=settings.session_ttl_minutes), clock=clock)
    policy = policy or StaticAdminPolicy(settings.admin_ids)
    services = FlowServices(
        settings=settings,
        state=state,
        store=store,
        transport=transport,
        cleaner=MessageCleaner(
            transport,
            default_backoff=settings.rate_limit_backoff_seconds,
            sleeper=sleeper,
            telemetry=telemetry,
        ),
        events=EventManager(state, clock=clock),
        permissions=EventPermissionValidator(
            state, policy, min_events_to_create=settings.min_events_to_create
        ),
        groups=GroupContextResolver(state),
        directory=GroupDirectory(state, clock=clock),
        scoring=RatingCalculator(
            state, ScoringRules.from_settings(settings), clock=clock, telemetry=telemetry
        ),
        achievements=AchievementTracker(
            state, AchievementRules.from_settings(settings), clock=clock, telemetry=telemetry
        ),
        notifications=NotificationService(
            state,
            transport,
            tz=settings.timezone,
            reminder_lead=timedelta(hours=settings.reminder_lead_hours),
            telemetry=telemetry,
        ),
        clock=clock,
        telemetry=telemetry,
    )
    return MarketApp(
        services=services,
        router=FlowRouter(services, telemetry=telemetry),
        commands=MarketCommands(services),
    )


__all__ = ["MarketApp", "build_app"]
