"""Configuration loading utilities for the prediction market bot."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo

import yaml


logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    timezone_name: str
    session_ttl_minutes: int
    min_events_to_create: int
    admin_ids: FrozenSet[int]
    participation_bonus: int
    wrong_penalty: int
    base_points: Dict[str, int]
    minority_bonus: int
    minority_threshold: float
    early_bonus: int
    early_window_hours: float
    sharpshooter_streak: int
    prophet_streak: int
    veteran_participations: int
    risk_taker_run: int
    organizer_thresholds: Dict[str, int]
    rate_limit_backoff_seconds: float
    reminder_lead_hours: float
    reminder_interval_minutes: int
    poll_duration_hours: int
    top_ratings_limit: int
    deadline_presets: Tuple[int, ...]
    deadline_preset_hour: int

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        sessions_cfg = data.get("sessions", {})
        permissions_cfg = data.get("permissions", {})
        scoring_cfg = data.get("scoring", {})
        base_cfg = scoring_cfg.get("base_points", {})
        achievements_cfg = data.get("achievements", {})
        organizer_cfg = achievements_cfg.get("organizer_thresholds", {})
        cleanup_cfg = data.get("cleanup", {})
        reminders_cfg = data.get("reminders", {})
        polls_cfg = data.get("polls", {})
        ratings_cfg = data.get("ratings", {})
        deadlines_cfg = data.get("deadlines", {})
        return Settings(
            timezone_name=str(data.get("timezone", "UTC")),
            session_ttl_minutes=int(sessions_cfg.get("ttl_minutes", 30)),
            min_events_to_create=int(permissions_cfg.get("min_events_to_create", 3)),
            admin_ids=frozenset(int(x) for x in permissions_cfg.get("admin_ids") or []),
            participation_bonus=int(scoring_cfg.get("participation_bonus", 1)),
            wrong_penalty=int(scoring_cfg.get("wrong_penalty", 3)),
            base_points={
                "binary": int(base_cfg.get("binary", 10)),
                "multi_option": int(base_cfg.get("multi_option", 15)),
                "probability": int(base_cfg.get("probability", 10)),
            },
            minority_bonus=int(scoring_cfg.get("minority_bonus", 5)),
            minority_threshold=float(scoring_cfg.get("minority_threshold", 0.4)),
            early_bonus=int(scoring_cfg.get("early_bonus", 3)),
            early_window_hours=float(scoring_cfg.get("early_window_hours", 12)),
            sharpshooter_streak=int(achievements_cfg.get("sharpshooter_streak", 3)),
            prophet_streak=int(achievements_cfg.get("prophet_streak", 10)),
            veteran_participations=int(achievements_cfg.get("veteran_participations", 50)),
            risk_taker_run=int(achievements_cfg.get("risk_taker_run", 3)),
            organizer_thresholds={
                "event_organizer": int(organizer_cfg.get("event_organizer", 1)),
                "active_organizer": int(organizer_cfg.get("active_organizer", 5)),
                "master_organizer": int(organizer_cfg.get("master_organizer", 20)),
            },
            rate_limit_backoff_seconds=float(cleanup_cfg.get("rate_limit_backoff_seconds", 1.0)),
            reminder_lead_hours=float(reminders_cfg.get("lead_hours", 24)),
            reminder_interval_minutes=int(reminders_cfg.get("interval_minutes", 10)),
            poll_duration_hours=int(polls_cfg.get("duration_hours", 768)),
            top_ratings_limit=int(ratings_cfg.get("top_limit", 10)),
            deadline_presets=tuple(
                int(x) for x in deadlines_cfg.get("presets", [1, 3, 7, 14, 30, 90, 180, 365])
            ),
            deadline_preset_hour=int(deadlines_cfg.get("preset_hour", 12)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    override = os.environ.get("PREDICTION_MARKET_SETTINGS")
    return SettingsLoader(Path(override) if override else None).load()


def _parse_int(env_key: str) -> Optional[int]:
    value = os.environ.get(env_key)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer %s for %s", value, env_key)
        return None


def _parse_id_list(env_key: str) -> FrozenSet[int]:
    raw = os.environ.get(env_key, "")
    ids = set()
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError:
            logger.warning("Ignoring invalid user id %s in %s", chunk, env_key)
    return frozenset(ids)


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-level settings that come from the environment."""

    token: Optional[str]
    application_id: Optional[int]
    db_path: Path
    admin_ids: FrozenSet[int]
    timezone_name: Optional[str]
    min_events_to_create: Optional[int]
    log_level: str

    @staticmethod
    def from_env() -> "RuntimeConfig":
        return RuntimeConfig(
            token=os.environ.get("DISCORD_TOKEN") or None,
            application_id=_parse_int("DISCORD_APP_ID"),
            db_path=Path(os.environ.get("PREDICTION_MARKET_DB", "prediction_market.db")),
            admin_ids=_parse_id_list("PREDICTION_MARKET_ADMIN_IDS"),
            timezone_name=os.environ.get("PREDICTION_MARKET_TIMEZONE") or None,
            min_events_to_create=_parse_int("PREDICTION_MARKET_MIN_EVENTS"),
            log_level=os.environ.get("PREDICTION_MARKET_LOG_LEVEL", "INFO").upper(),
        )

    def apply(self, settings: Settings) -> Settings:
        """Return settings with environment overrides layered on top."""

        overrides: Dict[str, Any] = {}
        if self.admin_ids:
            overrides["admin_ids"] = settings.admin_ids | self.admin_ids
        if self.timezone_name:
            overrides["timezone_name"] = self.timezone_name
        if self.min_events_to_create is not None:
            overrides["min_events_to_create"] = self.min_events_to_create
        if not overrides:
            return settings
        return replace(settings, **overrides)


__all__ = ["RuntimeConfig", "Settings", "SettingsLoader", "get_settings"]
