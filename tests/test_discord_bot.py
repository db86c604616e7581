"""Smoke tests for the Discord bot wiring."""
from __future__ import annotations

from types import SimpleNamespace

import discord
import pytest

from prediction_market.discord_bot import _detect_forum, build_bot, main


@pytest.fixture
def env(monkeypatch):
    monkeypatch.delenv("DISCORD_TOKEN", raising=False)
    monkeypatch.delenv("PREDICTION_MARKET_SETTINGS", raising=False)
    monkeypatch.setenv("PREDICTION_MARKET_ADMIN_IDS", "77")
    monkeypatch.setenv("PREDICTION_MARKET_MIN_EVENTS", "5")


def test_build_bot_registers_every_command(env, tmp_path):
    bot = build_bot(tmp_path / "bot.db")

    names = sorted(command.name for command in bot.tree.get_commands())
    assert names == [
        "cancel",
        "create_event",
        "create_group",
        "edit_event",
        "events",
        "group_members",
        "groups",
        "join",
        "list_groups",
        "my",
        "rating",
        "remove_member",
        "resolve_event",
        "telemetry_report",
    ]
    app = bot.market_app
    assert 77 in app.settings.admin_ids
    assert app.settings.min_events_to_create == 5


def test_main_requires_a_token(env):
    with pytest.raises(RuntimeError):
        main()


def test_detect_forum_without_a_channel():
    assert _detect_forum(SimpleNamespace(channel=None)) is None


def test_detect_forum_from_a_text_channel():
    channel = discord.TextChannel.__new__(discord.TextChannel)
    assert _detect_forum(SimpleNamespace(channel=channel)) is False
