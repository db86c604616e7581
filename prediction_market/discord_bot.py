"""Discord bot entry point for the prediction market."""
from __future__ import annotations

import asyncio
import atexit
import logging
from pathlib import Path
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from .adapters.discord import DiscordTransport
from .app import MarketApp, build_app
from .config import RuntimeConfig, get_settings
from .scheduler import MarketScheduler
from .telemetry_decorator import track_command
from .transport import CallbackQuery, InboundMessage, PollAnswer

logger = logging.getLogger(__name__)

CHECK_DMS = "Check your direct messages to continue."


def _display_name(user: Optional[discord.abc.User]) -> str:
    if user is None:
        return ""
    return getattr(user, "display_name", None) or user.name


def _detect_forum(interaction: discord.Interaction) -> Optional[bool]:
    """Guess whether the command was issued from a forum thread."""

    channel = interaction.channel
    if isinstance(channel, discord.Thread):
        return isinstance(channel.parent, discord.ForumChannel)
    if isinstance(channel, discord.TextChannel):
        return False
    return None


def build_bot(db_path: Path, intents: Optional[discord.Intents] = None) -> commands.Bot:
    runtime = RuntimeConfig.from_env()
    settings = runtime.apply(get_settings())
    intents = intents or discord.Intents.default()
    bot = commands.Bot(command_prefix="/", intents=intents, application_id=runtime.application_id)
    transport = DiscordTransport(bot, poll_duration_hours=settings.poll_duration_hours)
    app: MarketApp = build_app(db_path, transport, settings=settings)
    setattr(bot, "market_app", app)
    router = app.router
    scheduler: Optional[MarketScheduler] = None

    def _shutdown_scheduler() -> None:  # pragma: no cover - process shutdown hook
        if scheduler is not None:
            scheduler.shutdown()

    atexit.register(_shutdown_scheduler)

    async def _start_in_dm(interaction: discord.Interaction, starter, *args) -> None:
        await interaction.response.send_message(CHECK_DMS, ephemeral=True)
        await asyncio.to_thread(starter, interaction.user.id, interaction.user.id, *args)

    async def _reply_with(interaction: discord.Interaction, handler, *args) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        text = await asyncio.to_thread(handler, *args)
        await interaction.followup.send(text, ephemeral=True)

    @bot.event
    async def on_ready() -> None:
        nonlocal scheduler
        logger.info("Prediction market bot connected as %s", bot.user)
        try:
            synced = await bot.tree.sync()
            logger.info("Synced %d commands", len(synced))
        except discord.HTTPException as exc:  # pragma: no cover - logging only
            logger.exception("Failed to sync commands: %s", exc)
        if scheduler is None:
            scheduler = MarketScheduler(app)
            scheduler.start()

    @bot.event
    async def on_message(message: discord.Message) -> None:
        if message.author.bot or message.guild is not None:
            return
        inbound = InboundMessage(
            user_id=message.author.id,
            chat_id=message.author.id,
            message_id=message.id,
            text=message.content,
            display_name=_display_name(message.author),
        )
        await asyncio.to_thread(router.handle_message, inbound)

    @bot.event
    async def on_interaction(interaction: discord.Interaction) -> None:
        if interaction.type is not discord.InteractionType.component:
            return
        data = (interaction.data or {}).get("custom_id")
        if not data or interaction.message is None:
            return
        await interaction.response.defer()
        callback_id = transport.register_interaction(interaction)
        query = CallbackQuery(
            callback_id=callback_id,
            user_id=interaction.user.id,
            chat_id=interaction.user.id if interaction.guild_id is None else interaction.channel_id,
            message_id=interaction.message.id,
            data=data,
            display_name=_display_name(interaction.user),
        )
        try:
            await asyncio.to_thread(router.handle_callback, query)
        finally:
            transport.forget_interaction(callback_id)

    @bot.event
    async def on_guild_join(guild: discord.Guild) -> None:
        logger.info("Joined server %s (%s)", guild.name, guild.id)
        await asyncio.to_thread(router.bot_added, guild.id, guild.name)

    @bot.event
    async def on_raw_poll_vote_add(payload: discord.RawPollVoteActionEvent) -> None:
        answer = PollAnswer(
            poll_id=str(payload.message_id),
            user_id=payload.user_id,
            option=payload.answer_id - 1,
            display_name=_display_name(bot.get_user(payload.user_id)),
        )
        await asyncio.to_thread(router.handle_poll_answer, answer)

    @bot.event
    async def on_raw_poll_vote_remove(payload: discord.RawPollVoteActionEvent) -> None:
        await asyncio.to_thread(router.handle_poll_retraction, str(payload.message_id), payload.user_id)

    @app_commands.command(name="create_event", description="Create a new prediction event")
    @track_command
    async def create_event(interaction: discord.Interaction) -> None:
        await _start_in_dm(interaction, router.start_event_creation)

    @app_commands.command(name="edit_event", description="Edit one of your events before anyone votes")
    @track_command
    @app_commands.describe(event_id="Event number shown in /events")
    async def edit_event(interaction: discord.Interaction, event_id: int) -> None:
        await _start_in_dm(interaction, router.start_event_edit, event_id)

    @app_commands.command(name="resolve_event", description="Record the outcome of an event")
    @track_command
    @app_commands.describe(event_id="Event number (leave empty to pick from a list)")
    async def resolve_event(interaction: discord.Interaction, event_id: int | None = None) -> None:
        await _start_in_dm(interaction, router.start_event_resolution, event_id)

    @app_commands.command(name="create_group", description="Register a channel as a prediction group")
    @track_command
    async def create_group(interaction: discord.Interaction) -> None:
        await _start_in_dm(interaction, router.start_group_creation, _detect_forum(interaction))

    @app_commands.command(name="cancel", description="Cancel the step you are in")
    @track_command
    async def cancel(interaction: discord.Interaction) -> None:
        await _start_in_dm(interaction, router.cancel)

    @app_commands.command(name="join", description="Join a group with an invite code")
    @track_command
    @app_commands.describe(code="Invite code from the group admin")
    async def join(interaction: discord.Interaction, code: str) -> None:
        await _reply_with(
            interaction,
            app.commands.join,
            interaction.user.id,
            code,
            _display_name(interaction.user),
        )

    @app_commands.command(name="events", description="List active events in your groups")
    @track_command
    async def events(interaction: discord.Interaction) -> None:
        await _reply_with(interaction, app.commands.events_overview, interaction.user.id)

    @app_commands.command(name="rating", description="Show group leaderboards")
    @track_command
    async def rating(interaction: discord.Interaction) -> None:
        await _reply_with(interaction, app.commands.rating_overview, interaction.user.id)

    @app_commands.command(name="my", description="Show your own score and achievements")
    @track_command
    async def my(interaction: discord.Interaction) -> None:
        await _reply_with(interaction, app.commands.my_overview, interaction.user.id)

    @app_commands.command(name="groups", description="Show the groups you belong to")
    @track_command
    async def groups(interaction: discord.Interaction) -> None:
        await _reply_with(interaction, app.commands.groups_overview, interaction.user.id)

    @app_commands.command(name="list_groups", description="Manage registered groups (admin only)")
    @track_command
    async def list_groups(interaction: discord.Interaction) -> None:
        await _start_in_dm(interaction, router.list_groups)

    @app_commands.command(name="group_members", description="Show the members of a group (admin only)")
    @track_command
    async def group_members(interaction: discord.Interaction) -> None:
        await _start_in_dm(interaction, router.choose_group, "members")

    @app_commands.command(name="remove_member", description="Remove a member from a group (admin only)")
    @track_command
    async def remove_member(interaction: discord.Interaction) -> None:
        await _start_in_dm(interaction, router.choose_group, "remove")

    @app_commands.command(name="telemetry_report", description="View usage statistics (admin only)")
    @track_command
    async def telemetry_report(interaction: discord.Interaction) -> None:
        await _reply_with(interaction, app.commands.telemetry_report, interaction.user.id)

    bot.tree.add_command(create_event)
    bot.tree.add_command(edit_event)
    bot.tree.add_command(resolve_event)
    bot.tree.add_command(create_group)
    bot.tree.add_command(cancel)
    bot.tree.add_command(join)
    bot.tree.add_command(events)
    bot.tree.add_command(rating)
    bot.tree.add_command(my)
    bot.tree.add_command(groups)
    bot.tree.add_command(list_groups)
    bot.tree.add_command(group_members)
    bot.tree.add_command(remove_member)
    bot.tree.add_command(telemetry_report)
    return bot


def main() -> None:
    runtime = RuntimeConfig.from_env()
    logging.basicConfig(level=getattr(logging, runtime.log_level, logging.INFO))
    if not runtime.token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    bot = build_bot(runtime.db_path)
    bot.run(runtime.token)


__all__ = ["build_bot", "main"]
