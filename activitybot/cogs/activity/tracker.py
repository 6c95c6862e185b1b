"""
Voice activity tracker cog.

Feeds voice state and nickname changes into the activity engine, flushes
accrued time on a fixed period and emits periodic group reports through the
`activity_report` bot event.
"""
import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

import discord
from discord.ext import commands, tasks

from activitybot.base_cog import BaseCog, logger
from activitybot.config import DEFAULT_DATABASE_URL
from activitybot.core.activity import (
    ActivityAccumulator, Classification, Classifier, PersistenceGateway, RecoveryCoordinator,
    RedisSessionRepository, RosterMember, SessionStateStore, VoiceEvent, now_ms
)
from activitybot.core.activity.events import HOUR_MS
from activitybot.core.config_base import ConfigBase, config_field
from activitybot.core.errors import CacheError, ErrorCategory, ErrorSeverity, error_handler, safe_operation


# -------- Configuration Schema --------

@dataclass
class ActivityConfig(ConfigBase):
    """Voice activity tracking configuration schema."""

    # Tracking
    voice_tracking_enabled: bool = config_field(
        default=True,
        description="Enable tracking of voice channel time",
        category="Tracking",
        guild_override=True
    )

    excluded_channel_ids: list = config_field(
        default=[],
        description="Voice channel IDs that never accrue time (AFK rooms, lobbies)",
        category="Tracking"
    )

    observer_markers: list = config_field(
        default=["[Observing]", "[Waiting]"],
        description="Display name markers that pause time accrual while connected",
        category="Tracking"
    )

    afk_marker: str = config_field(
        default="AFK",
        description="Role or display name marker that exempts a member from reports",
        category="Reports",
        guild_override=True
    )

    # Persistence
    flush_interval_seconds: int = config_field(
        default=60,
        description="Seconds between durable flushes of accrued time",
        category="Persistence",
        requires_restart=True,
        min_value=5,
        max_value=3600
    )

    flush_batch_size: int = config_field(
        default=100,
        description="Rows written per batch within one flush transaction",
        category="Persistence",
        requires_restart=True,
        min_value=1,
        max_value=5000
    )

    session_ttl_hours: int = config_field(
        default=24,
        description="Open sessions older than this are discarded on restart",
        category="Persistence",
        requires_restart=True,
        min_value=1,
        max_value=168
    )

    shutdown_grace_seconds: int = config_field(
        default=10,
        description="Time allowed for the final flush on shutdown",
        category="Persistence",
        min_value=1,
        max_value=120
    )

    # Reports
    report_check_minutes: int = config_field(
        default=30,
        description="Minutes between checks for due group reports",
        category="Reports",
        requires_restart=True,
        min_value=1,
        max_value=1440
    )

    tracked_groups: list = config_field(
        default=[],
        description="Role names that receive periodic activity reports",
        category="Reports",
        guild_override=True
    )

    reset_after_report: bool = config_field(
        default=True,
        description="Reset a group's activity after its periodic report",
        category="Reports",
        guild_override=True
    )


class ActivityTracker(BaseCog):
    """Track voice channel time and report activity per group."""

    def __init__(self, bot, gateway: Optional[PersistenceGateway] = None):
        super().__init__(bot)
        self.bot = bot

        # Register config schema
        from activitybot.core.config_system import CogConfigSchema
        schema = CogConfigSchema.from_dataclass("Activity", ActivityConfig)
        bot.config_manager.register_schema("Activity", schema)
        logger.info("Registered Activity config schema")

        cfg = bot.config_manager.for_guild("Activity")
        bootstrap = getattr(bot, "bot_config", None)

        self._owns_gateway = gateway is None
        if gateway is None:
            database_url = bootstrap.database_url if bootstrap is not None else DEFAULT_DATABASE_URL
            gateway = PersistenceGateway.from_url(database_url, cfg.flush_batch_size)
        self.gateway = gateway

        self.sessions = SessionStateStore()
        self.accumulator = ActivityAccumulator(
            self.sessions,
            excluded_channel_ids=cfg.excluded_channel_ids,
            observer_markers=cfg.observer_markers,
        )
        self.recovery = RecoveryCoordinator(
            self.sessions, self.gateway, self.accumulator, staleness_ms=cfg.session_ttl_hours * HOUR_MS
        )
        self._ready = asyncio.Event()

        self.flush_task.change_interval(seconds=cfg.flush_interval_seconds)
        self.report_task.change_interval(minutes=cfg.report_check_minutes)

    async def cog_load(self):
        """Attach the Redis session cache when configured, then start the loops."""
        bootstrap = getattr(self.bot, "bot_config", None)
        redis_url = bootstrap.redis_url if bootstrap is not None else None
        if redis_url:
            cfg = self.bot.config_manager.for_guild("Activity")
            try:
                self.sessions.primary = await RedisSessionRepository.connect(
                    redis_url, ttl_seconds=cfg.session_ttl_hours * 3600
                )
            except CacheError as e:
                error_handler.log_error(e, context={"operation": "connect"})
                logger.warning("[ActivityTracker] Redis unavailable, sessions will not survive a restart")

        self.flush_task.start()
        self.report_task.start()
        logger.info("[ActivityTracker] Flush and report tasks started")

    # -------- Event conversion --------

    @staticmethod
    def _channel_members(channel) -> Tuple[str, ...]:
        if channel is None:
            return ()
        return tuple(m.display_name for m in channel.members if not m.bot)

    @staticmethod
    def _group_names(member: discord.Member) -> Tuple[str, ...]:
        return tuple(role.name for role in member.roles if not role.is_default())

    def _voice_event(self, member: discord.Member, old_channel, new_channel) -> VoiceEvent:
        return VoiceEvent(
            user_id=str(member.id),
            old_channel_id=str(old_channel.id) if old_channel is not None else None,
            new_channel_id=str(new_channel.id) if new_channel is not None else None,
            display_name=member.display_name,
            group_names=self._group_names(member),
            old_channel_name=old_channel.name if old_channel is not None else None,
            new_channel_name=new_channel.name if new_channel is not None else None,
            old_channel_members=self._channel_members(old_channel),
            new_channel_members=self._channel_members(new_channel),
        )

    def _roster(self, guild: discord.Guild, group_name: str) -> List[RosterMember]:
        role = discord.utils.get(guild.roles, name=group_name)
        if role is None:
            logger.warning(f"[ActivityTracker] Role {group_name} not found in {guild.name}")
            return []
        return [
            RosterMember(str(m.id), m.display_name, self._group_names(m))
            for m in role.members
            if not m.bot
        ]

    async def _handle(self, event: VoiceEvent):
        try:
            await self.accumulator.handle_event(event)
        except Exception as e:
            error_handler.log_error(
                e,
                context={"user_id": event.user_id, "old": event.old_channel_id, "new": event.new_channel_id},
                severity=ErrorSeverity.HIGH,
                category=ErrorCategory.INTERNAL,
            )

    # -------- Listeners --------

    @commands.Cog.listener()
    async def on_voice_state_update(self, member: discord.Member, before: discord.VoiceState, after: discord.VoiceState):
        """Convert connection changes into voice events."""
        if member.bot:
            return

        # Mute/deafen updates carry the same channel and are no-ops for the engine
        if before.channel == after.channel:
            return

        cfg = self.bot.config_manager.for_guild("Activity", member.guild.id)
        if not cfg.voice_tracking_enabled:
            # Still close a session opened before tracking was turned off
            if self.accumulator.is_active(str(member.id)):
                await self._ready.wait()
                await self._handle(self._voice_event(member, before.channel, None))
            return

        await self._ready.wait()
        await self._handle(self._voice_event(member, before.channel, after.channel))

    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member):
        """Nickname changes toggle the observer/waiting suspension."""
        if after.bot or before.display_name == after.display_name:
            return
        if after.voice is None or after.voice.channel is None:
            return

        cfg = self.bot.config_manager.for_guild("Activity", after.guild.id)
        if not cfg.voice_tracking_enabled:
            return

        await self._ready.wait()
        channel = after.voice.channel
        await self._handle(self._voice_event(after, channel, channel))

    # -------- Startup --------

    @safe_operation(log_message="Session recovery failed", severity=ErrorSeverity.HIGH)
    async def _recover(self, now: int, connected: List[VoiceEvent]):
        return await self.recovery.recover(now, connected)

    @safe_operation(fallback_value=0, log_message="Failed to seed tracked members", category=ErrorCategory.DATABASE)
    async def _seed_members(self, members, now: int) -> int:
        return await asyncio.to_thread(self.gateway.ensure_users, members, now)

    @safe_operation(fallback_value=[], log_message="Failed to expire AFK status", category=ErrorCategory.DATABASE)
    async def _expire_afk(self, now: int) -> list:
        return await asyncio.to_thread(self.gateway.clear_expired_afk_status, now)

    async def _startup(self):
        """Recover sessions, seed tracked members and align with who is connected now."""
        now = now_ms()
        connected = []
        members = {}
        for guild in self.bot.guilds:
            cfg = self.bot.config_manager.for_guild("Activity", guild.id)
            if not cfg.voice_tracking_enabled:
                continue
            for group_name in cfg.tracked_groups:
                for member in self._roster(guild, group_name):
                    members[member.user_id] = member.display_name
            for channel in guild.voice_channels:
                for member in channel.members:
                    if not member.bot:
                        connected.append(self._voice_event(member, None, channel))

        await self._recover(now, connected)
        if members:
            await self._seed_members(sorted(members.items()), now)

        await self.accumulator.seed_connected(connected)
        self._ready.set()
        logger.info(f"[ActivityTracker] Tracking started with {len(self.accumulator.active_user_ids())} active session(s)")

    # -------- Background tasks --------

    @tasks.loop(seconds=60)
    async def flush_task(self):
        """Persist accrued time. A failed batch stays in memory for the next cycle."""
        result = await self.accumulator.flush(self.gateway)
        if result is None:
            logger.warning("[ActivityTracker] Flush failed, retrying next cycle")
        elif result.discarded:
            logger.warning(f"[ActivityTracker] Flush discarded {result.discarded} delta(s) older than a reset")

    @flush_task.before_loop
    async def before_flush_task(self):
        """Wait for bot to be ready, then recover before the first flush."""
        await self.bot.wait_until_ready()
        if not self._ready.is_set():
            await self._startup()

    @tasks.loop(minutes=30)
    async def report_task(self):
        """Emit reports for groups whose cycle has elapsed."""
        now = now_ms()
        # Pick up config files edited on disk
        self.bot.config_manager.reload()
        await self._expire_afk(now)

        for guild in self.bot.guilds:
            cfg = self.bot.config_manager.for_guild("Activity", guild.id)
            for group_name in cfg.tracked_groups:
                try:
                    await self._report_if_due(guild, group_name, cfg.reset_after_report, now)
                except Exception as e:
                    error_handler.log_error(
                        e,
                        context={"operation": "report", "guild": guild.id, "group": group_name},
                        severity=ErrorSeverity.HIGH,
                    )

    @report_task.before_loop
    async def before_report_task(self):
        await self.bot.wait_until_ready()
        await self._ready.wait()

    async def _report_if_due(self, guild: discord.Guild, group_name: str, reset_after: bool, now: int):
        due_at = await asyncio.to_thread(self.gateway.get_next_report_time, group_name, now)
        if due_at is None or due_at > now:
            return

        classification = await self.classify_group(guild, group_name, now=now)
        self.bot.dispatch("activity_report", guild, classification)
        logger.info(f"[ActivityTracker] Report dispatched for {group_name} in {guild.name}: {classification.summary()}")

        if reset_after:
            member_ids = [user.user_id for bucket in (classification.active, classification.inactive,
                                                      classification.exempt) for user in bucket]
            await self.accumulator.reset_group(self.gateway, group_name, member_ids, reason="report cycle", now=now)

    # -------- Engine access for other cogs --------

    async def classify_group(
        self,
        guild: discord.Guild,
        group_name: str,
        window: Optional[Tuple[int, int]] = None,
        now: Optional[int] = None,
    ) -> Classification:
        """Classify a role's members using durable totals plus unflushed time."""
        cfg = self.bot.config_manager.for_guild("Activity", guild.id)
        now = now if now is not None else now_ms()
        roster = self._roster(guild, group_name)
        live = self.accumulator.snapshot([member.user_id for member in roster], now)
        classifier = Classifier(self.gateway, afk_marker=cfg.afk_marker)
        return await asyncio.to_thread(classifier.classify, group_name, roster, window, now, live)

    async def reset_group(self, guild: discord.Guild, group_name: str, reason: str = "manual reset") -> int:
        member_ids = [member.user_id for member in self._roster(guild, group_name)]
        return await self.accumulator.reset_group(self.gateway, group_name, member_ids, reason=reason)

    async def set_tracking_enabled(self, guild: discord.Guild, enabled: bool) -> int:
        """
        Turn voice tracking on or off for a guild and save the setting.

        Members connected right now are opened or closed at once.

        Returns:
            Number of voice events delivered
        """
        cfg = self.bot.config_manager.for_guild("Activity", guild.id)
        cfg.voice_tracking_enabled = enabled
        self.bot.config_manager.save()

        await self._ready.wait()
        changed = 0
        for channel in guild.voice_channels:
            for member in channel.members:
                if member.bot or self.accumulator.is_active(str(member.id)) == enabled:
                    continue
                if enabled:
                    await self._handle(self._voice_event(member, None, channel))
                else:
                    await self._handle(self._voice_event(member, channel, None))
                changed += 1

        logger.info(f"[ActivityTracker] Voice tracking {'enabled' if enabled else 'disabled'} in {guild.name}")
        return changed

    def get_stats(self) -> dict:
        stats = self.accumulator.get_stats()
        stats["cache_failures"] = self.sessions.primary_failures
        stats["cache_connected"] = self.sessions.has_primary
        return stats

    # -------- Shutdown --------

    async def cog_unload(self):
        """Stop the loops and force one final flush within the grace period."""
        await super().cog_unload()
        if self.report_task.is_running():
            self.report_task.cancel()
        if self.flush_task.is_running():
            # Let an in-flight flush commit; the final flush below waits for it
            self.flush_task.stop()

        grace = self.bot.config_manager.for_guild("Activity").shutdown_grace_seconds
        try:
            result = await asyncio.wait_for(self.accumulator.flush(self.gateway), timeout=grace)
            if result is not None:
                logger.info(f"[ActivityTracker] Final flush: {result.users_flushed} user(s), {result.logs_written} log(s)")
        except asyncio.TimeoutError:
            logger.error(f"[ActivityTracker] Final flush did not finish within {grace}s")

        await self.sessions.close()
        if self._owns_gateway:
            self.gateway.dispose()


async def setup(bot):
    """Load the ActivityTracker cog."""
    try:
        await bot.add_cog(ActivityTracker(bot))
        logger.info(f"{__name__} loaded successfully")
    except Exception as e:
        logger.error(f"Failed to load cog {__name__}: {e}", exc_info=True)
