"""
Startup recovery of open voice sessions.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .accumulator import ActivityAccumulator
from .events import DAY_MS, EventType, PendingLog, VoiceEvent, VoiceSession, now_ms
from .persistence import PersistenceGateway
from .session_store import SessionRepository

logger = logging.getLogger("activitybot.recovery")


@dataclass
class RecoveryResult:
    restored: List[str] = field(default_factory=list)
    discarded: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)


class RecoveryCoordinator:
    """
    Rebuilds accumulator state from the session store after a restart.

    A surviving session accrues from the later of its own start and the
    durable row's start_time, which every flush re-arms, so time that was
    already flushed is not counted again. Sessions older than the staleness
    bound are dropped. A durable row still marked open without a session
    resumes when its member is connected to a trackable channel, and is
    closed otherwise. Dropped and closed sessions get a closing LEAVE in the
    activity log at the last flushed instant.
    """

    def __init__(
        self,
        session_store: SessionRepository,
        gateway: PersistenceGateway,
        accumulator: ActivityAccumulator,
        staleness_ms: int = DAY_MS,
    ):
        self.sessions = session_store
        self.gateway = gateway
        self.accumulator = accumulator
        self.staleness_ms = staleness_ms

    async def recover(self, now: Optional[int] = None, connected: Optional[Sequence[VoiceEvent]] = None) -> RecoveryResult:
        """
        Reconcile the session store and the durable rows with the accumulator.

        Args:
            now: Current time
            connected: Members connected right now (old_channel_id None). A durable
                row left open with no cached session resumes from its start_time
                when its member is still connected to a trackable channel; without
                this list such rows are closed.
        """
        now = now if now is not None else now_ms()
        result = RecoveryResult()
        cleanup_logs = []
        present = {event.user_id: event for event in connected or ()}

        user_ids = await self.sessions.list_user_ids()
        open_rows = await asyncio.to_thread(self.gateway.get_open_sessions)
        rows = await asyncio.to_thread(self.gateway.get_user_activities, sorted(set(user_ids) | set(open_rows)))

        for user_id in user_ids:
            session = await self.sessions.get(user_id)
            if session is None:
                continue

            row = rows.get(user_id)
            flushed_until = open_rows.get(user_id)
            accrue_from = max(session.start_time, flushed_until) if flushed_until is not None else session.start_time

            if now - session.start_time > self.staleness_ms:
                await self.sessions.delete(user_id)
                cleanup_logs.append(self._closing_log(user_id, session.channel_id, accrue_from, "stale"))
                result.discarded.append(user_id)
                logger.warning(
                    f"[Recovery] Discarded stale session for {user_id}: "
                    f"started {session.start_time}, {(now - session.start_time) // 1000}s old at {now}"
                )
                continue

            self.accumulator.recover_session(
                user_id,
                accrue_from,
                channel_id=session.channel_id,
                session_start=session.start_time,
                display_name=row.display_name if row is not None and row.display_name else "",
            )
            result.restored.append(user_id)

        handled = set(result.restored) | set(result.discarded)
        for user_id, start_time in sorted(open_rows.items()):
            if user_id in handled:
                continue

            event = present.get(user_id)
            if event is not None and self._still_tracked(event) and now - start_time <= self.staleness_ms:
                row = rows.get(user_id)
                self.accumulator.recover_session(
                    user_id,
                    start_time,
                    channel_id=event.new_channel_id,
                    display_name=event.display_name or (row.display_name if row is not None else "") or "",
                )
                await self.sessions.set(VoiceSession(user_id, start_time, event.new_channel_id))
                result.restored.append(user_id)
                logger.info(f"[Recovery] Resumed {user_id} from durable start {start_time} (no cached session)")
                continue

            cleanup_logs.append(self._closing_log(user_id, None, start_time, "orphaned"))
            result.orphaned.append(user_id)

        closing = result.orphaned + [user_id for user_id in result.discarded if user_id in open_rows]
        if closing:
            await asyncio.to_thread(self.gateway.close_orphaned_sessions, closing, now)
        if cleanup_logs:
            await asyncio.to_thread(self.gateway.flush_activity, [], cleanup_logs, now)

        logger.info(
            f"[Recovery] Restored {len(result.restored)} session(s), discarded {len(result.discarded)} stale, "
            f"closed {len(result.orphaned)} orphaned row(s)"
        )
        return result

    def _still_tracked(self, event: VoiceEvent) -> bool:
        return (
            self.accumulator.is_trackable(event.new_channel_id)
            and not self.accumulator.is_suspended_name(event.display_name)
        )

    @staticmethod
    def _closing_log(user_id: str, channel_id, timestamp: int, reason: str) -> PendingLog:
        return PendingLog(
            user_id=user_id,
            event_type=EventType.LEAVE,
            channel_id=channel_id,
            channel_name=None,
            timestamp=timestamp,
            reason=reason,
        )
