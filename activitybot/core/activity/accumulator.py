"""
Voice activity state machine.

ActivityAccumulator consumes VoiceEvents in delivery order and keeps, per user,
the unflushed part of their voice time. It never touches the durable store on
the event path: session boundaries update the session store immediately and
mark the user dirty, and `flush()` drains everything into one transaction on a
fixed period.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from activitybot.core.errors import ErrorCategory, ErrorSeverity, error_handler
from .events import EventType, FlushDelta, LiveState, PendingLog, Transition, VoiceEvent, VoiceSession, now_ms
from .persistence import FlushResult, PersistenceGateway
from .session_store import SessionRepository

logger = logging.getLogger("activitybot.accumulator")

DEFAULT_OBSERVER_MARKERS = ("[Observing]", "[Waiting]")


@dataclass
class UserLedger:
    """Unflushed activity for one user."""
    user_id: str
    display_name: str = ""
    pending_ms: int = 0  # closed intervals not flushed yet
    start_time: Optional[int] = None  # open interval, re-armed on every flush
    since_ms: Optional[int] = None  # start of the unflushed window
    session_start: Optional[int] = None  # when the current session began
    channel_id: Optional[str] = None
    suspended: bool = False
    last_reset_ms: Optional[int] = None

    @property
    def active(self) -> bool:
        return self.start_time is not None

    def unflushed_ms(self, now: int) -> int:
        open_ms = now - self.start_time if self.start_time is not None else 0
        return self.pending_ms + max(0, open_ms)


@dataclass
class SessionStats:
    """Running counters since process start."""
    started_at: int
    total_joins: int = 0
    total_leaves: int = 0
    total_session_ms: int = 0
    peak_concurrent: int = 0
    last_activity: Optional[int] = None

    def to_dict(self, now: int, active_users: int) -> dict:
        return {
            "active_users": active_users,
            "total_joins": self.total_joins,
            "total_leaves": self.total_leaves,
            "total_session_ms": self.total_session_ms,
            "average_session_ms": self.total_session_ms // self.total_leaves if self.total_leaves else 0,
            "peak_concurrent": self.peak_concurrent,
            "last_activity": self.last_activity,
            "uptime_ms": now - self.started_at,
        }


class ActivityAccumulator:
    """
    Join/leave/move state machine over a session repository.

    Usage:
        accumulator = ActivityAccumulator(SessionStateStore(), excluded_channel_ids={"afk"})
        await accumulator.handle_event(event)
        await accumulator.flush(gateway)
    """

    def __init__(
        self,
        session_store: SessionRepository,
        excluded_channel_ids: Iterable[str] = (),
        observer_markers: Sequence[str] = DEFAULT_OBSERVER_MARKERS,
        clock: Callable[[], int] = now_ms,
    ):
        self.sessions = session_store
        self.excluded_channel_ids: Set[str] = {str(c) for c in excluded_channel_ids}
        self.observer_markers = tuple(m for m in observer_markers if m)
        self._clock = clock

        self._ledgers: Dict[str, UserLedger] = {}
        self._dirty: Set[str] = set()
        self._pending_logs: List[PendingLog] = []
        self._event_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self.stats = SessionStats(started_at=clock())

        self._handlers = {
            Transition.JOIN: self._on_join,
            Transition.LEAVE: self._on_leave,
            Transition.MOVE: self._on_move,
            Transition.SUSPEND: self._on_suspend,
            Transition.RESUME: self._on_resume,
            Transition.NOOP: self._on_noop,
        }

    # ======== Classification of events ========

    def set_excluded_channels(self, channel_ids: Iterable[str]):
        self.excluded_channel_ids = {str(c) for c in channel_ids}

    def is_trackable(self, channel_id: Optional[str]) -> bool:
        return channel_id is not None and channel_id not in self.excluded_channel_ids

    def is_suspended_name(self, display_name: Optional[str]) -> bool:
        """Observer/waiting markers in the display name suspend accrual."""
        if not display_name:
            return False
        return any(marker in display_name for marker in self.observer_markers)

    def resolve_transition(self, ledger: UserLedger, event: VoiceEvent) -> Tuple[Transition, bool]:
        """
        Diff an event against the user's state.

        Returns:
            (transition, suspended after the event)
        """
        suspended = self.is_suspended_name(event.display_name)
        new_trackable = self.is_trackable(event.new_channel_id)
        channel_changed = event.old_channel_id != event.new_channel_id
        if ledger.active and event.new_channel_id == ledger.channel_id:
            channel_changed = False

        if channel_changed:
            if ledger.active:
                if not new_trackable:
                    return Transition.LEAVE, suspended
                if suspended:
                    return Transition.SUSPEND, suspended
                return Transition.MOVE, suspended
            if new_trackable and not suspended:
                return Transition.JOIN, suspended
            return Transition.NOOP, suspended

        # Same channel: profile update or a repeated event
        if ledger.active and suspended:
            return Transition.SUSPEND, suspended
        if not ledger.active and ledger.suspended and not suspended and new_trackable:
            return Transition.RESUME, suspended
        return Transition.NOOP, suspended

    # ======== Event handling ========

    def _ledger(self, user_id: str) -> UserLedger:
        ledger = self._ledgers.get(user_id)
        if ledger is None:
            ledger = UserLedger(user_id=user_id)
            self._ledgers[user_id] = ledger
        return ledger

    async def handle_event(self, event: VoiceEvent) -> Transition:
        """Apply one connection or profile event. Returns the transition taken."""
        async with self._event_lock:
            now = self._clock()
            ledger = self._ledger(event.user_id)
            if event.display_name:
                ledger.display_name = event.display_name

            transition, suspended = self.resolve_transition(ledger, event)
            await self._handlers[transition](ledger, event, now)
            ledger.suspended = suspended

            if transition is Transition.NOOP:
                if ledger.channel_id is None and ledger.user_id not in self._dirty and not ledger.active:
                    del self._ledgers[ledger.user_id]
            else:
                self.stats.last_activity = now
                logger.debug(
                    f"[Accumulator] {ledger.display_name or event.user_id}: {transition.value} "
                    f"({event.old_channel_id} -> {event.new_channel_id})"
                )
            return transition

    def _log(self, ledger: UserLedger, event_type: EventType, channel_id, channel_name, members, now, reason):
        self._pending_logs.append(PendingLog(
            user_id=ledger.user_id,
            event_type=event_type,
            channel_id=channel_id,
            channel_name=channel_name,
            timestamp=now,
            member_snapshot=list(members),
            reason=reason,
        ))

    def _open(self, ledger: UserLedger, channel_id: Optional[str], now: int):
        if ledger.since_ms is None:
            ledger.since_ms = now
        ledger.start_time = now
        ledger.session_start = now
        ledger.channel_id = channel_id
        self._dirty.add(ledger.user_id)

        self.stats.total_joins += 1
        active = sum(1 for item in self._ledgers.values() if item.active)
        self.stats.peak_concurrent = max(self.stats.peak_concurrent, active)

    def _close(self, ledger: UserLedger, now: int):
        ledger.pending_ms += max(0, now - ledger.start_time)
        if ledger.session_start is not None:
            self.stats.total_session_ms += max(0, now - ledger.session_start)
        ledger.start_time = None
        ledger.session_start = None
        self._dirty.add(ledger.user_id)
        self.stats.total_leaves += 1

    async def _on_join(self, ledger: UserLedger, event: VoiceEvent, now: int):
        self._open(ledger, event.new_channel_id, now)
        self._log(ledger, EventType.JOIN, event.new_channel_id, event.new_channel_name,
                  event.new_channel_members, now, "channel")
        await self.sessions.set(VoiceSession(ledger.user_id, now, event.new_channel_id))

    async def _on_leave(self, ledger: UserLedger, event: VoiceEvent, now: int):
        self._close(ledger, now)
        ledger.channel_id = event.new_channel_id
        self._log(ledger, EventType.LEAVE, event.old_channel_id, event.old_channel_name,
                  event.old_channel_members, now, "channel")
        await self.sessions.delete(ledger.user_id)

    async def _on_move(self, ledger: UserLedger, event: VoiceEvent, now: int):
        # The session continues; only the channel changes
        ledger.channel_id = event.new_channel_id
        self._dirty.add(ledger.user_id)
        self._log(ledger, EventType.LEAVE, event.old_channel_id, event.old_channel_name,
                  event.old_channel_members, now, "move")
        self._log(ledger, EventType.JOIN, event.new_channel_id, event.new_channel_name,
                  event.new_channel_members, now, "move")
        await self.sessions.set(VoiceSession(ledger.user_id, ledger.session_start or now, event.new_channel_id))

    async def _on_suspend(self, ledger: UserLedger, event: VoiceEvent, now: int):
        self._close(ledger, now)
        ledger.channel_id = event.new_channel_id
        self._log(ledger, EventType.LEAVE, event.old_channel_id, event.old_channel_name,
                  event.old_channel_members, now, "suspend")
        await self.sessions.delete(ledger.user_id)

    async def _on_resume(self, ledger: UserLedger, event: VoiceEvent, now: int):
        self._open(ledger, event.new_channel_id, now)
        self._log(ledger, EventType.JOIN, event.new_channel_id, event.new_channel_name,
                  event.new_channel_members, now, "resume")
        await self.sessions.set(VoiceSession(ledger.user_id, now, event.new_channel_id))

    async def _on_noop(self, ledger: UserLedger, event: VoiceEvent, now: int):
        ledger.channel_id = event.new_channel_id

    # ======== Recovery hooks ========

    def recover_session(
        self,
        user_id: str,
        accrue_from: int,
        channel_id: Optional[str] = None,
        session_start: Optional[int] = None,
        display_name: str = "",
    ):
        """Reinstate an open session found after a restart."""
        ledger = self._ledger(user_id)
        ledger.start_time = accrue_from
        ledger.since_ms = accrue_from if ledger.since_ms is None else min(ledger.since_ms, accrue_from)
        ledger.session_start = session_start if session_start is not None else accrue_from
        ledger.channel_id = channel_id
        if display_name:
            ledger.display_name = display_name
        self._dirty.add(user_id)

    async def close_session(self, user_id: str, at: int, reason: str, channel_id: Optional[str] = None) -> bool:
        """
        Close an open session at an explicit instant instead of the current time.

        Used at startup for sessions whose end was missed while the process was
        down; closing at the last flushed instant adds no time. `channel_id` is
        where the member is still connected, if anywhere.

        Returns:
            Whether a session was open
        """
        async with self._event_lock:
            ledger = self._ledgers.get(user_id)
            if ledger is None or not ledger.active:
                return False
            closed_channel = ledger.channel_id
            self._close(ledger, max(at, ledger.start_time))
            ledger.channel_id = channel_id
            self._log(ledger, EventType.LEAVE, closed_channel, None, (), at, reason)
            await self.sessions.delete(user_id)
            return True

    async def seed_connected(self, events: Sequence[VoiceEvent]) -> Tuple[int, int]:
        """
        Align state with the members currently connected.

        `events` describe every connected member (old_channel_id None). Members
        without a session are joined. Recovered sessions of members no longer
        connected, or now sitting in an excluded channel or under an observer
        marker, are closed at their last flushed instant.

        Returns:
            (joined, closed)
        """
        connected = {event.user_id for event in events}
        joined = closed = 0

        for event in events:
            ledger = self._ledgers.get(event.user_id)
            if ledger is not None and ledger.active:
                if self.is_trackable(event.new_channel_id) and not self.is_suspended_name(event.display_name):
                    ledger.channel_id = event.new_channel_id
                    continue
                await self.close_session(event.user_id, ledger.start_time, "offline", channel_id=event.new_channel_id)
                ledger.suspended = self.is_suspended_name(event.display_name)
                closed += 1
                continue
            if await self.handle_event(event) is Transition.JOIN:
                joined += 1

        for ledger in [item for item in self._ledgers.values() if item.active and item.user_id not in connected]:
            await self.close_session(ledger.user_id, ledger.start_time, "offline")
            closed += 1

        if joined or closed:
            logger.info(f"[Accumulator] Seeded connected members: {joined} joined, {closed} closed")
        return joined, closed

    # ======== Queries ========

    def is_active(self, user_id: str) -> bool:
        ledger = self._ledgers.get(user_id)
        return ledger is not None and ledger.active

    def active_user_ids(self) -> List[str]:
        return sorted(user_id for user_id, ledger in self._ledgers.items() if ledger.active)

    def unflushed_ms(self, user_id: str, now: Optional[int] = None) -> int:
        """Time accrued since the last flush, including the open interval."""
        ledger = self._ledgers.get(user_id)
        if ledger is None:
            return 0
        return ledger.unflushed_ms(now if now is not None else self._clock())

    def live_total(self, user_id: str, stored_total: int, now: Optional[int] = None) -> int:
        return (stored_total or 0) + self.unflushed_ms(user_id, now)

    def pending_logs_for(self, user_id: str) -> List[PendingLog]:
        return [entry for entry in self._pending_logs if entry.user_id == user_id]

    def snapshot(self, user_ids: Iterable[str], now: Optional[int] = None) -> Dict[str, LiveState]:
        """Copy the unflushed state of the given users."""
        now = now if now is not None else self._clock()
        return {
            user_id: LiveState(
                unflushed_ms=self.unflushed_ms(user_id, now),
                is_live=self.is_active(user_id),
                pending_logs=self.pending_logs_for(user_id),
            )
            for user_id in user_ids
        }

    async def sum_activity(self, gateway: PersistenceGateway, user_id: str, start: int, end: int,
                           now: Optional[int] = None) -> int:
        """Tracked ms in [start, end), combining flushed logs with unflushed state."""
        now = now if now is not None else self._clock()
        return await asyncio.to_thread(
            gateway.sum_activity,
            user_id,
            start,
            end,
            now,
            self.pending_logs_for(user_id),
            self.is_active(user_id),
        )

    def get_stats(self, now: Optional[int] = None) -> dict:
        now = now if now is not None else self._clock()
        stats = self.stats.to_dict(now, len(self.active_user_ids()))
        stats["dirty_users"] = len(self._dirty)
        stats["pending_logs"] = len(self._pending_logs)
        return stats

    # ======== Flush ========

    def drain(self, now: int) -> Tuple[List[FlushDelta], List[PendingLog]]:
        """
        Take everything unflushed out of memory.

        Open sessions are re-armed at `now` so the next window starts there.
        """
        user_ids = self._dirty | {user_id for user_id, ledger in self._ledgers.items() if ledger.active}
        deltas = []

        for user_id in sorted(user_ids):
            ledger = self._ledgers.get(user_id)
            if ledger is None:
                continue
            deltas.append(FlushDelta(
                user_id=user_id,
                display_name=ledger.display_name or None,
                accrued_ms=ledger.unflushed_ms(now),
                since_ms=ledger.since_ms if ledger.since_ms is not None else now,
                open_session=ledger.active,
            ))
            ledger.pending_ms = 0
            if ledger.active:
                ledger.start_time = now
                ledger.since_ms = now
            else:
                ledger.since_ms = None
                if ledger.channel_id is None:
                    del self._ledgers[user_id]

        logs, self._pending_logs = self._pending_logs, []
        self._dirty.clear()
        return deltas, logs

    def restore(self, deltas: Sequence[FlushDelta], logs: Sequence[PendingLog]):
        """Put a drained batch back after a failed flush."""
        for delta in deltas:
            ledger = self._ledger(delta.user_id)
            if ledger.last_reset_ms is not None and ledger.last_reset_ms > delta.since_ms:
                continue
            ledger.pending_ms += delta.accrued_ms
            ledger.since_ms = delta.since_ms if ledger.since_ms is None else min(ledger.since_ms, delta.since_ms)
            if delta.display_name and not ledger.display_name:
                ledger.display_name = delta.display_name
            self._dirty.add(delta.user_id)
        self._pending_logs = list(logs) + self._pending_logs

    async def flush(self, gateway: PersistenceGateway, now: Optional[int] = None) -> Optional[FlushResult]:
        """
        Drain and persist in one transaction.

        Returns:
            FlushResult, or None if the store failed (the batch is kept for the next cycle)
        """
        async with self._flush_lock:
            now = now if now is not None else self._clock()
            deltas, logs = self.drain(now)
            if not deltas and not logs:
                return FlushResult()

            try:
                result = await asyncio.to_thread(gateway.flush_activity, deltas, logs, now)
            except Exception as e:
                self.restore(deltas, logs)
                error_handler.log_error(
                    e,
                    context={"operation": "flush", "users": len(deltas), "logs": len(logs), "at": now},
                    severity=ErrorSeverity.HIGH,
                    category=ErrorCategory.DATABASE,
                )
                return None

            logger.debug(
                f"[Accumulator] Flushed {result.users_flushed} user(s), {result.logs_written} log(s) at {now}"
            )
            return result

    # ======== Reset ========

    async def reset_group(
        self,
        gateway: PersistenceGateway,
        group_name: str,
        member_ids: Sequence[str],
        reason: str = "manual reset",
        now: Optional[int] = None,
    ) -> int:
        """
        Zero the members' activity in memory and in the store.

        Runs under the flush lock so a flush from this process never commits
        in between. On failure the in-memory time is put back and the error
        propagates.
        """
        async with self._flush_lock:
            now = now if now is not None else self._clock()
            member_ids = list(dict.fromkeys(member_ids))
            connected = {user_id for user_id in member_ids if self.is_active(user_id)}

            saved = {}
            for user_id in member_ids:
                ledger = self._ledgers.get(user_id)
                if ledger is None:
                    continue
                saved[user_id] = (ledger.unflushed_ms(now), ledger.since_ms, ledger.last_reset_ms)
                ledger.pending_ms = 0
                ledger.last_reset_ms = now
                if ledger.active:
                    ledger.start_time = now
                    ledger.since_ms = now
                else:
                    ledger.since_ms = None

            try:
                affected = await asyncio.to_thread(
                    gateway.reset_group, group_name, member_ids, connected, now, reason
                )
            except Exception:
                for user_id, (unflushed, since_ms, last_reset_ms) in saved.items():
                    ledger = self._ledger(user_id)
                    ledger.pending_ms += unflushed
                    ledger.last_reset_ms = last_reset_ms
                    if since_ms is not None:
                        ledger.since_ms = since_ms if ledger.since_ms is None else min(ledger.since_ms, since_ms)
                    self._dirty.add(user_id)
                raise

            logger.info(f"[Accumulator] Reset {group_name} at {now}: {affected} member(s), {len(connected)} connected")
            return affected
