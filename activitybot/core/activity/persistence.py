"""
Durable store access for voice activity.

PersistenceGateway owns every read and write against the relational store:
per-user totals, group thresholds, the append-only activity log, reset history
and AFK status. Writes that belong together run in a single transaction.
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import create_engine, func
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from activitybot.core.errors import DatabaseError, ValidationError
from .events import WEEK_MS, EventType, FlushDelta, PendingLog, now_ms
from .models import (
    ActivityBase, ActivityLogEntry, AfkStatus, GroupConfig, ResetHistoryEntry, UserActivity
)

log = logging.getLogger("activitybot.persistence")


@dataclass
class FlushResult:
    """Outcome of one flush cycle."""
    users_flushed: int = 0
    logs_written: int = 0
    discarded: int = 0


def _batches(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def accumulate_intervals(
    events: Iterable[Tuple[int, str]],
    start: int,
    end: int,
    open_at_start: bool,
    open_until: Optional[int] = None,
) -> int:
    """
    Sum JOIN/LEAVE intervals clipped to [start, end).

    Args:
        events: (timestamp, event_type) pairs inside the window, in order
        start: Window start (inclusive)
        end: Window end (exclusive)
        open_at_start: Whether a session was already open when the window began
        open_until: Where a still-open trailing session ends, None to drop it

    Returns:
        Tracked milliseconds
    """
    open_at = start if open_at_start else None
    total = 0

    for timestamp, event_type in events:
        if event_type == EventType.JOIN.value:
            if open_at is None:
                open_at = timestamp
        elif open_at is not None:
            total += timestamp - open_at
            open_at = None

    if open_at is not None and open_until is not None:
        total += max(0, min(end, open_until) - open_at)

    return total


class PersistenceGateway:
    """Transactional access to the activity tables."""

    DEFAULT_BATCH_SIZE = 100

    def __init__(self, engine, batch_size: int = DEFAULT_BATCH_SIZE):
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.batch_size = max(1, batch_size)

    @classmethod
    def from_url(cls, db_url: str, batch_size: int = DEFAULT_BATCH_SIZE) -> "PersistenceGateway":
        """Create the engine, make sure the schema exists and return a gateway."""
        kwargs = {}
        if db_url.startswith("sqlite"):
            # Flushes commit from a worker thread
            kwargs["connect_args"] = {"check_same_thread": False}
            database = make_url(db_url).database
            if database in (None, "", ":memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                Path(database).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(db_url, **kwargs)
        ActivityBase.metadata.create_all(engine)
        log.info(f"[PersistenceGateway] Database initialized: {db_url.split('://', 1)[0]}")
        return cls(engine, batch_size)

    def dispose(self):
        self._engine.dispose()

    @contextmanager
    def _transaction(self, action: str):
        """Session scope: commit on success, rollback and wrap store errors on failure."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise DatabaseError(
                "A database error occurred.",
                f"[PersistenceGateway] {action} failed: {e}",
                original_error=e
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _rows_for(self, session, user_ids: Sequence[str]) -> Dict[str, UserActivity]:
        rows = {}
        for batch in _batches(list(user_ids), self.batch_size):
            for row in session.query(UserActivity).filter(UserActivity.user_id.in_(batch)):
                rows[row.user_id] = row
        return rows

    # ======== User activity ========

    def get_user_activity(self, user_id: str) -> Optional[UserActivity]:
        with self._transaction("get_user_activity") as session:
            return session.get(UserActivity, user_id)

    def get_user_activities(self, user_ids: Sequence[str]) -> Dict[str, UserActivity]:
        """Rows for the given users keyed by user ID. Missing users are absent."""
        with self._transaction("get_user_activities") as session:
            return self._rows_for(session, user_ids)

    def get_all_user_activity(self) -> List[UserActivity]:
        with self._transaction("get_all_user_activity") as session:
            return session.query(UserActivity).order_by(UserActivity.total_time_ms.desc()).all()

    def ensure_users(self, members: Iterable[Tuple[str, str]], now: Optional[int] = None) -> int:
        """
        Create rows for members that don't have one yet and refresh display names.

        Returns:
            Number of rows created
        """
        now = now if now is not None else now_ms()
        members = list(members)
        created = 0

        with self._transaction("ensure_users") as session:
            rows = self._rows_for(session, [user_id for user_id, _ in members])
            for user_id, display_name in members:
                row = rows.get(user_id)
                if row is None:
                    row = UserActivity(user_id=user_id, total_time_ms=0, display_name=display_name, updated_at=now)
                    session.add(row)
                    rows[user_id] = row
                    created += 1
                elif display_name and row.display_name != display_name:
                    row.display_name = display_name

        if created:
            log.info(f"[PersistenceGateway] Seeded {created} user activity row(s)")
        return created

    def flush_activity(
        self,
        deltas: Sequence[FlushDelta],
        logs: Sequence[PendingLog] = (),
        now: Optional[int] = None,
    ) -> FlushResult:
        """
        Persist drained session time and buffered log entries in one transaction.

        Each delta is added to the stored total and the row's start_time is
        re-armed to `now` while the session stays open. A delta whose window
        began before the row's last reset is dropped.
        """
        now = now if now is not None else now_ms()
        result = FlushResult()

        with self._transaction("flush_activity") as session:
            for batch in _batches(list(deltas), self.batch_size):
                rows = self._rows_for(session, [d.user_id for d in batch])
                for delta in batch:
                    row = rows.get(delta.user_id)
                    if row is None:
                        row = UserActivity(user_id=delta.user_id, total_time_ms=0)
                        session.add(row)
                        rows[delta.user_id] = row

                    if row.last_reset_ms is not None and row.last_reset_ms > delta.since_ms:
                        log.warning(
                            f"[PersistenceGateway] Discarded {delta.accrued_ms}ms for {delta.user_id}: "
                            f"window since {delta.since_ms} predates reset at {row.last_reset_ms} (flush at {now})"
                        )
                        result.discarded += 1
                        continue

                    row.total_time_ms = (row.total_time_ms or 0) + max(0, delta.accrued_ms)
                    row.start_time = now if delta.open_session else None
                    if delta.display_name:
                        row.display_name = delta.display_name
                    row.updated_at = now
                    result.users_flushed += 1
                session.flush()

            for batch in _batches(list(logs), self.batch_size):
                session.add_all([
                    ActivityLogEntry(
                        user_id=entry.user_id,
                        event_type=entry.event_type.value,
                        channel_id=entry.channel_id,
                        channel_name=entry.channel_name,
                        timestamp=entry.timestamp,
                        member_snapshot=list(entry.member_snapshot),
                        reason=entry.reason,
                    )
                    for entry in batch
                ])
                session.flush()
                result.logs_written += len(batch)

        return result

    def sum_activity(
        self,
        user_id: str,
        start: int,
        end: int,
        now: Optional[int] = None,
        pending_logs: Sequence[PendingLog] = (),
        is_live: bool = False,
    ) -> int:
        """
        Tracked milliseconds for a user in the half-open window [start, end).

        Args:
            user_id: User to sum
            start: Window start (inclusive)
            end: Window end (exclusive)
            now: Current time, bounds a still-open session
            pending_logs: Log entries not flushed yet, in append order
            is_live: Whether the user currently has an open session

        Returns:
            Milliseconds
        """
        if end <= start:
            return 0
        now = now if now is not None else now_ms()

        with self._transaction("sum_activity") as session:
            prior = (
                session.query(ActivityLogEntry.event_type)
                .filter(ActivityLogEntry.user_id == user_id, ActivityLogEntry.timestamp < start)
                .order_by(ActivityLogEntry.timestamp.desc(), ActivityLogEntry.id.desc())
                .first()
            )
            rows = (
                session.query(ActivityLogEntry.timestamp, ActivityLogEntry.event_type)
                .filter(
                    ActivityLogEntry.user_id == user_id,
                    ActivityLogEntry.timestamp >= start,
                    ActivityLogEntry.timestamp < end,
                )
                .order_by(ActivityLogEntry.timestamp, ActivityLogEntry.id)
                .all()
            )
            has_later = session.query(ActivityLogEntry.id).filter(
                ActivityLogEntry.user_id == user_id, ActivityLogEntry.timestamp >= end
            ).first() is not None

        last_before = prior[0] if prior else None
        events = [(timestamp, event_type) for timestamp, event_type in rows]

        # Buffered entries are always newer than the flushed ones
        buffered = [entry for entry in pending_logs if entry.user_id == user_id]
        for entry in buffered:
            if entry.timestamp < start:
                last_before = entry.event_type.value
            elif entry.timestamp < end:
                events.append((entry.timestamp, entry.event_type.value))
            else:
                has_later = True
        events.sort(key=lambda item: item[0])

        # A session still open at `end` counts up to `end` when it is known to
        # have continued past it, up to `now` while live, and not at all otherwise
        if has_later:
            open_until = end
        elif is_live:
            open_until = now
        else:
            open_until = None

        return accumulate_intervals(
            events,
            start,
            end,
            open_at_start=last_before == EventType.JOIN.value,
            open_until=open_until,
        )

    def get_open_sessions(self) -> Dict[str, int]:
        """Rows still marked open at their last flush: {user_id: start_time}."""
        with self._transaction("get_open_sessions") as session:
            rows = session.query(UserActivity.user_id, UserActivity.start_time).filter(
                UserActivity.start_time.isnot(None)
            ).all()
        return {user_id: start_time for user_id, start_time in rows}

    def close_orphaned_sessions(self, user_ids: Sequence[str], now: Optional[int] = None) -> int:
        """Clear start_time for rows whose session did not survive a restart."""
        if not user_ids:
            return 0
        now = now if now is not None else now_ms()

        with self._transaction("close_orphaned_sessions") as session:
            rows = self._rows_for(session, user_ids)
            for row in rows.values():
                row.start_time = None
                row.updated_at = now

        if rows:
            log.info(f"[PersistenceGateway] Closed {len(rows)} orphaned session row(s)")
        return len(rows)

    # ======== Group configuration ========

    def get_group_config(self, group_name: str) -> Optional[GroupConfig]:
        with self._transaction("get_group_config") as session:
            return session.get(GroupConfig, group_name)

    def list_group_configs(self) -> List[GroupConfig]:
        with self._transaction("list_group_configs") as session:
            return session.query(GroupConfig).order_by(GroupConfig.group_name).all()

    def set_group_config(
        self,
        group_name: str,
        min_hours: Optional[float] = None,
        report_cycle_weeks: Optional[int] = None,
    ) -> GroupConfig:
        """
        Create or update a group's threshold and report cycle.

        Raises:
            ValidationError: If min_hours is negative or the cycle is below one week
        """
        if not group_name:
            raise ValidationError("Group name is required.")
        if min_hours is not None and min_hours < 0:
            raise ValidationError(
                "Minimum hours cannot be negative.",
                f"Rejected min_hours={min_hours} for {group_name}"
            )
        if report_cycle_weeks is not None and report_cycle_weeks < 1:
            raise ValidationError(
                "Report cycle must be at least one week.",
                f"Rejected report_cycle_weeks={report_cycle_weeks} for {group_name}"
            )

        with self._transaction("set_group_config") as session:
            config = session.get(GroupConfig, group_name)
            if config is None:
                config = GroupConfig(group_name=group_name, min_hours=0.0, report_cycle_weeks=1)
                session.add(config)
            if min_hours is not None:
                config.min_hours = float(min_hours)
            if report_cycle_weeks is not None:
                config.report_cycle_weeks = int(report_cycle_weeks)

        log.info(
            f"[PersistenceGateway] Group config {group_name}: "
            f"min_hours={config.min_hours}, cycle={config.report_cycle_weeks}w"
        )
        return config

    def delete_group_config(self, group_name: str) -> bool:
        with self._transaction("delete_group_config") as session:
            count = session.query(GroupConfig).filter(GroupConfig.group_name == group_name).delete()
        return count > 0

    def get_next_report_time(self, group_name: str, now: Optional[int] = None) -> Optional[int]:
        """
        Last reset plus the group's report cycle.

        A group that was never reset is due immediately (`now`); None when unconfigured.
        """
        config = self.get_group_config(group_name)
        if config is None:
            return None
        if config.reset_time is None:
            return now if now is not None else now_ms()
        return config.reset_time + (config.report_cycle_weeks or 1) * WEEK_MS

    # ======== Resets ========

    def reset_group(
        self,
        group_name: str,
        member_ids: Sequence[str],
        connected_ids: Set[str] = frozenset(),
        now: Optional[int] = None,
        reason: str = "manual reset",
    ) -> int:
        """
        Zero every member's total and record the reset, in one transaction.

        Connected members get start_time re-based to `now`, everyone else None.

        Returns:
            Number of members reset
        """
        now = now if now is not None else now_ms()
        member_ids = list(dict.fromkeys(member_ids))

        with self._transaction("reset_group") as session:
            rows = self._rows_for(session, member_ids)
            for user_id in member_ids:
                row = rows.get(user_id)
                if row is None:
                    row = UserActivity(user_id=user_id)
                    session.add(row)
                row.total_time_ms = 0
                row.start_time = now if user_id in connected_ids else None
                row.last_reset_ms = now
                row.updated_at = now

            config = session.get(GroupConfig, group_name)
            if config is None:
                config = GroupConfig(group_name=group_name, min_hours=0.0, report_cycle_weeks=1)
                session.add(config)
            config.reset_time = now

            session.add(ResetHistoryEntry(
                group_name=group_name,
                reset_time=now,
                reason=reason,
                affected_users=len(member_ids),
            ))

        log.info(f"[PersistenceGateway] Reset group {group_name} at {now}: {len(member_ids)} member(s) ({reason})")
        return len(member_ids)

    def get_reset_history(self, group_name: str, limit: int = 5) -> List[ResetHistoryEntry]:
        with self._transaction("get_reset_history") as session:
            return (
                session.query(ResetHistoryEntry)
                .filter(ResetHistoryEntry.group_name == group_name)
                .order_by(ResetHistoryEntry.reset_time.desc(), ResetHistoryEntry.id.desc())
                .limit(limit)
                .all()
            )

    # ======== Activity logs ========

    def get_activity_logs(
        self,
        start: int,
        end: int,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ActivityLogEntry]:
        """Log entries in [start, end), oldest first."""
        with self._transaction("get_activity_logs") as session:
            query = session.query(ActivityLogEntry).filter(
                ActivityLogEntry.timestamp >= start,
                ActivityLogEntry.timestamp < end,
            )
            if user_id is not None:
                query = query.filter(ActivityLogEntry.user_id == user_id)
            query = query.order_by(ActivityLogEntry.timestamp, ActivityLogEntry.id)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def get_user_activity_logs(self, user_id: str, limit: int = 100) -> List[ActivityLogEntry]:
        """Most recent log entries for a user, newest first."""
        with self._transaction("get_user_activity_logs") as session:
            return (
                session.query(ActivityLogEntry)
                .filter(ActivityLogEntry.user_id == user_id)
                .order_by(ActivityLogEntry.timestamp.desc(), ActivityLogEntry.id.desc())
                .limit(limit)
                .all()
            )

    def get_active_members_for_range(self, start: int, end: int) -> List[Tuple[str, str, int]]:
        """(user_id, display_name, stored total) for users with log entries in [start, end)."""
        with self._transaction("get_active_members_for_range") as session:
            user_ids = [
                user_id for (user_id,) in session.query(ActivityLogEntry.user_id)
                .filter(ActivityLogEntry.timestamp >= start, ActivityLogEntry.timestamp < end)
                .distinct()
                .order_by(ActivityLogEntry.user_id)
            ]
            rows = self._rows_for(session, user_ids)

        return [
            (user_id, rows[user_id].display_name or user_id, rows[user_id].total_time_ms or 0)
            for user_id in user_ids
            if user_id in rows
        ]

    # ======== AFK status ========

    def set_afk_status(self, user_id: str, display_name: str, afk_until: int, now: Optional[int] = None) -> AfkStatus:
        now = now if now is not None else now_ms()
        if afk_until <= now:
            raise ValidationError("AFK end time must be in the future.", f"Rejected afk_until={afk_until} for {user_id}")

        with self._transaction("set_afk_status") as session:
            status = session.get(AfkStatus, user_id)
            if status is None:
                status = AfkStatus(user_id=user_id, created_at=now)
                session.add(status)
            status.display_name = display_name
            status.afk_until = afk_until

        log.info(f"[PersistenceGateway] AFK set: {user_id} until {afk_until}")
        return status

    def get_afk_status(self, user_id: str) -> Optional[AfkStatus]:
        with self._transaction("get_afk_status") as session:
            return session.get(AfkStatus, user_id)

    def clear_afk_status(self, user_id: str) -> bool:
        with self._transaction("clear_afk_status") as session:
            count = session.query(AfkStatus).filter(AfkStatus.user_id == user_id).delete()
        if count:
            log.info(f"[PersistenceGateway] AFK cleared: {user_id}")
        return count > 0

    def get_afk_user_ids(self, now: Optional[int] = None) -> Set[str]:
        """Users whose AFK status has not expired."""
        now = now if now is not None else now_ms()
        with self._transaction("get_afk_user_ids") as session:
            rows = session.query(AfkStatus.user_id).filter(AfkStatus.afk_until > now).all()
        return {user_id for (user_id,) in rows}

    def clear_expired_afk_status(self, now: Optional[int] = None) -> List[str]:
        now = now if now is not None else now_ms()
        with self._transaction("clear_expired_afk_status") as session:
            expired = [
                user_id for (user_id,) in
                session.query(AfkStatus.user_id).filter(AfkStatus.afk_until <= now).order_by(AfkStatus.user_id)
            ]
            if expired:
                session.query(AfkStatus).filter(AfkStatus.user_id.in_(expired)).delete(synchronize_session=False)

        if expired:
            log.info(f"[PersistenceGateway] Expired AFK status for {len(expired)} user(s)")
        return expired

    # ======== Status ========

    def get_stats(self) -> dict:
        with self._transaction("get_stats") as session:
            users, tracked_ms = session.query(
                func.count(UserActivity.user_id),
                func.coalesce(func.sum(UserActivity.total_time_ms), 0),
            ).one()
            open_sessions = session.query(func.count(UserActivity.user_id)).filter(
                UserActivity.start_time.isnot(None)
            ).scalar()
            log_entries = session.query(func.count(ActivityLogEntry.id)).scalar()
            groups = session.query(func.count(GroupConfig.group_name)).scalar()

        return {
            "users": users or 0,
            "tracked_ms": int(tracked_ms or 0),
            "open_sessions": open_sessions or 0,
            "log_entries": log_entries or 0,
            "groups": groups or 0,
        }
