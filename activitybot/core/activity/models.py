"""Activity ORM models - single source of truth for the durable store schema."""

from sqlalchemy import JSON, BigInteger, Column, Float, Index, Integer, String
from sqlalchemy.orm import declarative_base

ActivityBase = declarative_base()


class UserActivity(ActivityBase):
    """Accumulated voice time per user."""
    __tablename__ = 'user_activities'

    user_id = Column(String(32), primary_key=True)
    total_time_ms = Column(BigInteger, nullable=False, default=0)
    # Set while the user had an open session at the last flush
    start_time = Column(BigInteger, nullable=True)
    display_name = Column(String(255), nullable=True)
    last_reset_ms = Column(BigInteger, nullable=True)
    updated_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('ix_user_activities_total', 'total_time_ms'),
    )


class GroupConfig(ActivityBase):
    """Minimum-activity threshold and reset marker per group (role)."""
    __tablename__ = 'group_configs'

    group_name = Column(String(100), primary_key=True)
    min_hours = Column(Float, nullable=False, default=0.0)
    reset_time = Column(BigInteger, nullable=True)
    report_cycle_weeks = Column(Integer, nullable=False, default=1)


class ActivityLogEntry(ActivityBase):
    """Append-only join/leave log."""
    __tablename__ = 'activity_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(32), nullable=False, index=True)
    event_type = Column(String(10), nullable=False)
    channel_id = Column(String(32), nullable=True, index=True)
    channel_name = Column(String(255), nullable=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    member_snapshot = Column(JSON, nullable=False, default=list)
    reason = Column(String(20), nullable=False, default="channel")

    __table_args__ = (
        Index('ix_activity_logs_user_time', 'user_id', 'timestamp'),
    )


class ResetHistoryEntry(ActivityBase):
    """Audit trail of explicit group resets."""
    __tablename__ = 'reset_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_name = Column(String(100), nullable=False, index=True)
    reset_time = Column(BigInteger, nullable=False, index=True)
    reason = Column(String(255), nullable=True)
    affected_users = Column(Integer, nullable=False, default=0)


class AfkStatus(ActivityBase):
    """Temporary away status; exempts the member from classification until it expires."""
    __tablename__ = 'afk_status'

    user_id = Column(String(32), primary_key=True)
    display_name = Column(String(255), nullable=True)
    afk_until = Column(BigInteger, nullable=False)
    created_at = Column(BigInteger, nullable=False)
