"""
Value types exchanged between the Discord adapter and the activity engine.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS


def now_ms() -> int:
    """Current UTC time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class EventType(str, Enum):
    """Activity log event types."""
    JOIN = "JOIN"
    LEAVE = "LEAVE"


class Transition(str, Enum):
    """Outcome of diffing one connection event against the current state."""
    JOIN = "join"
    LEAVE = "leave"
    MOVE = "move"
    SUSPEND = "suspend"
    RESUME = "resume"
    NOOP = "noop"


@dataclass(frozen=True)
class VoiceEvent:
    """
    A connection-state or profile change for one member.

    Profile updates carry the same channel in old and new.
    """
    user_id: str
    old_channel_id: Optional[str]
    new_channel_id: Optional[str]
    display_name: str = ""
    group_names: Tuple[str, ...] = ()
    old_channel_name: Optional[str] = None
    new_channel_name: Optional[str] = None
    old_channel_members: Tuple[str, ...] = ()
    new_channel_members: Tuple[str, ...] = ()


@dataclass(frozen=True)
class VoiceSession:
    """Open session as kept in the session store."""
    user_id: str
    start_time: int
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class RosterMember:
    """A member as supplied by the roster provider."""
    user_id: str
    display_name: str
    group_names: Tuple[str, ...] = ()


@dataclass
class PendingLog:
    """An activity log entry waiting for the next flush."""
    user_id: str
    event_type: EventType
    channel_id: Optional[str]
    channel_name: Optional[str]
    timestamp: int
    member_snapshot: List[str] = field(default_factory=list)
    reason: str = "channel"


@dataclass
class FlushDelta:
    """Unflushed time for one user, drained from the accumulator."""
    user_id: str
    display_name: Optional[str]
    accrued_ms: int
    since_ms: int
    open_session: bool


@dataclass
class LiveState:
    """Unflushed view of one user, captured on the event loop for readers in other threads."""
    unflushed_ms: int = 0
    is_live: bool = False
    pending_logs: List[PendingLog] = field(default_factory=list)
