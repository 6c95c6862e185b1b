"""
Voice activity engine.

Tracks voice time per member, persists it in periodic flushes, recovers open
sessions after a restart and classifies members against group thresholds.
Independent of discord.py: the cog converts gateway events to VoiceEvents.
"""

from .accumulator import ActivityAccumulator
from .classifier import Classification, ClassifiedUser, Classifier
from .events import RosterMember, Transition, VoiceEvent, VoiceSession, now_ms
from .persistence import FlushResult, PersistenceGateway
from .recovery import RecoveryCoordinator, RecoveryResult
from .session_store import (
    MemorySessionRepository, RedisSessionRepository, SessionRepository, SessionStateStore
)

__all__ = [
    "ActivityAccumulator",
    "Classification",
    "ClassifiedUser",
    "Classifier",
    "FlushResult",
    "MemorySessionRepository",
    "PersistenceGateway",
    "RecoveryCoordinator",
    "RecoveryResult",
    "RedisSessionRepository",
    "RosterMember",
    "SessionRepository",
    "SessionStateStore",
    "Transition",
    "VoiceEvent",
    "VoiceSession",
    "now_ms",
]
