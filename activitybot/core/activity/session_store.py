"""
Open voice session storage.

All session repositories must inherit from SessionRepository. SessionStateStore
combines Redis (survives restarts, used for recovery) with an in-process map
(always available) behind the same interface.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from activitybot.core.errors import CacheError, error_handler
from .events import VoiceSession

logger = logging.getLogger("activitybot.session_store")

DEFAULT_SESSION_TTL = 24 * 60 * 60  # seconds


class SessionRepository(ABC):
    """Base class for open-session repositories."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[VoiceSession]:
        """
        Get the open session for a user.

        Returns:
            VoiceSession or None when the user has no open session
        """
        pass

    @abstractmethod
    async def set(self, session: VoiceSession):
        """Store or replace the open session for session.user_id."""
        pass

    @abstractmethod
    async def delete(self, user_id: str):
        """Remove the open session for a user (no-op if absent)."""
        pass

    @abstractmethod
    async def list_user_ids(self) -> List[str]:
        """All users with an open session."""
        pass

    async def close(self):
        """Release resources. Override if needed."""
        pass


class MemorySessionRepository(SessionRepository):
    """In-process sessions. Lost on restart."""

    def __init__(self):
        self._sessions: Dict[str, VoiceSession] = {}

    async def get(self, user_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(user_id)

    async def set(self, session: VoiceSession):
        self._sessions[session.user_id] = session

    async def delete(self, user_id: str):
        self._sessions.pop(user_id, None)

    async def list_user_ids(self) -> List[str]:
        return sorted(self._sessions)


class RedisSessionRepository(SessionRepository):
    """
    Sessions in Redis: one hash per user with a TTL, plus a set of user IDs.

    Keys:
        voice_session:{user_id} -> {"startTime": ms, "channelId": id}
        active_voice_sessions   -> {user_id, ...}
    """

    ACTIVE_SESSIONS_KEY = "active_voice_sessions"

    def __init__(self, client: redis.Redis, ttl_seconds: int = DEFAULT_SESSION_TTL):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    async def connect(cls, url: str, ttl_seconds: int = DEFAULT_SESSION_TTL) -> "RedisSessionRepository":
        """
        Connect and ping.

        Raises:
            CacheError: If Redis is unreachable
        """
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise CacheError(
                "Session cache unavailable.",
                f"[SessionStore] Redis ping failed: {e}",
                original_error=e
            ) from e

        logger.info("[SessionStore] Connected to Redis session cache")
        return cls(client, ttl_seconds)

    @staticmethod
    def session_key(user_id: str) -> str:
        return f"voice_session:{user_id}"

    async def get(self, user_id: str) -> Optional[VoiceSession]:
        data = await self.client.hgetall(self.session_key(user_id))
        if not data or "startTime" not in data:
            return None
        return VoiceSession(
            user_id=user_id,
            start_time=int(data["startTime"]),
            channel_id=data.get("channelId") or None,
        )

    async def set(self, session: VoiceSession):
        key = self.session_key(session.user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={
                "startTime": str(session.start_time),
                "channelId": session.channel_id or "",
            })
            pipe.expire(key, self.ttl_seconds)
            pipe.sadd(self.ACTIVE_SESSIONS_KEY, session.user_id)
            await pipe.execute()

    async def delete(self, user_id: str):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self.session_key(user_id))
            pipe.srem(self.ACTIVE_SESSIONS_KEY, user_id)
            await pipe.execute()

    async def list_user_ids(self) -> List[str]:
        members = await self.client.smembers(self.ACTIVE_SESSIONS_KEY)
        return sorted(members)

    async def close(self):
        await self.client.aclose()


class SessionStateStore(SessionRepository):
    """
    Session store with a primary cache and an in-process fallback.

    Writes go to both; reads prefer the primary and fall back to memory.
    Primary failures are recorded and never propagate.
    """

    def __init__(self, primary: Optional[SessionRepository] = None, fallback: Optional[SessionRepository] = None):
        self.primary = primary
        self.fallback = fallback or MemorySessionRepository()
        self.primary_failures = 0

    @property
    def has_primary(self) -> bool:
        return self.primary is not None

    def _primary_failed(self, operation: str, error: Exception):
        self.primary_failures += 1
        error_handler.log_error(
            CacheError(
                "Session cache operation failed.",
                f"[SessionStore] {operation} failed, using in-process sessions: {error}",
                original_error=error
            ),
            context={"operation": operation},
        )

    async def get(self, user_id: str) -> Optional[VoiceSession]:
        if self.primary is not None:
            try:
                session = await self.primary.get(user_id)
                if session is not None:
                    return session
            except Exception as e:
                self._primary_failed("get", e)
        return await self.fallback.get(user_id)

    async def set(self, session: VoiceSession):
        await self.fallback.set(session)
        if self.primary is not None:
            try:
                await self.primary.set(session)
            except Exception as e:
                self._primary_failed("set", e)

    async def delete(self, user_id: str):
        await self.fallback.delete(user_id)
        if self.primary is not None:
            try:
                await self.primary.delete(user_id)
            except Exception as e:
                self._primary_failed("delete", e)

    async def list_user_ids(self) -> List[str]:
        user_ids = set(await self.fallback.list_user_ids())
        if self.primary is not None:
            try:
                user_ids.update(await self.primary.list_user_ids())
            except Exception as e:
                self._primary_failed("list", e)
        return sorted(user_ids)

    async def close(self):
        if self.primary is not None:
            try:
                await self.primary.close()
            except Exception as e:
                self._primary_failed("close", e)
