"""Session lifecycle management with user/device indices."""

import json
import logging
import time
import uuid
from typing import Any

from redis.exceptions import ResponseError

from rediscoord.exceptions import CoordinationError
from rediscoord.models.session import SessionData
from rediscoord.redis.client import RedisClient
from rediscoord.redis.keys import RedisKeys

logger = logging.getLogger(__name__)

_PARSE_ERRORS = (json.JSONDecodeError, KeyError, TypeError, ValueError)


class SessionManager:
    """
    Manages session records and their lookup indices in Redis.

    Every session id is a member of three sets: by user, by device and by
    (user, device). Create and destroy update the record and all three
    sets in one script. Index sets live ``index_grace_seconds`` longer than
    the sessions they hold and their TTL is only ever extended.

    Features:
    - Create/read/update/refresh/destroy sessions
    - Eager destruction of expired records on read
    - Bulk logout per user, device or user+device
    - Cleanup sweep for expired or corrupted records
    """

    # KEYS: record, user index, device index, user+device index
    # ARGV: payload, ttl_ms, index_ttl_ms, session_id
    CREATE_SCRIPT = """
    redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[2])
    local index_ttl = tonumber(ARGV[3])
    for i = 2, #KEYS do
        redis.call('SADD', KEYS[i], ARGV[4])
        if redis.call('PTTL', KEYS[i]) < index_ttl then
            redis.call('PEXPIRE', KEYS[i], index_ttl)
        end
    end
    return 1
    """

    # KEYS: record, user index, device index, user+device index
    # ARGV: payload, ttl_ms, index_ttl_ms
    REFRESH_SCRIPT = """
    if redis.call('EXISTS', KEYS[1]) == 0 then
        return 0
    end
    redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[2])
    local index_ttl = tonumber(ARGV[3])
    for i = 2, #KEYS do
        if redis.call('EXISTS', KEYS[i]) == 1 and redis.call('PTTL', KEYS[i]) < index_ttl then
            redis.call('PEXPIRE', KEYS[i], index_ttl)
        end
    end
    return 1
    """

    # KEYS: record
    # ARGV: payload as read, merged payload
    # Returns 0 if gone, -1 if changed since the read
    UPDATE_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if not current then
        return 0
    end
    if current ~= ARGV[1] then
        return -1
    end
    redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
    return 1
    """

    UPDATE_ATTEMPTS = 5

    # KEYS: record, then any index sets; ARGV: session_id
    DESTROY_SCRIPT = """
    for i = 2, #KEYS do
        redis.call('SREM', KEYS[i], ARGV[1])
    end
    return redis.call('DEL', KEYS[1])
    """

    def __init__(
        self,
        redis: RedisClient,
        ttl_seconds: float = 86400,
        prefix: str = "session:",
        index_grace_seconds: float = 3600,
    ):
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = prefix
        self._grace = index_grace_seconds

    @property
    def prefix(self) -> str:
        return self._prefix

    def _key(self, session_id: str) -> str:
        return RedisKeys.session(self._prefix, session_id)

    def _index_keys(self, user_id: str | int, device_id: str) -> list[str]:
        return [
            RedisKeys.user_index(self._prefix, user_id),
            RedisKeys.device_index(self._prefix, device_id),
            RedisKeys.user_device_index(self._prefix, user_id, device_id),
        ]

    @staticmethod
    def _generate_session_id() -> str:
        return uuid.uuid4().hex

    async def create(
        self,
        user_id: str | int,
        device_id: str,
        data: dict[str, Any] | None = None,
        ttl: float | None = None,
    ) -> str:
        """
        Create a session and index it by user, device and user+device.

        Args:
            user_id: Owning user
            device_id: Device the session was opened on
            data: Arbitrary session payload
            ttl: Lifetime in seconds (defaults to the manager's)

        Returns:
            The new session id
        """
        ttl = ttl if ttl is not None else self._ttl
        session_id = self._generate_session_id()
        now = time.time()

        session = SessionData(
            user_id=str(user_id),
            device_id=device_id,
            data=dict(data or {}),
            created_at=now,
            expires_at=now + ttl,
        )

        await self._redis.eval(
            self.CREATE_SCRIPT,
            keys=[self._key(session_id), *self._index_keys(user_id, device_id)],
            args=[session.to_json(), _to_ms(ttl), _to_ms(ttl + self._grace), session_id],
        )

        logger.info(f"Created session {session_id} for user {user_id} on device {device_id}")
        return session_id

    async def get(self, session_id: str) -> SessionData | None:
        """
        Retrieve a session.

        A record past its expires_at is destroyed (with its index entries)
        and reported as not found; an unreadable record is deleted.
        """
        raw = await self._redis.get(self._key(session_id))
        return await self._load(session_id, raw)

    async def _load(self, session_id: str, raw: str | None) -> SessionData | None:
        if raw is None:
            return None

        try:
            session = SessionData.from_json(raw)
        except _PARSE_ERRORS as e:
            logger.warning(f"Deleting corrupted session {session_id}: {e}")
            await self._redis.delete(self._key(session_id))
            return None

        if session.is_expired():
            await self._destroy_record(session_id, session)
            return None

        return session

    async def exists(self, session_id: str) -> bool:
        """Check if session exists and is valid."""
        return await self.get(session_id) is not None

    async def update(self, session_id: str, data: dict[str, Any]) -> bool:
        """
        Merge ``data`` into the session payload, keeping the remaining TTL.

        The write only lands if the record is unchanged since it was read;
        otherwise the merge is redone on the current record.

        Returns:
            False if the session does not exist

        Raises:
            CoordinationError: if the record kept changing underneath
        """
        key = self._key(session_id)

        for _ in range(self.UPDATE_ATTEMPTS):
            raw = await self._redis.get(key)
            session = await self._load(session_id, raw)
            if session is None:
                return False

            session.data = {**session.data, **data}
            result = int(
                await self._redis.eval(
                    self.UPDATE_SCRIPT, keys=[key], args=[raw, session.to_json()]
                )
            )
            if result != -1:
                return result == 1
            logger.debug(f"Session {session_id} changed during update, retrying")

        raise CoordinationError(
            "SESSION_CONFLICT",
            f"Session {session_id} changed during update",
            {"session_id": session_id, "attempts": self.UPDATE_ATTEMPTS},
        )

    async def refresh(self, session_id: str, ttl: float | None = None) -> bool:
        """
        Push the session's expiry out to ``ttl`` seconds from now.

        Index TTLs are extended to keep outliving the session.

        Returns:
            False if the session does not exist
        """
        ttl = ttl if ttl is not None else self._ttl
        session = await self.get(session_id)
        if session is None:
            return False

        session.expires_at = time.time() + ttl
        result = await self._redis.eval(
            self.REFRESH_SCRIPT,
            keys=[self._key(session_id), *self._index_keys(session.user_id, session.device_id)],
            args=[session.to_json(), _to_ms(ttl), _to_ms(ttl + self._grace)],
        )
        return int(result) == 1

    async def destroy(self, session_id: str) -> bool:
        """
        Delete a session and remove it from its indices.

        Returns:
            True if a record was removed
        """
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return False

        try:
            session = SessionData.from_json(raw)
        except _PARSE_ERRORS:
            logger.warning(f"Destroying corrupted session {session_id}")
            return await self._redis.delete(self._key(session_id)) > 0

        return await self._destroy_record(session_id, session)

    async def _destroy_record(self, session_id: str, session: SessionData) -> bool:
        result = await self._redis.eval(
            self.DESTROY_SCRIPT,
            keys=[self._key(session_id), *self._index_keys(session.user_id, session.device_id)],
            args=[session_id],
        )
        removed = int(result) > 0
        if removed:
            logger.info(f"Destroyed session {session_id}")
        return removed

    # ------------------------------------------------------------------
    # Index lookups
    # ------------------------------------------------------------------

    async def get_user_sessions(self, user_id: str | int) -> list[str]:
        """Session ids belonging to a user."""
        return await self._live_members(RedisKeys.user_index(self._prefix, user_id))

    async def get_device_sessions(self, device_id: str) -> list[str]:
        """Session ids opened on a device."""
        return await self._live_members(RedisKeys.device_index(self._prefix, device_id))

    async def get_user_device_sessions(self, user_id: str | int, device_id: str) -> list[str]:
        """Session ids of one user on one device."""
        return await self._live_members(
            RedisKeys.user_device_index(self._prefix, user_id, device_id)
        )

    async def get_user_session_data(self, user_id: str | int) -> dict[str, SessionData]:
        """Session id -> session data for every live session of a user."""
        sessions: dict[str, SessionData] = {}
        for session_id in await self.get_user_sessions(user_id):
            session = await self.get(session_id)
            if session is not None:
                sessions[session_id] = session
        return sessions

    async def _live_members(self, index_key: str) -> list[str]:
        """Index members whose record still exists; stale ids are pruned."""
        members = sorted(await self._redis.smembers(index_key))
        if not members:
            return []

        records = await self._redis.mget([self._key(member) for member in members])
        live = [member for member, record in zip(members, records) if record is not None]
        stale = [member for member, record in zip(members, records) if record is None]

        if stale:
            await self._redis.srem(index_key, *stale)
            logger.debug(f"Pruned {len(stale)} stale id(s) from {index_key}")

        return live

    # ------------------------------------------------------------------
    # Bulk destruction
    # ------------------------------------------------------------------

    async def destroy_user_sessions(self, user_id: str | int) -> int:
        """Log a user out everywhere."""
        return await self._destroy_index(RedisKeys.user_index(self._prefix, user_id))

    async def destroy_device_sessions(self, device_id: str) -> int:
        """Log every user out of a device."""
        return await self._destroy_index(RedisKeys.device_index(self._prefix, device_id))

    async def destroy_user_device_sessions(self, user_id: str | int, device_id: str) -> int:
        """Log a user out of one device."""
        return await self._destroy_index(
            RedisKeys.user_device_index(self._prefix, user_id, device_id)
        )

    async def _destroy_index(self, index_key: str) -> int:
        destroyed = 0
        for session_id in await self._redis.smembers(index_key):
            if await self.destroy(session_id):
                destroyed += 1

        await self._redis.delete(index_key)
        logger.info(f"Destroyed {destroyed} session(s) from {index_key}")
        return destroyed

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup(self) -> int:
        """
        Destroy expired or unreadable session records.

        Safe to run alongside live traffic; sessions expire on their own
        TTL even if this never runs.

        Returns:
            Number of records removed
        """
        cleaned = 0
        now = time.time()

        for key in await self._redis.scan_keys(f"{self._prefix}*"):
            if RedisKeys.is_session_index(self._prefix, key):
                continue

            try:
                raw = await self._redis.get(key)
            except ResponseError as e:
                logger.warning(f"Skipping non-session key {key}: {e}")
                continue
            if raw is None:
                continue

            session_id = RedisKeys.strip_prefix(self._prefix, key)
            try:
                session = SessionData.from_json(raw)
            except _PARSE_ERRORS:
                # Clean up invalid session data
                cleaned += await self._redis.delete(key)
                continue

            if session.is_expired(now) and await self._destroy_record(session_id, session):
                cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired session(s)")
        return cleaned


def _to_ms(seconds: float) -> int:
    return max(1, int(round(seconds * 1000)))
