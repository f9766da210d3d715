"""Per-connection mutual exclusion lease backed by Redis."""

import logging
from datetime import timedelta
from typing import Optional, Union
from uuid import uuid4

import redis.asyncio as redis_async

PENDING_PREFIX = "pending:"


def _to_ms(ttl: Union[int, float, timedelta]) -> int:
    if isinstance(ttl, timedelta):
        return int(ttl.total_seconds() * 1000)
    return int(ttl * 1000)


class ConnectionLockManager:
    """
    Renewable lease keyed by connection id.

    The key ``<prefix>:<connection_id>`` holds the owner token. It is created
    with a pending token, rebound to the job id once the job row exists, and
    expires on its own if nobody releases it. All owner-checked mutations run
    as Lua scripts so the compare and the write are atomic.
    """

    RELEASE_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    RENEW_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("PEXPIRE", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    REBIND_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        redis.call("SET", KEYS[1], ARGV[2], "PX", ARGV[3])
        return 1
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: redis_async.Redis,
        default_ttl: Union[int, float, timedelta] = timedelta(hours=1),
        key_prefix: str = "lock",
        logger: Optional[logging.Logger] = None,
    ):
        self.redis = redis_client
        self.default_ttl_ms = _to_ms(default_ttl)
        self.key_prefix = key_prefix
        self.logger = logger or logging.getLogger(__name__)

    def key_for(self, connection_id: str) -> str:
        return f"{self.key_prefix}:{connection_id}"

    def _ttl_ms(self, ttl) -> int:
        return self.default_ttl_ms if ttl is None else _to_ms(ttl)

    async def acquire(self, connection_id: str, ttl=None) -> Optional[str]:
        """
        Try to take the lock without waiting.

        Returns:
            The pending owner token, or None when another owner holds the lock.
        """
        token = f"{PENDING_PREFIX}{uuid4()}"
        acquired = await self.redis.set(
            self.key_for(connection_id), token, px=self._ttl_ms(ttl), nx=True
        )
        if not acquired:
            self.logger.debug(f"Lock for connection {connection_id} is busy")
            return None
        self.logger.debug(f"Acquired lock for connection {connection_id} ({token})")
        return token

    async def rebind(
        self, connection_id: str, token: str, new_owner: str, ttl=None
    ) -> bool:
        """Hand the lock from ``token`` to ``new_owner`` (normally the job id)."""
        result = await self.redis.eval(
            self.REBIND_SCRIPT,
            1,
            self.key_for(connection_id),
            token,
            new_owner,
            self._ttl_ms(ttl),
        )
        return int(result) == 1

    async def release(self, connection_id: str, token: str) -> bool:
        """Delete the lock only if ``token`` still owns it."""
        result = await self.redis.eval(
            self.RELEASE_SCRIPT, 1, self.key_for(connection_id), token
        )
        released = int(result) == 1
        if released:
            self.logger.debug(f"Released lock for connection {connection_id}")
        return released

    async def renew(self, connection_id: str, token: str, ttl=None) -> bool:
        """Push the expiry out if ``token`` still owns the lock."""
        result = await self.redis.eval(
            self.RENEW_SCRIPT,
            1,
            self.key_for(connection_id),
            token,
            self._ttl_ms(ttl),
        )
        return int(result) == 1

    async def owner(self, connection_id: str) -> Optional[str]:
        """Current owner token, or None when the lock is free."""
        value = await self.redis.get(self.key_for(connection_id))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value
