"""Redis lease that keeps a single consumer polling the shared cursor."""

import logging
import uuid

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_LOCK_KEY = "domadao:poll-consumer:lock"
DEFAULT_LOCK_TTL_SECONDS = 60

# Extend the lease while we own it; take it back if it expired unclaimed.
# Returns 1 when extended, 2 when re-acquired, 0 when another holder owns it.
_RENEW_SCRIPT = """
local current = redis.call("GET", KEYS[1])
if current == ARGV[1] then
    redis.call("PEXPIRE", KEYS[1], ARGV[2])
    return 1
end
if not current then
    redis.call("SET", KEYS[1], ARGV[1], "PX", ARGV[2])
    return 2
end
return 0
"""

# Delete the lease only while we still own it.
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

_REACQUIRED = 2


class ConsumerLockError(Exception):
    """Raised when the lease is held by another consumer."""


class ConsumerLockLostError(ConsumerLockError):
    """Raised when another consumer took over the lease."""


class ConsumerLock:
    """Lease-based lock around the poll loop.

    The lease is acquired with ``SET NX PX``, renewed on a timer by the
    consumer, and released on stop. Each holder is identified by a random
    token so a consumer never renews or deletes a lease someone else owns.
    A lease that simply expired is taken back on the next renewal.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key: str = DEFAULT_LOCK_KEY,
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
    ) -> None:
        self._redis = redis
        self.key = key
        self._ttl_ms = int(ttl_seconds * 1000)
        self._token = uuid.uuid4().hex
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        """Acquire the lease.

        Raises:
            ConsumerLockError: If another consumer holds it.
        """
        acquired = await self._redis.set(self.key, self._token, nx=True, px=self._ttl_ms)
        if not acquired:
            raise ConsumerLockError(f"Consumer lock {self.key} is held by another consumer")
        self._held = True
        logger.info("Acquired consumer lock key=%s ttl_ms=%d", self.key, self._ttl_ms)

    async def renew(self) -> None:
        """Extend the lease by another TTL.

        Raises:
            ConsumerLockLostError: If another consumer now holds the lease.
        """
        if not self._held:
            raise ConsumerLockLostError(f"Consumer lock {self.key} is not held")
        result = await self._redis.eval(_RENEW_SCRIPT, 1, self.key, self._token, self._ttl_ms)
        if not result:
            self._held = False
            raise ConsumerLockLostError(f"Consumer lock {self.key} was taken by another consumer")
        if result == _REACQUIRED:
            logger.warning("Consumer lock key=%s had expired, re-acquired", self.key)

    async def release(self) -> None:
        """Release the lease if we still hold it."""
        if not self._held:
            return
        self._held = False
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self.key, self._token)
        if released:
            logger.info("Released consumer lock key=%s", self.key)
        else:
            logger.warning("Consumer lock key=%s expired before release", self.key)
