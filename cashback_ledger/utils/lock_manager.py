import asyncio
import time
import uuid
from typing import Optional, AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..core.config import settings
from ..core.errors import LockAcquisitionError, LockReleaseError


class DistributedLock:
    """Distributed lock implementation using Redis."""

    _RELEASE_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: Redis,
        key: str,
        timeout: float = 30.0,
        blocking_timeout: Optional[float] = None
    ):
        """
        Initialize distributed lock.

        Args:
            redis_client: Redis client instance
            key: Lock key name
            timeout: Lock expiry in seconds
            blocking_timeout: Maximum time to wait for lock acquisition
        """
        self.redis = redis_client
        self.key = f"lock:{key}"
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.identifier = str(uuid.uuid4())
        self.acquired = False

    async def acquire(self, blocking: bool = True) -> bool:
        """Acquire the lock.

        Args:
            blocking: Whether to wait until the lock is acquired

        Returns:
            bool: True if lock was acquired, False otherwise

        Raises:
            LockAcquisitionError: If Redis is unreachable
        """
        if self.acquired:
            return True

        timeout = self.blocking_timeout if blocking else 0
        end_time = time.monotonic() + (timeout or 0)

        while True:
            try:
                result = await self.redis.set(
                    self.key,
                    self.identifier,
                    nx=True,
                    ex=max(int(self.timeout), 1)
                )
            except RedisError as e:
                raise LockAcquisitionError(f"Failed to acquire lock: {e}")

            if result:
                self.acquired = True
                return True

            if not blocking or (timeout and time.monotonic() >= end_time):
                return False

            await asyncio.sleep(0.01)

    async def release(self) -> bool:
        """Release the lock if this instance still owns it.

        Raises:
            LockReleaseError: If Redis is unreachable
        """
        if not self.acquired:
            return False

        try:
            result = await self.redis.eval(self._RELEASE_SCRIPT, 1, self.key, self.identifier)
        except RedisError as e:
            raise LockReleaseError(f"Failed to release lock: {e}")

        self.acquired = False
        return bool(result)

    async def __aenter__(self):
        acquired = await self.acquire()
        if not acquired:
            raise LockAcquisitionError(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()


class LockManager:
    """Manager for distributed locks."""

    def __init__(self, redis_url: Optional[str] = None, redis_client: Optional[Redis] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis_client: Optional[Redis] = redis_client

    async def get_redis_client(self) -> Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self._redis_client

    async def close(self):
        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None

    @asynccontextmanager
    async def lock(
        self,
        key: str,
        timeout: float = 30.0,
        blocking_timeout: Optional[float] = None
    ) -> AsyncIterator[DistributedLock]:
        """Acquire `key` for the duration of the block.

        Args:
            key: Lock key name
            timeout: Lock expiry in seconds
            blocking_timeout: Maximum time to wait for lock acquisition

        Yields:
            DistributedLock: Acquired lock instance
        """
        redis_client = await self.get_redis_client()
        async with DistributedLock(
            redis_client=redis_client,
            key=key,
            timeout=timeout,
            blocking_timeout=blocking_timeout
        ) as acquired_lock:
            yield acquired_lock


# Global lock manager instance
_lock_manager: Optional[LockManager] = None


async def get_lock_manager() -> LockManager:
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = LockManager()
    return _lock_manager


async def close_lock_manager() -> None:
    global _lock_manager
    if _lock_manager is not None:
        await _lock_manager.close()
        _lock_manager = None


class LockPatterns:
    """Lock key patterns. Every key covers a single account or record."""

    @staticmethod
    def account_ledger(account_id: str) -> str:
        return f"ledger:account:{account_id}"

    @staticmethod
    def account_registration(account_id: str) -> str:
        return f"registration:account:{account_id}"

    @staticmethod
    def transaction(transaction_id: int) -> str:
        return f"transaction:{transaction_id}"

    @staticmethod
    def payout(payout_id: int) -> str:
        return f"payout:{payout_id}"
