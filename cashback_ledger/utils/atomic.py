import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.errors import ContentionError
from .lock_manager import get_lock_manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
_CONTENTION_SQLSTATES = {"40001", "40P01"}


def is_contention_error(exc: DBAPIError) -> bool:
    """Whether a driver error means another writer won the race."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


async def run_atomic(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    operation: str = "ledger operation",
    lock_key: Optional[str] = None,
    attempts: Optional[int] = None
) -> T:
    """Run `work` and commit it as one unit, retrying on write conflicts.

    `work` must re-read everything it needs on each call: a conflict rolls
    the session back and the next attempt runs against the latest
    committed state. Any other exception rolls back and propagates.

    Raises:
        ContentionError: If every attempt lost a write conflict
    """
    attempts = attempts or settings.max_commit_attempts

    if lock_key and settings.distributed_locks_enabled:
        lock_manager = await get_lock_manager()
        async with lock_manager.lock(
            lock_key,
            timeout=settings.lock_timeout_seconds,
            blocking_timeout=settings.lock_blocking_timeout_seconds
        ):
            return await _commit_with_retries(db, work, operation, attempts)

    return await _commit_with_retries(db, work, operation, attempts)


async def _commit_with_retries(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    operation: str,
    attempts: int
) -> T:
    for attempt in range(1, attempts + 1):
        try:
            result = await work()
            await db.commit()
            return result
        except StaleDataError as e:
            await db.rollback()
            logger.warning(f"{operation}: stale write on attempt {attempt}/{attempts}: {e}")
        except DBAPIError as e:
            await db.rollback()
            if not is_contention_error(e):
                raise
            logger.warning(f"{operation}: write conflict on attempt {attempt}/{attempts}: {e.orig}")
        except BaseException:
            await db.rollback()
            raise

        if attempt < attempts:
            await asyncio.sleep(settings.retry_backoff_seconds * (2 ** (attempt - 1)))

    logger.error(f"{operation}: giving up after {attempts} conflicting attempts")
    raise ContentionError(f"{operation} could not be committed after {attempts} attempts")
