"""
Keyed asyncio lock registry.

SQLite has no row locks, so every read-modify-write sequence in the engine
is serialized in-process on a logical key:
- ("round", category_id, round_label): finalize, round creation/deletion,
  kata submissions, match reopen
- ("performance", performance_id): kata score upserts
- ("match", match_id): tally deltas, winner computation, match lifecycle

Locks are created lazily and bounded by LOCK_TIMEOUT_SECONDS. A timeout
surfaces as ConcurrencyConflictError; the engine never retries internally.
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Dict, Hashable, List, Optional, Tuple

from karate_scoring.config import settings
from karate_scoring.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)

# event loop -> {key: lock}. Keyed by loop so a lock is never awaited
# from a loop other than the one that created it.
_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[Hashable, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)
_lock_lock = asyncio.Lock()  # Lock for creating keyed locks


def round_key(category_id: int, round_label: str) -> Tuple[str, int, str]:
    return ("round", category_id, round_label)


def performance_key(performance_id: int) -> Tuple[str, int]:
    return ("performance", performance_id)


def match_key(match_id: int) -> Tuple[str, int]:
    return ("match", match_id)


async def _get_lock(key: Hashable) -> asyncio.Lock:
    """Get or create the lock for a key on the running loop."""
    loop = asyncio.get_running_loop()
    async with _lock_lock:
        loop_locks = _locks.setdefault(loop, {})
        if key not in loop_locks:
            loop_locks[key] = asyncio.Lock()
        return loop_locks[key]


async def _acquire(lock: asyncio.Lock, wait: float) -> bool:
    """
    Wait up to `wait` seconds for the lock; True once it is held.

    The acquire runs as its own task so a timeout racing the grant never
    leaves the lock held with no owner.
    """
    acquire = asyncio.ensure_future(lock.acquire())
    try:
        await asyncio.wait({acquire}, timeout=wait)
    except asyncio.CancelledError:
        acquire.cancel()
        await asyncio.wait({acquire})
        if not acquire.cancelled():
            lock.release()
        raise
    if not acquire.done():
        acquire.cancel()
        await asyncio.wait({acquire})
    return not acquire.cancelled()


@asynccontextmanager
async def hold(*keys: Hashable, timeout: Optional[float] = None):
    """
    Acquire the locks for all keys, in sorted order, for the duration of
    the block.

    Sorting the keys gives every caller the same acquisition order, so two
    operations needing overlapping key sets cannot deadlock.
    """
    wait = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    ordered = sorted(set(keys), key=repr)
    acquired: List[asyncio.Lock] = []
    try:
        for key in ordered:
            lock = await _get_lock(key)
            if not await _acquire(lock, wait):
                logger.warning(f"[LOCK TIMEOUT] key={key!r} after {wait}s")
                raise ConcurrencyConflictError(
                    "Another update to the same round or match is still in progress; retry",
                    details={"lock": repr(key), "timeout_seconds": wait}
                )
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


def reset_locks() -> None:
    """Drop all registered locks. Test helper; never call with locks held."""
    _locks.clear()
