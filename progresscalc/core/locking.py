"""Single-writer sections keyed by (project_id, component_type).

A template mutation or recalculation holds its key for the whole operation.
A second writer on the same key fails fast with ConcurrencyConflict; writers
on other keys never wait on each other.

Two backends:
- LocalTemplateLock: in-process, for a single worker
- RedisTemplateLock: SET NX EX, shared by every worker pointed at one Redis
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as redis

from progresscalc.config import get_config
from progresscalc.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

LockKey = tuple[str, str]


class TemplateLock:
    """Keyed lock interface; subclasses implement acquire/release/is_locked."""

    async def acquire(self, key: LockKey, owner: str) -> bool:
        raise NotImplementedError

    async def release(self, key: LockKey, owner: str) -> bool:
        raise NotImplementedError

    async def is_locked(self, key: LockKey) -> dict | None:
        raise NotImplementedError

    @asynccontextmanager
    async def hold(
        self, keys: Iterable[LockKey], owner: str
    ) -> AsyncGenerator[str, None]:
        """Hold every key for the duration of the block.

        Keys are taken in sorted order so multi-key holders cannot deadlock.

        Args:
            keys: (project_id, component_type) pairs
            owner: Actor id, recorded for conflict messages

        Yields:
            Unique token identifying this holder

        Raises:
            ConcurrencyConflict: If any key is already held
        """
        token = f"{owner}:{uuid4().hex}"
        acquired: list[LockKey] = []
        try:
            for key in sorted(set(keys)):
                if not await self.acquire(key, token):
                    holder = await self.is_locked(key)
                    held_by = holder["owner"] if holder else "another writer"
                    logger.warning(
                        f"Template lock conflict on {key[0]}/{key[1]}: "
                        f"{owner} blocked by {held_by}"
                    )
                    raise ConcurrencyConflict(
                        key[0], key[1], f"a change by {held_by} is in progress"
                    )
                acquired.append(key)
            yield token
        finally:
            for key in reversed(acquired):
                await self.release(key, token)


class LocalTemplateLock(TemplateLock):
    """In-process keyed lock.

    acquire() never awaits, so check-and-set is atomic on one event loop.
    """

    def __init__(self):
        self._holders: dict[LockKey, tuple[str, datetime]] = {}

    async def acquire(self, key: LockKey, owner: str) -> bool:
        if key in self._holders:
            return False
        self._holders[key] = (owner, datetime.now(timezone.utc))
        return True

    async def release(self, key: LockKey, owner: str) -> bool:
        current = self._holders.get(key)
        if current is None or current[0] != owner:
            return False
        del self._holders[key]
        return True

    async def is_locked(self, key: LockKey) -> dict | None:
        current = self._holders.get(key)
        if current is None:
            return None
        owner, locked_at = current
        return {
            "project_id": key[0],
            "component_type": key[1],
            "owner": owner.split(":", 1)[0],
            "locked_at": locked_at.isoformat(),
        }


class RedisTemplateLock(TemplateLock):
    """Distributed keyed lock using Redis SET NX with expiry."""

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = 900,
        key_prefix: str = "progresscalc:template-lock:",
    ):
        self._redis = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _lock_key(self, key: LockKey) -> str:
        return f"{self.key_prefix}{key[0]}:{key[1]}"

    async def acquire(self, key: LockKey, owner: str) -> bool:
        lock_value = f"{owner}|{datetime.now(timezone.utc).isoformat()}"
        result = await self._redis.set(
            self._lock_key(key), lock_value, nx=True, ex=self.ttl_seconds
        )
        return bool(result)

    async def release(self, key: LockKey, owner: str) -> bool:
        redis_key = self._lock_key(key)
        current = await self._redis.get(redis_key)
        if current is None:
            return False
        if isinstance(current, bytes):
            current = current.decode("utf-8")
        if current.split("|", 1)[0] != owner:
            return False
        await self._redis.delete(redis_key)
        return True

    async def is_locked(self, key: LockKey) -> dict | None:
        redis_key = self._lock_key(key)
        current = await self._redis.get(redis_key)
        if current is None:
            return None
        if isinstance(current, bytes):
            current = current.decode("utf-8")

        token, _, locked_at = current.partition("|")
        return {
            "project_id": key[0],
            "component_type": key[1],
            "owner": token.split(":", 1)[0],
            "locked_at": locked_at or None,
            "expires_in": await self._redis.ttl(redis_key),
        }


# Singleton instance
_template_lock: TemplateLock | None = None


def get_template_lock() -> TemplateLock:
    """Get the process-wide lock, Redis-backed when REDIS_URL is configured."""
    global _template_lock
    if _template_lock is None:
        lock_config = get_config().locks
        if lock_config.redis_url:
            _template_lock = RedisTemplateLock(
                redis.from_url(lock_config.redis_url, encoding="utf-8", decode_responses=True),
                ttl_seconds=lock_config.ttl_seconds,
                key_prefix=lock_config.key_prefix,
            )
        else:
            _template_lock = LocalTemplateLock()
    return _template_lock
