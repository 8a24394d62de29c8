"""Redis cache of schema descriptors.

Type descriptors are read on nearly every request and change only through
DDL, so they are cached per namespace and dropped wholesale on any schema
mutation. Redis trouble never fails a request: every error is a miss.
"""
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar
import logging

from .database import get_redis_client
from .config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Session.info key holding the namespaces whose schema a transaction changed
SCHEMA_CHANGES = "objdb.schema_changes"


def schema_key(namespace: str, type_id: Any) -> str:
    """Cache key of one type descriptor (``*`` for the whole namespace)."""
    return f"schema:{namespace}:{type_id}"


class Cache:
    """Schema cache over an async Redis client."""

    def __init__(self, redis=None, enabled: Optional[bool] = None, default_ttl: Optional[int] = None):
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self.default_ttl = default_ttl or settings.cache_ttl
        self._redis = redis

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    async def _guard(self, what: str, call: Callable[[], Awaitable[T]], fallback: T) -> T:
        if not self.enabled:
            return fallback
        try:
            return await call()
        except Exception as e:
            logger.warning(f"Cache {what} failed: {type(e).__name__}: {e}")
            return fallback

    async def get(self, key: str) -> Optional[Any]:
        """
        Cached JSON value of ``key``.

        Returns:
            The decoded value, or None on a miss, when disabled, or on error
        """
        async def read():
            raw = await self.redis.get(key)
            return json.loads(raw) if raw else None

        return await self._guard(f"get {key}", read, None)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store ``value`` as JSON for ``ttl`` seconds; False when nothing was written."""
        async def write():
            await self.redis.setex(key, ttl or self.default_ttl, json.dumps(value))
            return True

        return await self._guard(f"set {key}", write, False)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` and return how many went."""
        async def drop():
            keys = [key async for key in self.redis.scan_iter(match=pattern)]
            return await self.redis.delete(*keys) if keys else 0

        return await self._guard(f"delete {pattern}", drop, 0)

    async def invalidate_schema(self, namespace: str) -> int:
        """Drop every cached type descriptor of a namespace."""
        dropped = await self.delete_pattern(schema_key(namespace, "*"))
        if dropped:
            logger.debug(f"Schema cache invalidated for {namespace}: {dropped} key(s)")
        return dropped


def mark_schema_changed(session, namespace: str) -> None:
    """Remember that ``session`` changed the schema of ``namespace``."""
    session.info.setdefault(SCHEMA_CHANGES, set()).add(namespace)


def has_schema_changes(session, namespace: str) -> bool:
    """True while ``session`` holds uncommitted schema changes for ``namespace``."""
    return namespace in session.info.get(SCHEMA_CHANGES, ())


async def flush_schema_changes(session, cache: Optional[Cache] = None) -> int:
    """
    Drop cached descriptors of every namespace the session changed.

    Called once the transaction has ended, committed or rolled back, so
    a descriptor cached by a concurrent reader in the meantime does not
    outlive it.

    Returns:
        Number of namespaces invalidated
    """
    namespaces = session.info.pop(SCHEMA_CHANGES, set())
    cache = cache or get_cache()
    for namespace in sorted(namespaces):
        await cache.invalidate_schema(namespace)
    return len(namespaces)


_cache: Optional[Cache] = None


def get_cache() -> Cache:
    """Process-wide cache instance."""
    global _cache
    if _cache is None:
        _cache = Cache()
    return _cache
