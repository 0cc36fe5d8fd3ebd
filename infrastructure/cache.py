"""Cache factory — exposes the active cache provider.

Two backends:
    1. Memory (default) — fast, per-process, LRU-bounded.
    2. Redis (optional) — shared across server instances, survives restarts.

The backend is chosen once from ``Settings.cache.cache_type``
(``CACHE_TYPE`` env var). If the Redis client cannot be built the factory
logs why and falls back to memory. It never raises.

Usage::

    from infrastructure.cache import CACHE_KEYS, CACHE_TTL, get_cache

    cache = get_cache()
    stages = await cache.get_with_refresh(
        CACHE_KEYS.stages(), fetch_stages, CACHE_TTL.STAGES
    )
"""

from __future__ import annotations

import logging

from infrastructure.cache_base import CacheProvider
from infrastructure.cache_memory import MemoryCache
from infrastructure.cache_redis import RedisCache
from infrastructure.settings import CacheConfig, Settings, load_settings

logger = logging.getLogger(__name__)

_MINUTE_MS = 60 * 1000


class CACHE_TTL:  # noqa: N801
    """Cache TTLs in milliseconds for CRM reference data."""

    STAGES = 30 * _MINUTE_MS  # pipeline stages rarely change
    LOST_REASONS = 30 * _MINUTE_MS
    TEAMS = 15 * _MINUTE_MS  # teams change occasionally
    SALESPEOPLE = 15 * _MINUTE_MS
    FIELD_METADATA = 60 * _MINUTE_MS


class CACHE_KEYS:  # noqa: N801
    """Cache key builders."""

    @staticmethod
    def stages() -> str:
        return "crm:stages"

    @staticmethod
    def lost_reasons(include_inactive: bool) -> str:
        return f"crm:lost_reasons:{str(include_inactive).lower()}"

    @staticmethod
    def teams() -> str:
        return "crm:teams"

    @staticmethod
    def salespeople(team_id: int | None = None) -> str:
        return f"crm:salespeople:team:{team_id}" if team_id else "crm:salespeople:all"

    @staticmethod
    def field_metadata(model: str) -> str:
        return f"fields:{model}"


def create_cache(config: CacheConfig) -> CacheProvider:
    """
    Build a cache provider for ``config``.

    Args:
        config: Cache section of the settings.

    Returns:
        A ``RedisCache`` when ``cache_type == "redis"`` and the client could
        be created, otherwise a ``MemoryCache``.
    """
    if config.cache_type == "redis":
        try:
            return RedisCache(redis_url=config.redis_url, key_prefix=config.key_prefix)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Redis cache unavailable (%s), falling back to memory cache", exc)
    return MemoryCache(max_size=config.max_size)


_cache: CacheProvider | None = None


def get_cache(settings: Settings | None = None) -> CacheProvider:
    """
    Return the process-wide cache provider, creating it on first call.

    ``settings`` only matters on the first call; later calls return the
    existing instance.
    """
    global _cache  # noqa: PLW0603
    if _cache is None:
        resolved = settings or load_settings()
        _cache = create_cache(resolved.cache)
        logger.info("Cache initialized (backend=%s)", type(_cache).__name__)
    return _cache


def reset_cache() -> None:
    """Forget the singleton so the next ``get_cache()`` rebuilds it. Tests only."""
    global _cache  # noqa: PLW0603
    _cache = None
