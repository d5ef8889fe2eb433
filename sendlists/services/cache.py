"""Redis cache for list metadata and suppression status: best effort, never authoritative."""

import json
import logging
from typing import Optional

import redis.asyncio as redis

from sendlists.config import get_settings
from sendlists.schemas import ListMetadata

logger = logging.getLogger(__name__)

LIST_PREFIX = "list:metadata:"
SUPPRESSION_PREFIX = "suppression:contact:"

_default_cache: Optional["CacheLayer"] = None


class CacheLayer:
    """
    Thin wrapper over a Redis client.

    Every operation swallows client errors: reads return ``None`` (a miss)
    and writes/deletes become no-ops. With ``cache_enabled=False`` and no
    explicit client, the layer is a permanent miss.
    """

    def __init__(self, client=None, enabled: Optional[bool] = None):
        settings = get_settings()
        self.list_ttl = settings.list_cache_ttl_seconds
        self.suppression_ttl = settings.suppression_cache_ttl_seconds
        if client is not None:
            self.client = client
        elif settings.cache_enabled if enabled is None else enabled:
            self.client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        else:
            self.client = None

    @property
    def enabled(self) -> bool:
        return self.client is not None

    # ── List metadata ───────────────────────────────────
    async def get_cached_list_metadata(self, list_id: str) -> Optional[ListMetadata]:
        if not self.enabled:
            return None
        try:
            raw = await self.client.get(f"{LIST_PREFIX}{list_id}")
            if raw is None:
                return None
            logger.debug(f"Cache hit for list metadata {list_id}")
            return ListMetadata.model_validate(json.loads(raw))
        except Exception as e:
            logger.warning(f"Failed to read list metadata cache for {list_id}: {e}")
            return None

    async def set_cached_list_metadata(self, list_id: str, metadata: ListMetadata) -> None:
        if not self.enabled:
            return
        try:
            await self.client.setex(f"{LIST_PREFIX}{list_id}", self.list_ttl, metadata.model_dump_json())
        except Exception as e:
            logger.warning(f"Failed to cache list metadata for {list_id}: {e}")

    async def invalidate_list_cache(self, list_id: str) -> None:
        if not self.enabled:
            return
        try:
            await self.client.delete(f"{LIST_PREFIX}{list_id}")
        except Exception as e:
            logger.warning(f"Failed to invalidate list cache for {list_id}: {e}")

    # ── Suppression status ─────────────────────────────
    async def cache_suppression_status(self, key: str, is_suppressed: bool) -> None:
        """``key`` is a contact id or an email address."""
        if not self.enabled:
            return
        try:
            await self.client.setex(f"{SUPPRESSION_PREFIX}{key}", self.suppression_ttl, "1" if is_suppressed else "0")
        except Exception as e:
            logger.warning(f"Failed to cache suppression status for {key}: {e}")

    async def get_cached_suppression_status(self, key: str) -> Optional[bool]:
        if not self.enabled:
            return None
        try:
            raw = await self.client.get(f"{SUPPRESSION_PREFIX}{key}")
        except Exception as e:
            logger.warning(f"Failed to read suppression cache for {key}: {e}")
            return None
        if raw is None:
            return None
        return raw in ("1", b"1")

    async def invalidate_suppression_status(self, *keys: str) -> None:
        if not self.enabled or not keys:
            return
        try:
            await self.client.delete(*(f"{SUPPRESSION_PREFIX}{k}" for k in keys))
        except Exception as e:
            logger.warning(f"Failed to clear suppression cache for {keys}: {e}")

    async def aclose(self) -> None:
        """Release the client's connections; the layer is a permanent miss afterwards."""
        if not self.enabled:
            return
        client, self.client = self.client, None
        try:
            await client.aclose()
        except Exception as e:
            logger.warning(f"Failed to close cache client: {e}")


def get_cache() -> CacheLayer:
    """
    Process-wide cache layer, created on first use.

    Its Redis connections belong to the event loop that first used them. Code
    that runs each job under its own ``asyncio.run`` builds a ``CacheLayer``
    per job and closes it instead.
    """
    global _default_cache
    if _default_cache is None:
        _default_cache = CacheLayer()
    return _default_cache
