"""
Workspace Directory

Lists the workspace slugs that are currently valid on the knowledge backend.

Lookup order: process-local TTL cache -> Redis -> origin. An origin failure
with nothing cached yields an empty list, which callers must read as
"nothing is valid".
"""

import logging
from typing import Optional, List

from .background import spawn_background
from .cache_store import TTLCache, RedisCacheStore
from .config import WORKSPACE_LIST_CACHE_KEY
from .knowledge_client import KnowledgeClient

logger = logging.getLogger(__name__)


class WorkspaceDirectory:
    """Three-tier cached view of the knowledge backend's workspaces."""

    def __init__(
        self,
        knowledge_client: KnowledgeClient,
        memory_cache: TTLCache,
        shared_cache: Optional[RedisCacheStore] = None,
        ttl_seconds: int = 3600,
        cache_key: str = WORKSPACE_LIST_CACHE_KEY,
    ):
        self.knowledge_client = knowledge_client
        self.memory_cache = memory_cache
        self.shared_cache = shared_cache
        self.ttl_seconds = ttl_seconds
        self.cache_key = cache_key

    async def list_workspaces(self) -> List[str]:
        cached = self.memory_cache.get(self.cache_key)
        if cached is not None:
            logger.debug("Workspace list: memory cache hit")
            return list(cached)

        if self.shared_cache is not None and self.shared_cache.enabled:
            shared = await self.shared_cache.get_json(self.cache_key)
            if isinstance(shared, list):
                slugs = [s for s in shared if isinstance(s, str) and s]
                logger.debug(f"Workspace list: Redis cache hit ({len(slugs)} workspaces)")
                self.memory_cache.set(self.cache_key, slugs, ttl_seconds=self.ttl_seconds)
                return list(slugs)

        try:
            slugs = await self.knowledge_client.list_workspaces()
        except Exception as e:
            logger.error(f"Failed to fetch workspace list from origin: {e}")
            return []

        logger.info(f"Fetched {len(slugs)} workspaces from knowledge backend")
        self.memory_cache.set(self.cache_key, slugs, ttl_seconds=self.ttl_seconds)

        if slugs and self.shared_cache is not None and self.shared_cache.enabled:
            spawn_background(
                self.shared_cache.set_json(self.cache_key, slugs, self.ttl_seconds),
                "cache workspace list in Redis",
            )
        return list(slugs)

    async def is_valid(self, slug: Optional[str]) -> bool:
        if not slug:
            return False
        return slug in await self.list_workspaces()

    def invalidate(self):
        """Drop the in-memory tier so the next lookup refetches."""
        self.memory_cache.invalidate(self.cache_key)
