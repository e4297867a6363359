"""
Duplicate event suppression.

Slack retries deliveries it thinks were lost, and Socket Mode can deliver
the same event more than once. Each event id is claimed once in Redis with
SET NX EX; a second claim within the TTL is a duplicate. When Redis is not
configured or errors, events are processed (fail open).
"""

import logging
import time
import uuid
from typing import Dict, Any, Optional

from .cache_store import RedisCacheStore
from .config import DUPLICATE_EVENT_REDIS_PREFIX

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_TTL_SECONDS = 600


def compute_event_id(body: Optional[Dict[str, Any]]) -> str:
    """event_id, else event.event_ts, else event.ts, else a unique placeholder."""
    body = body or {}
    event = body.get("event") or {}
    for candidate in (body.get("event_id"), event.get("event_ts"), event.get("ts")):
        if candidate:
            return str(candidate)
    return f"no-id:{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class EventDeduplicator:
    """Claims event ids in Redis so each event is handled once."""

    def __init__(
        self,
        cache: Optional[RedisCacheStore],
        ttl_seconds: int = DEFAULT_DUPLICATE_TTL_SECONDS,
        key_prefix: str = DUPLICATE_EVENT_REDIS_PREFIX,
    ):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    async def is_duplicate(self, event_id: str) -> bool:
        """
        Claim an event id.

        Returns:
            True if the id was already claimed (drop the event), False otherwise
        """
        if not event_id:
            return False
        if self.cache is None or not self.cache.enabled:
            return False

        key = f"{self.key_prefix}{event_id}"
        try:
            claimed = await self.cache.set_if_not_exists(key, self.ttl_seconds)
        except Exception as e:
            logger.error(f"Dedupe check failed for {event_id}, processing anyway: {e}")
            return False

        if not claimed:
            logger.debug(f"Duplicate event {event_id} dropped")
            return True
        return False
