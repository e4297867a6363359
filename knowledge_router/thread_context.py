"""
Thread Context Storage

SQLite-backed mapping from a Slack thread to its knowledge-backend thread.

Features:
- One row per (channel_id, thread_ts), upserted on every write
- Access time refreshed in the background on every read
- Persist across bot restarts
- Periodic cleanup of mappings not used for a configurable number of days
- Without a database path the store is disabled: get() -> None, put() -> False
"""

import logging
import asyncio
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Optional, Dict, Any
from pathlib import Path

import aiosqlite

from .background import spawn_background

logger = logging.getLogger(__name__)

# Default mapping TTL (30 days since last access)
DEFAULT_MAPPING_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

THREADS_TABLE = "slack_knowledge_threads"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ThreadMapping:
    """Knowledge-backend context for a Slack thread."""

    channel_id: str
    thread_ts: str
    workspace_slug: str
    thread_slug: str
    created_at: str = ""
    last_accessed_at: str = ""

    @property
    def thread_key(self) -> str:
        """Unique key for this thread."""
        return f"{self.channel_id}:{self.thread_ts}"


class ThreadContextStore:
    """
    SQLite-backed storage for thread mappings.

    Usage:
        store = ThreadContextStore("./data/thread_contexts.db")
        await store.initialize()

        mapping = await store.get(channel_id, thread_ts)
        if mapping is None:
            await store.put(channel_id, thread_ts, "docs", "thread-abc")
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        """Check if the store is configured and connected."""
        return self._db is not None

    @property
    def connection(self) -> Optional[aiosqlite.Connection]:
        return self._db

    async def initialize(self):
        """Open the database and create tables if needed."""
        if not self.db_path:
            logger.warning("Thread context store disabled (no database path configured)")
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute(f"""
            CREATE TABLE IF NOT EXISTS {THREADS_TABLE} (
                slack_channel_id TEXT NOT NULL,
                slack_thread_ts TEXT NOT NULL,
                workspace_slug TEXT NOT NULL,
                thread_slug TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_accessed_at TEXT NOT NULL,
                PRIMARY KEY (slack_channel_id, slack_thread_ts)
            )
        """)

        # Index for cleanup queries
        await self._db.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_threads_last_accessed
            ON {THREADS_TABLE}(last_accessed_at)
        """)

        await self._db.commit()
        logger.info(f"Thread context store initialized at {self.db_path}")

    async def close(self):
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def get(self, channel_id: str, thread_ts: str) -> Optional[ThreadMapping]:
        """
        Get the mapping for a thread.

        Args:
            channel_id: Slack channel ID
            thread_ts: Timestamp of the thread's first message

        Returns:
            ThreadMapping if one exists, None otherwise (or if the store is unavailable)
        """
        if self._db is None:
            return None
        if not channel_id or not thread_ts:
            logger.warning("Thread mapping lookup missing channel_id or thread_ts")
            return None

        try:
            cursor = await self._db.execute(
                f"""SELECT slack_channel_id, slack_thread_ts, workspace_slug, thread_slug,
                           created_at, last_accessed_at
                    FROM {THREADS_TABLE}
                    WHERE slack_channel_id = ? AND slack_thread_ts = ?""",
                (channel_id, thread_ts),
            )
            row = await cursor.fetchone()
        except Exception as e:
            logger.error(f"Thread mapping lookup failed for {channel_id}:{thread_ts}: {e}")
            return None

        if not row:
            return None

        spawn_background(self.touch(channel_id, thread_ts), f"refresh access time {channel_id}:{thread_ts}")

        return ThreadMapping(
            channel_id=row[0],
            thread_ts=row[1],
            workspace_slug=row[2],
            thread_slug=row[3],
            created_at=row[4],
            last_accessed_at=row[5],
        )

    async def touch(self, channel_id: str, thread_ts: str):
        """Update a mapping's last-access time."""
        if self._db is None:
            return
        async with self._lock:
            await self._db.execute(
                f"""UPDATE {THREADS_TABLE} SET last_accessed_at = ?
                    WHERE slack_channel_id = ? AND slack_thread_ts = ?""",
                (_now(), channel_id, thread_ts),
            )
            await self._db.commit()

    async def put(self, channel_id: str, thread_ts: str, workspace_slug: str, thread_slug: str) -> bool:
        """
        Create or overwrite the mapping for a thread.

        Returns:
            True if a row was written
        """
        if self._db is None:
            return False
        if not all([channel_id, thread_ts, workspace_slug, thread_slug]):
            logger.warning("Thread mapping write missing required fields")
            return False

        now = _now()
        try:
            async with self._lock:
                cursor = await self._db.execute(
                    f"""INSERT INTO {THREADS_TABLE}
                        (slack_channel_id, slack_thread_ts, workspace_slug, thread_slug, created_at, last_accessed_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT (slack_channel_id, slack_thread_ts) DO UPDATE SET
                            workspace_slug = excluded.workspace_slug,
                            thread_slug = excluded.thread_slug,
                            last_accessed_at = excluded.last_accessed_at""",
                    (channel_id, thread_ts, workspace_slug, thread_slug, now, now),
                )
                await self._db.commit()
                written = cursor.rowcount > 0
        except Exception as e:
            logger.error(f"Thread mapping write failed for {channel_id}:{thread_ts}: {e}")
            return False

        logger.debug(f"Stored thread mapping {channel_id}:{thread_ts} -> {workspace_slug}:{thread_slug}")
        return written

    async def delete(self, channel_id: str, thread_ts: str):
        """
        Delete a thread mapping.

        Args:
            channel_id: Slack channel ID
            thread_ts: Thread timestamp
        """
        if self._db is None:
            return
        async with self._lock:
            await self._db.execute(
                f"DELETE FROM {THREADS_TABLE} WHERE slack_channel_id = ? AND slack_thread_ts = ?",
                (channel_id, thread_ts),
            )
            await self._db.commit()

        logger.debug(f"Deleted thread mapping: {channel_id}:{thread_ts}")

    async def cleanup_stale(self, max_age_seconds: int = DEFAULT_MAPPING_MAX_AGE_SECONDS) -> int:
        """
        Remove mappings not accessed within max_age_seconds.

        Returns:
            Number of mappings deleted
        """
        if self._db is None:
            return 0
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()

        async with self._lock:
            cursor = await self._db.execute(
                f"DELETE FROM {THREADS_TABLE} WHERE last_accessed_at < ?",
                (cutoff,),
            )
            await self._db.commit()
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} stale thread mappings")
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        if self._db is None:
            return {"total_mappings": 0, "newest_access": None, "oldest_access": None, "db_path": None}

        cursor = await self._db.execute(f"SELECT COUNT(*) FROM {THREADS_TABLE}")
        count = (await cursor.fetchone())[0]

        cursor = await self._db.execute(
            f"SELECT MAX(last_accessed_at), MIN(last_accessed_at) FROM {THREADS_TABLE}"
        )
        row = await cursor.fetchone()

        return {
            "total_mappings": count,
            "newest_access": row[0],
            "oldest_access": row[1],
            "db_path": self.db_path,
        }


# =============================================================================
# Background Cleanup Task
# =============================================================================

async def run_cleanup_task(
    store: ThreadContextStore,
    interval_seconds: int = 3600,  # Run every hour
    max_age_seconds: int = DEFAULT_MAPPING_MAX_AGE_SECONDS,
):
    """
    Background task to periodically remove stale mappings.

    Args:
        store: ThreadContextStore instance
        interval_seconds: How often to run cleanup (default: 1 hour)
        max_age_seconds: Max time since last access (default: 30 days)
    """
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            deleted = await store.cleanup_stale(max_age_seconds)
            logger.debug(f"Cleanup task: removed {deleted} stale mappings")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Cleanup task error: {e}")
