"""
Status ("thinking") message guard.

Posts a transient indicator when entered and guarantees exactly one
terminal update or delete on every exit path. If the initial post failed
the handle has no timestamp and every later operation is skipped.

Usage:
    async with StatusMessage(messenger, channel, thread_ts) as status:
        await status.update(":satellite: Fetching...")
        ...
        await status.finish("Done")      # or await status.delete()
"""

import logging
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)

PROCESSING_TEXT = ":hourglass_flowing_sand: Processing..."


class StatusMessage:
    def __init__(
        self,
        messenger,
        channel: str,
        thread_ts: Optional[str] = None,
        text: str = PROCESSING_TEXT,
    ):
        self.messenger = messenger
        self.channel = channel
        self.thread_ts = thread_ts
        self.initial_text = text
        self.ts: Optional[str] = None
        self.closed = False

    async def __aenter__(self) -> "StatusMessage":
        await self.post()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            if not self.closed:
                await self.delete()
            return False

        if not issubclass(exc_type, Exception):
            # Cancellation and interpreter exits propagate untouched
            await self.delete()
            return False

        logger.error(f"Error while handling request in {self.channel}: {exc_val}", exc_info=(exc_type, exc_val, exc_tb))
        if not self.closed:
            await self.finish(f"❌ Error: {exc_val}")
        else:
            await self.messenger.post_message(self.channel, f"❌ Error: {exc_val}", thread_ts=self.thread_ts)
        return True

    @property
    def active(self) -> bool:
        return self.ts is not None and not self.closed

    async def post(self) -> Optional[str]:
        try:
            self.ts = await self.messenger.post_message(self.channel, self.initial_text, thread_ts=self.thread_ts)
        except Exception as e:
            logger.warning(f"Failed to post status message: {e}")
            self.ts = None
        return self.ts

    async def update(self, text: str, blocks: Optional[List[Dict[str, Any]]] = None):
        """Show progress. Not terminal."""
        if not self.active:
            return
        try:
            await self.messenger.update_message(self.channel, self.ts, text, blocks=blocks)
        except Exception as e:
            logger.warning(f"Failed to update status message {self.ts}: {e}")

    async def finish(self, text: str, blocks: Optional[List[Dict[str, Any]]] = None):
        """Replace the indicator with a final message. Terminal."""
        if self.closed:
            return
        self.closed = True
        if self.ts is None:
            return
        try:
            await self.messenger.update_message(self.channel, self.ts, text, blocks=blocks)
        except Exception as e:
            logger.warning(f"Failed to finalize status message {self.ts}: {e}")

    async def delete(self):
        """Remove the indicator. Terminal."""
        if self.closed:
            return
        self.closed = True
        if self.ts is None:
            return
        try:
            await self.messenger.delete_message(self.channel, self.ts)
        except Exception as e:
            logger.warning(f"Failed to delete status message {self.ts}: {e}")
