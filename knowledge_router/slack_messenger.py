"""
Slack messaging wrapper.

The only place that talks to the Slack Web API. Everything else posts plain
text plus optional blocks through this class.
"""

import logging
from typing import Optional, List, Dict, Any, Tuple

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGES = 5

# Errors that just mean the message is already gone or frozen
IGNORED_UPDATE_ERRORS = {"message_not_found", "cant_update_message", "cant_delete_message"}


class SlackMessenger:
    """Narrow async wrapper around AsyncWebClient."""

    def __init__(self, client: AsyncWebClient):
        self.client = client

    async def post_message(
        self,
        channel: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
        thread_ts: Optional[str] = None,
    ) -> Optional[str]:
        """
        Post a message.

        Returns:
            Message timestamp, or None if posting failed
        """
        try:
            kwargs: Dict[str, Any] = {"channel": channel, "text": text}
            if blocks:
                kwargs["blocks"] = blocks
            if thread_ts:
                kwargs["thread_ts"] = thread_ts
            result = await self.client.chat_postMessage(**kwargs)
            return result.get("ts")
        except SlackApiError as e:
            logger.error(f"Failed to post message to {channel}: {e.response.get('error')}")
            return None

    async def update_message(
        self,
        channel: str,
        ts: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ):
        """Update an existing message."""
        try:
            kwargs: Dict[str, Any] = {"channel": channel, "ts": ts, "text": text}
            if blocks is not None:
                kwargs["blocks"] = blocks
            await self.client.chat_update(**kwargs)
        except SlackApiError as e:
            error = e.response.get("error")
            if error not in IGNORED_UPDATE_ERRORS:
                logger.warning(f"Failed to update message {ts}: {error}")

    async def delete_message(self, channel: str, ts: str) -> bool:
        """Delete a message. Returns True on success."""
        try:
            await self.client.chat_delete(channel=channel, ts=ts)
            return True
        except SlackApiError as e:
            error = e.response.get("error")
            if error not in IGNORED_UPDATE_ERRORS:
                logger.warning(f"Failed to delete message {ts}: {error}")
            return False

    async def fetch_history(
        self,
        channel: str,
        thread_ts: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Fetch one page of thread replies (or channel history if no thread).

        Returns:
            Tuple of (messages, next_cursor)
        """
        kwargs: Dict[str, Any] = {"channel": channel, "limit": limit}
        if cursor:
            kwargs["cursor"] = cursor
        if thread_ts:
            result = await self.client.conversations_replies(ts=thread_ts, **kwargs)
        else:
            result = await self.client.conversations_history(**kwargs)

        next_cursor = (result.get("response_metadata") or {}).get("next_cursor") or None
        return list(result.get("messages") or []), next_cursor

    async def fetch_all_replies(
        self,
        channel: str,
        thread_ts: str,
        limit: int = 100,
        max_pages: int = MAX_HISTORY_PAGES,
    ) -> List[Dict[str, Any]]:
        """Fetch a thread's replies, following cursors up to max_pages."""
        messages: List[Dict[str, Any]] = []
        cursor = None
        for _ in range(max_pages):
            page, cursor = await self.fetch_history(channel, thread_ts=thread_ts, cursor=cursor, limit=limit)
            messages.extend(page)
            if not cursor:
                break
        else:
            if cursor:
                logger.warning(f"Stopped fetching replies for {channel}:{thread_ts} after {max_pages} pages")
        return messages

    async def fetch_message_text(self, channel: str, ts: str) -> Optional[str]:
        """Fetch the text of a single message by timestamp."""
        try:
            result = await self.client.conversations_history(
                channel=channel, latest=ts, oldest=ts, inclusive=True, limit=1
            )
        except SlackApiError as e:
            logger.warning(f"Could not fetch message {ts}: {e.response.get('error')}")
            return None
        messages = result.get("messages") or []
        return messages[0].get("text") if messages else None

    async def publish_home(self, user_id: str, blocks: List[Dict[str, Any]]):
        """Publish the App Home view for a user."""
        await self.client.views_publish(user_id=user_id, view={"type": "home", "blocks": blocks})
