"""
Response feedback.

Stores button clicks from the feedback block posted under substantive
answers, and swaps the buttons for a thank-you note. Rows are append-only
and live in the same SQLite file as the thread mappings.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple, List

from .formatting import FEEDBACK_BLOCK_PREFIX
from .thread_context import ThreadContextStore

logger = logging.getLogger(__name__)

FEEDBACK_TABLE = "slack_feedback"

THANKS_EMOJI = {"bad": "👎", "ok": "👌", "great": "👍"}


@dataclass
class FeedbackRecord:
    feedback_value: str
    user_id: str
    channel_id: str
    bot_message_ts: Optional[str] = None
    original_user_message_ts: Optional[str] = None
    action_id: Optional[str] = None
    workspace_slug: Optional[str] = None
    bot_message_text: Optional[str] = None
    original_user_message_text: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def parse_feedback_block_id(block_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split "feedback_{user_ts}_{workspace}".

    Workspaces may contain underscores; timestamps never do.

    Returns:
        (original_user_message_ts, workspace_slug), either may be None
    """
    if not block_id or not block_id.startswith(FEEDBACK_BLOCK_PREFIX):
        return None, None
    parts = block_id[len(FEEDBACK_BLOCK_PREFIX):].split("_")
    user_ts = parts[0] or None
    workspace = "_".join(parts[1:]) or None
    return user_ts, workspace


class FeedbackStore:
    """Append-only feedback table on the thread store's connection."""

    def __init__(self, store: ThreadContextStore):
        self.store = store

    @property
    def enabled(self) -> bool:
        return self.store.enabled

    async def initialize(self):
        db = self.store.connection
        if db is None:
            logger.warning("Feedback store disabled (thread context store not available)")
            return
        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS {FEEDBACK_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                feedback_value TEXT NOT NULL,
                user_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                bot_message_ts TEXT,
                original_user_message_ts TEXT,
                action_id TEXT,
                workspace_slug TEXT,
                bot_message_text TEXT,
                original_user_message_text TEXT,
                created_at TEXT NOT NULL
            )
        """)
        await db.commit()

    async def record(self, feedback: FeedbackRecord) -> Optional[int]:
        """
        Insert a feedback row.

        Returns:
            The new row id, or None if the store is disabled or the insert failed
        """
        db = self.store.connection
        if db is None:
            logger.info(
                f"Feedback (store disabled): user={feedback.user_id} value={feedback.feedback_value} "
                f"workspace={feedback.workspace_slug} bot_ts={feedback.bot_message_ts}"
            )
            return None
        try:
            cursor = await db.execute(
                f"""INSERT INTO {FEEDBACK_TABLE}
                    (feedback_value, user_id, channel_id, bot_message_ts, original_user_message_ts,
                     action_id, workspace_slug, bot_message_text, original_user_message_text, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    feedback.feedback_value,
                    feedback.user_id,
                    feedback.channel_id,
                    feedback.bot_message_ts,
                    feedback.original_user_message_ts,
                    feedback.action_id,
                    feedback.workspace_slug,
                    feedback.bot_message_text,
                    feedback.original_user_message_text,
                    feedback.created_at,
                ),
            )
            await db.commit()
        except Exception as e:
            logger.error(f"Failed to store feedback from {feedback.user_id}: {e}")
            return None

        logger.info(f"Stored feedback {cursor.lastrowid}: {feedback.feedback_value} for {feedback.workspace_slug}")
        return cursor.lastrowid

    async def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        db = self.store.connection
        if db is None:
            return []
        cursor = await db.execute(
            f"""SELECT feedback_value, user_id, channel_id, workspace_slug, created_at
                FROM {FEEDBACK_TABLE} ORDER BY id DESC LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            {"feedback_value": r[0], "user_id": r[1], "channel_id": r[2], "workspace_slug": r[3], "created_at": r[4]}
            for r in rows
        ]


def thanks_blocks(blocks: List[Dict[str, Any]], block_id: str, feedback_value: str) -> Tuple[str, List[Dict[str, Any]]]:
    """Replace the matching actions block with a thank-you context block (append if missing)."""
    thanks_text = f"🙏 Thanks for the feedback! (_{THANKS_EMOJI.get(feedback_value, '👍')}_)"
    context = {"type": "context", "elements": [{"type": "mrkdwn", "text": thanks_text}]}

    updated = list(blocks)
    for i, block in enumerate(updated):
        if block.get("type") == "actions" and block.get("block_id") == block_id:
            updated[i] = context
            break
    else:
        updated.append(context)
    return thanks_text, updated


async def handle_feedback_action(body: Dict[str, Any], messenger, feedback_store: Optional[FeedbackStore]):
    """
    Handle a click on one of the feedback buttons.

    Args:
        body: Bolt block_actions payload
        messenger: SlackMessenger
        feedback_store: FeedbackStore, or None when feedback is disabled
    """
    action = (body.get("actions") or [{}])[0]
    action_id = action.get("action_id", "")
    block_id = action.get("block_id")
    value = action.get("value") or action_id[len(FEEDBACK_BLOCK_PREFIX):]
    user_id = (body.get("user") or {}).get("id", "")
    channel_id = (body.get("channel") or {}).get("id", "")
    message = body.get("message") or {}
    bot_ts = message.get("ts")

    original_ts, workspace = parse_feedback_block_id(block_id)
    logger.info(f"Feedback '{value}' from {user_id} (workspace={workspace}, original_ts={original_ts})")

    if feedback_store is not None:
        original_text = None
        if original_ts and channel_id:
            original_text = await messenger.fetch_message_text(channel_id, original_ts)
        await feedback_store.record(FeedbackRecord(
            feedback_value=value,
            user_id=user_id,
            channel_id=channel_id,
            bot_message_ts=bot_ts,
            original_user_message_ts=original_ts,
            action_id=action_id,
            workspace_slug=workspace,
            bot_message_text=message.get("text"),
            original_user_message_text=original_text,
        ))

    if not bot_ts or not channel_id:
        return
    thanks_text, blocks = thanks_blocks(message.get("blocks") or [], block_id, value)
    await messenger.update_message(channel_id, bot_ts, f"{message.get('text') or ''}\n{thanks_text}".strip(), blocks=blocks)
