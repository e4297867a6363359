"""Tests for feedback storage and the feedback button handler."""

import pytest
import pytest_asyncio

from knowledge_router.feedback import (
    FeedbackRecord,
    FeedbackStore,
    handle_feedback_action,
    parse_feedback_block_id,
    thanks_blocks,
)
from knowledge_router.formatting import build_feedback_blocks
from knowledge_router.thread_context import ThreadContextStore


@pytest_asyncio.fixture
async def feedback_store(thread_store):
    store = FeedbackStore(thread_store)
    await store.initialize()
    return store


def _action_body(block_id="feedback_1700.1_gravity_docs", value="great"):
    return {
        "actions": [{"action_id": f"feedback_{value}", "block_id": block_id, "value": value}],
        "user": {"id": "U1"},
        "channel": {"id": "C1"},
        "message": {
            "ts": "1800.1",
            "text": "Here is the answer.",
            "blocks": [{"type": "section"}] + build_feedback_blocks("1700.1", "gravity_docs"),
        },
    }


class TestParseFeedbackBlockId:
    def test_workspace_with_underscores(self):
        assert parse_feedback_block_id("feedback_1700.1_gravity_docs") == ("1700.1", "gravity_docs")

    def test_invalid(self):
        assert parse_feedback_block_id("other_1_2") == (None, None)
        assert parse_feedback_block_id(None) == (None, None)


class TestFeedbackStore:
    @pytest.mark.asyncio
    async def test_record_and_list(self, feedback_store):
        row_id = await feedback_store.record(FeedbackRecord(
            feedback_value="ok", user_id="U1", channel_id="C1", workspace_slug="docs"
        ))
        assert row_id == 1
        recent = await feedback_store.list_recent()
        assert recent[0]["feedback_value"] == "ok"
        assert recent[0]["workspace_slug"] == "docs"

    @pytest.mark.asyncio
    async def test_disabled_store_returns_none(self):
        store = FeedbackStore(ThreadContextStore(None))
        await store.initialize()
        assert not store.enabled
        assert await store.record(FeedbackRecord(feedback_value="bad", user_id="U1", channel_id="C1")) is None
        assert await store.list_recent() == []


class TestThanksBlocks:
    def test_replaces_matching_actions_block(self):
        blocks = build_feedback_blocks("1.1", "all")
        text, updated = thanks_blocks(blocks, "feedback_1.1_all", "bad")
        assert "👎" in text
        assert updated[0] == {"type": "divider"}
        assert updated[1]["type"] == "context"

    def test_appends_when_missing(self):
        text, updated = thanks_blocks([{"type": "section"}], "feedback_x_y", "ok")
        assert len(updated) == 2
        assert updated[-1]["elements"][0]["text"] == text


class TestHandleFeedbackAction:
    @pytest.mark.asyncio
    async def test_records_and_thanks(self, messenger, feedback_store):
        messenger.message_texts["1700.1"] = "how do I export entries?"
        await handle_feedback_action(_action_body(), messenger, feedback_store)

        recent = await feedback_store.list_recent()
        assert recent[0]["feedback_value"] == "great"
        assert recent[0]["workspace_slug"] == "gravity_docs"

        update = messenger.updates[-1]
        assert update["ts"] == "1800.1"
        assert "Thanks for the feedback" in update["text"]
        assert all(b.get("type") != "actions" for b in update["blocks"])

    @pytest.mark.asyncio
    async def test_without_store_still_thanks(self, messenger):
        await handle_feedback_action(_action_body(value="bad"), messenger, None)
        assert "👎" in messenger.updates[-1]["text"]
