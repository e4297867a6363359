"""Tests for the status message guard's exit paths."""

import asyncio

import pytest

from knowledge_router.status_message import PROCESSING_TEXT, StatusMessage


class TestStatusMessage:
    @pytest.mark.asyncio
    async def test_clean_exit_deletes_indicator(self, messenger):
        async with StatusMessage(messenger, "C1", "1.0") as status:
            assert status.active
        assert messenger.posts[0]["text"] == PROCESSING_TEXT
        assert messenger.posts[0]["thread_ts"] == "1.0"
        assert messenger.deletes == [{"channel": "C1", "ts": status.ts}]
        assert messenger.updates == []

    @pytest.mark.asyncio
    async def test_finish_is_terminal(self, messenger):
        async with StatusMessage(messenger, "C1") as status:
            await status.update(":satellite: Fetching...")
            await status.finish("Done")
            await status.finish("Again")
            await status.update("ignored")
        assert [u["text"] for u in messenger.updates] == [":satellite: Fetching...", "Done"]
        assert messenger.deletes == []

    @pytest.mark.asyncio
    async def test_exception_becomes_visible_error(self, messenger):
        async with StatusMessage(messenger, "C1") as status:
            raise RuntimeError("backend exploded")
        assert status.closed
        assert messenger.updates[-1]["text"] == "❌ Error: backend exploded"
        assert messenger.deletes == []

    @pytest.mark.asyncio
    async def test_exception_after_finish_posts_new_message(self, messenger):
        async with StatusMessage(messenger, "C1", "1.0") as status:
            await status.finish("partial")
            raise RuntimeError("late failure")
        assert messenger.posts[-1]["text"] == "❌ Error: late failure"
        assert messenger.posts[-1]["thread_ts"] == "1.0"

    @pytest.mark.asyncio
    async def test_cancellation_propagates_and_deletes(self, messenger):
        with pytest.raises(asyncio.CancelledError):
            async with StatusMessage(messenger, "C1"):
                raise asyncio.CancelledError()
        assert len(messenger.deletes) == 1

    @pytest.mark.asyncio
    async def test_failed_post_skips_everything(self, messenger):
        messenger.fail_posts = True
        async with StatusMessage(messenger, "C1") as status:
            assert status.ts is None
            await status.update("x")
        assert messenger.updates == []
        assert messenger.deletes == []

    @pytest.mark.asyncio
    async def test_messenger_errors_are_contained(self, messenger):
        async def broken_delete(channel, ts):
            raise RuntimeError("slack down")

        messenger.delete_message = broken_delete
        async with StatusMessage(messenger, "C1") as status:
            pass
        assert status.closed
