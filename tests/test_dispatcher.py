"""End-to-end tests for the dispatch pipeline against in-memory fakes."""

import pytest

from knowledge_router import handlers as handlers_module
from knowledge_router.background import drain_background_tasks
from knowledge_router.dispatcher import GITHUB_DISABLED_TEXT, KNOWLEDGE_DISABLED_TEXT
from knowledge_router.github_client import Comment, IssueDetails, PullRequestDetails, PullRequestFile
from knowledge_router.handlers import GREETING_TEXT
from knowledge_router.intent_classifier import IntentClassifier, IntentResult


class FixedClassifier(IntentClassifier):
    name = "fixed"

    def __init__(self, result: IntentResult):
        self.result = result
        self.calls = 0

    async def classify(self, query, allowed_intents, allowed_workspaces):
        self.calls += 1
        return self.result


def dm(text, ts="100.1", event_id="Ev1", thread_ts=None, user="U1"):
    event = {"type": "message", "channel_type": "im", "channel": "D1", "user": user, "text": text, "ts": ts}
    if thread_ts:
        event["thread_ts"] = thread_ts
    return {"event_id": event_id, "event": event}, event


def channel_message(text, ts, thread_ts=None, event_id="EvC"):
    event = {"type": "message", "channel_type": "channel", "channel": "C1", "user": "U1", "text": text, "ts": ts}
    if thread_ts:
        event["thread_ts"] = thread_ts
    return {"event_id": event_id, "event": event}, event


def mention(text, ts="300.1", event_id="EvM"):
    event = {"type": "app_mention", "channel": "C1", "user": "U1", "text": f"<@UBOT> {text}", "ts": ts}
    return {"event_id": event_id, "event": event}, event


class TestCommands:
    @pytest.mark.asyncio
    async def test_release_in_dm(self, make_pipeline, thread_store, messenger, github):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("gh> release gf"))

        assert github.release_calls == [("gravityforms", "gravityforms")]
        content = messenger.content_posts()
        assert len(content) == 1
        assert "*2.9.1*" in content[0]["text"]
        assert "(Published 2025-01-15)" in content[0]["text"]
        assert content[0]["thread_ts"] == "100.1"
        assert len(messenger.deletes) == 1
        assert (await thread_store.get_stats())["total_mappings"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_event_is_handled_once(self, make_pipeline, thread_store, github):
        pipeline = make_pipeline(thread_store)
        body, event = dm("gh> release gf")
        await pipeline.handle_event(body, event)
        await pipeline.handle_event(body, event)
        assert len(github.release_calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_resolves_status(self, make_pipeline, thread_store, messenger, github):
        github.error = RuntimeError("socket closed")
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("gh> release gf"))

        assert messenger.updates[-1]["text"] == "❌ Error: socket closed"
        assert messenger.deletes == []

    @pytest.mark.asyncio
    async def test_usage_error_finishes_status(self, make_pipeline, thread_store, messenger, github):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("gh> release"))
        assert messenger.updates[-1]["text"].startswith("❌ Invalid format. Use: `gh> release <repo>`")
        assert github.release_calls == []

    @pytest.mark.asyncio
    async def test_github_disabled(self, make_pipeline, thread_store, messenger):
        pipeline = make_pipeline(thread_store, github_client=None)
        await pipeline.handle_event(*dm("gh> release gf"))
        assert messenger.updates[-1]["text"] == GITHUB_DISABLED_TEXT

    @pytest.mark.asyncio
    async def test_issue_analysis_creates_thread_in_explicit_workspace(
        self, make_pipeline, thread_store, messenger, github, knowledge
    ):
        github.issue = IssueDetails(
            number=12, title="Export fails", body="CSV is empty", state="open",
            url="https://github.com/gravityforms/backlog/issues/12", comments=[Comment("dev", "Confirmed")],
        )
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("gh> analyze issue #12 #support why?"))

        mapping = await thread_store.get("D1", "100.1")
        assert (mapping.workspace_slug, mapping.thread_slug) == ("support", "thread-1")
        assert [c["workspace"] for c in knowledge.chats] == ["support", "support"]
        assert 'addressing: "why?"' in knowledge.chats[1]["message"]
        assert messenger.content_posts()[0]["text"] == "Summary issue #12:"


class TestSlashCommands:
    @pytest.mark.asyncio
    async def test_review_slash_command(self, make_pipeline, thread_store, messenger, github, knowledge):
        github.pull_request = PullRequestDetails(
            number=42, title="Add hooks", body="Adds filters", url="u",
            files=[PullRequestFile("hooks.php", "added", "+add_filter();")],
        )
        knowledge.reply = "Looks good overall."
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_slash_command({
            "command": "/gh-review", "text": "acme/widgets#42 #support",
            "channel_id": "C1", "user_id": "U1", "trigger_id": "T1",
        })

        assert knowledge.chats[0]["workspace"] == "support"
        assert "hooks.php" in knowledge.chats[0]["message"]
        assert messenger.content_posts()[-1]["text"] == "Looks good overall."
        assert messenger.content_posts()[-1]["thread_ts"] is None

    @pytest.mark.asyncio
    async def test_malformed_slash_command(self, make_pipeline, thread_store, messenger, knowledge):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_slash_command({
            "command": "/gh-review", "text": "not-a-valid-string", "channel_id": "C1", "user_id": "U1",
        })
        assert messenger.texts() == ["❌ Invalid format. Use: `/gh-review owner/repo#number [#workspace]`"]
        assert knowledge.chats == []

    @pytest.mark.asyncio
    async def test_duplicate_trigger_is_ignored(self, make_pipeline, thread_store, github):
        pipeline = make_pipeline(thread_store)
        payload = {"command": "/gh-latest", "text": "gf", "channel_id": "C1", "user_id": "U1", "trigger_id": "T9"}
        await pipeline.handle_slash_command(payload)
        await pipeline.handle_slash_command(payload)
        assert len(github.release_calls) == 1

    @pytest.mark.asyncio
    async def test_slash_without_github(self, make_pipeline, thread_store, messenger):
        pipeline = make_pipeline(thread_store, github_client=None)
        await pipeline.handle_slash_command({"command": "/gh-latest", "text": "gf", "channel_id": "C1"})
        assert messenger.texts() == ["❌ GitHub features are disabled (missing configuration)."]


class TestFreeText:
    @pytest.mark.asyncio
    async def test_question_creates_thread_in_fallback_workspace(
        self, make_pipeline, thread_store, messenger, knowledge
    ):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("How do I add a custom field?"))

        assert knowledge.created_threads == ["all:thread-1"]
        mapping = await thread_store.get("D1", "100.1")
        assert (mapping.workspace_slug, mapping.thread_slug) == ("all", "thread-1")
        assert knowledge.chats[0]["workspace"] == "all"
        assert knowledge.chats[0]["thread"] == "thread-1"
        assert knowledge.chats[0]["message"].startswith("How do I add a custom field?")
        assert messenger.content_posts()[-1]["text"] == "Here is the answer."

    @pytest.mark.asyncio
    async def test_follow_up_in_tracked_channel_thread_reuses_context(
        self, make_pipeline, thread_store, messenger, knowledge
    ):
        await thread_store.put("C1", "200.1", "support", "thread-x")
        classifier = FixedClassifier(IntentResult())
        pipeline = make_pipeline(thread_store, classifier=classifier)

        await pipeline.handle_event(*channel_message("and for multisite?", ts="200.5", thread_ts="200.1"))

        assert knowledge.created_threads == []
        assert knowledge.chats[0]["workspace"] == "support"
        assert knowledge.chats[0]["thread"] == "thread-x"
        assert classifier.calls == 0
        assert messenger.content_posts()[-1]["thread_ts"] == "200.1"

    @pytest.mark.asyncio
    async def test_workspace_directive_switches_thread(self, make_pipeline, thread_store, knowledge):
        await thread_store.put("C1", "200.1", "all", "thread-x")
        pipeline = make_pipeline(thread_store)

        await pipeline.handle_event(*channel_message("ask support instead #support", ts="200.6", thread_ts="200.1"))

        mapping = await thread_store.get("C1", "200.1")
        assert (mapping.workspace_slug, mapping.thread_slug) == ("support", "thread-1")
        assert knowledge.chats[0]["message"].startswith("ask support instead")
        assert "#support" not in knowledge.chats[0]["message"]

    @pytest.mark.asyncio
    async def test_untracked_channel_message_is_ignored(self, make_pipeline, thread_store, messenger):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*channel_message("just chatting", ts="201.1"))
        assert messenger.posts == []

    @pytest.mark.asyncio
    async def test_app_mention_starts_a_thread(self, make_pipeline, thread_store, messenger, knowledge):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*mention("what is a merge tag?"))

        assert knowledge.chats[0]["message"].startswith("what is a merge tag?")
        assert (await thread_store.get("C1", "300.1")).workspace_slug == "all"
        assert messenger.posts[0]["thread_ts"] == "300.1"

    @pytest.mark.asyncio
    async def test_bot_messages_are_filtered(self, make_pipeline, thread_store, messenger):
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("echo", user="UBOT"))
        body, event = dm("edited", event_id="Ev2")
        event["subtype"] = "message_changed"
        await pipeline.handle_event(body, event)
        assert messenger.posts == []

    @pytest.mark.asyncio
    async def test_greeting_intent(self, make_pipeline, thread_store, messenger, knowledge):
        classifier = FixedClassifier(IntentResult(intent="greeting", confidence=0.99, suggested_workspace="all"))
        pipeline = make_pipeline(thread_store, classifier=classifier)
        await pipeline.handle_event(*dm("hi there"))

        assert messenger.content_posts()[-1]["text"] == GREETING_TEXT
        assert knowledge.chats == []
        assert (await thread_store.get_stats())["total_mappings"] == 0

    @pytest.mark.asyncio
    async def test_low_confidence_intent_answers_from_knowledge(self, make_pipeline, thread_store, knowledge):
        classifier = FixedClassifier(IntentResult(intent="greeting", confidence=0.2, suggested_workspace="support"))
        pipeline = make_pipeline(thread_store, classifier=classifier)
        await pipeline.handle_event(*dm("hi, how do I style the submit button?"))
        assert knowledge.chats[0]["workspace"] == "support"

    @pytest.mark.asyncio
    async def test_release_intent_runs_github_command(self, make_pipeline, thread_store, github, knowledge):
        classifier = FixedClassifier(IntentResult(intent="github_release_info", confidence=0.9))
        pipeline = make_pipeline(thread_store, classifier=classifier)
        await pipeline.handle_event(*dm("what's the latest stripe release?"))
        assert github.release_calls == [("gravityforms", "gravityformsstripe")]
        assert knowledge.chats == []

    @pytest.mark.asyncio
    async def test_substantive_answer_gets_feedback_buttons(
        self, make_pipeline, thread_store, messenger, knowledge
    ):
        knowledge.reply = "A detailed answer. " * 20
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("Explain conditional logic"))

        feedback = messenger.posts[-1]
        assert feedback["text"] == "Was this response helpful?"
        assert feedback["blocks"][1]["block_id"] == "feedback_100.1_all"

    @pytest.mark.asyncio
    async def test_empty_answer(self, make_pipeline, thread_store, messenger, knowledge):
        knowledge.reply = ""
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("anything?"))
        assert messenger.posts[-1]["text"] == handlers_module.EMPTY_RESPONSE_TEXT

    @pytest.mark.asyncio
    async def test_thread_creation_failure_is_reported(self, make_pipeline, thread_store, messenger, knowledge):
        knowledge.fail_thread_creation = True
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("anything?"))
        assert messenger.updates[-1]["text"].startswith("⚠️ Error setting up context:")
        assert knowledge.chats == []

    @pytest.mark.asyncio
    async def test_knowledge_backend_not_configured(self, make_pipeline, thread_store, messenger, knowledge):
        knowledge.configured = False
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("anything?"))
        assert messenger.updates[-1]["text"] == KNOWLEDGE_DISABLED_TEXT


class TestDeleteLastMessage:
    @pytest.mark.asyncio
    async def test_deletes_last_bot_reply(self, make_pipeline, thread_store, messenger, monkeypatch):
        monkeypatch.setattr(handlers_module, "CONFIRMATION_LIFETIME_SECONDS", 0)
        messenger.replies = [
            {"ts": "400.1", "user": "U1", "text": "question"},
            {"ts": "400.2", "user": "UBOT", "text": "answer"},
            {"ts": "400.3", "user": "UBOT", "text": "✅ Last message deleted."},
        ]
        pipeline = make_pipeline(thread_store)
        await pipeline.handle_event(*dm("#delete_last_message", ts="400.4", thread_ts="400.1"))
        await drain_background_tasks()

        assert messenger.deletes[0] == {"channel": "D1", "ts": "400.2"}
        confirmation = messenger.posts[-1]
        assert confirmation["text"] == "✅ Last message deleted."
        assert messenger.deletes[-1]["ts"] == confirmation["ts"]
