"""
Dispatch Pipeline

Per-event state machine shared by message events, app mentions and slash
commands:

    dedupe -> filter -> prepare -> status message -> command attempt
           -> thread context (classify, resolve, create thread) -> execute

Nothing raised while handling an event escapes handle_event or
handle_slash_command; failures end up as a short message in Slack and an
ERROR log line.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from .command_router import (
    CommandGrammar,
    CommandMatch,
    UsageError,
    DeleteLastMessage,
    ReleaseLookup,
    PullRequestReview,
    IssueAnalysis,
    GenericApiCall,
    extract_command_from_intent,
)
from .config import BotConfig
from .dedupe import EventDeduplicator, compute_event_id
from .handlers import CommandHandlers, describe_match
from .intent_classifier import (
    IntentClassifier,
    IntentResult,
    GITHUB_INTENTS,
    WORKSPACE_TAG_PATTERN,
    classify_intent,
)
from .knowledge_client import KnowledgeClient
from .slack_messenger import SlackMessenger
from .status_message import StatusMessage
from .thread_context import ThreadContextStore, ThreadMapping
from .workspace_directory import WorkspaceDirectory
from .workspace_resolver import WorkspaceResolver

logger = logging.getLogger(__name__)

GITHUB_DISABLED_TEXT = "❌ GitHub commands disabled (GITHUB_TOKEN not configured)."
KNOWLEDGE_DISABLED_TEXT = "❌ The knowledge base is not configured (LLM_API_BASE_URL / LLM_API_KEY)."
LEADING_MENTION = re.compile(r"^\s*<@[A-Z0-9]+>\s*")


@dataclass
class ThreadContext:
    """Workspace and knowledge thread a reply will be sent through."""
    workspace: str
    thread_slug: str
    stored: bool = True


class DispatchPipeline:
    """
    Routes one inbound Slack unit of work to a handler.

    Usage:
        pipeline = DispatchPipeline(messenger, deduplicator, grammar, classifier,
                                    resolver, directory, thread_store, knowledge,
                                    github, handlers, config)
        await pipeline.handle_event(body, event)
    """

    def __init__(
        self,
        messenger: SlackMessenger,
        deduplicator: EventDeduplicator,
        grammar: CommandGrammar,
        classifier: IntentClassifier,
        resolver: WorkspaceResolver,
        directory: WorkspaceDirectory,
        thread_store: ThreadContextStore,
        knowledge: KnowledgeClient,
        github,
        handlers: CommandHandlers,
        config: BotConfig,
    ):
        self.messenger = messenger
        self.deduplicator = deduplicator
        self.grammar = grammar
        self.classifier = classifier
        self.resolver = resolver
        self.directory = directory
        self.thread_store = thread_store
        self.knowledge = knowledge
        self.github = github
        self.handlers = handlers
        self.config = config

    @property
    def bot_user_id(self) -> Optional[str]:
        return self.config.bot_user_id

    # =========================================================================
    # Filtering
    # =========================================================================

    def should_process_event(self, event: Dict[str, Any]) -> bool:
        """Drop bot traffic, edits/joins and malformed events."""
        user = event.get("user")
        text = event.get("text")

        if event.get("type") == "app_mention":
            return bool(user) and isinstance(text, str) and user != self.bot_user_id

        if self.bot_user_id and user == self.bot_user_id:
            return False
        subtype = event.get("subtype")
        if subtype and subtype != "thread_broadcast":
            return False
        if event.get("bot_id"):
            return False
        if not user or not isinstance(text, str):
            return False
        return True

    def strip_mention(self, text: str) -> str:
        if self.bot_user_id:
            return text.replace(f"<@{self.bot_user_id}>", "").strip()
        return LEADING_MENTION.sub("", text).strip()

    def _mentions_bot(self, text: str) -> bool:
        if self.bot_user_id:
            return f"<@{self.bot_user_id}>" in text
        return bool(LEADING_MENTION.match(text))

    # =========================================================================
    # Events
    # =========================================================================

    async def handle_event(self, body: Dict[str, Any], event: Dict[str, Any]):
        """Entry point for message and app_mention events. Never raises."""
        try:
            await self._handle_event(body, event)
        except Exception as e:
            logger.error(f"Unhandled error processing event in {event.get('channel')}: {e}", exc_info=True)
            channel = event.get("channel")
            if channel:
                await self.messenger.post_message(
                    channel,
                    f"⚠️ Oops! An error occurred while processing your request: {e}",
                    thread_ts=event.get("thread_ts") or event.get("ts"),
                )

    async def _handle_event(self, body: Dict[str, Any], event: Dict[str, Any]):
        event_id = compute_event_id(body)
        if await self.deduplicator.is_duplicate(event_id):
            return
        if not self.should_process_event(event):
            logger.debug(f"Filtered event {event_id} (type={event.get('type')}, subtype={event.get('subtype')})")
            return

        channel = event["channel"]
        user = event["user"]
        ts = event.get("ts")
        thread_ts = event.get("thread_ts")
        reply_ts = thread_ts or ts
        raw_text = event["text"]

        text = self.strip_mention(raw_text)
        if not text:
            logger.debug("Ignoring empty message after mention removal")
            return

        mapping: Optional[ThreadMapping] = None
        if thread_ts:
            mapping = await self.thread_store.get(channel, thread_ts)

        if event.get("type") != "app_mention" and event.get("channel_type") != "im":
            if self._mentions_bot(raw_text):
                # The app_mention event for the same message handles it
                return
            if mapping is None:
                logger.debug(f"Ignoring channel message {ts} outside a tracked thread")
                return

        logger.info(f"Processing message from {user} in {channel} (thread={reply_ts}, mapped={mapping is not None})")

        usage_error: Optional[UsageError] = None
        try:
            match = self.grammar.match_message(text)
        except UsageError as e:
            match, usage_error = None, e

        if isinstance(match, DeleteLastMessage):
            await self.handlers.delete_last_message(channel, reply_ts, self.bot_user_id)
            return

        async with StatusMessage(self.messenger, channel, reply_ts) as status:
            if usage_error is not None:
                await status.finish(usage_error.message)
                return

            if match is not None:
                await self._run_command(match, channel, reply_ts, user, status, mapping, from_message=True)
                return

            intent = IntentResult.empty()
            if mapping is None:
                intent = await self._classify(text)
                if await self._route_intent(intent, text, channel, reply_ts, user, status):
                    return

            if not self.knowledge.configured:
                await status.finish(KNOWLEDGE_DISABLED_TEXT)
                return

            context = await self._resolve_thread_context(text, channel, reply_ts, user, mapping, intent, status)
            if context is None:
                return

            await self.handlers.knowledge_query(
                text, context.workspace, context.thread_slug, channel, reply_ts, ts, status
            )

    # =========================================================================
    # Slash commands
    # =========================================================================

    async def handle_slash_command(self, payload: Dict[str, Any]):
        """Entry point for /gh-* commands (already acked). Never raises."""
        try:
            await self._handle_slash_command(payload)
        except Exception as e:
            logger.error(f"Unhandled error processing {payload.get('command')}: {e}", exc_info=True)
            channel = payload.get("channel_id")
            if channel:
                await self.messenger.post_message(channel, f"❌ Error executing command {payload.get('command')}: {e}")

    async def _handle_slash_command(self, payload: Dict[str, Any]):
        command = payload.get("command", "")
        channel = payload.get("channel_id")
        user = payload.get("user_id")
        trigger_id = payload.get("trigger_id")

        if trigger_id and await self.deduplicator.is_duplicate(f"slash:{trigger_id}"):
            return
        if not channel:
            logger.warning(f"Slash command {command} without a channel")
            return

        logger.info(f"Slash command {command} from {user} in {channel}")

        if self.github is None:
            await self.messenger.post_message(channel, "❌ GitHub features are disabled (missing configuration).")
            return

        try:
            match = self.grammar.match_slash(command, payload.get("text") or "")
        except UsageError as e:
            await self.messenger.post_message(channel, e.message)
            return

        async with StatusMessage(self.messenger, channel) as status:
            await self._run_command(match, channel, None, user, status, None, from_message=False)

    # =========================================================================
    # Commands
    # =========================================================================

    async def _run_command(
        self,
        match: CommandMatch,
        channel: str,
        reply_ts: Optional[str],
        user: Optional[str],
        status: StatusMessage,
        mapping: Optional[ThreadMapping],
        from_message: bool,
    ):
        logger.info(f"Running command {describe_match(match)}")

        if self.github is None:
            await status.finish(GITHUB_DISABLED_TEXT)
            return

        if isinstance(match, ReleaseLookup):
            await self.handlers.release(match, channel, reply_ts, status)

        elif isinstance(match, PullRequestReview):
            workspace = await self.resolver.resolve(match.workspace, user, channel)
            if not workspace:
                await status.finish("❌ Could not determine a workspace for the review.")
                return
            await self.handlers.pr_review(match, workspace, channel, reply_ts, status)

        elif isinstance(match, IssueAnalysis):
            try:
                if from_message and reply_ts:
                    workspace, thread_slug = await self._issue_context(match, channel, reply_ts, user, mapping)
                else:
                    workspace = await self.resolver.resolve(match.workspace, user, channel)
                    thread_slug = None
                if not workspace:
                    raise ValueError("Could not determine target workspace for issue analysis.")
            except Exception as e:
                logger.error(f"Issue analysis context setup failed: {e}")
                await status.finish(f"❌ Error setting up context for issue analysis: {e}")
                return
            await self.handlers.issue_analysis(match, workspace, thread_slug, channel, reply_ts, status)

        elif isinstance(match, GenericApiCall):
            await self.handlers.github_api(match, channel, reply_ts, status)

        else:
            logger.warning(f"No handler for command {match!r}")
            await status.finish("❓ Unknown command.")

    async def _issue_context(
        self,
        match: IssueAnalysis,
        channel: str,
        reply_ts: str,
        user: Optional[str],
        mapping: Optional[ThreadMapping],
    ) -> Tuple[Optional[str], Optional[str]]:
        """Explicit workspace, else the thread's, else the resolver; reuse or create the thread."""
        if match.workspace:
            workspace = await self.resolver.resolve(match.workspace, user, channel)
        elif mapping is not None:
            workspace = mapping.workspace_slug
        else:
            workspace = await self.resolver.resolve(None, user, channel)
        if not workspace:
            return None, None

        if mapping is not None and mapping.workspace_slug == workspace:
            return workspace, mapping.thread_slug

        thread_slug = await self._create_thread(workspace)
        await self.thread_store.put(channel, reply_ts, workspace, thread_slug)
        return workspace, thread_slug

    # =========================================================================
    # Free text
    # =========================================================================

    async def _classify(self, text: str) -> IntentResult:
        workspaces = await self.directory.list_workspaces()
        return await classify_intent(self.classifier, text, self.config.possible_intents, workspaces)

    async def _route_intent(
        self,
        intent: IntentResult,
        text: str,
        channel: str,
        reply_ts: str,
        user: str,
        status: StatusMessage,
    ) -> bool:
        """Run an intent-driven command or greeting. Returns True if handled."""
        if not self.config.intent_routing_enabled:
            return False
        if not intent.is_confident(self.config.intent_confidence_threshold):
            return False

        if intent.intent in GITHUB_INTENTS and self.github is not None:
            match = extract_command_from_intent(text, intent, self.grammar, self.config.fallback_workspace)
            if match is None:
                logger.info(f"Intent {intent.intent} but no command could be extracted; answering from knowledge base")
                return False
            await self._run_command(match, channel, reply_ts, user, status, None, from_message=True)
            return True

        if intent.intent == "greeting":
            await self.handlers.greeting(channel, reply_ts, status)
            return True

        return False

    async def _create_thread(self, workspace: str) -> str:
        thread_slug = await self.knowledge.create_thread(workspace)
        if not thread_slug:
            raise RuntimeError(f"Failed to create new thread in workspace {workspace}.")
        return thread_slug

    async def _resolve_thread_context(
        self,
        text: str,
        channel: str,
        reply_ts: str,
        user: str,
        mapping: Optional[ThreadMapping],
        intent: IntentResult,
        status: StatusMessage,
    ) -> Optional[ThreadContext]:
        """
        Find or create the knowledge thread for this Slack thread.

        Returns:
            ThreadContext, or None after reporting a setup failure
        """
        try:
            if mapping is not None:
                directive = WORKSPACE_TAG_PATTERN.search(text)
                requested = directive.group(1) if directive else None
                if requested and requested != mapping.workspace_slug and await self.directory.is_valid(requested):
                    logger.info(f"Switching thread {channel}:{reply_ts} from {mapping.workspace_slug} to {requested}")
                    thread_slug = await self._create_thread(requested)
                    stored = await self.thread_store.put(channel, reply_ts, requested, thread_slug)
                    return ThreadContext(requested, thread_slug, stored)
                return ThreadContext(mapping.workspace_slug, mapping.thread_slug)

            workspace = await self.resolver.resolve(intent.suggested_workspace, user, channel)
            if not workspace:
                raise RuntimeError(
                    "Could not determine a valid workspace. Check configuration "
                    "(mappings, fallback) and knowledge base availability."
                )

            thread_slug = await self._create_thread(workspace)
            stored = await self.thread_store.put(channel, reply_ts, workspace, thread_slug)
            if not stored:
                logger.warning(f"Thread mapping for {channel}:{reply_ts} not stored; context lasts this reply only")
            logger.info(f"New knowledge thread {workspace}:{thread_slug} for {channel}:{reply_ts}")
            return ThreadContext(workspace, thread_slug, stored)

        except Exception as e:
            logger.error(f"Context setup failed for {channel}:{reply_ts}: {e}")
            await status.finish(f"⚠️ Error setting up context: {e}")
            return None
