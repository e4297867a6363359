"""
Knowledge Router Slack Bot

Slack Bolt AsyncApp wiring: events, slash commands and feedback actions are
acknowledged immediately and handed to the dispatch pipeline in a background
task.

Features:
- Structured GitHub commands (gh> ... and /gh-*)
- Free-text questions routed to a knowledge workspace by intent and mappings
- Per-thread knowledge context persisted in SQLite
- Duplicate event suppression via Redis (optional)
- Feedback buttons and App Home tab

Usage:
    python -m knowledge_router.app
"""

import os
import re
import sys
import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv
from slack_bolt.async_app import AsyncApp
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_sdk.web.async_client import AsyncWebClient

from .background import spawn_background, drain_background_tasks
from .cache_store import TTLCache, RedisCacheStore
from .command_router import CommandGrammar
from .config import BotConfig, get_config, log_config_validation, WORKSPACE_LIST_CACHE_KEY, KEYWORD_MAP_CACHE_KEY
from .dedupe import EventDeduplicator
from .dispatcher import DispatchPipeline
from .feedback import FeedbackStore, handle_feedback_action
from .formatting import build_home_view
from .github_client import GitHubClient
from .handlers import CommandHandlers
from .intent_classifier import select_intent_classifier
from .keyword_map import DynamicKeywordMapService
from .knowledge_client import KnowledgeClient
from .llm_provider import LLMProvider, get_provider_status
from .slack_messenger import SlackMessenger
from .thread_context import ThreadContextStore, run_cleanup_task
from .workspace_directory import WorkspaceDirectory
from .workspace_resolver import WorkspaceResolver

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Initialize App
# =============================================================================

config: BotConfig = get_config()

app = AsyncApp(
    token=config.slack_bot_token,
    signing_secret=config.slack_signing_secret,
)

# Global instances (initialized in startup)
pipeline: Optional[DispatchPipeline] = None
messenger: Optional[SlackMessenger] = None
redis_store: Optional[RedisCacheStore] = None
thread_store: Optional[ThreadContextStore] = None
feedback_store: Optional[FeedbackStore] = None
knowledge_client: Optional[KnowledgeClient] = None
github_client: Optional[GitHubClient] = None
llm_provider: Optional[LLMProvider] = None
cleanup_task: Optional[asyncio.Task] = None


# =============================================================================
# Startup / Shutdown
# =============================================================================

async def startup():
    """Initialize services on startup."""
    global pipeline, messenger, redis_store, thread_store, feedback_store
    global knowledge_client, github_client, llm_provider, cleanup_task

    logger.info("Starting Knowledge Router Slack Bot...")

    messenger = SlackMessenger(app.client)

    if not config.bot_user_id:
        auth = await app.client.auth_test()
        config.bot_user_id = auth.get("user_id")
        logger.info(f"Bot user id from auth.test: {config.bot_user_id}")

    redis_store = RedisCacheStore(config.redis_url)
    await redis_store.initialize()

    thread_store = ThreadContextStore(config.thread_db_path)
    await thread_store.initialize()
    cleanup_task = asyncio.create_task(
        run_cleanup_task(thread_store, max_age_seconds=config.thread_mapping_max_age_days * 24 * 60 * 60)
    )

    if config.feedback_enabled:
        feedback_store = FeedbackStore(thread_store)
        await feedback_store.initialize()

    knowledge_client = KnowledgeClient(config.knowledge_base_url, config.knowledge_api_key)
    directory = WorkspaceDirectory(
        knowledge_client,
        TTLCache(config.workspace_list_cache_ttl, label="workspaces"),
        redis_store,
        ttl_seconds=config.workspace_list_cache_ttl,
        cache_key=WORKSPACE_LIST_CACHE_KEY,
    )

    if config.github_enabled:
        github_client = GitHubClient(config.github_token, base_url=config.github_api_url)

    keyword_service = DynamicKeywordMapService(
        github_client,
        TTLCache(config.keyword_map_cache_ttl, label="keyword_map"),
        redis_store,
        org=config.github_org_for_keywords,
        ttl_seconds=config.keyword_map_cache_ttl,
        cache_key=KEYWORD_MAP_CACHE_KEY,
    )
    await keyword_service.initialize()

    if config.intent_provider.strip().lower() == "llm":
        llm_provider = LLMProvider()
        if not llm_provider.configured:
            logger.warning("INTENT_PROVIDER=llm but no OPENROUTER_API_KEY/OPENAI_API_KEY is set")
            llm_provider = None
        else:
            status = get_provider_status(llm_provider.config)
            logger.info(f"Intent LLM: primary={status['primary_model']}, "
                        f"fallback={status['fallback_model']}, "
                        f"fallback_enabled={status['fallback_enabled']}")

    classifier = select_intent_classifier(
        config.intent_provider,
        config.fallback_workspace,
        llm_provider=llm_provider,
        keyword_map_service=keyword_service if keyword_service.available else None,
        default_intent=config.default_intent,
    )

    pipeline = DispatchPipeline(
        messenger=messenger,
        deduplicator=EventDeduplicator(redis_store, config.duplicate_event_ttl),
        grammar=CommandGrammar(config.command_prefix, config.github_owner),
        classifier=classifier,
        resolver=WorkspaceResolver(directory, config),
        directory=directory,
        thread_store=thread_store,
        knowledge=knowledge_client,
        github=github_client,
        handlers=CommandHandlers(messenger, knowledge_client, github_client, config),
        config=config,
    )

    logger.info(
        f"Routing: classifier={classifier.name}, fallback={config.fallback_workspace}, "
        f"prefix={config.command_prefix}, github={'on' if github_client else 'off'}, "
        f"redis={'on' if redis_store.enabled else 'off'}, store={'on' if thread_store.enabled else 'off'}"
    )
    logger.info("Slack Bot started successfully!")


async def shutdown():
    """Cleanup on shutdown."""
    global cleanup_task

    logger.info("Shutting down Slack Bot...")

    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        cleanup_task = None

    await drain_background_tasks()

    if llm_provider:
        await llm_provider.close()
    if github_client:
        await github_client.close()
    if knowledge_client:
        await knowledge_client.close()
    if thread_store:
        await thread_store.close()
    if redis_store:
        await redis_store.close()

    logger.info("Slack Bot shutdown complete.")


# =============================================================================
# Event Handlers
# =============================================================================

@app.event("app_mention")
async def handle_mention(body: dict, event: dict):
    """@mentions start or continue a conversation."""
    if pipeline:
        spawn_background(pipeline.handle_event(body, event), f"app_mention {event.get('ts')}")


@app.event("message")
async def handle_message(body: dict, event: dict):
    """DMs and follow-ups in tracked threads (the pipeline filters the rest)."""
    if pipeline:
        spawn_background(pipeline.handle_event(body, event), f"message {event.get('ts')}")


@app.command(re.compile(r"^/gh-(latest|review|analyze|api)$"))
async def handle_github_command(ack, body: dict):
    await ack()
    if pipeline:
        spawn_background(pipeline.handle_slash_command(body), f"{body.get('command')} {body.get('trigger_id')}")


@app.action({"action_id": re.compile(r"^feedback_")})
async def handle_feedback(ack, body: dict):
    await ack()
    spawn_background(handle_feedback_action(body, messenger, feedback_store), "feedback action")


@app.event("app_home_opened")
async def handle_app_home(event: dict, client: AsyncWebClient):
    """Shows usage instructions and current status."""
    stats = await thread_store.get_stats() if thread_store and thread_store.enabled else None
    blocks = build_home_view(
        prefix=config.command_prefix,
        github_enabled=github_client is not None,
        knowledge_enabled=config.knowledge_enabled,
        redis_enabled=bool(redis_store and redis_store.enabled),
        thread_count=stats["total_mappings"] if stats else None,
        fallback_workspace=config.fallback_workspace or "",
    )
    await SlackMessenger(client).publish_home(event["user"], blocks)


# =============================================================================
# Main Entry Point
# =============================================================================

def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict):
    error = context.get("exception")
    logger.error(f"Unhandled asyncio error: {context.get('message')}", exc_info=error)


async def main():
    """Main entry point for running the bot."""
    if not log_config_validation(config):
        logger.critical("Invalid configuration. Exiting.")
        sys.exit(1)

    asyncio.get_running_loop().set_exception_handler(_handle_loop_exception)
    await startup()

    try:
        handler = AsyncSocketModeHandler(app, config.slack_app_token)
        logger.info("Starting Socket Mode handler...")
        await handler.start_async()
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        await shutdown()


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
