"""Shared fakes for the Slack, knowledge backend, GitHub and Redis collaborators."""

import itertools
from typing import Optional, List, Dict, Any

import pytest
import pytest_asyncio

from knowledge_router.background import drain_background_tasks
from knowledge_router.cache_store import TTLCache, RedisCacheStore
from knowledge_router.command_router import CommandGrammar
from knowledge_router.config import BotConfig
from knowledge_router.dedupe import EventDeduplicator
from knowledge_router.dispatcher import DispatchPipeline
from knowledge_router.github_client import ReleaseInfo
from knowledge_router.handlers import CommandHandlers
from knowledge_router.intent_classifier import HeuristicIntentClassifier
from knowledge_router.thread_context import ThreadContextStore
from knowledge_router.workspace_directory import WorkspaceDirectory
from knowledge_router.workspace_resolver import WorkspaceResolver
from knowledge_router import handlers as handlers_module


class FakeMessenger:
    """Records every Slack call; timestamps count up from 1000."""

    def __init__(self):
        self._ts = itertools.count(1000)
        self.posts: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.deletes: List[Dict[str, Any]] = []
        self.replies: List[Dict[str, Any]] = []
        self.message_texts: Dict[str, str] = {}
        self.home_views: List[Dict[str, Any]] = []
        self.fail_posts = False

    async def post_message(self, channel, text, blocks=None, thread_ts=None) -> Optional[str]:
        if self.fail_posts:
            return None
        ts = f"{next(self._ts)}.000100"
        self.posts.append({"channel": channel, "text": text, "blocks": blocks, "thread_ts": thread_ts, "ts": ts})
        return ts

    async def update_message(self, channel, ts, text, blocks=None):
        self.updates.append({"channel": channel, "ts": ts, "text": text, "blocks": blocks})

    async def delete_message(self, channel, ts) -> bool:
        self.deletes.append({"channel": channel, "ts": ts})
        return True

    async def fetch_all_replies(self, channel, thread_ts, limit=100, max_pages=5):
        return list(self.replies)

    async def fetch_message_text(self, channel, ts):
        return self.message_texts.get(ts)

    async def publish_home(self, user_id, blocks):
        self.home_views.append({"user_id": user_id, "blocks": blocks})

    # Helpers for assertions
    def texts(self) -> List[str]:
        return [p["text"] for p in self.posts]

    def status_posts(self) -> List[Dict[str, Any]]:
        return [p for p in self.posts if p["text"].startswith(":hourglass_flowing_sand:")]

    def content_posts(self) -> List[Dict[str, Any]]:
        return [p for p in self.posts if not p["text"].startswith(":hourglass_flowing_sand:")]


class FakeKnowledgeClient:
    def __init__(self, workspaces=None, reply: str = "Here is the answer."):
        self.workspaces = list(workspaces) if workspaces is not None else ["all", "gravityforms", "support"]
        self.reply = reply
        self.configured = True
        self.list_calls = 0
        self.list_error: Optional[Exception] = None
        self.created_threads: List[str] = []
        self.chats: List[Dict[str, Any]] = []
        self.fail_thread_creation = False
        self._thread_ids = itertools.count(1)

    async def list_workspaces(self) -> List[str]:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return list(self.workspaces)

    async def create_thread(self, workspace_slug: str) -> Optional[str]:
        if self.fail_thread_creation:
            return None
        slug = f"thread-{next(self._thread_ids)}"
        self.created_threads.append(f"{workspace_slug}:{slug}")
        return slug

    async def chat(self, workspace_slug, thread_slug, message, mode="chat") -> str:
        self.chats.append({"workspace": workspace_slug, "thread": thread_slug, "message": message})
        return self.reply


class FakeGitHubClient:
    def __init__(self):
        self.release: Optional[ReleaseInfo] = ReleaseInfo(
            tag_name="2.9.1",
            name="Gravity Forms 2.9.1",
            url="https://github.com/gravityforms/gravityforms/releases/tag/2.9.1",
            published_at="2025-01-15T10:00:00Z",
        )
        self.release_calls: List[tuple] = []
        self.issue = None
        self.pull_request = None
        self.api_result: Any = {"total_count": 0}
        self.api_calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def get_latest_release(self, owner, repo):
        self.release_calls.append((owner, repo))
        if self.error:
            raise self.error
        return self.release

    async def get_issue(self, owner, repo, number):
        if self.error:
            raise self.error
        return self.issue

    async def get_pull_request_for_review(self, owner, repo, number):
        if self.error:
            raise self.error
        return self.pull_request

    async def call_generic_api(self, endpoint, method="GET", params=None, headers=None):
        self.api_calls.append({"endpoint": endpoint, "method": method, "params": params})
        return self.api_result


class FakeRedisClient:
    """Just enough of redis.asyncio.Redis for RedisCacheStore."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.error: Optional[Exception] = None

    async def set(self, key, value, nx=False, ex=None):
        if self.error:
            raise self.error
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def get(self, key):
        if self.error:
            raise self.error
        return self.data.get(key)

    async def delete(self, key):
        if self.error:
            raise self.error
        return 1 if self.data.pop(key, None) is not None else 0

    async def ping(self):
        return True

    async def aclose(self):
        pass


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config() -> BotConfig:
    return BotConfig(
        slack_bot_token="xoxb-test",
        slack_app_token="xapp-test",
        slack_signing_secret=None,
        bot_user_id="UBOT",
        enable_user_workspaces=False,
        user_workspace_mapping={},
        channel_workspace_mapping={},
        fallback_workspace="all",
        intent_routing_enabled=True,
        intent_provider="none",
        intent_confidence_threshold=0.7,
        knowledge_base_url="http://knowledge.local",
        knowledge_api_key="key",
        github_token="ghp-test",
        github_owner="gravityforms",
        github_org_for_keywords=None,
        github_workspace_slug="github",
        formatter_workspace_slug=None,
        redis_url=None,
        thread_db_path=None,
        command_prefix="gh>",
        min_substantive_response_length=100,
        feedback_enabled=True,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def knowledge() -> FakeKnowledgeClient:
    return FakeKnowledgeClient()


@pytest.fixture
def github() -> FakeGitHubClient:
    return FakeGitHubClient()


@pytest.fixture
def redis_client() -> FakeRedisClient:
    return FakeRedisClient()


@pytest.fixture
def redis_store(redis_client) -> RedisCacheStore:
    return RedisCacheStore(client=redis_client)


@pytest.fixture
def directory(knowledge, clock) -> WorkspaceDirectory:
    return WorkspaceDirectory(knowledge, TTLCache(3600, label="workspaces", clock=clock))


@pytest.fixture(autouse=True)
def no_chunk_delay(monkeypatch):
    monkeypatch.setattr(handlers_module, "CHUNK_DELAY_SECONDS", 0)


@pytest_asyncio.fixture
async def thread_store(tmp_path):
    store = ThreadContextStore(str(tmp_path / "threads.db"))
    await store.initialize()
    yield store
    await drain_background_tasks()
    await store.close()


@pytest.fixture
def make_pipeline(messenger, knowledge, github, directory, redis_store, config):
    """Build a pipeline around the fakes; pass thread_store and overrides as needed."""

    def _make(thread_store, github_client=github, classifier=None, deduplicator=None):
        return DispatchPipeline(
            messenger=messenger,
            deduplicator=deduplicator or EventDeduplicator(redis_store, 600),
            grammar=CommandGrammar(config.command_prefix, config.github_owner),
            classifier=classifier or HeuristicIntentClassifier(config.fallback_workspace, static_keyword_map={}),
            resolver=WorkspaceResolver(directory, config),
            directory=directory,
            thread_store=thread_store,
            knowledge=knowledge,
            github=github_client,
            handlers=CommandHandlers(messenger, knowledge, github_client, config),
            config=config,
        )

    return _make
