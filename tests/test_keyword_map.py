"""Tests for keyword generation and the dynamic keyword map service."""

import json

import pytest

from knowledge_router.cache_store import RedisCacheStore, TTLCache
from knowledge_router.config import KEYWORD_MAP_CACHE_KEY
from knowledge_router.keyword_map import (
    DynamicKeywordMapService,
    build_keyword_map,
    extract_two_word_phrases,
    generate_keywords,
)


class OrgGitHub:
    def __init__(self, repos, readmes):
        self.repos = repos
        self.readmes = readmes
        self.list_calls = 0
        self.fail = False

    async def list_org_repos(self, org):
        self.list_calls += 1
        if self.fail:
            raise RuntimeError("rate limited")
        return [{"name": name} for name in self.repos]

    async def get_readme(self, owner, repo):
        return self.readmes.get(repo)


class TestGenerateKeywords:
    def test_two_word_phrases(self):
        assert extract_two_word_phrases("Accept Stripe payments, on forms!") == [
            "accept stripe", "stripe payments"
        ]

    def test_own_names_first_and_limit(self):
        keywords = generate_keywords(
            "gravityformsstripe",
            "Accept Stripe payments with credit cards and more payment options",
            {"gravityformsstripe"},
        )
        assert keywords[:2] == ["gravityformsstripe", "stripe"]
        assert len(keywords) == 5

    def test_other_repo_names_are_not_credited(self):
        keywords = generate_keywords("gravityformsstripe", "works with gravityforms core", {"gravityforms", "gravityformsstripe", "works with"})
        assert "works with" not in keywords

    def test_build_keyword_map(self):
        keyword_map = build_keyword_map(["gravityforms", "gravityflow"], {"gravityflow": "Workflow automation engine"})
        assert keyword_map["gravityforms"] == ["gravityforms"]
        assert keyword_map["gravityflow"][0] == "gravityflow"
        assert "workflow automation" in keyword_map["gravityflow"]


class TestDynamicKeywordMapService:
    @pytest.mark.asyncio
    async def test_generates_and_caches(self, clock, redis_client):
        github = OrgGitHub(["gravityformsstripe"], {"gravityformsstripe": "Stripe payments"})
        service = DynamicKeywordMapService(
            github, TTLCache(3600, clock=clock), RedisCacheStore(client=redis_client), org="gravityforms"
        )
        first = await service.get_keyword_map()
        second = await service.get_keyword_map()
        assert first == second
        assert github.list_calls == 1
        assert json.loads(redis_client.data[KEYWORD_MAP_CACHE_KEY]) == first

    @pytest.mark.asyncio
    async def test_serves_stale_map_when_refresh_fails(self, clock):
        github = OrgGitHub(["gravityflow"], {})
        service = DynamicKeywordMapService(github, TTLCache(60, clock=clock), org="gravityforms")
        original = await service.get_keyword_map()

        clock.advance(4000)
        github.fail = True
        assert await service.get_keyword_map() == original

    @pytest.mark.asyncio
    async def test_unavailable_without_org(self, clock):
        service = DynamicKeywordMapService(OrgGitHub([], {}), TTLCache(clock=clock), org=None)
        assert not service.available
        assert await service.get_keyword_map() is None

    @pytest.mark.asyncio
    async def test_initialize_flushes_caches(self, clock, redis_client):
        redis_client.data[KEYWORD_MAP_CACHE_KEY] = json.dumps({"old": ["old"]})
        memory = TTLCache(clock=clock)
        memory.set(KEYWORD_MAP_CACHE_KEY, {"old": ["old"]})
        service = DynamicKeywordMapService(
            OrgGitHub([], {}), memory, RedisCacheStore(client=redis_client), org="gravityforms"
        )
        await service.initialize()
        assert KEYWORD_MAP_CACHE_KEY not in redis_client.data
        assert memory.peek_stale(KEYWORD_MAP_CACHE_KEY) is None
