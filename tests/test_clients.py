"""Tests for the GitHub and knowledge backend HTTP clients."""

import base64
import json

import httpx
import pytest

from knowledge_router.github_client import GitHubClient, GitHubError
from knowledge_router.knowledge_client import KnowledgeBackendError, KnowledgeClient


def github_with(handler) -> GitHubClient:
    http = httpx.AsyncClient(base_url="https://api.github.test", transport=httpx.MockTransport(handler))
    return GitHubClient("ghp-test", base_url="https://api.github.test", http_client=http)


def knowledge_with(handler) -> KnowledgeClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return KnowledgeClient("http://knowledge.test", "secret", http_client=http)


class TestGitHubClient:
    @pytest.mark.asyncio
    async def test_latest_release(self):
        def handler(request):
            assert request.url.path == "/repos/gravityforms/gravityforms/releases/latest"
            return httpx.Response(200, json={
                "tag_name": "2.9.1",
                "name": "2.9.1",
                "html_url": "https://github.com/gravityforms/gravityforms/releases/tag/2.9.1",
                "published_at": "2025-01-15T10:00:00Z",
            })

        gh = github_with(handler)
        release = await gh.get_latest_release("gravityforms", "gravityforms")
        assert release.tag_name == "2.9.1"
        assert release.published_at.startswith("2025-01-15")
        await gh.close()

    @pytest.mark.asyncio
    async def test_missing_release_is_none(self):
        gh = github_with(lambda request: httpx.Response(404, json={"message": "Not Found"}))
        assert await gh.get_latest_release("acme", "widgets") is None

    @pytest.mark.asyncio
    async def test_error_carries_status_and_message(self):
        gh = github_with(lambda request: httpx.Response(403, json={"message": "API rate limit exceeded"}))
        with pytest.raises(GitHubError) as exc:
            await gh.get_latest_release("acme", "widgets")
        assert exc.value.status == 403
        assert exc.value.message == "API rate limit exceeded"

    @pytest.mark.asyncio
    async def test_issue_with_comments(self):
        def handler(request):
            if request.url.path.endswith("/comments"):
                return httpx.Response(200, json=[{"user": {"login": "dev"}, "body": "Reproduced."}])
            return httpx.Response(200, json={
                "title": "Broken export", "body": "Steps...", "state": "open",
                "html_url": "https://github.com/gravityforms/backlog/issues/12", "comments": 1,
            })

        issue = await github_with(handler).get_issue("gravityforms", "backlog", 12)
        assert issue.title == "Broken export"
        assert issue.comments[0].user == "dev"

    @pytest.mark.asyncio
    async def test_pull_request_for_review(self):
        def handler(request):
            path = request.url.path
            if path.endswith("/files"):
                return httpx.Response(200, json=[{"filename": "a.php", "status": "modified", "patch": "@@ -1 +1 @@"}])
            if path.endswith("/comments"):
                return httpx.Response(200, json=[])
            return httpx.Response(200, json={"title": "Fix", "body": None, "html_url": "u"})

        pr = await github_with(handler).get_pull_request_for_review("acme", "widgets", 42)
        assert pr.number == 42
        assert pr.body == ""
        assert pr.files[0].patch == "@@ -1 +1 @@"

    @pytest.mark.asyncio
    async def test_generic_api_get_and_post(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, request.url.params.get("state"), request.content))
            if request.method == "POST":
                return httpx.Response(204)
            return httpx.Response(200, json=[{"number": 1}])

        gh = github_with(handler)
        assert await gh.call_generic_api("/repos/acme/widgets/issues", params={"state": "open"}) == [{"number": 1}]
        result = await gh.call_generic_api("/repos/acme/widgets/labels", method="post", params={"name": "bug"})
        assert result == {"status": 204, "message": "No Content"}
        assert seen[0][:3] == ("GET", "/repos/acme/widgets/issues", "open")
        assert json.loads(seen[1][3]) == {"name": "bug"}

    @pytest.mark.asyncio
    async def test_generic_api_rejects_relative_endpoint(self):
        with pytest.raises(GitHubError):
            await github_with(lambda r: httpx.Response(200)).call_generic_api("repos/acme")

    @pytest.mark.asyncio
    async def test_org_repos_and_readme(self):
        def handler(request):
            if request.url.path == "/orgs/gravityforms/repos":
                return httpx.Response(200, json=[{"name": "gravityforms"}, {"name": "gravityformsstripe"}])
            encoded = base64.b64encode(b"Stripe payments add-on").decode()
            return httpx.Response(200, json={"content": encoded, "encoding": "base64"})

        gh = github_with(handler)
        repos = await gh.list_org_repos("gravityforms")
        assert [r["name"] for r in repos] == ["gravityforms", "gravityformsstripe"]
        assert await gh.get_readme("gravityforms", "gravityformsstripe") == "Stripe payments add-on"

    def test_token_required(self):
        with pytest.raises(ValueError):
            GitHubClient("")


class TestKnowledgeClient:
    @pytest.mark.asyncio
    async def test_list_workspaces_filters_bad_entries(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer secret"
            return httpx.Response(200, json={"workspaces": [{"slug": "all"}, {"slug": ""}, {"name": "x"}, {"slug": "docs"}]})

        assert await knowledge_with(handler).list_workspaces() == ["all", "docs"]

    @pytest.mark.asyncio
    async def test_list_workspaces_error(self):
        with pytest.raises(KnowledgeBackendError):
            await knowledge_with(lambda r: httpx.Response(500)).list_workspaces()

    @pytest.mark.asyncio
    async def test_create_thread(self):
        def handler(request):
            assert request.url.path == "/api/v1/workspace/docs/thread/new"
            return httpx.Response(200, json={"thread": {"slug": "abc-123"}})

        assert await knowledge_with(handler).create_thread("docs") == "abc-123"

    @pytest.mark.asyncio
    async def test_create_thread_without_slug(self):
        assert await knowledge_with(lambda r: httpx.Response(200, json={})).create_thread("docs") is None

    @pytest.mark.asyncio
    async def test_chat_in_thread(self):
        def handler(request):
            assert request.url.path == "/api/v1/workspace/docs/thread/abc/chat"
            assert json.loads(request.content) == {"message": "hi", "mode": "chat"}
            return httpx.Response(200, json={"textResponse": "hello"})

        assert await knowledge_with(handler).chat("docs", "abc", "hi") == "hello"

    @pytest.mark.asyncio
    async def test_chat_failure_is_empty(self):
        assert await knowledge_with(lambda r: httpx.Response(502)).chat("docs", None, "hi") == ""

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        client = KnowledgeClient(None, None)
        assert not client.configured
        assert await client.chat("docs", None, "hi") == ""
        with pytest.raises(KnowledgeBackendError):
            await client.list_workspaces()
