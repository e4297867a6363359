"""
GitHub REST Client

Async client for the GitHub endpoints the bot's commands need.

Features:
- Latest release lookup
- Issue details with recent comments
- Pull request details with per-file patches and comments
- Generic API passthrough for LLM-generated requests
- Organisation repository listing and README retrieval (keyword map)
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_ORG_PAGES = 10
PER_PAGE = 100


class GitHubError(Exception):
    """GitHub API error with HTTP status (0 for network errors)."""

    def __init__(self, status: int, message: str):
        super().__init__(f"GitHub API error {status}: {message}" if status else message)
        self.status = status
        self.message = message


@dataclass
class ReleaseInfo:
    tag_name: str
    name: Optional[str]
    url: str
    published_at: Optional[str]


@dataclass
class Comment:
    user: str
    body: str


@dataclass
class IssueDetails:
    """An issue with the comments needed for analysis."""
    number: int
    title: str
    body: str
    state: str
    url: str
    comments: List[Comment] = field(default_factory=list)


@dataclass
class PullRequestFile:
    filename: str
    status: str
    patch: Optional[str] = None


@dataclass
class PullRequestDetails:
    """A pull request with changed files and conversation comments."""
    number: int
    title: str
    body: str
    url: str
    files: List[PullRequestFile] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)


def _comments_from(data: Any) -> List[Comment]:
    comments = []
    for c in data or []:
        if isinstance(c, dict):
            comments.append(Comment(
                user=(c.get("user") or {}).get("login", "unknown"),
                body=c.get("body") or "",
            ))
    return comments


class GitHubClient:
    """
    GitHub REST API client.

    Usage:
        async with GitHubClient(token) as gh:
            release = await gh.get_latest_release("gravityforms", "gravityforms")
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not token:
            raise ValueError("GITHUB_TOKEN not set")
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-load the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self.client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise GitHubError(0, f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise GitHubError(response.status_code, message)
        return response

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request("GET", path, params=params)
        return response.json()

    # =========================================================================
    # Command endpoints
    # =========================================================================

    async def get_latest_release(self, owner: str, repo: str) -> Optional[ReleaseInfo]:
        """
        Fetch the latest published release.

        Returns:
            ReleaseInfo, or None if the repository has no releases
        """
        try:
            data = await self._get_json(f"/repos/{owner}/{repo}/releases/latest")
        except GitHubError as e:
            if e.status == 404:
                logger.info(f"No releases found for {owner}/{repo}")
                return None
            raise

        return ReleaseInfo(
            tag_name=data.get("tag_name", ""),
            name=data.get("name"),
            url=data.get("html_url", ""),
            published_at=data.get("published_at"),
        )

    async def get_issue(self, owner: str, repo: str, number: int) -> Optional[IssueDetails]:
        """Fetch an issue and its comments. Returns None if it does not exist."""
        try:
            data = await self._get_json(f"/repos/{owner}/{repo}/issues/{number}")
        except GitHubError as e:
            if e.status == 404:
                return None
            raise

        comments = []
        if data.get("comments"):
            comments = _comments_from(
                await self._get_json(
                    f"/repos/{owner}/{repo}/issues/{number}/comments",
                    params={"per_page": PER_PAGE},
                )
            )

        return IssueDetails(
            number=number,
            title=data.get("title", ""),
            body=data.get("body") or "",
            state=data.get("state", "unknown"),
            url=data.get("html_url", ""),
            comments=comments,
        )

    async def get_pull_request_for_review(
        self,
        owner: str,
        repo: str,
        number: int,
    ) -> Optional[PullRequestDetails]:
        """Fetch a pull request with its changed files and comments."""
        try:
            data = await self._get_json(f"/repos/{owner}/{repo}/pulls/{number}")
        except GitHubError as e:
            if e.status == 404:
                return None
            raise

        files_data = await self._get_json(
            f"/repos/{owner}/{repo}/pulls/{number}/files",
            params={"per_page": PER_PAGE},
        )
        comments_data = await self._get_json(
            f"/repos/{owner}/{repo}/issues/{number}/comments",
            params={"per_page": PER_PAGE},
        )

        files = [
            PullRequestFile(
                filename=f.get("filename", ""),
                status=f.get("status", "modified"),
                patch=f.get("patch"),
            )
            for f in files_data or []
            if isinstance(f, dict)
        ]

        return PullRequestDetails(
            number=number,
            title=data.get("title", ""),
            body=data.get("body") or "",
            url=data.get("html_url", ""),
            files=files,
            comments=_comments_from(comments_data),
        )

    async def call_generic_api(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Call an arbitrary GitHub REST endpoint.

        Args:
            endpoint: Path starting with "/", e.g. "/repos/o/r/issues"
            method: HTTP method
            params: Query parameters for GET, JSON body otherwise
            headers: Extra request headers

        Returns:
            Decoded JSON response (or a small status dict for 204)
        """
        if not endpoint or not endpoint.startswith("/"):
            raise GitHubError(0, f"Invalid endpoint '{endpoint}': must start with '/'")

        method = (method or "GET").upper()
        logger.info(f"GitHub API call: {method} {endpoint}")

        if method == "GET":
            response = await self._request(method, endpoint, params=params, headers=headers)
        else:
            response = await self._request(method, endpoint, json_body=params or {}, headers=headers)

        if response.status_code == 204 or not response.content:
            return {"status": response.status_code, "message": "No Content"}
        try:
            return response.json()
        except ValueError:
            return {"status": response.status_code, "text": response.text}

    # =========================================================================
    # Keyword map endpoints
    # =========================================================================

    async def list_org_repos(self, org: str, max_pages: int = MAX_ORG_PAGES) -> List[Dict[str, Any]]:
        """List repositories of an organisation, one page of 100 at a time."""
        repos: List[Dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            batch = await self._get_json(
                f"/orgs/{org}/repos",
                params={"type": "all", "per_page": PER_PAGE, "page": page},
            )
            if not isinstance(batch, list) or not batch:
                break
            repos.extend(r for r in batch if isinstance(r, dict))
            if len(batch) < PER_PAGE:
                break
        else:
            logger.warning(f"Stopped listing {org} repositories after {max_pages} pages")
        return repos

    async def get_readme(self, owner: str, repo: str) -> Optional[str]:
        """Return the decoded README of a repository, or None if there is none."""
        try:
            data = await self._get_json(f"/repos/{owner}/{repo}/readme")
        except GitHubError as e:
            if e.status == 404:
                return None
            logger.warning(f"README fetch failed for {owner}/{repo}: {e}")
            return None

        content = data.get("content")
        if not content:
            return None
        if data.get("encoding") == "base64":
            try:
                return base64.b64decode(content).decode("utf-8", errors="replace")
            except ValueError as e:
                logger.warning(f"Could not decode README for {owner}/{repo}: {e}")
                return None
        return content
