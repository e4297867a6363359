"""
Knowledge Backend Client

HTTP client for the AnythingLLM-style knowledge backend.

Features:
- List workspace slugs (metadata call, short timeout)
- Create a chat thread inside a workspace
- Send a chat message to a workspace, optionally inside a thread (long timeout)
"""

import logging
from typing import Optional, List, Dict, Any

import httpx

logger = logging.getLogger(__name__)

LIST_TIMEOUT_SECONDS = 10.0
THREAD_TIMEOUT_SECONDS = 15.0
CHAT_TIMEOUT_SECONDS = 90.0


class KnowledgeBackendError(Exception):
    """Raised when the knowledge backend cannot be reached or answers badly."""


class KnowledgeClient:
    """
    Client for the knowledge backend REST API.

    Usage:
        async with KnowledgeClient(base_url, api_key) as client:
            slugs = await client.list_workspaces()
            thread = await client.create_thread("docs")
            answer = await client.chat("docs", thread, "How do I ...?")
    """

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-load the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _require_config(self):
        if not self.configured:
            raise KnowledgeBackendError("Knowledge backend URL or API key not configured")

    async def list_workspaces(self) -> List[str]:
        """
        Fetch workspace slugs from the backend.

        Returns:
            Non-empty string slugs, in backend order

        Raises:
            KnowledgeBackendError on configuration, network, or format problems
        """
        self._require_config()
        try:
            response = await self.client.get(
                f"{self.base_url}/api/v1/workspaces",
                headers=self._headers(),
                timeout=LIST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise KnowledgeBackendError(f"Failed to list workspaces: {e}") from e
        except ValueError as e:
            raise KnowledgeBackendError(f"Workspace list is not JSON: {e}") from e

        workspaces = data.get("workspaces") if isinstance(data, dict) else None
        if not isinstance(workspaces, list):
            raise KnowledgeBackendError("Unexpected workspace list format")

        return [
            ws["slug"]
            for ws in workspaces
            if isinstance(ws, dict) and isinstance(ws.get("slug"), str) and ws["slug"]
        ]

    async def create_thread(self, workspace_slug: str) -> Optional[str]:
        """
        Create a new chat thread in a workspace.

        Returns:
            Thread slug, or None if the backend did not return one
        """
        self._require_config()
        if not workspace_slug:
            raise KnowledgeBackendError("Workspace slug is required to create a thread")

        try:
            response = await self.client.post(
                f"{self.base_url}/api/v1/workspace/{workspace_slug}/thread/new",
                headers=self._headers(),
                json={},
                timeout=THREAD_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise KnowledgeBackendError(f"Failed to create thread in {workspace_slug}: {e}") from e
        except ValueError as e:
            raise KnowledgeBackendError(f"Thread response is not JSON: {e}") from e

        thread_slug = (data.get("thread") or {}).get("slug") if isinstance(data, dict) else None
        if not thread_slug:
            logger.error(f"No thread slug in response for workspace {workspace_slug}: {data}")
            return None

        logger.info(f"Created knowledge thread {workspace_slug}:{thread_slug}")
        return thread_slug

    async def chat(
        self,
        workspace_slug: str,
        thread_slug: Optional[str],
        message: str,
        mode: str = "chat",
    ) -> str:
        """
        Send a message to a workspace (and thread, if given).

        Returns:
            The backend's text response, or "" on any failure
        """
        if not self.configured:
            logger.error("Knowledge backend not configured; cannot chat")
            return ""

        url = f"{self.base_url}/api/v1/workspace/{workspace_slug}"
        if thread_slug:
            url += f"/thread/{thread_slug}"
        url += "/chat"

        logger.debug(f"Chat request: ws={workspace_slug}, thread={thread_slug or 'none'}, chars={len(message)}")

        try:
            response = await self.client.post(
                url,
                headers=self._headers(),
                json={"message": message, "mode": mode},
                timeout=CHAT_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data: Dict[str, Any] = response.json()
        except Exception as e:
            logger.error(f"Chat request to {workspace_slug} failed: {e}")
            return ""

        text = data.get("textResponse") if isinstance(data, dict) else None
        if not isinstance(text, str):
            logger.warning(f"Chat response from {workspace_slug} has no textResponse")
            return ""
        return text
