"""
Workspace Resolver

Chooses the knowledge workspace for a request.

Precedence (each step only if the previous gave nothing valid):
1. Suggested workspace (intent classifier or explicit #directive)
2. Per-user mapping (when ENABLE_USER_WORKSPACES is on)
3. Per-channel mapping
4. Fallback workspace; if that is invalid the configuration is broken
   and resolution fails
"""

import logging
from typing import Optional, List, Dict, Any

from .config import BotConfig
from .workspace_directory import WorkspaceDirectory

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


class WorkspaceResolver:
    """Applies the workspace precedence chain against the directory's valid set."""

    def __init__(self, directory: WorkspaceDirectory, config: BotConfig):
        self.directory = directory
        self.config = config

    def _mapped(self, mapping: Dict[str, Any], key: Optional[str], source: str) -> Optional[str]:
        if not key or not isinstance(mapping, dict) or key not in mapping:
            return None
        value = mapping[key]
        if not isinstance(value, str):
            logger.warning(f"Workspace mapping for {source} '{key}' is not a string ({value!r}). Skipping.")
            return None
        return _clean(value)

    async def resolve(
        self,
        suggested: Optional[str],
        user_id: Optional[str],
        channel_id: Optional[str],
    ) -> Optional[str]:
        """
        Resolve the workspace for a request.

        Args:
            suggested: Suggested workspace, may be None
            user_id: Slack user ID
            channel_id: Slack channel ID

        Returns:
            A valid workspace slug, or None if nothing usable was found
        """
        available: List[str] = await self.directory.list_workspaces()
        if not available:
            logger.error("No workspaces available from the knowledge backend; cannot resolve workspace")
            return None
        valid = set(available)

        candidates = [("suggested", _clean(suggested))]
        if self.config.enable_user_workspaces:
            candidates.append(("user", self._mapped(self.config.user_workspace_mapping, user_id, "user")))
        candidates.append(("channel", self._mapped(self.config.channel_workspace_mapping, channel_id, "channel")))

        for source, candidate in candidates:
            if not candidate:
                continue
            if candidate in valid:
                logger.info(f"Resolved workspace '{candidate}' from {source}")
                return candidate
            logger.warning(f"Rejected {source} workspace '{candidate}': not in available workspaces")

        fallback = _clean(self.config.fallback_workspace)
        if fallback and fallback in valid:
            logger.info(f"Resolved workspace '{fallback}' from fallback")
            return fallback

        logger.critical(
            f"Fallback workspace '{fallback}' is missing or not available "
            f"(available: {sorted(valid)}). Check FALLBACK_WORKSPACE_SLUG."
        )
        return None
