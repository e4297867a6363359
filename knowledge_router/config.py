"""
Bot Configuration

Environment-driven settings for routing, integrations, and caching.

Features:
- One dataclass, each field read from the environment at construction time
- JSON-valued mappings (user -> workspace, channel -> workspace)
- Validation that reports errors (fatal) and warnings (degraded features)
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, Any

logger = logging.getLogger(__name__)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_POSSIBLE_INTENTS = [
    "technical_question",
    "best_practices_question",
    "historical_knowledge",
    "bot_abilities",
    "docs",
    "greeting",
    "github_release_info",
    "github_pr_review",
    "github_issue_analysis",
    "github_api_query",
]

DEFAULT_INTENT = "technical_question"
DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_DB_PATH = "./data/thread_contexts.db"

DUPLICATE_EVENT_REDIS_PREFIX = "slack_event_id:"
WORKSPACE_LIST_CACHE_KEY = "anythingllm_workspaces"
KEYWORD_MAP_CACHE_KEY = "github_workspace_keyword_map"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}. Using default {default}")
        return default


def _env_json(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {name}: {e}. Using default")
        return default


def _env_threshold() -> float:
    raw = os.getenv("INTENT_CONFIDENCE_THRESHOLD", str(DEFAULT_CONFIDENCE_THRESHOLD))
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_CONFIDENCE_THRESHOLD
    if value < 0 or value > 1:
        return DEFAULT_CONFIDENCE_THRESHOLD
    return value


@dataclass
class BotConfig:
    """Bot configuration from environment variables."""

    # Slack
    slack_bot_token: Optional[str] = field(default_factory=lambda: os.getenv("SLACK_BOT_TOKEN"))
    slack_app_token: Optional[str] = field(default_factory=lambda: os.getenv("SLACK_APP_TOKEN"))
    slack_signing_secret: Optional[str] = field(default_factory=lambda: os.getenv("SLACK_SIGNING_SECRET"))
    bot_user_id: Optional[str] = field(default_factory=lambda: os.getenv("SLACK_BOT_USER_ID"))

    # Workspace routing
    enable_user_workspaces: bool = field(default_factory=lambda: _env_bool("ENABLE_USER_WORKSPACES"))
    user_workspace_mapping: Dict[str, Any] = field(
        default_factory=lambda: _env_json("SLACK_USER_WORKSPACE_MAPPING", {})
    )
    channel_workspace_mapping: Dict[str, Any] = field(
        default_factory=lambda: _env_json("WORKSPACE_MAPPING", {})
    )
    fallback_workspace: Optional[str] = field(
        default_factory=lambda: os.getenv("FALLBACK_WORKSPACE_SLUG", "all")
    )

    # Intent classification
    intent_routing_enabled: bool = field(default_factory=lambda: _env_bool("INTENT_ROUTING_ENABLED", "true"))
    intent_provider: str = field(default_factory=lambda: os.getenv("INTENT_PROVIDER", "llm"))
    intent_confidence_threshold: float = field(default_factory=_env_threshold)
    possible_intents: List[str] = field(
        default_factory=lambda: _env_json("POSSIBLE_INTENTS", list(DEFAULT_POSSIBLE_INTENTS))
    )
    default_intent: str = field(default_factory=lambda: os.getenv("DEFAULT_INTENT", DEFAULT_INTENT))

    # Knowledge backend
    knowledge_base_url: Optional[str] = field(default_factory=lambda: os.getenv("LLM_API_BASE_URL"))
    knowledge_api_key: Optional[str] = field(default_factory=lambda: os.getenv("LLM_API_KEY"))

    # GitHub
    github_token: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_TOKEN") or None)
    github_owner: str = field(default_factory=lambda: os.getenv("GITHUB_OWNER", "gravityforms"))
    github_org_for_keywords: Optional[str] = field(
        default_factory=lambda: os.getenv("GITHUB_ORG_FOR_KEYWORDS") or None
    )
    github_workspace_slug: Optional[str] = field(
        default_factory=lambda: os.getenv("GITHUB_WORKSPACE_SLUG") or None
    )
    formatter_workspace_slug: Optional[str] = field(
        default_factory=lambda: os.getenv("FORMATTER_WORKSPACE_SLUG") or None
    )
    github_api_url: str = field(default_factory=lambda: os.getenv("GITHUB_API_URL", "https://api.github.com"))

    # Infrastructure
    redis_url: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_URL") or None)
    thread_db_path: Optional[str] = field(
        default_factory=lambda: os.getenv("THREAD_CONTEXT_DB", DEFAULT_DB_PATH) or None
    )
    command_prefix: str = field(default_factory=lambda: os.getenv("COMMAND_PREFIX", "gh>"))

    # Behaviour
    min_substantive_response_length: int = field(
        default_factory=lambda: _env_int("MIN_SUBSTANTIVE_RESPONSE_LENGTH", 100)
    )
    feedback_enabled: bool = field(default_factory=lambda: _env_bool("FEEDBACK_SYSTEM_ENABLED", "true"))
    duplicate_event_ttl: int = field(default_factory=lambda: _env_int("DUPLICATE_EVENT_TTL", 600))
    workspace_list_cache_ttl: int = field(default_factory=lambda: _env_int("WORKSPACE_LIST_CACHE_TTL", 3600))
    keyword_map_cache_ttl: int = field(default_factory=lambda: _env_int("KEYWORD_MAP_CACHE_TTL", 3600))
    thread_mapping_max_age_days: int = field(
        default_factory=lambda: _env_int("THREAD_MAPPING_MAX_AGE_DAYS", 30)
    )

    @property
    def github_enabled(self) -> bool:
        """Check if GitHub commands can run."""
        return bool(self.github_token)

    @property
    def knowledge_enabled(self) -> bool:
        """Check if the knowledge backend is configured."""
        return bool(self.knowledge_base_url and self.knowledge_api_key)

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def store_enabled(self) -> bool:
        return bool(self.thread_db_path)

    def validate(self) -> Tuple[List[str], List[str]]:
        """
        Check essential configuration.

        Returns:
            Tuple of (errors, warnings). Errors mean the bot cannot start.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not self.slack_bot_token:
            errors.append("Missing required environment variable: SLACK_BOT_TOKEN")
        if not self.slack_app_token:
            errors.append("Missing required environment variable: SLACK_APP_TOKEN")

        if not self.knowledge_enabled:
            warnings.append("LLM_API_BASE_URL / LLM_API_KEY not set. Knowledge queries disabled.")

        if not self.fallback_workspace and not self.channel_workspace_mapping and not self.enable_user_workspaces:
            warnings.append(
                "No workspace configuration found (FALLBACK_WORKSPACE_SLUG, WORKSPACE_MAPPING, "
                "or ENABLE_USER_WORKSPACES). Workspace resolution may fail."
            )
        if self.enable_user_workspaces and not self.user_workspace_mapping:
            warnings.append("ENABLE_USER_WORKSPACES is true, but SLACK_USER_WORKSPACE_MAPPING is empty.")
        if not isinstance(self.user_workspace_mapping, dict):
            warnings.append("SLACK_USER_WORKSPACE_MAPPING is not a JSON object. Ignoring it.")
            self.user_workspace_mapping = {}
        if not isinstance(self.channel_workspace_mapping, dict):
            warnings.append("WORKSPACE_MAPPING is not a JSON object. Ignoring it.")
            self.channel_workspace_mapping = {}
        if not isinstance(self.possible_intents, list):
            warnings.append("POSSIBLE_INTENTS is not a JSON list. Using defaults.")
            self.possible_intents = list(DEFAULT_POSSIBLE_INTENTS)

        if self.intent_routing_enabled and self.intent_provider == "none":
            warnings.append("INTENT_PROVIDER is 'none'. Only keyword heuristics will suggest workspaces.")

        if not self.redis_enabled:
            warnings.append("REDIS_URL not set. Event deduplication and shared caching disabled.")
        if not self.store_enabled:
            warnings.append("THREAD_CONTEXT_DB is empty. Thread mappings and feedback will not persist.")

        if not self.github_enabled:
            warnings.append("GITHUB_TOKEN not set. GitHub commands disabled.")
        else:
            if not self.github_workspace_slug:
                warnings.append("GITHUB_WORKSPACE_SLUG missing. Generic API commands will fail.")
            if not self.formatter_workspace_slug:
                warnings.append("FORMATTER_WORKSPACE_SLUG missing. API responses will be raw JSON.")

        return errors, warnings


def get_config() -> BotConfig:
    """Get current bot configuration."""
    return BotConfig()


def log_config_validation(config: BotConfig) -> bool:
    """
    Log validation results.

    Returns:
        True if the configuration has no fatal errors
    """
    errors, warnings = config.validate()
    for warning in warnings:
        logger.warning(f"Config: {warning}")
    for error in errors:
        logger.error(f"Config: {error}")
    return not errors
