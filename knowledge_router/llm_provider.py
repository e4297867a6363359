"""
LLM Provider with Fallback Logic

Chat-completion caller used by the LLM intent classifier.

Fallback Behavior:
- Primary model via OpenRouter, fallback model via OpenAI
- Any primary failure goes straight to the fallback (no retry loop)
- Controlled via LLM_FALLBACK_ENABLED env var (default: true)
- Every call carries a timeout (INTENT_LLM_TIMEOUT, default 20s)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_PRIMARY_MODEL = "google/gemini-2.5-flash"
DEFAULT_FALLBACK_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_SECONDS = 20.0


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass
class LLMConfig:
    """LLM configuration from environment variables."""

    primary_model: str = field(default_factory=lambda: os.getenv("INTENT_PRIMARY_MODEL", DEFAULT_PRIMARY_MODEL))
    fallback_model: str = field(default_factory=lambda: os.getenv("INTENT_FALLBACK_MODEL", DEFAULT_FALLBACK_MODEL))
    fallback_enabled: bool = field(default_factory=lambda: os.getenv("LLM_FALLBACK_ENABLED", "true").lower() != "false")
    openrouter_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY"))
    openai_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    timeout_seconds: float = field(default_factory=lambda: _env_float("INTENT_LLM_TIMEOUT", DEFAULT_TIMEOUT_SECONDS))

    @property
    def fallback_available(self) -> bool:
        """Check if fallback is available (OpenAI API key is set)."""
        return bool(self.openai_api_key)

    @property
    def primary_available(self) -> bool:
        """Check if primary (OpenRouter) is available."""
        return bool(self.openrouter_api_key)


def get_config() -> LLMConfig:
    """Get current LLM configuration."""
    return LLMConfig()


# =============================================================================
# Client Factories
# =============================================================================

def get_openrouter_client(api_key: str, timeout: float) -> AsyncOpenAI:
    """Create OpenRouter client (OpenAI-compatible API)."""
    return AsyncOpenAI(
        api_key=api_key,
        base_url="https://openrouter.ai/api/v1",
        timeout=timeout,
        max_retries=0,
        default_headers={"X-Title": "Knowledge Router Slack Bot"},
    )


def get_openai_client(api_key: str, timeout: float) -> AsyncOpenAI:
    """Create OpenAI client."""
    return AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)


# =============================================================================
# Response Types
# =============================================================================

@dataclass
class TokenUsage:
    """Token usage information from LLM response."""
    prompt: int = 0
    completion: int = 0
    total: int = 0


@dataclass
class LLMResponse:
    """LLM response with content and metadata."""
    content: Optional[str]
    tokens: TokenUsage
    used_fallback: bool = False
    actual_model: str = ""
    finish_reason: str = "stop"


# =============================================================================
# Main LLM Caller
# =============================================================================

class LLMProvider:
    """
    LLM Provider with fallback support.

    Usage:
        provider = LLMProvider()
        response = await provider.complete(
            messages=[{"role": "user", "content": "Classify this..."}],
        )
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or get_config()
        self._openrouter_client: Optional[AsyncOpenAI] = None
        self._openai_client: Optional[AsyncOpenAI] = None

    @property
    def configured(self) -> bool:
        return self.config.primary_available or (self.config.fallback_enabled and self.config.fallback_available)

    @property
    def openrouter_client(self) -> AsyncOpenAI:
        """Lazy-load OpenRouter client."""
        if self._openrouter_client is None:
            if not self.config.openrouter_api_key:
                raise ValueError("OPENROUTER_API_KEY not set")
            self._openrouter_client = get_openrouter_client(
                self.config.openrouter_api_key, self.config.timeout_seconds
            )
        return self._openrouter_client

    @property
    def openai_client(self) -> AsyncOpenAI:
        """Lazy-load OpenAI client."""
        if self._openai_client is None:
            if not self.config.openai_api_key:
                raise ValueError("OPENAI_API_KEY not set")
            self._openai_client = get_openai_client(self.config.openai_api_key, self.config.timeout_seconds)
        return self._openai_client

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: int = 512,
        temperature: float = 0.0,
    ) -> LLMResponse:
        """
        Call the primary model, falling back to the secondary model on failure.

        Args:
            messages: List of message dicts with role and content
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            LLMResponse with content and metadata
        """
        last_error: Optional[Exception] = None

        if self.config.primary_available:
            try:
                logger.debug(f"Calling primary LLM ({self.config.primary_model})")
                response = await self._call(
                    self.openrouter_client, self.config.primary_model, messages, max_tokens, temperature
                )
                response.actual_model = self.config.primary_model
                return response
            except Exception as e:
                last_error = e
                logger.warning(f"Primary LLM failed: {e}")
        else:
            logger.debug("Primary LLM (OpenRouter) not configured")

        if self.config.fallback_enabled and self.config.fallback_available:
            try:
                logger.info(f"Using fallback model {self.config.fallback_model}")
                response = await self._call(
                    self.openai_client, self.config.fallback_model, messages, max_tokens, temperature
                )
                response.used_fallback = True
                response.actual_model = self.config.fallback_model
                return response
            except Exception as e:
                logger.error(f"Fallback LLM also failed: {e}")
                raise RuntimeError(
                    f"Both primary ({self.config.primary_model}) and fallback ({self.config.fallback_model}) failed. "
                    f"Primary error: {last_error}. Fallback error: {e}"
                ) from e

        if last_error:
            raise last_error
        raise RuntimeError("No LLM provider available (check API keys)")

    async def _call(
        self,
        client: AsyncOpenAI,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return self._parse_response(response)

    def _parse_response(self, response) -> LLMResponse:
        """Parse OpenAI-compatible response into LLMResponse."""
        choice = response.choices[0]
        usage = response.usage
        tokens = TokenUsage(
            prompt=usage.prompt_tokens if usage else 0,
            completion=usage.completion_tokens if usage else 0,
            total=usage.total_tokens if usage else 0,
        )
        return LLMResponse(
            content=choice.message.content,
            tokens=tokens,
            finish_reason=choice.finish_reason or "stop",
        )

    async def close(self):
        """Close HTTP clients."""
        if self._openrouter_client:
            await self._openrouter_client.close()
        if self._openai_client:
            await self._openai_client.close()


def get_provider_status(config: Optional[LLMConfig] = None) -> Dict[str, Any]:
    """Get current classifier model configuration."""
    config = config or get_config()
    return {
        "primary_model": config.primary_model,
        "fallback_model": config.fallback_model,
        "fallback_enabled": config.fallback_enabled,
        "primary_available": config.primary_available,
        "fallback_available": config.fallback_available,
    }
