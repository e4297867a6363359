"""
Dynamic Keyword Map

Builds a workspace keyword map from the repositories of a GitHub organisation.

Features:
- Keywords per repo: its own name, the name without the "gravityforms"
  prefix, and two-word phrases from its README
- Phrases that are another repository's name are never credited to this one
- At most five phrases per repo, own names first
- Cached in memory and in Redis; stale memory is served if a refresh fails
"""

import re
import asyncio
import logging
from typing import Optional, List, Dict, Iterable, Set

from .cache_store import TTLCache, RedisCacheStore
from .config import KEYWORD_MAP_CACHE_KEY
from .github_client import GitHubClient

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX = "gravityforms"
MAX_KEYWORDS_PER_REPO = 5
README_FETCH_CONCURRENCY = 8

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", _NON_WORD.sub("", text.lower())).strip()


def extract_two_word_phrases(text: str) -> List[str]:
    """Unique bigrams whose words are both longer than two characters, in order of appearance."""
    words = [w for w in clean_text(text).split(" ") if w]
    phrases: List[str] = []
    for first, second in zip(words, words[1:]):
        if len(first) > 2 and len(second) > 2:
            phrase = f"{first} {second}"
            if phrase not in phrases:
                phrases.append(phrase)
    return phrases


def simplified_repo_name(name: str) -> Optional[str]:
    lowered = name.lower()
    if lowered.startswith(NAMESPACE_PREFIX):
        simplified = lowered[len(NAMESPACE_PREFIX):]
        return simplified or None
    return None


def generate_keywords(
    repo_name: str,
    readme: Optional[str],
    all_repo_names: Set[str],
    limit: int = MAX_KEYWORDS_PER_REPO,
) -> List[str]:
    """
    Keywords for one repository.

    Args:
        repo_name: Repository name
        readme: README text, if any
        all_repo_names: Lowercased names of every repo in the org
        limit: Maximum number of keywords

    Returns:
        Up to `limit` keywords, own name and simplified name first
    """
    own = repo_name.lower()
    simplified = simplified_repo_name(repo_name)

    keywords: List[str] = [own]
    if simplified and simplified not in keywords:
        keywords.append(simplified)
    for phrase in extract_two_word_phrases(readme or ""):
        if phrase not in keywords:
            keywords.append(phrase)

    own_names = {own, simplified} - {None}
    filtered = [kw for kw in keywords if kw in own_names or kw not in all_repo_names]

    # Stable sort keeps README phrase order after the own names
    def rank(kw: str) -> int:
        if kw == own:
            return 0
        if kw == simplified:
            return 1
        return 2

    return sorted(filtered, key=rank)[:limit]


def build_keyword_map(repo_names: Iterable[str], readmes: Dict[str, Optional[str]]) -> Dict[str, List[str]]:
    names = [n for n in repo_names if n]
    all_names = {n.lower() for n in names}
    return {name: generate_keywords(name, readmes.get(name), all_names) for name in names}


class DynamicKeywordMapService:
    """
    Generates and caches the repository keyword map.

    Usage:
        service = DynamicKeywordMapService(github, memory_cache, redis_store, org="gravityforms")
        await service.initialize()      # flushes stale caches
        keyword_map = await service.get_keyword_map()
    """

    def __init__(
        self,
        github: Optional[GitHubClient],
        memory_cache: TTLCache,
        shared_cache: Optional[RedisCacheStore] = None,
        org: Optional[str] = None,
        ttl_seconds: int = 3600,
        cache_key: str = KEYWORD_MAP_CACHE_KEY,
    ):
        self.github = github
        self.memory_cache = memory_cache
        self.shared_cache = shared_cache
        self.org = org
        self.ttl_seconds = ttl_seconds
        self.cache_key = cache_key

    @property
    def available(self) -> bool:
        return bool(self.github and self.org)

    async def initialize(self):
        """Flush cached maps so a restart always regenerates them."""
        self.memory_cache.invalidate(self.cache_key)
        if self.shared_cache is not None and self.shared_cache.enabled:
            removed = await self.shared_cache.delete(self.cache_key)
            logger.info(f"Keyword map cache flushed (redis key removed: {removed})")

    async def get_keyword_map(self, force_refresh: bool = False) -> Optional[Dict[str, List[str]]]:
        """
        Return the keyword map, regenerating it when caches are empty or expired.

        Returns:
            Workspace -> keywords, or None if unavailable
        """
        if not force_refresh:
            cached = self.memory_cache.get(self.cache_key)
            if cached is not None:
                return cached

            if self.shared_cache is not None and self.shared_cache.enabled:
                shared = await self.shared_cache.get_json(self.cache_key)
                if isinstance(shared, dict):
                    logger.debug("Keyword map: Redis cache hit")
                    self.memory_cache.set(self.cache_key, shared, ttl_seconds=self.ttl_seconds)
                    return shared

        if not self.available:
            return None

        try:
            keyword_map = await self._generate()
        except Exception as e:
            logger.error(f"Failed to generate keyword map for org {self.org}: {e}")
            stale = self.memory_cache.peek_stale(self.cache_key)
            if stale is not None:
                logger.warning("Returning stale keyword map after refresh failure")
            return stale

        logger.info(f"Generated keyword map with {len(keyword_map)} entries for org {self.org}")
        self.memory_cache.set(self.cache_key, keyword_map, ttl_seconds=self.ttl_seconds)
        if self.shared_cache is not None and self.shared_cache.enabled:
            try:
                await self.shared_cache.set_json(self.cache_key, keyword_map, self.ttl_seconds)
            except Exception as e:
                logger.error(f"Failed to cache keyword map in Redis: {e}")
        return keyword_map

    async def _generate(self) -> Dict[str, List[str]]:
        repos = await self.github.list_org_repos(self.org)
        names = [r.get("name") for r in repos if r.get("name")]
        semaphore = asyncio.Semaphore(README_FETCH_CONCURRENCY)

        async def fetch(name: str):
            async with semaphore:
                return name, await self.github.get_readme(self.org, name)

        results = await asyncio.gather(*(fetch(n) for n in names))
        return build_keyword_map(names, dict(results))
