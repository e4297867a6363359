"""
Intent Classification

Maps a free-text query to an intent and a ranked list of workspace suggestions.

Strategies (selected by INTENT_PROVIDER):
- "llm":  asks a chat model for a strict JSON classification
- "none": keyword heuristic; never produces an intent, only a workspace

Classification failure never raises out of classify_intent(): the caller
always gets an IntentResult, falling back to the empty result.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Sequence

from .keyword_matcher import STATIC_KEYWORD_MAP, best_match
from .keyword_map import DynamicKeywordMapService
from .llm_provider import LLMProvider

logger = logging.getLogger(__name__)

WORKSPACE_TAG_PATTERN = re.compile(r"#(\w+)")
HEURISTIC_WORKSPACE_CONFIDENCE = 0.5

GITHUB_INTENTS = (
    "github_release_info",
    "github_pr_review",
    "github_issue_analysis",
    "github_api_query",
)

INTENT_DESCRIPTIONS: Dict[str, str] = {
    "technical_question": "Queries about code functionality, implementation details, debugging, or technical how-to.",
    "best_practices_question": "Queries about optimal approaches, coding standards, design patterns, or recommended ways to implement something.",
    "historical_knowledge": "Queries about past decisions, previous discussions, or organizational memory.",
    "bot_abilities": "Queries about what the bot can do, access, or help with.",
    "docs": "Queries about documentation, usage instructions, or explanatory content.",
    "greeting": "Simple greetings, introductions, or conversation starters.",
    "github_release_info": "Queries about the latest release, version, or changelog of a repository or add-on.",
    "github_pr_review": "Requests to review a specific pull request.",
    "github_issue_analysis": "Requests to summarize, explain, or analyze a specific GitHub issue.",
    "github_api_query": "Requests for GitHub data that need an API lookup (lists of issues, PRs, labels, commits).",
}

INTENT_EXAMPLES = [
    '{"intent": "technical_question", "confidence": 0.85, "suggestedWorkspace": "all"}',
    '{"intent": "best_practices_question", "confidence": 0.7, "suggestedWorkspace": "gravityformsstripe"}',
    '{"intent": "bot_abilities", "confidence": 0.95, "suggestedWorkspace": "all"}',
    '{"intent": "docs", "confidence": 0.82, "suggestedWorkspace": "gravityforms"}',
    '{"intent": "greeting", "confidence": 0.99, "suggestedWorkspace": "all"}',
    '{"intent": "github_release_info", "confidence": 0.9, "suggestedWorkspace": "gravityformsppcp"}',
    '{"intent": null, "confidence": 0.1, "suggestedWorkspace": "gravityforms"}',
]


# =============================================================================
# Result Types
# =============================================================================

def clamp_confidence(value: Any) -> float:
    """Coerce a confidence value into [0, 1]; anything non-numeric becomes 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, float(value)))


@dataclass
class RankedChoice:
    name: str
    confidence: float


@dataclass
class IntentResult:
    """Outcome of intent classification."""
    intent: Optional[str] = None
    confidence: float = 0.0
    suggested_workspace: Optional[str] = None
    ranked_intents: List[RankedChoice] = field(default_factory=list)
    ranked_workspaces: List[RankedChoice] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "IntentResult":
        return cls()

    def is_confident(self, threshold: float) -> bool:
        return self.intent is not None and self.confidence >= threshold


def coerce_intent(intent: Any, allowed_intents: Sequence[str], default_intent: Optional[str]) -> Optional[str]:
    """Keep an intent only if it is allowed; otherwise substitute the default (if allowed)."""
    if intent is None:
        return None
    if not allowed_intents:
        return intent if isinstance(intent, str) and intent else None
    if isinstance(intent, str) and intent in allowed_intents:
        return intent
    replacement = default_intent if default_intent in allowed_intents else None
    logger.warning(f"Classifier returned disallowed intent {intent!r}; using {replacement!r}")
    return replacement


def _parse_ranked(raw: Any) -> List[RankedChoice]:
    if not isinstance(raw, list):
        return []
    ranked = []
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("name"), str) and item["name"].strip():
            ranked.append(RankedChoice(item["name"].strip(), clamp_confidence(item.get("confidence"))))
    return ranked


# =============================================================================
# Strategies
# =============================================================================

class IntentClassifier:
    """Base class for classification strategies."""

    name = "base"

    async def classify(
        self,
        query: str,
        allowed_intents: Sequence[str],
        allowed_workspaces: Sequence[str],
    ) -> IntentResult:
        raise NotImplementedError


class HeuristicIntentClassifier(IntentClassifier):
    """
    Keyword heuristic: no intent, workspace from an explicit #tag, then
    keyword matching, then the fallback workspace.
    """

    name = "none"

    def __init__(
        self,
        fallback_workspace: Optional[str],
        keyword_map_service: Optional[DynamicKeywordMapService] = None,
        static_keyword_map: Optional[Dict[str, list]] = None,
    ):
        self.fallback_workspace = fallback_workspace
        self.keyword_map_service = keyword_map_service
        self.static_keyword_map = static_keyword_map if static_keyword_map is not None else STATIC_KEYWORD_MAP

    async def _keyword_map(self) -> Dict[str, list]:
        if self.keyword_map_service is not None and self.keyword_map_service.available:
            dynamic = await self.keyword_map_service.get_keyword_map()
            if dynamic:
                return dynamic
        return self.static_keyword_map

    async def classify(self, query, allowed_intents, allowed_workspaces) -> IntentResult:
        match = WORKSPACE_TAG_PATTERN.search(query or "")
        workspace = match.group(1) if match else None

        if workspace is None:
            keyword_map = await self._keyword_map()
            workspace = best_match(query, keyword_map, self.fallback_workspace)

        ranked = [RankedChoice(workspace, HEURISTIC_WORKSPACE_CONFIDENCE)] if workspace else []
        return IntentResult(
            intent=None,
            confidence=0.0,
            suggested_workspace=workspace,
            ranked_workspaces=ranked,
        )


def build_intent_prompt(query: str, allowed_intents: Sequence[str], allowed_workspaces: Sequence[str]) -> str:
    """Prompt asking the model for exactly one JSON classification object."""
    if allowed_intents:
        numbered = "\n\n".join(
            f"{i}. {intent}\n   {INTENT_DESCRIPTIONS.get(intent, 'Category for this intent type.')}"
            for i, intent in enumerate(allowed_intents, start=1)
        )
        intent_section = (
            "You MUST classify this query into EXACTLY ONE of these intent categories AND NOTHING ELSE:\n\n"
            "---------- ALLOWED INTENT CATEGORIES (EXCLUSIVE LIST) ----------\n\n"
            f"{numbered}\n\n"
            "---------- CLASSIFICATION RULES ----------\n\n"
            "- YOU MUST ONLY USE THE INTENT CATEGORIES LISTED ABOVE. No variations or custom intents allowed.\n"
            "- Choose EXACTLY ONE intent from the list above that best matches the query.\n"
            "- If the query fits multiple categories, select the PRIMARY intent.\n"
            "- If the query doesn't fit any category well, use \"technical_question\" as the default.\n"
            "- Ignore formal greeting parts of queries when determining intent.\n"
            "- For simple greetings with no other content, use the \"greeting\" intent."
        )
    else:
        intent_section = "Determine the most appropriate intent that describes the user query."

    if allowed_workspaces:
        workspace_section = (
            "Suggest the single most relevant workspace for this query based on its topic, "
            f"choosing ONLY from this list: [{', '.join(allowed_workspaces)}]."
        )
    else:
        workspace_section = "Use all for the suggested workspace."

    examples = "\n".join(INTENT_EXAMPLES)

    return (
        f'Analyze the following user query: "{query}"\n\n'
        "Your task is to:\n"
        f"1. {intent_section}\n"
        "2. Estimate your confidence in this classification (a number between 0.0 and 1.0).\n"
        f"3. {workspace_section}\n\n"
        "Respond ONLY with a single, valid JSON object with exactly these keys: "
        '"intent" (string or null), "confidence" (number between 0.0 and 1.0), and '
        '"suggestedWorkspace" (string). You may add "rankedIntents" and "rankedWorkspaces" '
        '(lists of {"name": ..., "confidence": ...}). Do not include any other text, '
        "explanations, or markdown formatting.\n\n"
        f"Example valid responses:\n{examples}\n\n"
        f'User Query: "{query}"\n\n'
        "JSON Response:"
    )


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_intent_response(
    text: Optional[str],
    allowed_intents: Sequence[str],
    default_intent: Optional[str],
) -> IntentResult:
    """
    Defensively parse a model's JSON classification.

    Any structural problem yields IntentResult.empty().
    """
    if not text or not text.strip():
        logger.warning("Empty classification response")
        return IntentResult.empty()

    try:
        data = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        logger.error(f"Classification response is not valid JSON: {e}. Raw: {text[:200]!r}")
        return IntentResult.empty()

    if not isinstance(data, dict) or not all(k in data for k in ("intent", "confidence", "suggestedWorkspace")):
        logger.error(f"Classification response missing required keys: {text[:200]!r}")
        return IntentResult.empty()
    raw_confidence = data["confidence"]
    if isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float)):
        logger.error(f"Classification confidence is not a number: {raw_confidence!r}")
        return IntentResult.empty()

    confidence = clamp_confidence(raw_confidence)
    intent = coerce_intent(data["intent"], allowed_intents, default_intent)

    workspace = data["suggestedWorkspace"]
    workspace = workspace.strip() or None if isinstance(workspace, str) else None

    ranked_intents = _parse_ranked(data.get("rankedIntents"))
    ranked_intents = [r for r in ranked_intents if not allowed_intents or r.name in allowed_intents]
    if not ranked_intents and intent:
        ranked_intents = [RankedChoice(intent, confidence)]

    ranked_workspaces = _parse_ranked(data.get("rankedWorkspaces"))
    if not ranked_workspaces and workspace:
        ranked_workspaces = [RankedChoice(workspace, confidence)]

    return IntentResult(
        intent=intent,
        confidence=confidence,
        suggested_workspace=workspace,
        ranked_intents=ranked_intents,
        ranked_workspaces=ranked_workspaces,
    )


class LLMIntentClassifier(IntentClassifier):
    """Chat-model classifier with strict JSON output and defensive parsing."""

    name = "llm"

    def __init__(self, provider: LLMProvider, default_intent: Optional[str] = "technical_question"):
        self.provider = provider
        self.default_intent = default_intent

    async def classify(self, query, allowed_intents, allowed_workspaces) -> IntentResult:
        prompt = build_intent_prompt(query, allowed_intents, allowed_workspaces)
        try:
            response = await self.provider.complete(messages=[{"role": "user", "content": prompt}])
        except Exception as e:
            logger.error(f"Intent classification call failed: {e}")
            return IntentResult.empty()

        logger.debug(f"Classifier raw response ({response.actual_model}): {response.content!r}")
        return parse_intent_response(response.content, allowed_intents, self.default_intent)


# =============================================================================
# Selection and Dispatch
# =============================================================================

INTENT_CLASSIFIERS = {
    "llm": LLMIntentClassifier,
    "none": HeuristicIntentClassifier,
}


def select_intent_classifier(
    name: Optional[str],
    fallback_workspace: Optional[str],
    llm_provider: Optional[LLMProvider] = None,
    keyword_map_service: Optional[DynamicKeywordMapService] = None,
    default_intent: Optional[str] = "technical_question",
) -> IntentClassifier:
    """
    Build the classifier named by configuration.

    Unknown names (or "llm" without a provider) fall back to the heuristic.
    """
    key = (name or "").strip().lower()
    if key not in INTENT_CLASSIFIERS:
        logger.warning(f"Unknown intent provider '{name}'. Falling back to 'none'.")
        key = "none"
    if key == "llm" and llm_provider is None:
        logger.warning("Intent provider 'llm' selected without an LLM provider. Falling back to 'none'.")
        key = "none"

    if key == "llm":
        return LLMIntentClassifier(llm_provider, default_intent=default_intent)
    return HeuristicIntentClassifier(fallback_workspace, keyword_map_service=keyword_map_service)


async def classify_intent(
    classifier: IntentClassifier,
    query: str,
    allowed_intents: Sequence[str],
    allowed_workspaces: Sequence[str],
) -> IntentResult:
    """Run a classifier and normalise its result; never raises."""
    try:
        result = await classifier.classify(query, list(allowed_intents), list(allowed_workspaces))
    except Exception as e:
        logger.error(f"Intent classifier '{classifier.name}' raised: {e}", exc_info=True)
        return IntentResult.empty()

    if not isinstance(result, IntentResult):
        logger.error(f"Intent classifier '{classifier.name}' returned {type(result).__name__}")
        return IntentResult.empty()

    result.confidence = clamp_confidence(result.confidence)
    result.ranked_intents = [RankedChoice(r.name, clamp_confidence(r.confidence)) for r in result.ranked_intents or []]
    result.ranked_workspaces = [
        RankedChoice(r.name, clamp_confidence(r.confidence)) for r in result.ranked_workspaces or []
    ]
    logger.info(
        f"Intent ({classifier.name}): intent={result.intent}, confidence={result.confidence:.2f}, "
        f"workspace={result.suggested_workspace}"
    )
    return result
