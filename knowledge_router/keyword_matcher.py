"""
Keyword Matcher

Scores free text against a workspace keyword map.

The workspace whose phrases occur most often wins. No match at all, or a
tie at the top, falls back to the caller's default.
"""

import re
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Hand-curated map used when no dynamic map is available
STATIC_KEYWORD_MAP: Dict[str, list] = {
    "gravityformssquare": ["gravityformssquare", "square", "square payments", "square add-on"],
    "gravityformsstripe": ["gravityformsstripe", "stripe", "stripe payments", "stripe add-on"],
    "gravityformsppcp": ["gravityformsppcp", "ppcp", "gravityforms paypal", "paypal", "paypal payments"],
    "gravityforms": ["gravityforms", "core", "the main add-on", "gravityforms core"],
    "gravityflow": ["gravityflow", "flow", "flow add-on"],
    "gravitypackages": ["gravitypackages", "packages", "packages add-on"],
}


def count_occurrences(text: str, phrase: str) -> int:
    """Count case-insensitive occurrences of phrase in text, overlaps included."""
    pattern = re.compile(f"(?={re.escape(phrase)})", re.IGNORECASE)
    return sum(1 for _ in pattern.finditer(text))


def score_keywords(text: str, keyword_map: Dict[str, Any]) -> Dict[str, int]:
    """
    Compute the weight of every key in the map.

    Keys whose value is not a list are skipped (with a warning) and get no weight.
    """
    weights: Dict[str, int] = {}
    for key, phrases in keyword_map.items():
        if not isinstance(phrases, (list, tuple)):
            logger.warning(f"Keyword map value for '{key}' is not a list. Skipping key.")
            continue
        weight = 0
        for phrase in phrases:
            if isinstance(phrase, str) and phrase:
                weight += count_occurrences(text, phrase)
        weights[key] = weight
    return weights


def best_match(text: str, keyword_map: Dict[str, Any], default: Optional[str] = None) -> Optional[str]:
    """
    Find the workspace with the uniquely highest keyword weight.

    Args:
        text: Text to search in
        keyword_map: Workspace -> list of search phrases
        default: Returned on invalid input, no matches, or a tie

    Returns:
        The winning workspace key, or default
    """
    if not text or not isinstance(text, str) or not isinstance(keyword_map, dict) or not keyword_map:
        logger.error("Invalid input for keyword matching. Returning default.")
        return default

    weights = score_keywords(text, keyword_map)
    max_weight = max(weights.values(), default=0)
    if max_weight == 0:
        logger.debug(f"No keywords matched. Returning default '{default}'")
        return default

    leaders = [key for key, weight in weights.items() if weight == max_weight]
    if len(leaders) > 1:
        logger.debug(f"Keyword tie between {leaders} (weight {max_weight}). Returning default '{default}'")
        return default

    logger.debug(f"Keyword match: {leaders[0]} (weight {max_weight})")
    return leaders[0]
