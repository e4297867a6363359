"""
Command Router

Typed grammar for the structured GitHub commands.

Two surface forms share the same per-verb rules:
- In-message:  "gh> release gf", "gh> review pr acme/widgets#42 #support",
               "gh> analyze issue #12 why does this fail?", "gh> api open PRs"
- Slash:       /gh-latest, /gh-review, /gh-analyze, /gh-api

A recognised verb with bad arguments raises UsageError, never a partial
match. Text that is not a command returns None.

Also here:
- resolve_repo_identifier: alias and shorthand expansion for repo names
- guard_numeric_workspace: rejects workspace candidates that are really
  issue/PR numbers
- extract_command_from_intent: pulls the same commands out of free text
  once the classifier has named a GitHub intent
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union, ClassVar, Dict, Callable, List

from .intent_classifier import IntentResult, GITHUB_INTENTS

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "gravityforms"
DEFAULT_ISSUE_REPO = "backlog"
NAMESPACE_PREFIX = "gravityforms"
DELETE_LAST_MESSAGE = "#delete_last_message"

REPO_ALIASES: Dict[str, str] = {
    "gf": "gravityforms",
    "core": "gravityforms",
    "ppcp": "gravityformsppcp",
    "paypal": "gravityformsppcp",
    "paypalcheckout": "gravityformsppcp",
    "stripe": "gravityformsstripe",
    "authorize.net": "gravityformsauthorizenet",
    "authnet": "gravityformsauthorizenet",
    "user registration": "gravityformsuserregistration",
    "ur": "gravityformsuserregistration",
    "gravityflow": "gravityflow",
    "flow": "gravityflow",
}

# Repos that live under their own organisation
ALIAS_OWNERS: Dict[str, str] = {"gravityflow": "gravityflow"}


# =============================================================================
# Command Types
# =============================================================================

class UsageError(ValueError):
    """Malformed arguments for a recognised command."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class RepoRef:
    owner: str
    repo: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class ReleaseLookup:
    kind: ClassVar[str] = "release"
    identifier: str
    owner: str
    repo: str


@dataclass(frozen=True)
class PullRequestReview:
    kind: ClassVar[str] = "pr_review"
    owner: str
    repo: str
    number: int
    workspace: Optional[str] = None


@dataclass(frozen=True)
class IssueAnalysis:
    kind: ClassVar[str] = "issue_analysis"
    owner: str
    repo: str
    number: int
    workspace: Optional[str] = None
    prompt: Optional[str] = None


@dataclass(frozen=True)
class GenericApiCall:
    kind: ClassVar[str] = "api"
    query: str


@dataclass(frozen=True)
class DeleteLastMessage:
    kind: ClassVar[str] = "delete_last_message"


CommandMatch = Union[ReleaseLookup, PullRequestReview, IssueAnalysis, GenericApiCall, DeleteLastMessage]


# =============================================================================
# Pure Helpers
# =============================================================================

def resolve_repo_identifier(identifier: Optional[str], default_owner: str = DEFAULT_OWNER) -> Optional[RepoRef]:
    """
    Expand a repo name, alias or owner/repo string.

    Examples:
        "gf"            -> gravityforms/gravityforms
        "stripe"        -> gravityforms/gravityformsstripe
        "flow"          -> gravityflow/gravityflow
        "acme/widgets"  -> acme/widgets
        "signature"     -> gravityforms/gravityformssignature
    """
    if not identifier or not identifier.strip():
        return None

    lowered = identifier.strip().lower()

    if lowered in REPO_ALIASES:
        repo = REPO_ALIASES[lowered]
        ref = RepoRef(ALIAS_OWNERS.get(repo, default_owner), repo)
    elif "/" in lowered:
        parts = lowered.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.warning(f"Could not resolve repository identifier: {identifier}")
            return None
        ref = RepoRef(parts[0], parts[1])
    else:
        repo = lowered if lowered.startswith(NAMESPACE_PREFIX) else f"{NAMESPACE_PREFIX}{lowered}"
        ref = RepoRef(default_owner, repo)

    logger.debug(f"Resolved repo identifier '{identifier}' to {ref}")
    return ref


def guard_numeric_workspace(
    candidate: Optional[str],
    number: Optional[int],
    fallback: Optional[str],
) -> Optional[str]:
    """
    Reject a workspace candidate that is really a number.

    A purely numeric candidate, or one equal to the issue/PR number, is
    replaced by the fallback.
    """
    cleaned = candidate.strip() if isinstance(candidate, str) else ""
    if not cleaned:
        return fallback
    if cleaned.isdigit() or (number is not None and cleaned == str(number)):
        logger.warning(f"Rejected numeric workspace '{cleaned}', using '{fallback}'")
        return fallback
    return cleaned


# =============================================================================
# Grammar
# =============================================================================

_REPO_ID = r"[\w.-]+(?:/[\w.-]+)?"
_OWNER_REPO = r"(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)"

RELEASE_ARGS = re.compile(rf"^(?P<repo_id>{_REPO_ID})$")
REVIEW_ARGS = re.compile(rf"^{_OWNER_REPO}#(?P<number>\d+)(?:\s+#(?P<workspace>[\w-]+))?$")
ISSUE_ARGS = re.compile(
    r"^(?:(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+))?#(?P<number>\d+)"
    r"(?:\s*#(?P<workspace>[\w-]+))?(?:\s+(?P<prompt>.+))?$",
    re.DOTALL,
)
SLASH_ISSUE_ARGS = re.compile(
    r"^(?:(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+))?#(?P<number>\d+)"
    r"\s+#(?P<workspace>[\w-]+)(?:\s+(?P<prompt>.+))?$",
    re.DOTALL,
)
ISSUE_VERBS = ("analyze", "summarize", "explain")


class CommandGrammar:
    """
    One rule per verb, shared by both surface forms.

    Usage:
        grammar = CommandGrammar(prefix="gh>", default_owner="gravityforms")
        match = grammar.match_message("gh> release gf")
        match = grammar.match_slash("/gh-review", "acme/widgets#42 #support")
    """

    def __init__(
        self,
        prefix: str = "gh>",
        default_owner: str = DEFAULT_OWNER,
        default_issue_repo: str = DEFAULT_ISSUE_REPO,
    ):
        self.prefix = prefix
        self.default_owner = default_owner
        self.default_issue_repo = default_issue_repo

        self._message_rules: Dict[str, Callable[[str], CommandMatch]] = {
            "release": self._parse_release,
            "review": self._parse_message_review,
            "api": self._parse_api,
        }
        for verb in ISSUE_VERBS:
            self._message_rules[verb] = self._parse_message_issue

        self._slash_rules: Dict[str, Callable[[str], CommandMatch]] = {
            "/gh-latest": self._parse_slash_release,
            "/gh-review": self._parse_slash_review,
            "/gh-analyze": self._parse_slash_issue,
            "/gh-api": self._parse_slash_api,
        }

    # -------------------------------------------------------------------------
    # Usage strings
    # -------------------------------------------------------------------------

    def _usage(self, syntax: str) -> str:
        return f"❌ Invalid format. Use: `{syntax}`"

    @property
    def command_list(self) -> str:
        p = self.prefix
        return (
            f"❓ Unknown command. Try `{p} release <repo>`, "
            f"`{p} review pr owner/repo#number [#workspace]`, "
            f"`{p} analyze issue [owner/repo]#number [#workspace] [question]`, "
            f"or `{p} api <query>`."
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def is_command(self, text: str) -> bool:
        return text.strip().lower().startswith(self.prefix.lower())

    def match_message(self, text: str) -> Optional[CommandMatch]:
        """
        Match an in-message command.

        Returns:
            A CommandMatch, or None if the text is not a command

        Raises:
            UsageError: Prefix present but the command is malformed or unknown
        """
        stripped = (text or "").strip()
        if stripped.lower().startswith(DELETE_LAST_MESSAGE):
            return DeleteLastMessage()
        if not self.is_command(stripped):
            return None

        rest = stripped[len(self.prefix):].strip()
        parts = rest.split(None, 1)
        if not parts:
            raise UsageError(self.command_list)

        verb = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""
        rule = self._message_rules.get(verb)
        if rule is None:
            logger.info(f"Unknown command verb '{verb}'")
            raise UsageError(self.command_list)
        return rule(args)

    def match_slash(self, command: str, text: str) -> CommandMatch:
        """
        Match a slash command.

        Raises:
            UsageError: Unknown command, or empty/malformed arguments
        """
        rule = self._slash_rules.get((command or "").strip().lower())
        if rule is None:
            raise UsageError(f"❓ Unknown command: `{command}`.")
        return rule((text or "").strip())

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def _release(self, args: str, syntax: str) -> ReleaseLookup:
        match = RELEASE_ARGS.match(args)
        if not match:
            raise UsageError(self._usage(syntax))
        identifier = match.group("repo_id")
        ref = resolve_repo_identifier(identifier, self.default_owner)
        if ref is None:
            raise UsageError(f"❌ Couldn't resolve repo '{identifier}'.")
        return ReleaseLookup(identifier=identifier, owner=ref.owner, repo=ref.repo)

    def _review(self, args: str, syntax: str) -> PullRequestReview:
        match = REVIEW_ARGS.match(args)
        if not match:
            raise UsageError(self._usage(syntax))
        number = int(match.group("number"))
        return PullRequestReview(
            owner=match.group("owner"),
            repo=match.group("repo"),
            number=number,
            workspace=guard_numeric_workspace(match.group("workspace"), number, None),
        )

    def _issue(self, args: str, syntax: str, pattern) -> IssueAnalysis:
        match = pattern.match(args)
        if not match:
            raise UsageError(self._usage(syntax))
        number = int(match.group("number"))
        prompt = (match.group("prompt") or "").strip() or None
        return IssueAnalysis(
            owner=match.group("owner") or self.default_owner,
            repo=match.group("repo") or self.default_issue_repo,
            number=number,
            workspace=guard_numeric_workspace(match.group("workspace"), number, None),
            prompt=prompt,
        )

    def _api(self, args: str, syntax: str) -> GenericApiCall:
        if not args:
            raise UsageError(self._usage(syntax))
        return GenericApiCall(query=args)

    def _parse_release(self, args: str) -> ReleaseLookup:
        return self._release(args, f"{self.prefix} release <repo>")

    def _parse_message_review(self, args: str) -> PullRequestReview:
        syntax = f"{self.prefix} review pr owner/repo#number [#workspace]"
        pr_args = args.split(None, 1)
        if not pr_args or pr_args[0].lower() != "pr":
            raise UsageError(self._usage(syntax))
        return self._review(pr_args[1].strip() if len(pr_args) > 1 else "", syntax)

    def _parse_message_issue(self, args: str) -> IssueAnalysis:
        syntax = f"{self.prefix} analyze issue [owner/repo]#number [#workspace] [question]"
        issue_args = args.split(None, 1)
        if not issue_args or issue_args[0].lower() != "issue":
            raise UsageError(self._usage(syntax))
        return self._issue(issue_args[1].strip() if len(issue_args) > 1 else "", syntax, ISSUE_ARGS)

    def _parse_api(self, args: str) -> GenericApiCall:
        return self._api(args, f"{self.prefix} api <query>")

    def _parse_slash_release(self, args: str) -> ReleaseLookup:
        return self._release(args, "/gh-latest <repo>")

    def _parse_slash_review(self, args: str) -> PullRequestReview:
        return self._review(args, "/gh-review owner/repo#number [#workspace]")

    def _parse_slash_issue(self, args: str) -> IssueAnalysis:
        return self._issue(args, "/gh-analyze [owner/repo]#number #workspace [prompt]", SLASH_ISSUE_ARGS)

    def _parse_slash_api(self, args: str) -> GenericApiCall:
        return self._api(args, "/gh-api <your query>")


# =============================================================================
# Intent-driven extraction
# =============================================================================

GITHUB_URL = re.compile(r"github\.com/(?P<owner>[\w.-]+)/(?P<repo>[\w-]+(?:\.[\w-]+)*)", re.IGNORECASE)
OWNER_REPO_TOKEN = re.compile(r"(?<![\w/.:-])(?P<owner>[\w-]+(?:\.[\w-]+)*)/(?P<repo>[\w-]+(?:\.[\w-]+)*)")
REPO_LIKE_TOKEN = re.compile(r"\b(?P<repo>gravity(?:forms|flow)[\w-]*)\b", re.IGNORECASE)
NUMBER_REFERENCE = re.compile(
    r"(?:#(?P<hash>\d+)\b|\b(?:pr|pull request|issue)\s*#?(?P<word>\d+)\b)",
    re.IGNORECASE,
)
WORKSPACE_DIRECTIVE = re.compile(r"(?<![\w/])#(?P<workspace>[\w-]+)")


def _alias_pattern(alias: str):
    return re.compile(rf"(?<![\w.-]){re.escape(alias)}(?![\w.-])", re.IGNORECASE)


# Longest first so "user registration" wins over "ur"
_ALIAS_PATTERNS = [(alias, _alias_pattern(alias)) for alias in sorted(REPO_ALIASES, key=len, reverse=True)]


def extract_repo(text: str, default_owner: str = DEFAULT_OWNER) -> Optional[RepoRef]:
    """Find a repository in free text: URL, owner/repo, alias, then repo-like token."""
    for pattern in (GITHUB_URL, OWNER_REPO_TOKEN):
        match = pattern.search(text)
        if match:
            return RepoRef(match.group("owner").lower(), match.group("repo").lower())

    for alias, pattern in _ALIAS_PATTERNS:
        if pattern.search(text):
            return resolve_repo_identifier(alias, default_owner)

    match = REPO_LIKE_TOKEN.search(text)
    if match:
        return resolve_repo_identifier(match.group("repo"), default_owner)
    return None


def extract_number(text: str) -> Optional[int]:
    """Find '#123', 'PR 123' or 'issue 123'."""
    match = NUMBER_REFERENCE.search(text)
    if not match:
        return None
    return int(match.group("hash") or match.group("word"))


def extract_workspace_candidate(text: str) -> Optional[str]:
    """The last '#token' in the text, numeric or not (the guard decides)."""
    candidates: List[str] = WORKSPACE_DIRECTIVE.findall(text)
    return candidates[-1] if candidates else None


def extract_command_from_intent(
    text: str,
    intent_result: IntentResult,
    grammar: CommandGrammar,
    default_workspace: Optional[str] = None,
) -> Optional[CommandMatch]:
    """
    Build a command from free text for a GitHub intent.

    Returns:
        A CommandMatch, or None if the intent is not a GitHub intent or a
        required field could not be found
    """
    intent = intent_result.intent if intent_result else None
    if intent not in GITHUB_INTENTS or not text or not text.strip():
        return None

    text = text.strip()

    if intent == "github_api_query":
        return GenericApiCall(query=text)

    repo = extract_repo(text, grammar.default_owner)

    if intent == "github_release_info":
        if repo is None:
            logger.info("Release intent without a recognisable repository")
            return None
        return ReleaseLookup(identifier=str(repo), owner=repo.owner, repo=repo.repo)

    number = extract_number(text)
    if number is None:
        logger.info(f"{intent} intent without an issue/PR number")
        return None

    candidate = extract_workspace_candidate(text) or intent_result.suggested_workspace
    fallback = repo.repo if repo else default_workspace
    workspace = guard_numeric_workspace(candidate, number, fallback)

    if intent == "github_pr_review":
        if repo is None:
            logger.info("PR review intent without a recognisable repository")
            return None
        return PullRequestReview(owner=repo.owner, repo=repo.repo, number=number, workspace=workspace)

    return IssueAnalysis(
        owner=repo.owner if repo else grammar.default_owner,
        repo=repo.repo if repo else grammar.default_issue_repo,
        number=number,
        workspace=workspace,
        prompt=text,
    )
