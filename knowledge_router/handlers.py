"""
Command Handlers

One coroutine per action the bot can take once routing has decided what to
do. Handlers drive the status message they are given and post their results
in the reply thread. GitHub and knowledge-backend errors become short
messages here; anything unexpected propagates to the status guard.
"""

import asyncio
import json
import logging
from typing import Optional, List

from .config import BotConfig
from .background import spawn_background
from .command_router import ReleaseLookup, PullRequestReview, IssueAnalysis, GenericApiCall
from .formatting import (
    SLACK_MARKDOWN_INSTRUCTION,
    split_message_into_chunks,
    create_response_blocks,
    build_feedback_blocks,
    strip_code_fences,
    extract_json_object,
    fallback_text,
)
from .github_client import GitHubClient, GitHubError, PullRequestDetails, IssueDetails
from .intent_classifier import WORKSPACE_TAG_PATTERN
from .knowledge_client import KnowledgeClient
from .slack_messenger import SlackMessenger
from .status_message import StatusMessage

logger = logging.getLogger(__name__)

CHUNK_DELAY_SECONDS = 0.5
CONFIRMATION_LIFETIME_SECONDS = 5

MAX_PR_DESCRIPTION = 1000
MAX_DIFF_PER_FILE = 3000
MAX_DIFF_TOTAL = 20000
MAX_ISSUE_BODY = 2000
MAX_COMMENTS = 5
MAX_COMMENT_LENGTH = 300

EMPTY_RESPONSE_TEXT = "_(I received an empty response. Please try rephrasing your query.)_"

GREETING_TEXT = "\n".join([
    "Hello there! :wave:",
    "I'm your knowledge assistant for Gravity Forms development.",
    "I can help with code questions, best practices, documentation, and GitHub tasks.",
    "Feel free to ask me anything!",
])


def _format_date(published_at: Optional[str]) -> str:
    if not published_at:
        return "unknown date"
    return published_at.split("T")[0]


def _format_comments(comments) -> str:
    if not comments:
        return ""
    recent = comments[-MAX_COMMENTS:]
    lines = [f"\n**Recent Comments ({len(recent)}):**"]
    for c in recent:
        lines.append(f"*{c.user}:* {(c.body or '')[:MAX_COMMENT_LENGTH]}\n---")
    return "\n".join(lines) + "\n"


def build_pr_context(owner: str, repo: str, pr: PullRequestDetails) -> str:
    """PR title, description, capped diffs and recent comments."""
    context = (
        f"**PR:** {owner}/{repo}#{pr.number}\n**Title:** {pr.title}\n"
        f"**Desc:**\n{(pr.body or '')[:MAX_PR_DESCRIPTION]}\n\n**Changes:**\n"
    )
    total = 0
    truncated_overall = False
    for f in pr.files:
        if total >= MAX_DIFF_TOTAL:
            truncated_overall = True
            break
        context += f"\n**File:** {f.filename} ({f.status})\n"
        if not f.patch:
            context += "(No diff)\n"
            continue
        diff = f.patch[:MAX_DIFF_PER_FILE]
        truncated_file = len(f.patch) > MAX_DIFF_PER_FILE
        if total + len(diff) > MAX_DIFF_TOTAL:
            diff = diff[:MAX_DIFF_TOTAL - total]
            truncated_overall = True
        context += f"```diff\n{diff}\n```\n"
        if truncated_file and not truncated_overall:
            context += "... (diff truncated)\n"
        total += len(diff)
    if truncated_overall:
        context += "\n... (Overall diff truncated)\n"
    return context + _format_comments(pr.comments)


def build_issue_context(owner: str, repo: str, issue: IssueDetails) -> str:
    context = (
        f"**Issue:** {owner}/{repo}#{issue.number}\n**Title:** {issue.title}\n"
        f"**URL:** <{issue.url}|View>\n**State:** {issue.state}\n"
        f"**Body:**\n{(issue.body or '')[:MAX_ISSUE_BODY]}\n\n"
    )
    return context + _format_comments(issue.comments)


def prepare_knowledge_query(query: str) -> str:
    """Drop #workspace directives and ask for Slack markdown."""
    cleaned = WORKSPACE_TAG_PATTERN.sub("", query)
    cleaned = " ".join(cleaned.split())
    return cleaned + SLACK_MARKDOWN_INSTRUCTION


class CommandHandlers:
    """
    Executes routed requests.

    Usage:
        handlers = CommandHandlers(messenger, knowledge, github, config)
        async with StatusMessage(messenger, channel, thread_ts) as status:
            await handlers.release(match, channel, thread_ts, status)
    """

    def __init__(
        self,
        messenger: SlackMessenger,
        knowledge: KnowledgeClient,
        github: Optional[GitHubClient],
        config: BotConfig,
    ):
        self.messenger = messenger
        self.knowledge = knowledge
        self.github = github
        self.config = config

    # =========================================================================
    # Posting
    # =========================================================================

    async def post_chunks(self, channel: str, thread_ts: Optional[str], text: str) -> Optional[str]:
        """
        Post a long reply in order, one chunk per message.

        Returns:
            Timestamp of the last message posted, if any
        """
        chunks = split_message_into_chunks(text)
        last_ts = None
        for i, chunk in enumerate(chunks):
            blocks = create_response_blocks(chunk)
            ts = await self.messenger.post_message(channel, fallback_text(chunk), blocks=blocks, thread_ts=thread_ts)
            if ts is None and blocks:
                # Block rejected; try plain text
                ts = await self.messenger.post_message(channel, chunk, thread_ts=thread_ts)
            last_ts = ts or last_ts
            if i < len(chunks) - 1:
                await asyncio.sleep(CHUNK_DELAY_SECONDS)
        return last_ts

    # =========================================================================
    # GitHub commands
    # =========================================================================

    async def release(self, match: ReleaseLookup, channel: str, thread_ts: Optional[str], status: StatusMessage):
        owner, repo = match.owner, match.repo
        logger.info(f"Release lookup for {owner}/{repo} (from '{match.identifier}')")

        await status.update(f":satellite: Fetching release {owner}/{repo}...")
        try:
            release = await self.github.get_latest_release(owner, repo)
        except GitHubError as e:
            logger.error(f"Release lookup failed for {owner}/{repo}: {e}")
            await status.finish(f"❌ Error fetching release: {e.message}")
            return

        await status.delete()
        if release is None:
            await self.messenger.post_message(channel, f"No releases found for {owner}/{repo}.", thread_ts=thread_ts)
            return

        text = (
            f"Latest release *{owner}/{repo}*: <{release.url}|*{release.tag_name}*> "
            f"(Published {_format_date(release.published_at)})."
        )
        await self.messenger.post_message(channel, text, blocks=create_response_blocks(text), thread_ts=thread_ts)

    async def pr_review(
        self,
        match: PullRequestReview,
        workspace: str,
        channel: str,
        thread_ts: Optional[str],
        status: StatusMessage,
    ):
        owner, repo, number = match.owner, match.repo, match.number
        logger.info(f"PR review for {owner}/{repo}#{number} in workspace {workspace}")

        await status.update(f":robot_face: Fetching PR {owner}/{repo}#{number}...")
        try:
            pr = await self.github.get_pull_request_for_review(owner, repo, number)
        except GitHubError as e:
            logger.error(f"PR fetch failed for {owner}/{repo}#{number}: {e}")
            await status.finish(f"❌ Error reviewing PR {number}: {e.message}")
            return
        if pr is None:
            await status.finish(f"❌ Couldn't fetch PR {owner}/{repo}#{number}.")
            return

        prompt = (
            f"Review PR {owner}/{repo}#{number}. Focus: quality, bugs, security, best practices. "
            f"Provide actionable feedback. Context (may be truncated):\n{build_pr_context(owner, repo, pr)}"
        )
        await status.update(f":brain: Asking `{workspace}` to review...")
        review = await self.knowledge.chat(workspace, None, prompt)
        if not review.strip():
            await status.finish(f"❌ Error reviewing PR {number}: the knowledge base returned an empty review.")
            return

        await status.delete()
        await self.post_chunks(channel, thread_ts, review)

    async def issue_analysis(
        self,
        match: IssueAnalysis,
        workspace: str,
        thread_slug: Optional[str],
        channel: str,
        thread_ts: Optional[str],
        status: StatusMessage,
    ):
        """Summarize an issue, post the summary, then post a deeper analysis."""
        owner, repo, number = match.owner, match.repo, match.number
        logger.info(f"Issue analysis for {owner}/{repo}#{number} (ws={workspace}, thread={thread_slug or 'none'})")

        await status.update(f":robot_face: Fetching issue {owner}/{repo}#{number}...")
        try:
            issue = await self.github.get_issue(owner, repo, number)
        except GitHubError as e:
            logger.error(f"Issue fetch failed for {owner}/{repo}#{number}: {e}")
            await status.finish(f"❌ Error analyzing issue #{number}: {e.message}")
            return
        if issue is None:
            await status.finish(f"❌ Couldn't fetch issue {owner}/{repo}#{number}.")
            return

        context = build_issue_context(owner, repo, issue)

        await status.update(f":mag: Summarizing issue #{number}...")
        summary = await self.knowledge.chat(workspace, thread_slug, f"Summarize GitHub issue {owner}/{repo}#{number}:\n\n{context}")
        if not summary.strip():
            await status.finish(f"❌ Error analyzing issue #{number}: no summary was returned.")
            return
        summary_text = f"*Summary for issue #{number}:*\n{summary}"
        await self.messenger.post_message(
            channel, f"Summary issue #{number}:", blocks=create_response_blocks(summary_text), thread_ts=thread_ts
        )

        await status.update(f":brain: Analyzing issue #{number}...")
        prompt = f'Based on summary ("{summary[:300]}...") and context, analyze issue {owner}/{repo}#{number}'
        if match.prompt:
            prompt += f' addressing: "{match.prompt}"'
        else:
            prompt += ". Key points, causes, next steps?"
        prompt += f"\n\n**Full Context:**\n{context}"

        analysis = await self.knowledge.chat(workspace, thread_slug, prompt)
        if not analysis.strip():
            await status.finish(f"❌ Error analyzing issue #{number}: no analysis was returned.")
            return

        await status.delete()
        await self.post_chunks(channel, thread_ts, analysis)

    async def github_api(self, match: GenericApiCall, channel: str, thread_ts: Optional[str], status: StatusMessage):
        """
        Answer a free-form GitHub question.

        The GitHub workspace writes the request as JSON, the client runs it,
        and the formatter workspace (if configured) turns the JSON into markdown.
        """
        api_workspace = self.config.github_workspace_slug
        if not api_workspace:
            await status.finish("❌ GitHub API workspace not configured.")
            return

        query = match.query
        await status.update(f':nerd_face: Generating API call for: "{query[:50]}..."')
        reply = await self.knowledge.chat(
            api_workspace, None,
            f"Based on request, generate JSON for GitHub REST API 'fetch'. ONLY output JSON. Request: {query}",
        )
        if not reply.strip():
            await status.finish("❌ Error processing api query: GitHub workspace returned an empty response.")
            return

        try:
            details = json.loads(extract_json_object(reply))
            if not isinstance(details, dict) or not details.get("endpoint"):
                raise ValueError("Missing 'endpoint'.")
        except ValueError as e:
            logger.warning(f"Unusable API request from LLM: {e}")
            await status.finish(f"❌ Error processing api query: {e}")
            return

        method = details.get("method") or "GET"
        await status.update(f":satellite: Calling GitHub: {method} {details['endpoint']}")
        try:
            result = await self.github.call_generic_api(
                details["endpoint"],
                method=method,
                params=details.get("params") or details.get("body"),
                headers=details.get("headers"),
            )
        except GitHubError as e:
            logger.error(f"GitHub API call failed: {e}")
            await status.finish(f"❌ Error processing api query: {e.message}")
            return

        raw_json = json.dumps(result, indent=2)
        final_text = f"Raw Response:\n```json\n{raw_json}\n```"
        formatter = self.config.formatter_workspace_slug
        if formatter:
            await status.update(":art: Formatting response...")
            formatted = await self.knowledge.chat(formatter, None, f"Format API JSON into Markdown:\n\n```json\n{raw_json}\n```")
            if formatted.strip():
                final_text = strip_code_fences(formatted)
            else:
                logger.warning("Formatter workspace returned an empty response; posting raw JSON")
                final_text = f"(Formatting Error)\n\nRaw:\n```json\n{raw_json}\n```"

        await status.delete()
        await self.post_chunks(channel, thread_ts, final_text)

    # =========================================================================
    # Conversation
    # =========================================================================

    async def delete_last_message(self, channel: str, thread_ts: str, bot_user_id: Optional[str]):
        """Delete the bot's most recent reply in a thread (not status or confirmation messages)."""
        logger.info(f"Deleting last bot message in {channel}:{thread_ts}")
        try:
            messages = await self.messenger.fetch_all_replies(channel, thread_ts)
        except Exception as e:
            logger.error(f"Could not fetch thread {channel}:{thread_ts}: {e}")
            await self.messenger.post_message(channel, "❌ Error during delete.", thread_ts=thread_ts)
            return

        target = None
        for message in reversed(messages):
            text = message.get("text") or ""
            if message.get("user") == bot_user_id and "✅" not in text and "❌" not in text:
                target = message
                break

        if target is None:
            await self.messenger.post_message(channel, "❌ Couldn't find my last message.", thread_ts=thread_ts)
            return

        if not await self.messenger.delete_message(channel, target["ts"]):
            await self.messenger.post_message(channel, "❌ Couldn't delete message.", thread_ts=thread_ts)
            return

        confirm_ts = await self.messenger.post_message(channel, "✅ Last message deleted.", thread_ts=thread_ts)
        if confirm_ts:
            spawn_background(self._delete_later(channel, confirm_ts), f"remove delete confirmation {confirm_ts}")

    async def _delete_later(self, channel: str, ts: str):
        await asyncio.sleep(CONFIRMATION_LIFETIME_SECONDS)
        await self.messenger.delete_message(channel, ts)

    async def greeting(self, channel: str, thread_ts: Optional[str], status: StatusMessage):
        await status.delete()
        await self.messenger.post_message(channel, GREETING_TEXT, thread_ts=thread_ts)

    async def knowledge_query(
        self,
        query: str,
        workspace: str,
        thread_slug: Optional[str],
        channel: str,
        thread_ts: str,
        user_message_ts: str,
        status: StatusMessage,
    ):
        """Ask the knowledge backend and post the answer, with feedback buttons for substantive replies."""
        await status.update(f":brain: Thinking in workspace `{workspace}`...")

        prompt = prepare_knowledge_query(query)
        logger.info(f"Knowledge query: ws={workspace}, thread={thread_slug}, chars={len(prompt)}")
        reply = (await self.knowledge.chat(workspace, thread_slug, prompt)).strip()

        await status.delete()

        if not reply:
            logger.info("Knowledge backend returned an empty response")
            await self.messenger.post_message(channel, EMPTY_RESPONSE_TEXT, thread_ts=thread_ts)
            return

        last_ts = await self.post_chunks(channel, thread_ts, reply)

        substantive = len(reply) >= self.config.min_substantive_response_length
        if last_ts and substantive and self.config.feedback_enabled:
            await self.messenger.post_message(
                channel,
                "Was this response helpful?",
                blocks=build_feedback_blocks(user_message_ts, workspace),
                thread_ts=thread_ts,
            )


def describe_match(match) -> str:
    """Short label for logs."""
    fields: List[str] = [f"{k}={v}" for k, v in vars(match).items() if v is not None]
    return f"{match.kind}({', '.join(fields)})"
