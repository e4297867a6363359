"""
Slack formatting helpers.

Turns backend markdown into Slack blocks, splits long replies into
postable chunks, and builds the feedback and App Home blocks.
"""

import re
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

MAX_CHUNK_LENGTH = 2950
MAX_CODE_CHUNK_LENGTH = 2800
FEEDBACK_BLOCK_PREFIX = "feedback_"
FEEDBACK_ACTIONS = (
    ("feedback_bad", "👎", "bad", "danger"),
    ("feedback_ok", "👌", "ok", None),
    ("feedback_great", "👍", "great", "primary"),
)

SLACK_MARKDOWN_INSTRUCTION = (
    "\n\nIMPORTANT: Provide a clean answer without referencing internal context markers "
    '(like "CONTEXT N"). Format your response using Slack markdown (bold, italics, code blocks, links).'
)

CODE_BLOCK = re.compile(r"^``` *([\w-]+)? *\n?(.*?)\n?```$", re.MULTILINE | re.DOTALL)
JSON_FENCE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)


@dataclass
class Segment:
    """A run of plain text or a fenced code block."""
    type: str  # "text" or "code"
    content: str
    language: Optional[str] = None


# =============================================================================
# Extraction and splitting
# =============================================================================

def extract_text_and_code(raw_text: str) -> List[Segment]:
    """Split markdown into text and fenced-code segments, in order."""
    if not raw_text:
        return []

    segments: List[Segment] = []
    last_index = 0
    for match in CODE_BLOCK.finditer(raw_text):
        preceding = raw_text[last_index:match.start()].strip()
        if preceding:
            segments.append(Segment("text", preceding))
        segments.append(Segment("code", match.group(2) or "", (match.group(1) or "text").lower()))
        last_index = match.end()

    remaining = raw_text[last_index:].strip()
    if remaining:
        segments.append(Segment("text", remaining))
    return segments


def _split_by_length(text: str, max_length: int) -> List[str]:
    """Split at the last newline or space past the halfway mark, else hard-split."""
    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining.strip())
            break
        split_at = remaining.rfind("\n", 0, max_length)
        if split_at <= max_length * 0.5:
            split_at = remaining.rfind(" ", 0, max_length)
        if split_at <= max_length * 0.5:
            split_at = max_length
        chunks.append(remaining[:split_at].strip())
        remaining = remaining[split_at:].lstrip()
    return [c for c in chunks if c]


def split_message_into_chunks(message: str, max_length: int = MAX_CHUNK_LENGTH) -> List[str]:
    """
    Split a reply into Slack-sized chunks.

    Code blocks are kept whole where they fit and re-fenced otherwise. When
    there is more than one text chunk, text chunks are numbered "[n/m]".
    """
    if not message or not message.strip():
        return []

    chunks: List[str] = []
    pending_text = ""

    def flush():
        nonlocal pending_text
        if pending_text.strip():
            chunks.extend(_split_by_length(pending_text, max_length))
        pending_text = ""

    for segment in extract_text_and_code(message):
        if segment.type == "code":
            flush()
            lang = segment.language if segment.language and segment.language != "text" else ""
            body = segment.content.strip()
            limit = max(max_length, MAX_CODE_CHUNK_LENGTH) - len(lang) - 8
            for piece in _split_by_length(body, limit) or [""]:
                chunks.append(f"```{lang}\n{piece}\n```")
        else:
            if pending_text and not pending_text[-1].isspace():
                pending_text += "\n\n"
            pending_text += segment.content
    flush()

    text_total = sum(1 for c in chunks if not c.startswith("```"))
    if text_total <= 1:
        return chunks

    numbered = []
    counter = 0
    for chunk in chunks:
        if chunk.startswith("```"):
            numbered.append(chunk)
        else:
            counter += 1
            numbered.append(f"[{counter}/{text_total}] {chunk}")
    return numbered


def strip_code_fences(text: str) -> str:
    """Remove a wrapping ```markdown / ``` fence from a formatter reply."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```markdown"):
        cleaned = cleaned[len("```markdown"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def extract_json_object(text: str) -> str:
    """Pull a JSON object out of an LLM reply, fenced or bare."""
    cleaned = (text or "").strip()
    fenced = JSON_FENCE.search(cleaned)
    if fenced:
        return fenced.group(1).strip()
    if not (cleaned.startswith("{") and cleaned.endswith("}")):
        raise ValueError(f"LLM response not JSON: {truncate_for_slack(cleaned, 300)}")
    return cleaned


# =============================================================================
# Blocks
# =============================================================================

def create_response_blocks(text: str) -> List[Dict[str, Any]]:
    """
    Convert response text into Slack blocks, properly handling code blocks.

    Splits text on ``` to separate code blocks from regular text.
    """
    blocks = []

    for i, part in enumerate(text.split("```")):
        if not part.strip():
            continue

        if i % 2 == 0:
            for chunk in _chunk_text(part.strip(), 2900):
                blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": chunk}})
        else:
            code_content = part.strip()
            # Drop a language hint line (```python)
            if "\n" in code_content:
                first_line = code_content.split("\n")[0]
                if first_line.isalpha() and len(first_line) < 15:
                    code_content = "\n".join(code_content.split("\n")[1:])
            if code_content:
                blocks.append({
                    "type": "rich_text",
                    "elements": [{
                        "type": "rich_text_preformatted",
                        "elements": [{"type": "text", "text": code_content[:3000]}],
                    }],
                })

    if not blocks and text.strip():
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": text[:2900]}})

    return blocks


def _chunk_text(text: str, max_length: int) -> List[str]:
    """Split text into chunks at paragraph boundaries."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    current = ""
    for paragraph in text.split("\n\n"):
        if len(current) + len(paragraph) + 2 <= max_length:
            current += ("\n\n" if current else "") + paragraph
        else:
            if current:
                chunks.append(current)
            current = paragraph[:max_length]
    if current:
        chunks.append(current)
    return chunks


def truncate_for_slack(text: str, max_length: int = 3000) -> str:
    """Truncate text to fit Slack's message limits."""
    if len(text) <= max_length:
        return text

    truncated = text[:max_length - 50]
    last_newline = truncated.rfind("\n")
    if last_newline > max_length - 500:
        truncated = truncated[:last_newline]
    return truncated + "\n\n... _(response truncated)_"


def fallback_text(text: str, limit: int = 200) -> str:
    """Notification text for a block message."""
    return text[:limit] + ("..." if len(text) > limit else "")


def feedback_block_id(user_message_ts: str, workspace_slug: str) -> str:
    return f"{FEEDBACK_BLOCK_PREFIX}{user_message_ts}_{workspace_slug}"


def build_feedback_blocks(user_message_ts: str, workspace_slug: str) -> List[Dict[str, Any]]:
    """Divider plus the three feedback buttons, keyed by the user's message and workspace."""
    elements = []
    for action_id, emoji, value, style in FEEDBACK_ACTIONS:
        button = {
            "type": "button",
            "text": {"type": "plain_text", "text": emoji, "emoji": True},
            "value": value,
            "action_id": action_id,
        }
        if style:
            button["style"] = style
        elements.append(button)

    return [
        {"type": "divider"},
        {"type": "actions", "block_id": feedback_block_id(user_message_ts, workspace_slug), "elements": elements},
    ]


def build_home_view(
    prefix: str,
    github_enabled: bool,
    knowledge_enabled: bool,
    redis_enabled: bool,
    thread_count: Optional[int],
    fallback_workspace: str,
) -> List[Dict[str, Any]]:
    """Blocks for the App Home tab."""

    def status(flag: bool) -> str:
        return "✅" if flag else "⚪️ not configured"

    usage = "\n".join([
        f"• `{prefix} release <repo>`: latest release (`gf`, `stripe`, `ppcp`, `owner/repo`...)",
        f"• `{prefix} review pr owner/repo#123 [#workspace]`: review a pull request",
        f"• `{prefix} analyze issue [owner/repo]#123 [#workspace] [question]`: summarize and analyze an issue",
        f"• `{prefix} api <question>`: ask the GitHub API",
        "• `#delete_last_message`: remove my last reply in the thread",
        "• Anything else is answered from the knowledge base. Add `#workspace` to pick one.",
    ])
    integrations = "\n".join([
        f"• Knowledge base: {status(knowledge_enabled)} (fallback workspace `{fallback_workspace}`)",
        f"• GitHub: {status(github_enabled)}",
        f"• Redis: {status(redis_enabled)}",
        f"• Tracked threads: {thread_count if thread_count is not None else 'n/a'}",
    ])

    return [
        {"type": "header", "text": {"type": "plain_text", "text": "Knowledge Router"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Usage*\n{usage}"}},
        {"type": "divider"},
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Integrations*\n{integrations}"}},
        {"type": "context", "elements": [
            {"type": "mrkdwn", "text": "Slash commands: `/gh-latest`, `/gh-review`, `/gh-analyze`, `/gh-api`"},
        ]},
    ]
