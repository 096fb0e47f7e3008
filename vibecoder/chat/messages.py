from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any

# Slack mrkdwn section blocks accept 3000 chars; leave room for mention and metadata.
MAX_TEXT_LENGTH = 2500
_ELLIPSIS = "..."
_FALLBACK_PREVIEW_CHARS = 100
_MAX_ERROR_CHARS = 500

STOP_ACTION = "stop_job"
PROCESS_NOW_ACTION = "process_now"
CANCEL_QUEUED_ACTION = "cancel_queued"

SlackBlock = dict[str, Any]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def user_mention(user_id: str | None) -> str:
    """Return a ``<@U123>`` tag, or an empty string for unknown users."""
    if not user_id or user_id == "unknown":
        return ""
    return f"<@{user_id}>"


def version_tag(version: str | None, commit: str | None) -> str:
    """Compose the version suffix shown in the metadata line, e.g. ``v1.2.0 (6575b2f)``."""
    parts: list[str] = []
    if version:
        parts.append(f"v{version}")
    if commit:
        parts.append(f"({commit[:7]})")
    return " ".join(parts)


def format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s" if minutes > 0 else f"{secs}s"


def truncate(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[:max(0, max_length)] + _ELLIPSIS


def split_text(text: str, max_length: int = MAX_TEXT_LENGTH) -> list[str]:
    """Split long text into chunks of at most ``max_length`` chars.

    Breaks at the last newline inside the window when it falls in the second
    half of the window, otherwise at the last space under the same rule,
    otherwise hard-cuts. Whitespace at each boundary is dropped, so joining
    the chunks gives back the original text minus that boundary whitespace.
    """
    max_length = max(1, max_length)
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break
        half = max_length * 0.5
        split_at = remaining.rfind("\n", 0, max_length + 1)
        if split_at < half:
            split_at = remaining.rfind(" ", 0, max_length + 1)
        if split_at < half:
            split_at = max_length
        chunk = remaining[:split_at].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_at:].lstrip()
    return chunks or [""]


def format_tool_info(name: str, tool_input: dict[str, Any] | None) -> str:
    """Render a tool-use event as the short block shown above the partial answer."""
    params = tool_input or {}
    details: list[str] = []
    description = params.get("description")
    if isinstance(description, str) and description:
        details.append(description)
    command = params.get("command")
    if isinstance(command, str) and command:
        details.append(f"`{truncate(command, 300)}`")
    pattern = params.get("pattern")
    if isinstance(pattern, str) and pattern:
        details.append(f"Pattern: {pattern}")
    file_path = params.get("file_path") or params.get("path")
    if isinstance(file_path, str) and file_path:
        details.append(f"File: {file_path}")
    header = f":wrench: *{name}*"
    return "\n".join([header, *details])


def encode_action_value(key: str, job_id: str) -> str:
    return json.dumps({"key": key, "job_id": job_id}, separators=(",", ":"))


def decode_action_value(raw: str | None) -> tuple[str, str] | None:
    """Parse a button value back into ``(conversation_key, job_id)``. Returns None if malformed."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    key, job_id = data.get("key"), data.get("job_id")
    if not isinstance(key, str) or not isinstance(job_id, str) or not key or not job_id:
        return None
    return key, job_id


# ---------------------------------------------------------------------------
# Payload model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Metadata:
    """The context line of a status message.

    ``elapsed_seconds`` is the only field the periodic refresh rewrites.
    """
    elapsed_seconds: float
    tool_call_count: int = 0
    finished: bool = False
    version_tag: str = ""

    def render(self) -> str:
        verb = "total" if self.finished else "elapsed"
        text = f"{format_duration(self.elapsed_seconds)} {verb}, {self.tool_call_count} tool calls"
        if self.version_tag:
            text += f", {self.version_tag}"
        return f"_{text}_"


@dataclass(frozen=True)
class Button:
    text: str
    action_id: str
    value: str
    style: str | None = None

    def to_element(self) -> SlackBlock:
        element: SlackBlock = {
            "type": "button",
            "text": {"type": "plain_text", "text": self.text, "emoji": True},
            "action_id": self.action_id,
            "value": self.value,
        }
        if self.style:
            element["style"] = self.style
        return element


@dataclass(frozen=True)
class MessagePayload:
    body: str
    fallback_text: str
    metadata: Metadata | None = None
    actions: tuple[Button, ...] = field(default_factory=tuple)

    def with_elapsed(self, seconds: float) -> MessagePayload:
        """Copy of this payload whose only difference is the metadata timestamp."""
        if self.metadata is None:
            return self
        return replace(self, metadata=replace(self.metadata, elapsed_seconds=seconds))

    def to_blocks(self) -> list[SlackBlock]:
        blocks: list[SlackBlock] = []
        if self.metadata is not None:
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": self.metadata.render()}],
            })
        blocks.append(text_block(self.body))
        if self.actions:
            blocks.append({
                "type": "actions",
                "elements": [b.to_element() for b in self.actions],
            })
        return blocks


def text_block(text: str) -> SlackBlock:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _with_mention(user_id: str | None, text: str, sep: str = " ") -> str:
    mention = user_mention(user_id)
    return f"{mention}{sep}{text}" if mention else text


def _stop_button(key: str, job_id: str) -> Button:
    return Button(":octagonal_sign: Stop", STOP_ACTION, encode_action_value(key, job_id))


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def build_thinking_message(
    user_id: str | None, key: str, job_id: str, version: str = "",
) -> MessagePayload:
    text = _with_mention(user_id, ":thinking_face: Thinking...")
    return MessagePayload(
        body=text,
        fallback_text=text,
        metadata=Metadata(elapsed_seconds=0, tool_call_count=0, version_tag=version),
        actions=(_stop_button(key, job_id),),
    )


def build_progress_message(
    user_id: str | None,
    key: str,
    job_id: str,
    text: str,
    tool_info: str | None,
    elapsed_seconds: float,
    tool_call_count: int,
    version: str = "",
    max_length: int = MAX_TEXT_LENGTH,
) -> MessagePayload:
    header = _with_mention(user_id, ":hourglass_flowing_sand: Working...")
    tool_section = f"{tool_info}\n\n" if tool_info else ""
    overhead = len(header) + len(tool_section) + 10
    body = f"{header}\n\n{tool_section}"
    if text:
        body += f"> {truncate(text, max_length - overhead)}"
    return MessagePayload(
        body=body.rstrip(),
        fallback_text=_with_mention(user_id, "Working..."),
        metadata=Metadata(
            elapsed_seconds=elapsed_seconds,
            tool_call_count=tool_call_count,
            version_tag=version,
        ),
        actions=(_stop_button(key, job_id),),
    )


def build_result_message(
    user_id: str | None,
    text: str,
    duration_seconds: float,
    tool_call_count: int,
    version: str = "",
    max_length: int = MAX_TEXT_LENGTH,
) -> tuple[MessagePayload, list[str]]:
    """Return the primary payload plus any overflow chunks to post as follow-ups."""
    mention = user_mention(user_id)
    chunks = split_text(text, max_length - len(mention) - 10)
    first = f"{mention}\n\n{chunks[0]}" if mention else chunks[0]
    preview = f"{text[:_FALLBACK_PREVIEW_CHARS]}{_ELLIPSIS if len(text) > _FALLBACK_PREVIEW_CHARS else ''}"
    payload = MessagePayload(
        body=first or mention or "(empty response)",
        fallback_text=_with_mention(user_id, preview or "(empty response)"),
        metadata=Metadata(
            elapsed_seconds=duration_seconds,
            tool_call_count=tool_call_count,
            finished=True,
            version_tag=version,
        ),
    )
    return payload, chunks[1:]


def build_chunk_message(text: str) -> MessagePayload:
    return MessagePayload(body=text, fallback_text=text)


def build_error_message(user_id: str | None, error: str) -> MessagePayload:
    detail = error[:_MAX_ERROR_CHARS] or "unknown error"
    return MessagePayload(
        body=_with_mention(user_id, f":x: Something went wrong:\n```{detail}```"),
        fallback_text=_with_mention(user_id, "Something went wrong."),
    )


def build_minimal_error_text(user_id: str | None) -> str:
    return _with_mention(user_id, "An error occurred (details could not be shown)")


def build_aborted_message(user_id: str | None) -> MessagePayload:
    return MessagePayload(
        body=_with_mention(user_id, ":black_square_for_stop: Stopped."),
        fallback_text="Stopped.",
    )


def build_queued_message(
    user_id: str | None, key: str, job_id: str, position: int,
) -> MessagePayload:
    place = "You're next" if position <= 1 else f"You're number {position} in line"
    text = _with_mention(
        user_id,
        f":clipboard: Another request is still running in this thread. {place}.\n"
        "Press *Process now* to run this one immediately.",
    )
    value = encode_action_value(key, job_id)
    return MessagePayload(
        body=text,
        fallback_text=_with_mention(user_id, f"Queued ({place.lower()})"),
        actions=(
            Button(":zap: Process now", PROCESS_NOW_ACTION, value, style="primary"),
            Button(":x: Cancel", CANCEL_QUEUED_ACTION, value),
        ),
    )


def build_cancelled_message(user_id: str | None, reason: str | None = None) -> MessagePayload:
    text = "Request cancelled." if reason is None else f"Request cancelled: {reason}."
    return MessagePayload(
        body=_with_mention(user_id, f":no_entry_sign: {text}"),
        fallback_text=text,
    )


def build_empty_query_text(user_id: str | None) -> str:
    return _with_mention(user_id, "What can I help you with? Include a message with the mention.")
