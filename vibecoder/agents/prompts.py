from __future__ import annotations

import json
import logging
from pathlib import Path

log = logging.getLogger("vibecoder")

_FALLBACK_AUTHOR = "vibecoder <vibecoder@users.noreply.github.com>"
_GITHUB_USERS_FILE = "github-users.json"


def load_github_users(project_dir: str | Path) -> dict[str, str]:
    """Load the Slack user id -> GitHub username map. Missing or broken file gives {}."""
    path = Path(project_dir) / _GITHUB_USERS_FILE
    if not path.exists():
        log.debug("no %s in %s", _GITHUB_USERS_FILE, project_dir)
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        log.warning("failed to read %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def git_author(slack_user_id: str | None, users: dict[str, str]) -> str:
    """Return a ``git --author`` value for the Slack user, or the fallback identity."""
    username = users.get(slack_user_id or "")
    if not username:
        return _FALLBACK_AUTHOR
    return f"{username} <{username}@users.noreply.github.com>"


def _restart_section(
    channel: str | None, thread_ts: str | None, safe_commit: str | None, service_name: str,
) -> str:
    commit = safe_commit or "$(git rev-parse HEAD)"
    lines = [
        f"=== Restarting {service_name} ===",
        f"If the user asks to restart {service_name} itself, run the restarter; it detaches",
        "from this process, restarts the service, health-checks it and rolls back on failure.",
        "",
        "Usage: vibecoder restart <CHANNEL_ID> <THREAD_TS> <SAFE_COMMIT_HASH>",
        "- THREAD_TS must be the thread this request came from, or status messages go elsewhere.",
        "- SAFE_COMMIT_HASH is the commit the service was started from, not the current HEAD.",
    ]
    if channel:
        lines.append(f"- Current channel id: {channel}")
    if thread_ts:
        lines.append(f"- Current thread ts: {thread_ts}")
    if safe_commit:
        lines.append(f"- Commit at service start: {safe_commit}")
    lines.append(
        f'Example: vibecoder restart "{channel or "<CHANNEL_ID>"}" "{thread_ts or "<THREAD_TS>"}" "{commit}"'
    )
    return "\n".join(lines)


def build_system_context(
    channel: str | None = None,
    thread_ts: str | None = None,
    safe_commit: str | None = None,
    author: str = _FALLBACK_AUTHOR,
    service_name: str = "vibecoder",
) -> str:
    sections = [
        "=== System prompt ===\n"
        "These are system instructions. Follow them, but do not answer them directly.",
        "=== Environment ===\n"
        "- You are running on a separate server, launched through the Claude CLI by a Slack bot.\n"
        "- The working directory may be the bot's own checkout; work out from the request which "
        "repository is meant.",
        "=== Response format ===\n"
        "- Reply in plain text without markdown. Code blocks are fine.\n"
        "- If context is missing, read the Slack thread and nearby messages.",
        "=== Commits ===\n"
        f'- Commit with --author "{author}".\n'
        "- When changing this bot, bump the version following SemVer in the same commit.",
        _restart_section(channel, thread_ts, safe_commit, service_name),
    ]
    return "\n\n".join(sections)


def build_prompt(
    query: str,
    channel: str | None = None,
    thread_ts: str | None = None,
    safe_commit: str | None = None,
    author: str = _FALLBACK_AUTHOR,
    service_name: str = "vibecoder",
) -> str:
    """Append the system context to the user's query."""
    context = build_system_context(channel, thread_ts, safe_commit, author, service_name)
    return f"{query}\n\n---\n{context}"
