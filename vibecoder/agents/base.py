from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

log = logging.getLogger("vibecoder")


def _try_parse_json(line: str, *, agent: str, context: str) -> Any | None:
    """Try to parse a JSON line, logging at DEBUG on failure. Returns None on error."""
    try:
        return json.loads(line)
    except (json.JSONDecodeError, ValueError):
        truncated = line[:200] + "..." if len(line) > 200 else line
        log.debug("[%s] json parse failed (%s): %s", agent, context, truncated.rstrip())
        return None


def _tail(text: str, limit: int = 400) -> str:
    if not text:
        return ""
    return text[-limit:].replace("\r", "\\r").replace("\n", "\\n")


@dataclass
class AgentEvent:
    """Base class for events yielded by a streaming agent."""


@dataclass
class SessionToken(AgentEvent):
    """Opaque id that lets a later invocation resume this conversation's context."""
    session_id: str


@dataclass
class ToolUse(AgentEvent):
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssistantText(AgentEvent):
    """Full text of the assistant message currently being produced."""
    text: str


@dataclass
class TurnComplete(AgentEvent):
    text: str = ""
    session_id: str | None = None
    success: bool = True
    error: str | None = None


class BaseAgent(ABC):
    name: str = "agent"

    @abstractmethod
    def stream(
        self,
        prompt: str,
        session_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run one turn and yield events, ending with exactly one TurnComplete.

        Setting ``cancel`` stops the turn; the stream then ends without a
        TurnComplete. Failures of the invocation itself are raised.
        """
