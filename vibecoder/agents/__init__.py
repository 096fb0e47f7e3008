from __future__ import annotations

from typing import TYPE_CHECKING

from .base import BaseAgent
from .claude import ClaudeAgent

if TYPE_CHECKING:
    from ..server.settings import Settings

AGENT_CLASSES: dict[str, type[BaseAgent]] = {
    "claude": ClaudeAgent,
}


def create_agent(settings: Settings) -> BaseAgent:
    agent_type = settings.get("agent.type")
    if agent_type not in AGENT_CLASSES:
        raise ValueError(f"Unknown agent type: {agent_type!r}")
    return AGENT_CLASSES[agent_type](
        binary=settings.get("agent.binary"),
        cwd=settings.get("agent.cwd"),
        model=settings.get("agent.model"),
        idle_timeout=float(settings.get("agent.idle_timeout")),
    )
