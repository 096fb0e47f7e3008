"""Claude CLI agent speaking the NDJSON ``stream-json`` output format.

Recv: NDJSON lines with types:
  system    : init (carries session_id), compact_boundary
  assistant : content blocks (text, thinking, tool_use, ...)
  user      : tool results replayed back (skipped)
  result    : turn complete (subtype: success | error_max_turns |
              error_during_execution | ...)
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from typing import Any, AsyncIterator

from .base import (
    AgentEvent,
    AssistantText,
    BaseAgent,
    SessionToken,
    ToolUse,
    TurnComplete,
    _tail,
    _try_parse_json,
)

log = logging.getLogger("vibecoder")

_CLAUDE_BASE_FLAGS = [
    "--verbose",
    "--output-format", "stream-json",
    "--dangerously-skip-permissions",
]
_STREAM_LIMIT = 10 * 1024 * 1024  # agent JSON lines can be large


class ClaudeStreamParser:
    """Turns stream-json lines into agent events for a single turn."""

    def __init__(self) -> None:
        self.session_id: str | None = None
        self.last_text = ""
        self._last_message_id: str | None = None
        self._seen_tool_ids: set[str] = set()
        self._seen_tools = 0

    def feed(self, line: str) -> list[AgentEvent]:
        if not line.strip():
            return []
        obj = _try_parse_json(line, agent="claude", context="stream")
        if not isinstance(obj, dict):
            return []

        events: list[AgentEvent] = []
        sid = obj.get("session_id")
        if isinstance(sid, str) and sid and sid != self.session_id:
            self.session_id = sid
            events.append(SessionToken(session_id=sid))

        event_type = obj.get("type", "")
        if event_type == "result":
            events.append(self._turn_complete(obj))
        elif event_type == "assistant":
            events.extend(self._assistant_events(obj.get("message") or {}))
        elif event_type == "system":
            log.debug("[claude] system event subtype=%s", obj.get("subtype", ""))
        elif event_type not in ("user", "stream_event"):
            log.debug("[claude] unhandled event type=%s keys=%s", event_type, sorted(obj.keys()))
        return events

    def _turn_complete(self, obj: dict[str, Any]) -> TurnComplete:
        subtype = obj.get("subtype", "success")
        text = obj.get("result") or ""
        if obj.get("is_error", False) or subtype != "success":
            errors = obj.get("errors") or []
            detail = text or "; ".join(str(e) for e in errors) or subtype
            log.warning("[claude] turn complete with error subtype=%s session_id=%s", subtype, self.session_id)
            return TurnComplete(text=text, session_id=self.session_id, success=False, error=detail)
        log.info("[claude] turn complete session_id=%s", self.session_id)
        return TurnComplete(text=text or self.last_text, session_id=self.session_id)

    def _assistant_events(self, msg: dict[str, Any]) -> list[AgentEvent]:
        content = msg.get("content") or []
        if not isinstance(content, list) or not content:
            return []

        msg_id = msg.get("id")
        if msg_id and msg_id != self._last_message_id:
            self._last_message_id = msg_id
            self._seen_tools = 0

        events: list[AgentEvent] = []
        tools = [p for p in content if isinstance(p, dict) and p.get("type") == "tool_use"]
        for index, tool in enumerate(tools):
            tool_id = tool.get("id")
            if tool_id:
                if tool_id in self._seen_tool_ids:
                    continue
                self._seen_tool_ids.add(tool_id)
            elif index < self._seen_tools:
                continue
            tool_input = tool.get("input")
            events.append(ToolUse(
                name=tool.get("name", ""),
                input=tool_input if isinstance(tool_input, dict) else {},
            ))
        self._seen_tools = max(self._seen_tools, len(tools))

        texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
        text = "".join(texts)
        if text and text != self.last_text:
            self.last_text = text
            events.append(AssistantText(text=text))
        return events


class ClaudeAgent(BaseAgent):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        cwd: str | None = None,
        model: str | None = None,
        idle_timeout: float = 1800.0,
    ) -> None:
        self.binary = binary
        self.cwd = cwd
        self.model = model
        self.idle_timeout = idle_timeout

    def _build_args(self, prompt: str, session_id: str | None) -> list[str]:
        args = [self.binary]
        if session_id:
            args.extend(["--resume", session_id])
        args.extend(["-p", prompt, *_CLAUDE_BASE_FLAGS])
        if self.model:
            args.extend(["--model", self.model])
        return args

    async def stream(
        self,
        prompt: str,
        session_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentEvent]:
        args = self._build_args(prompt, session_id)
        if shutil.which(args[0]) is None:
            raise FileNotFoundError(
                f"Agent '{self.name}' requires '{args[0]}' but it was not found on PATH."
            )
        log.info("[%s] started%s", self.name, f" (resume {session_id[:12]})" if session_id else "")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=self.cwd,
            limit=_STREAM_LIMIT,
        )
        stderr_lines: list[str] = []
        stderr_task = asyncio.create_task(_drain_stderr(proc, stderr_lines, self.name))
        cancel_task = asyncio.create_task(_terminate_on_cancel(proc, cancel, self.name)) if cancel else None
        parser = ClaudeStreamParser()
        saw_result = False
        timeout = self.idle_timeout or None
        try:
            try:
                loop = asyncio.get_running_loop()
                async with asyncio.timeout(timeout) as deadline:
                    assert proc.stdout is not None
                    async for raw_line in proc.stdout:
                        if timeout:
                            deadline.reschedule(loop.time() + timeout)
                        for event in parser.feed(raw_line.decode(errors="replace")):
                            saw_result = saw_result or isinstance(event, TurnComplete)
                            yield event
                        if saw_result:
                            break
                    if not saw_result:
                        await proc.wait()
            except TimeoutError:
                log.warning("[%s] idle timeout after %.1fs", self.name, self.idle_timeout)
                yield TurnComplete(
                    session_id=parser.session_id,
                    success=False,
                    error=f"No output from agent for {self.idle_timeout:.0f}s",
                )
                return

            if cancel is not None and cancel.is_set():
                log.info("[%s] turn cancelled", self.name)
                return
            if not saw_result:
                log.warning(
                    "[%s] exit %s before result, stderr_tail=%s",
                    self.name, proc.returncode, _tail("".join(stderr_lines)),
                )
                raise RuntimeError(
                    f"{self.name} exited with code {proc.returncode} before producing a result"
                )
            log.info("[%s] finished", self.name)
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except TimeoutError:
                    proc.kill()
                    await proc.wait()
            stderr_task.cancel()


async def _drain_stderr(proc: asyncio.subprocess.Process, sink: list[str], name: str) -> None:
    """Read stderr in the background to prevent pipe buffer deadlock."""
    if proc.stderr is None:
        return
    async for raw_line in proc.stderr:
        line = raw_line.decode(errors="replace")
        sink.append(line)
        log.debug("[%s] stderr: %s", name, line.rstrip())


async def _terminate_on_cancel(proc: asyncio.subprocess.Process, cancel: asyncio.Event, name: str) -> None:
    await cancel.wait()
    if proc.returncode is None:
        log.info("[%s] cancel requested, terminating pid %s", name, proc.pid)
        proc.terminate()
