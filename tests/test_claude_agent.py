from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from vibecoder.agents import create_agent
from vibecoder.agents.base import AssistantText, SessionToken, ToolUse, TurnComplete
from vibecoder.agents.claude import ClaudeAgent, ClaudeStreamParser
from vibecoder.server.settings import Settings


def _line(obj: dict) -> str:
    return json.dumps(obj) + "\n"


def _assistant(msg_id: str, *parts: dict) -> str:
    return _line({"type": "assistant", "session_id": "sid-1", "message": {"id": msg_id, "content": list(parts)}})


def _write_fake_claude(path: Path, body: str) -> Path:
    path.write_text(
        f"#!{sys.executable}\n"
        "import json, pathlib, sys, time\n"
        "def emit(obj):\n"
        "    print(json.dumps(obj), flush=True)\n"
        + body
    )
    path.chmod(0o755)
    return path


# -- parser ------------------------------------------------------------------


def test_parser_emits_session_token_once():
    p = ClaudeStreamParser()
    events = p.feed(_line({"type": "system", "subtype": "init", "session_id": "sid-1"}))
    assert events == [SessionToken(session_id="sid-1")]
    assert p.feed(_line({"type": "system", "subtype": "init", "session_id": "sid-1"})) == []


def test_parser_dedupes_tool_use_by_id():
    p = ClaudeStreamParser()
    tool = {"type": "tool_use", "id": "tu1", "name": "Bash", "input": {"command": "ls"}}
    first = p.feed(_assistant("m1", tool))
    assert ToolUse(name="Bash", input={"command": "ls"}) in first
    assert [e for e in p.feed(_assistant("m1", tool)) if isinstance(e, ToolUse)] == []
    second = {"type": "tool_use", "id": "tu2", "name": "Read", "input": {"file_path": "a.py"}}
    assert [e.name for e in p.feed(_assistant("m2", second)) if isinstance(e, ToolUse)] == ["Read"]


def test_parser_text_events_carry_full_message_text():
    p = ClaudeStreamParser()
    p.feed(_assistant("m1", {"type": "text", "text": "Hello"}))
    events = p.feed(_assistant("m1", {"type": "text", "text": "Hello"}, {"type": "text", "text": " world"}))
    assert events == [AssistantText(text="Hello world")]
    assert p.feed(_assistant("m1", {"type": "text", "text": "Hello world"})) == []


def test_parser_result_success_falls_back_to_last_text():
    p = ClaudeStreamParser()
    p.feed(_assistant("m1", {"type": "text", "text": "partial"}))
    (done,) = p.feed(_line({"type": "result", "subtype": "success", "result": "", "session_id": "sid-1"}))
    assert done == TurnComplete(text="partial", session_id="sid-1")


def test_parser_result_error():
    p = ClaudeStreamParser()
    events = p.feed(_line({
        "type": "result", "subtype": "error_max_turns", "is_error": True, "session_id": "sid-9",
    }))
    done = events[-1]
    assert isinstance(done, TurnComplete)
    assert not done.success
    assert done.error == "error_max_turns"
    assert done.session_id == "sid-9"


def test_parser_ignores_noise():
    p = ClaudeStreamParser()
    assert p.feed("") == []
    assert p.feed("not json\n") == []
    assert p.feed(_line({"type": "user", "message": {}})) == []


# -- arguments and factory ---------------------------------------------------


def test_build_args_resume_and_model():
    agent = ClaudeAgent(binary="claude", model="opus")
    args = agent._build_args("do it", "sid-1")
    assert args[:3] == ["claude", "--resume", "sid-1"]
    assert args[3:5] == ["-p", "do it"]
    assert "--output-format" in args and "stream-json" in args
    assert "--dangerously-skip-permissions" in args
    assert args[-2:] == ["--model", "opus"]
    assert "--resume" not in ClaudeAgent()._build_args("x", None)


def test_create_agent_uses_settings():
    agent = create_agent(Settings({"agent.binary": "/opt/claude", "agent.cwd": "/srv", "agent.idle_timeout": 60}))
    assert isinstance(agent, ClaudeAgent)
    assert agent.binary == "/opt/claude"
    assert agent.cwd == "/srv"
    assert agent.idle_timeout == 60.0
    with pytest.raises(ValueError):
        create_agent(Settings({"agent.type": "nope"}))


# -- subprocess ----------------------------------------------------------------


async def _collect(agent: ClaudeAgent, prompt: str = "hi", session_id: str | None = None, cancel=None):
    events = []
    async for event in agent.stream(prompt, session_id, cancel):
        events.append(event)
    return events


@pytest.mark.asyncio
async def test_stream_runs_cli_and_yields_events(tmp_path):
    argv_file = tmp_path / "argv.json"
    script = _write_fake_claude(tmp_path / "claude", (
        f"pathlib.Path({str(argv_file)!r}).write_text(json.dumps(sys.argv[1:]))\n"
        "emit({'type': 'system', 'subtype': 'init', 'session_id': 'sid-42'})\n"
        "emit({'type': 'assistant', 'session_id': 'sid-42', 'message': {'id': 'm1', 'content': [\n"
        "    {'type': 'tool_use', 'id': 'tu1', 'name': 'Bash', 'input': {'command': 'ls'}}]}})\n"
        "emit({'type': 'assistant', 'session_id': 'sid-42', 'message': {'id': 'm2', 'content': [\n"
        "    {'type': 'text', 'text': 'All done.'}]}})\n"
        "emit({'type': 'result', 'subtype': 'success', 'result': 'All done.', 'session_id': 'sid-42'})\n"
    ))
    agent = ClaudeAgent(binary=str(script), cwd=str(tmp_path))
    events = await _collect(agent, "fix it", session_id="sid-41")

    assert events == [
        SessionToken(session_id="sid-42"),
        ToolUse(name="Bash", input={"command": "ls"}),
        AssistantText(text="All done."),
        TurnComplete(text="All done.", session_id="sid-42"),
    ]
    argv = json.loads(argv_file.read_text())
    assert argv[:4] == ["--resume", "sid-41", "-p", "fix it"]


@pytest.mark.asyncio
async def test_stream_exit_without_result_raises(tmp_path):
    script = _write_fake_claude(tmp_path / "claude", (
        "emit({'type': 'system', 'subtype': 'init', 'session_id': 'sid-1'})\n"
        "sys.stderr.write('boom\\n')\n"
        "raise SystemExit(3)\n"
    ))
    with pytest.raises(RuntimeError, match="code 3"):
        await _collect(ClaudeAgent(binary=str(script)))


@pytest.mark.asyncio
async def test_stream_missing_binary(tmp_path):
    with pytest.raises(FileNotFoundError):
        await _collect(ClaudeAgent(binary=str(tmp_path / "does-not-exist")))


@pytest.mark.asyncio
async def test_cancel_kills_process_and_ends_without_result(tmp_path):
    script = _write_fake_claude(tmp_path / "claude", (
        "emit({'type': 'system', 'subtype': 'init', 'session_id': 'sid-1'})\n"
        "time.sleep(30)\n"
        "emit({'type': 'result', 'subtype': 'success', 'result': 'late', 'session_id': 'sid-1'})\n"
    ))
    cancel = asyncio.Event()
    events = []
    async with asyncio.timeout(10):
        async for event in ClaudeAgent(binary=str(script)).stream("hi", None, cancel):
            events.append(event)
            cancel.set()
    assert events == [SessionToken(session_id="sid-1")]


@pytest.mark.asyncio
async def test_idle_timeout_yields_failed_turn(tmp_path):
    script = _write_fake_claude(tmp_path / "claude", (
        "emit({'type': 'system', 'subtype': 'init', 'session_id': 'sid-1'})\n"
        "time.sleep(30)\n"
    ))
    async with asyncio.timeout(10):
        events = await _collect(ClaudeAgent(binary=str(script), idle_timeout=0.3))
    done = events[-1]
    assert isinstance(done, TurnComplete)
    assert not done.success
    assert "No output" in done.error
    assert done.session_id == "sid-1"
