from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from vibecoder.chat.client import ChatTransportError


class FakeChatClient:
    """In-memory ChatClient. Every call yields to the loop once, like a network call would."""

    def __init__(self) -> None:
        self.posts: list[dict] = []
        self.updates: list[dict] = []
        self.messages: dict[str, str] = {}
        self.blocks: dict[str, list[dict]] = {}
        self.fail_post: Callable[[dict], bool] | None = None
        self.fail_update: Callable[[dict], bool] | None = None
        self.post_delay = 0.0
        self.update_delay = 0.0
        self._counter = 0

    async def post_message(self, channel, text, blocks=None, thread_ts=None):
        call = {"channel": channel, "text": text, "blocks": blocks, "thread_ts": thread_ts}
        await asyncio.sleep(self.post_delay)
        if self.fail_post and self.fail_post(call):
            raise ChatTransportError("post failed")
        self._counter += 1
        ts = f"100.{self._counter:04d}"
        call["ts"] = ts
        self.posts.append(call)
        self.messages[ts] = text
        self.blocks[ts] = blocks or []
        return ts

    async def update_message(self, channel, ts, text, blocks=None):
        call = {"channel": channel, "ts": ts, "text": text, "blocks": blocks}
        await asyncio.sleep(self.update_delay)
        if self.fail_update and self.fail_update(call):
            raise ChatTransportError("update failed")
        self.updates.append(call)
        self.messages[ts] = text
        self.blocks[ts] = blocks or []

    def body(self, ts: str) -> str:
        """Section text of the latest version of a message."""
        return "\n".join(
            b["text"]["text"] for b in self.blocks.get(ts, []) if b.get("type") == "section"
        )

    def context(self, ts: str) -> str:
        return "\n".join(
            e["text"]
            for b in self.blocks.get(ts, [])
            if b.get("type") == "context"
            for e in b["elements"]
        )

    def action_ids(self, ts: str) -> list[str]:
        return [
            e["action_id"]
            for b in self.blocks.get(ts, [])
            if b.get("type") == "actions"
            for e in b["elements"]
        ]


@pytest.fixture
def chat():
    return FakeChatClient()
