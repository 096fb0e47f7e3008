from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import aiohttp
from slack_sdk.errors import SlackApiError

if TYPE_CHECKING:
    from slack_sdk.web.async_client import AsyncWebClient


class ChatTransportError(Exception):
    """A chat platform call failed (network, permission, rate limit, ...)."""


class ChatClient(Protocol):
    async def post_message(
        self,
        channel: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> str | None:
        """Post a new message and return its handle (Slack ``ts``)."""

    async def update_message(
        self,
        channel: str,
        ts: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> None:
        """Replace the content of an existing message."""


class SlackChatClient:
    """ChatClient backed by ``slack_sdk``'s async web client."""

    def __init__(self, web_client: AsyncWebClient) -> None:
        self._web = web_client

    async def post_message(
        self,
        channel: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> str | None:
        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if blocks is not None:
            kwargs["blocks"] = blocks
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        try:
            resp = await self._web.chat_postMessage(**kwargs)
        except SlackApiError as e:
            raise ChatTransportError(f"chat.postMessage failed: {e.response.get('error', e)}") from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ChatTransportError(f"chat.postMessage failed: {e}") from e
        return resp.get("ts")

    async def update_message(
        self,
        channel: str,
        ts: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
    ) -> None:
        try:
            await self._web.chat_update(channel=channel, ts=ts, text=text, blocks=blocks or [])
        except SlackApiError as e:
            raise ChatTransportError(f"chat.update failed: {e.response.get('error', e)}") from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ChatTransportError(f"chat.update failed: {e}") from e
