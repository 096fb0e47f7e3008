"""Lifecycle of one job's status message.

The renderer moves STARTING -> LIVE -> TERMINAL. Entering TERMINAL is a
synchronous compare-and-set that also stops the refresh timer, and every
write to the message goes through ``_send_lock``. A refresh tick that is
already sending when the job finishes therefore always completes before the
terminal render goes out, and ticks still waiting on the lock see TERMINAL
and drop out.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from .client import ChatClient, ChatTransportError
from .messages import (
    MAX_TEXT_LENGTH,
    MessagePayload,
    build_aborted_message,
    build_chunk_message,
    build_error_message,
    build_minimal_error_text,
    build_progress_message,
    build_result_message,
    build_thinking_message,
    format_duration,
)

log = logging.getLogger("vibecoder")

# Scanned by the restarter's health check; logged once per completed job.
SUCCESS_MARKER = "TURNAROUND_SUCCESS"


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class RenderState(str, Enum):
    STARTING = "starting"
    LIVE = "live"
    TERMINAL = "terminal"


class ResponseRenderer:
    def __init__(
        self,
        client: ChatClient,
        channel: str,
        thread_ts: str,
        user_id: str,
        key: str,
        job_id: str,
        version: str = "",
        refresh_interval: float = 1.0,
        max_text_length: int = MAX_TEXT_LENGTH,
        final_resend_delay: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.channel = channel
        self.thread_ts = thread_ts
        self.user_id = user_id
        self.key = key
        self.job_id = job_id
        self.version = version
        self.refresh_interval = refresh_interval
        self.max_text_length = max_text_length
        self.final_resend_delay = final_resend_delay
        self._clock = clock

        self.handle: str | None = None
        self.state = RenderState.STARTING
        self.last_payload: MessagePayload | None = None
        self._started_at = clock()
        self._send_lock = asyncio.Lock()
        self._timer_task: asyncio.Task | None = None
        self._refreshing = False
        self._resend_task: asyncio.Task | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state is RenderState.TERMINAL

    def elapsed_seconds(self) -> int:
        return int(round(self._clock() - self._started_at))

    # -- start ---------------------------------------------------------------

    async def start(self, payload: MessagePayload | None = None) -> str | None:
        """Post the initial "thinking" message. Returns its handle, or None on failure."""
        self._started_at = self._clock()
        payload = payload or self._thinking_payload()
        try:
            handle = await self._client.post_message(
                self.channel, payload.fallback_text, payload.to_blocks(), thread_ts=self.thread_ts,
            )
        except ChatTransportError as e:
            log.error("[%s] initial post failed for job %s: %s", self.key, self.job_id, e)
            handle = None
        if not handle:
            log.error("[%s] no message handle for job %s", self.key, self.job_id)
            self.state = RenderState.TERMINAL
            return None
        return await self._go_live(handle, payload)

    async def start_reusing(self, handle: str) -> str | None:
        """Turn an existing message (the queued notice) into the live status message."""
        self._started_at = self._clock()
        payload = self._thinking_payload()
        try:
            await self._client.update_message(
                self.channel, handle, payload.fallback_text, payload.to_blocks(),
            )
        except ChatTransportError as e:
            log.error("[%s] could not reuse message %s for job %s: %s", self.key, handle, self.job_id, e)
            self.state = RenderState.TERMINAL
            return None
        return await self._go_live(handle, payload)

    async def _go_live(self, handle: str, payload: MessagePayload) -> str:
        self.handle = handle
        if self.state is RenderState.TERMINAL:
            # Aborted while the first post was in flight; show that instead.
            if self.last_payload is not None:
                async with self._send_lock:
                    await self._send_quietly(self.last_payload, "deferred terminal")
            return handle
        self.state = RenderState.LIVE
        self.last_payload = payload
        self._start_timer()
        return handle

    def _thinking_payload(self) -> MessagePayload:
        return build_thinking_message(self.user_id, self.key, self.job_id, self.version)

    # -- live updates --------------------------------------------------------

    async def render_progress(
        self,
        text: str,
        tool_info: str | None,
        elapsed_seconds: float,
        tool_call_count: int,
    ) -> None:
        if self.state is not RenderState.LIVE:
            return
        payload = build_progress_message(
            self.user_id,
            self.key,
            self.job_id,
            text,
            tool_info,
            elapsed_seconds,
            tool_call_count,
            version=self.version,
            max_length=self.max_text_length,
        )
        self.last_payload = payload
        async with self._send_lock:
            if self.state is not RenderState.LIVE:
                return
            await self._send_quietly(payload, "progress")

    async def refresh_timestamp_only(self) -> bool:
        """Re-send the last payload with only its elapsed time bumped.

        Returns False when nothing was sent. A failed update disables the
        timer for good: the message is treated as lost.
        """
        if self.state is not RenderState.LIVE or self.last_payload is None:
            return False
        self._refreshing = True
        try:
            async with self._send_lock:
                if self.state is not RenderState.LIVE or self.last_payload is None:
                    return False
                payload = self.last_payload.with_elapsed(self.elapsed_seconds())
                try:
                    await self._send(payload)
                except ChatTransportError as e:
                    log.warning("[%s] timestamp refresh failed, stopping timer: %s", self.key, e)
                    self.stop_timer()
                    return False
        finally:
            self._refreshing = False
        return True

    # -- terminal states -----------------------------------------------------

    def _enter_terminal(self) -> bool:
        if self.state is RenderState.TERMINAL:
            return False
        self.state = RenderState.TERMINAL
        self.stop_timer()
        return True

    async def render_result(self, text: str, duration_seconds: float, tool_call_count: int) -> bool:
        """Show the final answer, spilling overflow into follow-up thread messages.

        Returns True only if every message in the sequence was delivered.
        """
        if not self._enter_terminal() or self.handle is None:
            return False
        payload, overflow = build_result_message(
            self.user_id,
            text,
            duration_seconds,
            tool_call_count,
            version=self.version,
            max_length=self.max_text_length,
        )
        self.last_payload = payload
        total = len(overflow) + 1
        async with self._send_lock:
            try:
                await self._send(payload)
            except ChatTransportError as e:
                log.error("[%s] result update failed: %s", self.key, e)
                await self._show_error(str(e))
                return False
            for i, chunk in enumerate(overflow, start=2):
                message = build_chunk_message(chunk)
                try:
                    await self._client.post_message(
                        self.channel, message.fallback_text, message.to_blocks(), thread_ts=self.thread_ts,
                    )
                except ChatTransportError as e:
                    log.error("[%s] follow-up message %d/%d failed: %s", self.key, i, total, e)
                    await self._show_error(str(e))
                    return False

        if self.final_resend_delay > 0:
            self._resend_task = asyncio.create_task(
                self._resend_final(payload), name=f"resend-{self.job_id}",
            )
        log.info(
            "%s [%s] thread %s done (%s, %d tool calls, %d messages)",
            SUCCESS_MARKER,
            _utc_stamp(),
            self.key,
            format_duration(duration_seconds),
            tool_call_count,
            total,
        )
        return True

    async def render_error(self, message: str) -> None:
        if not self._enter_terminal():
            return
        if self.handle is None:
            self.last_payload = build_error_message(self.user_id, message)
            return
        async with self._send_lock:
            await self._show_error(message)

    async def render_aborted(self, user_id: str | None = None) -> bool:
        if not self._enter_terminal():
            return False
        payload = build_aborted_message(user_id or self.user_id)
        self.last_payload = payload
        if self.handle is None:
            return True
        async with self._send_lock:
            await self._send_quietly(payload, "aborted")
        return True

    async def _show_error(self, message: str) -> None:
        """Render an error payload, falling back to a bare text update. Caller holds the lock."""
        payload = build_error_message(self.user_id, message)
        self.last_payload = payload
        try:
            await self._send(payload)
            return
        except ChatTransportError as e:
            log.error("[%s] error update failed: %s", self.key, e)
        try:
            await self._client.update_message(
                self.channel, self.handle, build_minimal_error_text(self.user_id), [],
            )
        except ChatTransportError as e:
            log.error("[%s] minimal error update failed too: %s", self.key, e)

    async def _resend_final(self, payload: MessagePayload) -> None:
        await asyncio.sleep(self.final_resend_delay)
        async with self._send_lock:
            try:
                await self._send(payload)
            except ChatTransportError as e:
                log.debug("[%s] final re-send failed: %s", self.key, e)

    # -- plumbing ------------------------------------------------------------

    async def _send(self, payload: MessagePayload) -> None:
        if self.handle is None:
            log.debug("[%s] no message to update for job %s", self.key, self.job_id)
            return
        await self._client.update_message(
            self.channel, self.handle, payload.fallback_text, payload.to_blocks(),
        )

    async def _send_quietly(self, payload: MessagePayload, what: str) -> None:
        try:
            await self._send(payload)
        except ChatTransportError as e:
            log.warning("[%s] %s update failed: %s", self.key, what, e)

    def _start_timer(self) -> None:
        if self.refresh_interval > 0 and self._timer_task is None:
            self._timer_task = asyncio.create_task(self._refresh_loop(), name=f"refresh-{self.job_id}")

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            if self._timer_task is None or self.state is not RenderState.LIVE:
                return
            await self.refresh_timestamp_only()

    def stop_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        # A tick that is mid-send finishes and then sees the cleared handle.
        if not self._refreshing:
            task.cancel()

    def close(self) -> None:
        self.stop_timer()
        if self._resend_task is not None and not self._resend_task.done():
            self._resend_task.cancel()
