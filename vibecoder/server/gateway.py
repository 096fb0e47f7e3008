from __future__ import annotations

import asyncio
import logging
import re

from ..chat.client import ChatClient, ChatTransportError
from ..chat.messages import (
    build_empty_query_text,
    build_queued_message,
    decode_action_value,
)
from ..chat.queue import ConversationQueue, Job, new_job_id
from .orchestrator import JobOrchestrator
from .sessions import SessionStore
from .settings import Settings

log = logging.getLogger("vibecoder")

_MENTION_RE = re.compile(r"<@[A-Z0-9]+(?:\|[^>]*)?>")

EXPIRED_REASON = "it waited in the queue for too long"


def strip_mentions(text: str | None) -> str:
    return _MENTION_RE.sub("", text or "").strip()


class Gateway:
    """Turns inbound chat events and button presses into queue and orchestrator calls."""

    def __init__(
        self,
        queue: ConversationQueue,
        sessions: SessionStore,
        orchestrator: JobOrchestrator,
        client: ChatClient,
        settings: Settings | None = None,
    ) -> None:
        self.queue = queue
        self.sessions = sessions
        self.orchestrator = orchestrator
        self.client = client
        self.settings = settings or Settings()

    async def handle_mention(
        self,
        channel: str,
        user_id: str,
        text: str,
        ts: str,
        thread_ts: str | None = None,
    ) -> Job | None:
        root = thread_ts or ts
        query = strip_mentions(text)
        if not query:
            try:
                await self.client.post_message(channel, build_empty_query_text(user_id), thread_ts=root)
            except ChatTransportError as e:
                log.warning("[%s:%s] empty-query reply failed: %s", channel, root, e)
            return None

        job = Job(id=new_job_id(), query=query, user_id=user_id, channel=channel, thread_ts=root)
        log.info("[%s] mention from %s: %s", job.key, user_id, query[:80])
        if not self.queue.is_busy(job.key):
            renderer = self.orchestrator.admit(job)
            if renderer is not None:
                self.orchestrator.spawn(job, renderer)
                return job
        await self._enqueue(job)
        return job

    async def _enqueue(self, job: Job) -> None:
        key = job.key
        guess = self.queue.queue_length(key) + 1
        notice = build_queued_message(job.user_id, key, job.id, guess)
        try:
            job.message_ts = await self.client.post_message(
                job.channel, notice.fallback_text, notice.to_blocks(), thread_ts=job.thread_ts,
            )
        except ChatTransportError as e:
            log.warning("[%s] queued notice for job %s failed: %s", key, job.id, e)
        position = self.queue.enqueue(key, job)
        log.info("[%s] queued job %s at position %d", key, job.id, position)

        # The running job may have finished while the notice was being posted.
        if self.orchestrator.drain(key) is not None:
            return
        if job.message_ts and position != guess:
            notice = build_queued_message(job.user_id, key, job.id, position)
            try:
                await self.client.update_message(
                    job.channel, job.message_ts, notice.fallback_text, notice.to_blocks(),
                )
            except ChatTransportError as e:
                log.warning("[%s] queued notice update failed: %s", key, e)

    # -- button actions ------------------------------------------------------

    async def handle_stop(self, value: str | None, user_id: str | None = None) -> bool:
        decoded = decode_action_value(value)
        if decoded is None:
            log.warning("stop: bad action value %r", value)
            return False
        key, job_id = decoded
        return await self.orchestrator.abort(key, job_id, user_id)

    async def handle_process_now(self, value: str | None, user_id: str | None = None) -> bool:
        decoded = decode_action_value(value)
        if decoded is None:
            log.warning("process now: bad action value %r", value)
            return False
        key, job_id = decoded
        return await self.orchestrator.process_now(key, job_id, user_id)

    async def handle_cancel_queued(self, value: str | None, user_id: str | None = None) -> bool:
        decoded = decode_action_value(value)
        if decoded is None:
            log.warning("cancel: bad action value %r", value)
            return False
        key, job_id = decoded
        job = self.queue.get_job(key, job_id)
        if not self.queue.cancel(key, job_id):
            log.info("[%s] cancel ignored: job %s is not queued", key, job_id)
            return False
        log.info("[%s] queued job %s cancelled by %s", key, job_id, user_id)
        if job is not None:
            await self.orchestrator.mark_cancelled(job, user_id=user_id)
        return True

    # -- housekeeping --------------------------------------------------------

    async def cleanup_once(self, now: float | None = None) -> None:
        expired = self.queue.cleanup_all(float(self.settings.get("queue.max_age")), now=now)
        for job in expired:
            await self.orchestrator.mark_cancelled(job, EXPIRED_REASON)
        self.sessions.cleanup_old_sessions(float(self.settings.get("sessions.max_age")), now=now)

    async def run_cleanup_loop(self) -> None:
        interval = float(self.settings.get("queue.cleanup_interval"))
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_once()
            except Exception:
                log.exception("cleanup sweep failed")
