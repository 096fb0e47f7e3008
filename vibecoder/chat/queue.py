"""Per-conversation admission control and wait queue.

Every method is synchronous and never awaits, so on the single asyncio loop
each call runs to completion before any other callback can observe the
state. That is what makes ``try_admit`` an atomic check-and-set without a
lock.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .renderer import ResponseRenderer

log = logging.getLogger("vibecoder")


def conversation_key(channel: str, thread_ts: str) -> str:
    return f"{channel}:{thread_ts}"


def new_job_id() -> str:
    return uuid.uuid4().hex[:12]


class JobStatus(str, Enum):
    QUEUED = "queued"
    CANCELLED = "cancelled"


@dataclass
class Job:
    id: str
    query: str
    user_id: str
    channel: str
    thread_ts: str
    message_ts: str | None = None
    queued_at: float = field(default_factory=time.monotonic)
    status: JobStatus = JobStatus.QUEUED

    @property
    def key(self) -> str:
        return conversation_key(self.channel, self.thread_ts)


@dataclass
class _ConversationState:
    is_processing: bool = False
    current_job_id: str | None = None
    current_renderer: ResponseRenderer | None = None
    queue: list[Job] = field(default_factory=list)


class ConversationQueue:
    def __init__(self) -> None:
        self._conversations: dict[str, _ConversationState] = {}

    def _get_or_create(self, key: str) -> _ConversationState:
        state = self._conversations.get(key)
        if state is None:
            state = _ConversationState()
            self._conversations[key] = state
        return state

    def is_busy(self, key: str) -> bool:
        state = self._conversations.get(key)
        return state.is_processing if state else False

    def try_admit(self, key: str, renderer: ResponseRenderer | None, job_id: str) -> bool:
        """Claim the conversation's processing slot. False if already taken."""
        state = self._get_or_create(key)
        if state.is_processing:
            return False
        state.is_processing = True
        state.current_job_id = job_id
        state.current_renderer = renderer
        return True

    def supersede(self, key: str, renderer: ResponseRenderer | None, job_id: str) -> str | None:
        """Hand the slot straight to ``job_id`` without an intervening release.

        Returns the id of the job that held the slot, if any.
        """
        state = self._get_or_create(key)
        previous = state.current_job_id if state.is_processing else None
        state.is_processing = True
        state.current_job_id = job_id
        state.current_renderer = renderer
        return previous

    def current_renderer(self, key: str) -> ResponseRenderer | None:
        state = self._conversations.get(key)
        return state.current_renderer if state else None

    def current_job_id(self, key: str) -> str | None:
        state = self._conversations.get(key)
        return state.current_job_id if state else None

    def release(self, key: str) -> Job | None:
        """Free the slot and pop the next queued job, skipping cancelled ones."""
        state = self._conversations.get(key)
        if state is None:
            return None
        state.is_processing = False
        state.current_job_id = None
        state.current_renderer = None
        while state.queue:
            job = state.queue.pop(0)
            if job.status is JobStatus.QUEUED:
                return job
        return None

    def enqueue(self, key: str, job: Job) -> int:
        """Append ``job`` and return its 1-based position among live entries."""
        state = self._get_or_create(key)
        state.queue.append(job)
        return self.queue_length(key)

    def cancel(self, key: str, job_id: str) -> bool:
        state = self._conversations.get(key)
        if state is None:
            return False
        for job in state.queue:
            if job.id == job_id and job.status is JobStatus.QUEUED:
                job.status = JobStatus.CANCELLED
                return True
        return False

    def prioritize(self, key: str, job_id: str) -> Job | None:
        state = self._conversations.get(key)
        if state is None:
            return None
        for i, job in enumerate(state.queue):
            if job.id == job_id and job.status is JobStatus.QUEUED:
                return state.queue.pop(i)
        return None

    def get_job(self, key: str, job_id: str) -> Job | None:
        state = self._conversations.get(key)
        if state is None:
            return None
        return next((j for j in state.queue if j.id == job_id), None)

    def queue_length(self, key: str) -> int:
        state = self._conversations.get(key)
        if state is None:
            return 0
        return sum(1 for j in state.queue if j.status is JobStatus.QUEUED)

    def keys(self) -> list[str]:
        return list(self._conversations)

    def cleanup_stale(self, key: str, max_age: float, now: float | None = None) -> list[Job]:
        """Cancel queued jobs older than ``max_age`` and return them."""
        state = self._conversations.get(key)
        if state is None:
            return []
        now = time.monotonic() if now is None else now
        expired = []
        for job in state.queue:
            if job.status is JobStatus.QUEUED and now - job.queued_at > max_age:
                log.info("[%s] expiring queued job %s after %.0fs", key, job.id, now - job.queued_at)
                job.status = JobStatus.CANCELLED
                expired.append(job)
        if not state.is_processing and not any(j.status is JobStatus.QUEUED for j in state.queue):
            del self._conversations[key]
        return expired

    def cleanup_all(self, max_age: float, now: float | None = None) -> list[Job]:
        expired = []
        for key in self.keys():
            expired.extend(self.cleanup_stale(key, max_age, now=now))
        return expired

    def cancel_all_queued(self) -> list[Job]:
        """Cancel every waiting job in every conversation and return them."""
        cancelled = []
        for state in self._conversations.values():
            for job in state.queue:
                if job.status is JobStatus.QUEUED:
                    job.status = JobStatus.CANCELLED
                    cancelled.append(job)
        return cancelled

    def snapshot(self) -> dict[str, dict[str, object]]:
        return {
            key: {
                "busy": state.is_processing,
                "current_job_id": state.current_job_id,
                "queued": [j.id for j in state.queue if j.status is JobStatus.QUEUED],
            }
            for key, state in self._conversations.items()
        }
