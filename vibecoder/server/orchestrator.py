from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time

from ..agents.base import AssistantText, BaseAgent, SessionToken, ToolUse, TurnComplete
from ..agents.prompts import build_prompt, git_author
from ..chat.client import ChatClient, ChatTransportError
from ..chat.messages import build_cancelled_message, format_tool_info, version_tag
from ..chat.queue import ConversationQueue, Job
from ..chat.renderer import ResponseRenderer
from .sessions import SessionStore
from .settings import AppInfo, Settings

log = logging.getLogger("vibecoder")

SHUTDOWN_REASON = "the bot is restarting"


class JobOrchestrator:
    """Runs jobs end to end: admission, rendering, agent streaming, release and pickup."""

    def __init__(
        self,
        queue: ConversationQueue,
        sessions: SessionStore,
        agent: BaseAgent,
        client: ChatClient,
        settings: Settings | None = None,
        app_info: AppInfo | None = None,
        github_users: dict[str, str] | None = None,
    ) -> None:
        self.queue = queue
        self.sessions = sessions
        self.agent = agent
        self.client = client
        self.settings = settings or Settings()
        self.app_info = app_info or AppInfo()
        self.github_users = github_users or {}
        self._version = version_tag(self.app_info.version, self.app_info.commit)
        self._cancel_signals: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._closing = False

    def _log_metric(self, name: str, **fields: object) -> None:
        payload = {"metric": name, "ts": time.time(), **fields}
        log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True))

    def new_renderer(self, job: Job) -> ResponseRenderer:
        return ResponseRenderer(
            self.client,
            channel=job.channel,
            thread_ts=job.thread_ts,
            user_id=job.user_id,
            key=job.key,
            job_id=job.id,
            version=self._version,
            refresh_interval=float(self.settings.get("render.refresh_interval")),
            max_text_length=int(self.settings.get("render.max_text_length")),
            final_resend_delay=float(self.settings.get("render.final_resend_delay")),
        )

    # -- admission -----------------------------------------------------------

    def admit(self, job: Job) -> ResponseRenderer | None:
        """Claim the conversation slot for ``job``. Synchronous; None if busy."""
        renderer = self.new_renderer(job)
        if not self.queue.try_admit(job.key, renderer, job.id):
            log.info("[%s] job %s not admitted: conversation busy", job.key, job.id)
            return None
        self._cancel_signals[job.id] = asyncio.Event()
        log.info("[%s] admitted job %s", job.key, job.id)
        return renderer

    async def run(self, job: Job, reuse_handle: str | None = None) -> None:
        renderer = self.admit(job)
        if renderer is None:
            return
        await self._execute(job, renderer, reuse_handle)

    def spawn(self, job: Job, renderer: ResponseRenderer, reuse_handle: str | None = None) -> asyncio.Task:
        """Execute an already admitted job in the background."""
        task = asyncio.create_task(self._execute(job, renderer, reuse_handle), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return task

    def running_jobs(self) -> list[str]:
        return list(self._tasks)

    # -- execution -----------------------------------------------------------

    async def _execute(self, job: Job, renderer: ResponseRenderer, reuse_handle: str | None) -> None:
        cancel = self._cancel_signals.setdefault(job.id, asyncio.Event())
        try:
            if reuse_handle:
                handle = await renderer.start_reusing(reuse_handle)
            else:
                handle = await renderer.start()
            if handle is None:
                log.warning("[%s] job %s has no status message; releasing", job.key, job.id)
                return
            if cancel.is_set():
                log.info("[%s] job %s stopped before the agent started", job.key, job.id)
                return
            await self._stream(job, renderer, cancel)
        finally:
            self._cancel_signals.pop(job.id, None)
            renderer.stop_timer()
            self._finish(job)

    def _owns_slot(self, job: Job) -> bool:
        return self.queue.current_job_id(job.key) == job.id

    async def _stream(self, job: Job, renderer: ResponseRenderer, cancel: asyncio.Event) -> None:
        key = job.key
        session = self.sessions.get_or_create(key)
        prompt = build_prompt(
            job.query,
            channel=job.channel,
            thread_ts=job.thread_ts,
            safe_commit=self.app_info.commit,
            author=git_author(job.user_id, self.github_users),
            service_name=self.settings.get("deploy.service_name"),
        )
        progress_interval = float(self.settings.get("render.progress_interval"))
        started = time.monotonic()
        text = ""
        tool_info: str | None = None
        tool_calls = 0
        last_progress = 0.0
        pending_progress = False
        outcome = "incomplete"

        def live() -> bool:
            return self._owns_slot(job) and not cancel.is_set()

        try:
            async with contextlib.aclosing(self.agent.stream(prompt, session.agent_session_id, cancel)) as events:
                async for event in events:
                    if isinstance(event, SessionToken):
                        self.sessions.update_token(key, event.session_id)
                        continue
                    if not live():
                        log.debug("[%s] dropping %s from job %s", key, type(event).__name__, job.id)
                        continue
                    now = time.monotonic()
                    if isinstance(event, ToolUse):
                        tool_calls += 1
                        tool_info = format_tool_info(event.name, event.input)
                        await renderer.render_progress(text, tool_info, renderer.elapsed_seconds(), tool_calls)
                        last_progress, pending_progress = now, False
                    elif isinstance(event, AssistantText):
                        text = event.text
                        if now - last_progress >= progress_interval:
                            await renderer.render_progress(text, tool_info, renderer.elapsed_seconds(), tool_calls)
                            last_progress, pending_progress = now, False
                        else:
                            pending_progress = True
                    elif isinstance(event, TurnComplete):
                        if event.session_id:
                            self.sessions.update_token(key, event.session_id)
                        if pending_progress:
                            await renderer.render_progress(text, tool_info, renderer.elapsed_seconds(), tool_calls)
                        if not live():
                            continue
                        duration = int(round(time.monotonic() - started))
                        if event.success:
                            delivered = await renderer.render_result(event.text or text, duration, tool_calls)
                            outcome = "success" if delivered else "render_failed"
                        else:
                            await renderer.render_error(event.error or "The agent reported an error.")
                            outcome = "agent_error"
                        break
        except Exception as e:
            if cancel.is_set():
                log.info("[%s] job %s ended after stop: %s", key, job.id, e)
                outcome = "stopped"
            else:
                log.exception("[%s] agent invocation failed for job %s", key, job.id)
                outcome = "exception"
                if self._owns_slot(job):
                    await renderer.render_error(str(e) or type(e).__name__)
        else:
            if cancel.is_set():
                outcome = "stopped"
            elif outcome == "incomplete" and self._owns_slot(job):
                await renderer.render_error("The agent finished without a result.")
        finally:
            self._log_metric(
                "job_finished",
                key=key,
                job_id=job.id,
                outcome=outcome,
                duration_s=round(time.monotonic() - started, 3),
                tool_calls=tool_calls,
            )

    def _finish(self, job: Job) -> None:
        if not self._owns_slot(job):
            log.info(
                "[%s] job %s no longer owns the slot (now %s); not releasing",
                job.key, job.id, self.queue.current_job_id(job.key),
            )
            return
        next_job = self.queue.release(job.key)
        log.info("[%s] released job %s", job.key, job.id)
        if next_job is not None:
            self._start_queued(next_job)

    def _start_queued(self, job: Job) -> None:
        if self._closing:
            log.info("[%s] shutting down; not starting queued job %s", job.key, job.id)
            return
        log.info("[%s] picking up queued job %s", job.key, job.id)
        renderer = self.admit(job)
        if renderer is not None:
            self.spawn(job, renderer, reuse_handle=job.message_ts)

    def drain(self, key: str) -> Job | None:
        """Start the head of the queue if nothing is running in the conversation."""
        if self._closing or self.queue.is_busy(key):
            return None
        next_job = self.queue.release(key)
        if next_job is not None:
            self._start_queued(next_job)
        return next_job

    # -- user actions --------------------------------------------------------

    async def abort(self, key: str, job_id: str, user_id: str | None = None) -> bool:
        """Stop the running job. Release and pickup follow once its stream exits."""
        if self.queue.current_job_id(key) != job_id:
            log.info("[%s] stop ignored: job %s is not running", key, job_id)
            return False
        cancel = self._cancel_signals.get(job_id)
        if cancel is not None:
            cancel.set()
        log.info("[%s] stop requested for job %s by %s", key, job_id, user_id)
        renderer = self.queue.current_renderer(key)
        if renderer is not None:
            await renderer.render_aborted(user_id)
        return True

    async def process_now(self, key: str, job_id: str, user_id: str | None = None) -> bool:
        """Pull a queued job out of line, stop the running one and run it in its place."""
        job = self.queue.prioritize(key, job_id)
        if job is None:
            log.info("[%s] process-now ignored: job %s is not queued", key, job_id)
            return False
        previous_id = self.queue.current_job_id(key)
        previous_renderer = self.queue.current_renderer(key)
        renderer = self.new_renderer(job)
        self.queue.supersede(key, renderer, job.id)
        self._cancel_signals[job.id] = asyncio.Event()
        if previous_id is not None:
            previous_cancel = self._cancel_signals.get(previous_id)
            if previous_cancel is not None:
                previous_cancel.set()
        log.info("[%s] job %s prioritized by %s, superseding %s", key, job.id, user_id, previous_id)
        self.spawn(job, renderer, reuse_handle=job.message_ts)
        if previous_renderer is not None:
            await previous_renderer.render_aborted(user_id)
        return True

    async def mark_cancelled(self, job: Job, reason: str | None = None, user_id: str | None = None) -> None:
        """Rewrite a queued job's notice so it no longer offers its buttons."""
        if not job.message_ts:
            return
        payload = build_cancelled_message(user_id or job.user_id, reason)
        try:
            await self.client.update_message(job.channel, job.message_ts, payload.fallback_text, payload.to_blocks())
        except ChatTransportError as e:
            log.warning("[%s] cancelled notice update for job %s failed: %s", job.key, job.id, e)

    async def shutdown(self) -> None:
        """Stop everything without starting queued work. Each job is left in a terminal state."""
        self._closing = True
        dropped = self.queue.cancel_all_queued()
        renderers = [r for r in map(self.queue.current_renderer, self.queue.keys()) if r is not None]
        for cancel in list(self._cancel_signals.values()):
            cancel.set()
        for renderer in renderers:
            await renderer.render_error(f"Interrupted: {SHUTDOWN_REASON}.")
        for job in dropped:
            log.info("[%s] dropping queued job %s on shutdown", job.key, job.id)
            await self.mark_cancelled(job, SHUTDOWN_REASON)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
