from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp

from ..agents import create_agent
from ..agents.base import BaseAgent
from ..agents.prompts import load_github_users
from ..chat.client import ChatClient, SlackChatClient
from ..chat.messages import CANCEL_QUEUED_ACTION, PROCESS_NOW_ACTION, STOP_ACTION
from ..chat.queue import ConversationQueue
from .gateway import Gateway
from .orchestrator import JobOrchestrator
from .sessions import SessionStore
from .settings import AppInfo, Settings

log = logging.getLogger("vibecoder")


def create_bolt_app(settings: Settings) -> AsyncApp:
    signing_secret = settings.get("slack.signing_secret")
    return AsyncApp(
        token=settings.get("slack.bot_token"),
        signing_secret=signing_secret,
        # Socket mode deliveries are not signed.
        request_verification_enabled=bool(signing_secret),
    )


def register_listeners(bolt: AsyncApp, gateway: Gateway) -> None:
    @bolt.event("app_mention")
    async def on_mention(event: dict) -> None:
        if event.get("bot_id"):
            return
        await gateway.handle_mention(
            channel=event["channel"],
            user_id=event.get("user", "unknown"),
            text=event.get("text", ""),
            ts=event["ts"],
            thread_ts=event.get("thread_ts"),
        )

    @bolt.action(STOP_ACTION)
    async def on_stop(ack, body: dict, action: dict) -> None:
        await ack()
        await gateway.handle_stop(action.get("value"), body.get("user", {}).get("id"))

    @bolt.action(PROCESS_NOW_ACTION)
    async def on_process_now(ack, body: dict, action: dict) -> None:
        await ack()
        await gateway.handle_process_now(action.get("value"), body.get("user", {}).get("id"))

    @bolt.action(CANCEL_QUEUED_ACTION)
    async def on_cancel_queued(ack, body: dict, action: dict) -> None:
        await ack()
        await gateway.handle_cancel_queued(action.get("value"), body.get("user", {}).get("id"))


def create_app(
    settings: Settings | None = None,
    agent: BaseAgent | None = None,
    chat_client: ChatClient | None = None,
    app_info: AppInfo | None = None,
    bolt_app: AsyncApp | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    project_dir = settings.get("project.dir") or settings.get("agent.cwd")
    app_info = app_info or AppInfo.detect(project_dir)
    bolt = bolt_app or create_bolt_app(settings)
    client = chat_client or SlackChatClient(bolt.client)

    queue = ConversationQueue()
    sessions = SessionStore()
    orchestrator = JobOrchestrator(
        queue=queue,
        sessions=sessions,
        agent=agent or create_agent(settings),
        client=client,
        settings=settings,
        app_info=app_info,
        github_users=load_github_users(project_dir) if project_dir else {},
    )
    gateway = Gateway(queue, sessions, orchestrator, client, settings)
    register_listeners(bolt, gateway)
    slack_handler = AsyncSlackRequestHandler(bolt)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup_task = asyncio.create_task(gateway.run_cleanup_loop(), name="cleanup")
        socket_handler: AsyncSocketModeHandler | None = None
        app_token = settings.get("slack.app_token")
        if app_token:
            socket_handler = AsyncSocketModeHandler(bolt, app_token)
            await socket_handler.connect_async()
            log.info("connected to Slack in socket mode")
        try:
            yield
        finally:
            log.info("shutting down: %d running jobs", len(orchestrator.running_jobs()))
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
            if socket_handler is not None:
                await socket_handler.close_async()
            await orchestrator.shutdown()

    app = FastAPI(title="vibecoder", lifespan=lifespan)
    app.state.queue = queue
    app.state.sessions = sessions
    app.state.orchestrator = orchestrator
    app.state.gateway = gateway

    @app.post("/slack/events")
    async def slack_events(req: Request):
        return await slack_handler.handle(req)

    @app.get("/health")
    async def health_check():
        snapshot = queue.snapshot()
        return {
            "status": "healthy",
            "version": app_info.version,
            "commit": app_info.commit,
            "running_jobs": len(orchestrator.running_jobs()),
            "busy": sorted(k for k, v in snapshot.items() if v["busy"]),
            "queued": sum(len(v["queued"]) for v in snapshot.values()),
            "sessions": len(sessions),
        }

    return app
