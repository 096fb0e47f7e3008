"""Restart the pm2-managed service, health-check it and roll back on failure.

The restarter is usually launched by the agent from inside the service it is
about to restart, so it first re-executes itself in a new session to survive
the parent being killed. Progress is reported to the Slack thread that asked
for the restart.

Health means: pm2 reports the process ``online`` *and* the service's pm2
out-log holds a success marker stamped after the restart, i.e. someone sent a
request to the new build and it answered.
"""
from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from ..chat.renderer import SUCCESS_MARKER
from ..server.settings import Settings

log = logging.getLogger("vibecoder")

DETACHED_ENV = "VIBECODER_RESTARTER_DETACHED"
DEFAULT_LOG_PATH = "/tmp/vibecoder-restarter.log"
_LOG_TAIL_LINES = 200
_SETTLE_SECONDS = 5.0

_STAMP_RE = re.compile(r"\[(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?)Z?\]")


def parse_marker_time(line: str) -> datetime | None:
    """Extract the bracketed UTC timestamp from a success-marker log line."""
    if SUCCESS_MARKER not in line:
        return None
    match = _STAMP_RE.search(line)
    if not match:
        return None
    raw = match.group(1)
    fmt = "%Y-%m-%dT%H:%M:%S.%f" if "." in raw else "%Y-%m-%dT%H:%M:%S"
    try:
        return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def find_success_after(lines: Iterable[str], since: datetime) -> datetime | None:
    """Return the first success-marker time at or after ``since``."""
    # Marker stamps are millisecond precise while ``since`` is not; compare on whole seconds.
    floor = since.replace(microsecond=0)
    for line in lines:
        stamp = parse_marker_time(line)
        if stamp is not None and stamp >= floor:
            return stamp
    return None


def pm2_status(jlist_output: str, service_name: str) -> str | None:
    """Pick the service's status out of ``pm2 jlist`` output."""
    try:
        data = json.loads(jlist_output)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, list):
        return None
    for proc in data:
        if isinstance(proc, dict) and proc.get("name") == service_name:
            return (proc.get("pm2_env") or {}).get("status")
    return None


def pm2_log_path(service_name: str) -> Path:
    return Path.home() / ".pm2" / "logs" / f"{service_name}-out.log"


def _tail(path: Path, n: int = _LOG_TAIL_LINES) -> list[str]:
    try:
        with path.open("r", errors="replace") as f:
            return f.readlines()[-n:]
    except OSError:
        return []


class Restarter:
    def __init__(
        self,
        channel: str,
        thread_ts: str,
        safe_commit: str,
        settings: Settings,
        web_client: WebClient | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.channel = channel
        self.thread_ts = thread_ts
        self.safe_commit = safe_commit
        self.service_name = settings.get("deploy.service_name")
        self.health_timeout = float(settings.get("deploy.health_timeout"))
        self.project_dir = settings.get("project.dir") or settings.get("agent.cwd") or os.getcwd()
        self._web = web_client or WebClient(token=settings.get("slack.bot_token"))
        self._run = run
        self._sleep = sleep
        self._now = now
        self.details = ""

    def notify(self, text: str) -> None:
        try:
            self._web.chat_postMessage(channel=self.channel, thread_ts=self.thread_ts, text=f"[system] {text}")
        except SlackApiError as e:
            log.warning("restarter: could not post to %s: %s", self.channel, e.response.get("error", e))

    def _cmd(self, *args: str, timeout: float = 120) -> subprocess.CompletedProcess:
        log.info("restarter: $ %s", " ".join(args))
        return self._run(list(args), cwd=self.project_dir, capture_output=True, text=True, timeout=timeout)

    def restart_service(self) -> None:
        result = self._cmd("pm2", "restart", self.service_name)
        if result.returncode != 0:
            log.warning("restarter: pm2 restart exited %d: %s", result.returncode, result.stderr.strip())

    def is_online(self) -> bool:
        try:
            result = self._cmd("pm2", "jlist", timeout=30)
        except (OSError, subprocess.SubprocessError) as e:
            self.details = f"pm2 jlist failed: {e}"
            return False
        status = pm2_status(result.stdout, self.service_name)
        if status is None:
            self.details = f"pm2 has no status for {self.service_name} (exit code {result.returncode})"
            if result.stderr.strip():
                self.details += f"\nstderr:\n```{result.stderr.strip()[:1000]}```"
            return False
        if status != "online":
            self.details = f"pm2 status: {status}"
            return False
        return True

    def saw_success_since(self, since: datetime) -> bool:
        return find_success_after(_tail(pm2_log_path(self.service_name)), since) is not None

    def wait_healthy(self, since: datetime) -> bool:
        deadline = time.monotonic() + self.health_timeout
        while True:
            if not self.is_online():
                return False
            if self.saw_success_since(since):
                return True
            if time.monotonic() >= deadline:
                self.details = (
                    f"no successful reply logged within {self.health_timeout:.0f}s of the restart"
                )
                return False
            self._sleep(1.0)

    def rollback(self, reason: str) -> bool:
        message = f"Rolling back.\n\nReason: {reason}"
        if self.details:
            message += f"\n\nDetails:\n{self.details}"
        self.notify(message)
        for args in (
            ("git", "reset", "--hard", self.safe_commit),
            (sys.executable, "-m", "pip", "install", "-e", "."),
        ):
            result = self._cmd(*args, timeout=600)
            if result.returncode != 0:
                log.error("restarter: %s failed: %s", args[0], result.stderr.strip())
        self.restart_service()
        self._sleep(_SETTLE_SECONDS)
        self.details = ""
        if self.is_online():
            self.notify(f"Rollback complete. Restored commit {self.safe_commit}.")
            return True
        text = "Still unhealthy after rollback; manual attention needed."
        if self.details:
            text += f"\n\nDetails:\n{self.details}"
        self.notify(text)
        return False

    def run(self) -> int:
        log.info("restarter: starting for %s (safe commit %s)", self.service_name, self.safe_commit)
        self.notify("Starting update; the service will restart shortly...")
        self._sleep(2.0)
        restarted_at = self._now()
        self.restart_service()
        self._sleep(_SETTLE_SECONDS)
        self.notify(
            f"Update deployed. Send a test request within {self.health_timeout:.0f}s; "
            "without a successful reply the previous version is restored automatically."
        )
        if self.wait_healthy(restarted_at):
            self.notify("Health check passed. The update is live.")
            return 0
        self.rollback("health check failed")
        return 1


def detach(argv: list[str], log_path: str = DEFAULT_LOG_PATH) -> int:
    """Re-run ``vibecoder restart ...`` in a new session so it outlives the caller."""
    env = dict(os.environ, **{DETACHED_ENV: "1"})
    with open(log_path, "ab") as out:
        proc = subprocess.Popen(
            [sys.executable, "-m", "vibecoder.main", *argv],
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )
    print(f"restarter running in the background (pid {proc.pid}); log: {log_path}")
    return 0


def main(channel: str, thread_ts: str, safe_commit: str, settings: Settings | None = None) -> int:
    settings = settings or Settings.from_env()
    if not os.environ.get(DETACHED_ENV):
        return detach(["restart", channel, thread_ts, safe_commit])
    missing = settings.missing_required()
    if missing:
        log.error("restarter: missing settings: %s", ", ".join(missing))
        return 2
    return Restarter(channel, thread_ts, safe_commit, settings).run()
