from __future__ import annotations

import copy
import logging
import os
import subprocess
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any

from dotenv import load_dotenv

log = logging.getLogger("vibecoder")

_SERVICE_NAME = "vibecoder"

DEFAULTS: dict[str, Any] = {
    "slack.bot_token": None,
    "slack.app_token": None,
    "slack.signing_secret": None,
    "agent.type": "claude",
    "agent.binary": "claude",
    "agent.cwd": None,
    "agent.model": None,
    "agent.idle_timeout": 1800,
    # Seconds between metadata-only refreshes of a live status message
    "render.refresh_interval": 1.0,
    # Minimum seconds between text-driven progress updates (tool events bypass it)
    "render.progress_interval": 0.5,
    "render.max_text_length": 2500,
    # Re-send the final result after this many seconds (0 = disabled)
    "render.final_resend_delay": 0,
    "queue.max_age": 3600,
    "queue.cleanup_interval": 1800,
    "sessions.max_age": 3600,
    "server.host": "0.0.0.0",
    "server.port": 3000,
    "project.dir": None,
    "deploy.service_name": _SERVICE_NAME,
    "deploy.health_timeout": 30,
}

REQUIRED: tuple[str, ...] = ("slack.bot_token",)

# Environment variable -> (settings key, converter)
_ENV_KEYS: dict[str, tuple[str, type]] = {
    "SLACK_BOT_TOKEN": ("slack.bot_token", str),
    "SLACK_APP_TOKEN": ("slack.app_token", str),
    "SLACK_SIGNING_SECRET": ("slack.signing_secret", str),
    "CLAUDE_BIN": ("agent.binary", str),
    "CLAUDE_CWD": ("agent.cwd", str),
    "CLAUDE_MODEL": ("agent.model", str),
    "CLAUDE_IDLE_TIMEOUT": ("agent.idle_timeout", float),
    "PROJECT_DIR": ("project.dir", str),
    "HOST": ("server.host", str),
    "PORT": ("server.port", int),
    "PM2_SERVICE_NAME": ("deploy.service_name", str),
}


class Settings:
    """Flat dotted-key configuration, seeded from DEFAULTS and the environment."""

    def __init__(self, values: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {}
        if values:
            self.set_many(values)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None, dotenv: bool = True) -> Settings:
        if dotenv and env is None:
            load_dotenv()
        source = os.environ if env is None else env
        values: dict[str, Any] = {}
        for var, (key, convert) in _ENV_KEYS.items():
            raw = source.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[key] = convert(raw)
            except ValueError:
                log.warning("ignoring %s=%r: expected %s", var, raw, convert.__name__)
        return cls(values)

    def get(self, key: str, default: Any = ...) -> Any:
        if key in self._values:
            return self._values[key]
        if default is not ...:
            return default
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        if key not in DEFAULTS:
            raise KeyError(f"Unknown setting: {key}")
        self._values[key] = value

    def set_many(self, updates: dict[str, Any]) -> None:
        invalid = [k for k in updates if k not in DEFAULTS]
        if invalid:
            raise KeyError(f"Unknown settings keys: {invalid}")
        self._values.update(updates)

    def get_all(self) -> dict[str, Any]:
        result = copy.deepcopy(DEFAULTS)
        result.update(self._values)
        return result

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        result = self.get_all()
        if cli_overrides:
            result.update({k: v for k, v in cli_overrides.items() if v is not None})
        return result

    def missing_required(self) -> list[str]:
        return [k for k in REQUIRED if not self.get(k)]


@dataclass(frozen=True)
class AppInfo:
    """Version and start-up commit, shown in status messages and used as the rollback target."""
    version: str | None = None
    commit: str | None = None

    @classmethod
    def detect(cls, project_dir: str | None = None) -> AppInfo:
        try:
            version = pkg_version(_SERVICE_NAME)
        except PackageNotFoundError:
            version = None
        commit = None
        try:
            out = subprocess.run(
                ["git", "rev-parse", "HEAD"],
                cwd=project_dir or None,
                capture_output=True,
                text=True,
                timeout=10,
                check=True,
            )
            commit = out.stdout.strip() or None
        except (OSError, subprocess.SubprocessError) as e:
            log.warning("could not read start-up commit hash: %s", e)
        if commit:
            log.info("start-up commit: %s", commit)
        if version:
            log.info("version: v%s", version)
        return cls(version=version, commit=commit)
