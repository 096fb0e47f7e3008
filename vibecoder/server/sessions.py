from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

log = logging.getLogger("vibecoder")


@dataclass
class Session:
    key: str
    agent_session_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)
    last_active: float = field(default_factory=time.monotonic)


class SessionStore:
    """Maps a conversation to the agent session that carries its context.

    In-memory only; a process restart starts every conversation fresh.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def get_or_create(self, key: str) -> Session:
        session = self._sessions.get(key)
        if session is None:
            session = Session(key=key)
            self._sessions[key] = session
            log.info("[%s] new session", key)
        session.last_active = time.monotonic()
        return session

    def update_token(self, key: str, token: str) -> None:
        session = self.get_or_create(key)
        if session.agent_session_id != token:
            log.info("[%s] agent session id: %s...", key, token[:12])
        session.agent_session_id = token

    def delete(self, key: str) -> None:
        self._sessions.pop(key, None)

    def cleanup_old_sessions(self, max_age: float, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        stale = [k for k, s in self._sessions.items() if now - s.last_active > max_age]
        for key in stale:
            del self._sessions[key]
        if stale:
            log.info("removed %d idle sessions", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)
