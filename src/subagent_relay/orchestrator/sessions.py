"""Resumable worker sessions backed by transcript files on disk."""

from __future__ import annotations

import itertools
import logging
import os
import shutil
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from subagent_relay.common import safe_file_stem, utc_now
from subagent_relay.orchestrator.errors import SessionError, SessionRejection

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Session:
    """Persisted conversation a later invocation can continue."""

    id: str
    agent: str
    session_file: Path
    prompt_tmp_dir: Path | None
    created_at: datetime
    last_used_at: datetime
    in_use: bool = False


class SessionStore:
    """Owns every resumable session of one orchestrator instance.

    A session is used by at most one invocation at a time: reentry while it
    is in use is rejected, never queued.
    """

    def __init__(
        self,
        *,
        session_dir: Path,
        max_age: timedelta,
        max_count: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_dir = session_dir
        self.max_age = max_age
        self.max_count = max_count
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def create(self, agent: str, prompt_tmp_dir: Path | None = None) -> Session:
        """Register a fresh session; the transcript file is written by the agent."""

        session_id = f"sa-{os.getpid()}-{next(self._counter)}"
        self.session_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        now = self._clock()
        session = Session(
            id=session_id,
            agent=agent,
            session_file=self.session_dir / f"{session_id}-{safe_file_stem(agent)}.jsonl",
            prompt_tmp_dir=prompt_tmp_dir,
            created_at=now,
            last_used_at=now,
        )
        self.evict_stale(reserve=1)
        self._sessions[session_id] = session
        logger.debug("Created session %s for agent %s", session_id, agent)
        return session

    def resume(self, session_id: str, agent: str) -> Session:
        """Return a resumable session or raise ``SessionError`` naming the reason."""

        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(
                f'Session not found: "{session_id}". It may have expired. '
                "Start a new session without sessionId.",
                session_id=session_id,
                reason=SessionRejection.NOT_FOUND,
            )
        if session.agent != agent:
            raise SessionError(
                f'Session "{session_id}" belongs to agent "{session.agent}", not "{agent}".',
                session_id=session_id,
                reason=SessionRejection.OWNER_MISMATCH,
            )
        if session.in_use:
            raise SessionError(
                f'Session "{session_id}" is currently in use by another invocation. '
                "Wait for it to finish.",
                session_id=session_id,
                reason=SessionRejection.IN_USE,
            )
        if not session.session_file.exists():
            self.discard(session_id)
            raise SessionError(
                f'Session file for "{session_id}" no longer exists on disk. '
                "Start a new session without sessionId.",
                session_id=session_id,
                reason=SessionRejection.MISSING_FILE,
            )
        session.last_used_at = self._clock()
        return session

    @contextmanager
    def acquire(self, session: Session) -> Iterator[Session]:
        """Mark ``session`` in use for the duration of one invocation."""

        if session.in_use:
            raise SessionError(
                f'Session "{session.id}" is currently in use by another invocation.',
                session_id=session.id,
                reason=SessionRejection.IN_USE,
            )
        session.in_use = True
        try:
            yield session
        finally:
            session.in_use = False
            session.last_used_at = self._clock()

    def discard(self, session_id: str) -> None:
        """Forget a session and delete its transcript and retained temp files."""

        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        try:
            session.session_file.unlink(missing_ok=True)
        except OSError:
            logger.debug("Could not delete %s", session.session_file, exc_info=True)
        if session.prompt_tmp_dir is not None:
            shutil.rmtree(session.prompt_tmp_dir, ignore_errors=True)
        logger.debug("Discarded session %s", session_id)

    def evict_stale(self, *, reserve: int = 0) -> list[str]:
        """Drop idle sessions past the age limit, then LRU ones over the count limit.

        ``reserve`` keeps room for sessions about to be added.
        """

        limit = max(0, self.max_count - reserve)
        now = self._clock()
        evicted = [
            session.id
            for session in self._sessions.values()
            if not session.in_use and now - session.last_used_at > self.max_age
        ]
        for session_id in evicted:
            self.discard(session_id)

        if len(self._sessions) > limit:
            idle = sorted(
                (session for session in self._sessions.values() if not session.in_use),
                key=lambda session: session.last_used_at,
            )
            for session in idle:
                if len(self._sessions) <= limit:
                    break
                self.discard(session.id)
                evicted.append(session.id)

        if evicted:
            logger.info("Evicted %d session(s)", len(evicted))
        return evicted

    def close(self) -> None:
        """Remove every session, in use or not."""

        for session_id in list(self._sessions):
            self.discard(session_id)
