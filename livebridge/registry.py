"""
Session registry: one exclusive browsing context per identity.

The registry owns two tables and nothing outside it touches them:
  _sessions  identity → live Session
  _pending   identity → in-flight creation task

Creation is single-flight per identity: concurrent acquire() calls for an
identity that has no session yet all await the same creation task. A
session only becomes visible once creation fully succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from livebridge.auth import ANONYMOUS
from livebridge.config import Config, target_url
from livebridge.errors import SessionCreationError
from livebridge.models import TranscriptState

log = logging.getLogger(__name__)


@dataclass(eq=False)
class Session:
    """Exclusive browsing context for one identity.

    ``lock`` is the serialization point: every automation action on the
    context runs while holding it, whichever connection issued it.
    """
    identity: str
    context: Any
    page: Any
    created_at: float
    last_activity: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    transcript: TranscriptState = field(default_factory=TranscriptState)
    remote_session_id: str | None = None
    sample_failures: int = 0
    closing: bool = False

    def touch(self, now: float) -> None:
        self.last_activity = now

    @property
    def url(self) -> str:
        try:
            return self.page.url
        except Exception:
            return ""

    def info(self, now: float) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "url": self.url,
            "remote_session_id": self.remote_session_id,
            "idle_seconds": round(now - self.last_activity, 1),
            "entries": len(self.transcript.entries),
            "busy": self.lock.locked(),
        }


class SessionRegistry:
    """Maps identities to sessions on top of a shared engine."""

    def __init__(
        self,
        engine: Any,
        credentials: Any,
        *,
        idle_ttl: float | None = None,
        max_sessions: int | None = None,
        landing_url: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._engine = engine
        self._credentials = credentials
        self._idle_ttl = idle_ttl if idle_ttl is not None else Config.SESSION_IDLE_TTL
        self._max_sessions = max_sessions or Config.MAX_SESSIONS
        self._landing_url = landing_url or target_url(Config.LANDING_PATH)
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Task[Session]] = {}

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: str) -> bool:
        return identity in self._sessions

    def get(self, identity: str) -> Session | None:
        return self._sessions.get(identity)

    def touch(self, session: Session) -> None:
        session.touch(self._clock())

    def list_sessions(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [s.info(now) for s in self._sessions.values()]

    # -----------------------------------------------------------------------
    # Acquire / create
    # -----------------------------------------------------------------------

    async def acquire(self, identity: str | None, *, migrate_from: str | None = ANONYMOUS) -> Session:
        """Return the identity's session, creating it if needed.

        When ``identity`` has no session but ``migrate_from`` does, that
        session is re-keyed to ``identity`` instead of creating a new one.
        """
        identity = identity or ANONYMOUS
        session = self._sessions.get(identity)
        if session is not None:
            session.touch(self._clock())
            return session

        if migrate_from and migrate_from != identity and identity not in self._pending:
            migrated = self.rekey(migrate_from, identity)
            if migrated is not None:
                return migrated

        task = self._pending.get(identity)
        if task is None:
            if len(self._sessions) + len(self._pending) >= self._max_sessions:
                raise SessionCreationError(
                    f"Session limit reached ({self._max_sessions})", code="SESSION_LIMIT",
                )
            task = asyncio.create_task(self._create(identity))
            self._pending[identity] = task
        # shield: a cancelled waiter must not cancel creation for the others
        return await asyncio.shield(task)

    async def _create(self, identity: str, resume_url: str | None = None,
                      transcript: TranscriptState | None = None) -> Session:
        context = None
        try:
            cookies = self._credentials.load(identity)
            context = await self._engine.new_context(cookies)
            page = await context.new_page()
            await page.goto(
                resume_url or self._landing_url,
                wait_until="domcontentloaded",
                timeout=Config.NAVIGATION_TIMEOUT,
            )
            now = self._clock()
            session = Session(
                identity=identity,
                context=context,
                page=page,
                created_at=now,
                last_activity=now,
            )
            if transcript is not None:
                session.transcript = transcript
            self._sessions[identity] = session
            log.info("Session created for %s (%d cookies, %d live)",
                     identity, len(cookies), len(self._sessions))
            return session
        except Exception as exc:
            if context is not None:
                await self._close_context(context)
            log.warning("Session creation failed for %s: %s", identity, exc)
            if isinstance(exc, SessionCreationError):
                raise
            raise SessionCreationError(f"Could not create session: {exc}") from exc
        finally:
            self._pending.pop(identity, None)

    # -----------------------------------------------------------------------
    # Re-key / recreate / release
    # -----------------------------------------------------------------------

    def rekey(self, old_identity: str, new_identity: str) -> Session | None:
        """Transfer ownership of a session to another identity.

        No-op (returns None) if ``old_identity`` has no session or
        ``new_identity`` already owns one.
        """
        if new_identity in self._sessions or new_identity in self._pending:
            return None
        session = self._sessions.get(old_identity)
        if session is None or session.closing:
            return None
        del self._sessions[old_identity]
        session.identity = new_identity
        session.touch(self._clock())
        self._sessions[new_identity] = session
        log.info("Session re-keyed %s -> %s", old_identity, new_identity)
        return session

    async def recreate(self, session: Session) -> Session:
        """Replace a session whose context became unusable.

        The reconciled transcript carries over and the new context returns
        to the last visited URL.
        """
        identity = session.identity
        resume_url = session.url or None
        if self._sessions.get(identity) is session:
            del self._sessions[identity]
        await self._teardown(session)

        task = self._pending.get(identity)
        if task is None:
            task = asyncio.create_task(
                self._create(identity, resume_url=resume_url, transcript=session.transcript)
            )
            self._pending[identity] = task
        fresh = await asyncio.shield(task)
        fresh.remote_session_id = fresh.remote_session_id or session.remote_session_id
        log.info("Session recreated for %s", identity)
        return fresh

    async def release(self, identity: str) -> bool:
        """Explicit logout: tear down the identity's session."""
        session = self._sessions.pop(identity, None)
        if session is None:
            return False
        await self._teardown(session)
        log.info("Session released for %s", identity)
        return True

    # -----------------------------------------------------------------------
    # GC
    # -----------------------------------------------------------------------

    async def sweep(self) -> list[str]:
        """Tear down sessions idle longer than the TTL.

        Sessions with a command in flight are skipped. Returns reaped identities.
        """
        now = self._clock()
        reaped: list[str] = []
        for identity, session in list(self._sessions.items()):
            if session.closing or session.lock.locked():
                continue
            if now - session.last_activity > self._idle_ttl:
                if self._sessions.get(identity) is session:
                    del self._sessions[identity]
                await self._teardown(session)
                reaped.append(identity)
        return reaped

    async def invalidate_all(self) -> int:
        """Tear down every session, e.g. after upstream credentials changed."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await self._teardown(session)
        if sessions:
            log.info("Invalidated %d session(s)", len(sessions))
        return len(sessions)

    async def close(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        self._pending.clear()
        await self.invalidate_all()

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    async def _teardown(self, session: Session) -> None:
        if session.closing:
            return
        session.closing = True
        await self._close_context(session.context)

    @staticmethod
    async def _close_context(context: Any) -> None:
        try:
            await context.close()
        except Exception as exc:
            # an already-crashed context cannot be closed cleanly
            log.debug("context.close failed: %s", exc)
