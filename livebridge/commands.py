"""
Command execution against a caller's session.

``execute(registry, identity, command)`` is the single path every command
takes, whether it arrived on a websocket or over HTTP:
  1. resolve the identity's session (created on first use)
  2. run the handler while holding the session lock
  3. if the browsing context died, recreate the session and retry once

Every call returns exactly one reply dict tagged with the command's action
(and its request id, when one was given).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Coroutine

from playwright.async_api import Error as PlaywrightError

from livebridge import actions, extraction
from livebridge.config import Config, target_url
from livebridge.errors import (
    BridgeError,
    CommandExecutionError,
    ContextInvalidatedError,
    classify_error,
    is_context_invalidated,
)
from livebridge.models import (
    Command,
    GenerationProgress,
    MergeResult,
    RawSnapshot,
    Recoverability,
    TranscriptState,
    VideoPlaceholder,
    VideoResolved,
    strip_query,
)
from livebridge.reconcile import merge
from livebridge.registry import Session, SessionRegistry

log = logging.getLogger(__name__)

# Type for command handlers
CommandHandler = Callable[[Session, dict], Coroutine[Any, Any, dict]]


# ---------------------------------------------------------------------------
# Sampling helpers
# ---------------------------------------------------------------------------

async def _sample_into(session: Session, *, wait_ms: int = 0) -> tuple[MergeResult, RawSnapshot] | None:
    """Sample the surface and merge it into the session transcript.

    Returns None when sampling failed; that is "no new data", not an error.
    A dead context is re-raised so the command can be retried.
    """
    try:
        snapshot = await extraction.sample(session.page, wait_ms=wait_ms)
    except Exception as exc:
        if is_context_invalidated(exc):
            raise
        session.sample_failures += 1
        log.warning("Sampling failed for %s (%d in a row): %s",
                    session.identity, session.sample_failures, exc)
        return None
    result = merge(session.transcript, snapshot)
    session.transcript = result.state
    session.sample_failures = 0
    return result, snapshot


def _follow_conversation(session: Session) -> None:
    """Start a fresh transcript when the page moved to another conversation."""
    remote_id = actions.conversation_id(session.url)
    if remote_id and remote_id != session.remote_session_id:
        if session.remote_session_id is not None:
            session.transcript = TranscriptState()
        session.remote_session_id = remote_id


def _latest_pending_thumbnail(session: Session) -> str | None:
    for entry in reversed(session.transcript.entries):
        if entry.video is not None and not entry.video.resolved and entry.video.thumbnail:
            return entry.video.thumbnail
    return None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def cmd_navigate(session: Session, payload: dict) -> dict:
    """Navigate, then capture the post-navigation transcript."""
    moved = await actions.navigate(session.page, payload.get("url", ""))
    _follow_conversation(session)
    wait_ms = Config.TRANSCRIPT_WAIT if session.remote_session_id else 0
    await _sample_into(session, wait_ms=wait_ms)
    reply: dict[str, Any] = {"success": True, "url": session.url, "navigated": moved}
    if session.transcript.entries:
        reply["messages"] = session.transcript.to_wire()
    return reply


async def cmd_back(session: Session, payload: dict) -> dict:
    url = await actions.go_back(session.page)
    _follow_conversation(session)
    return {"success": True, "url": url}


async def cmd_send_message(session: Session, payload: dict) -> dict:
    await actions.send_message(session.page, payload.get("message", ""))
    _follow_conversation(session)
    await _sample_into(session)
    return {"success": True, "url": session.url}


async def cmd_submit_prompt(session: Session, payload: dict) -> dict:
    """Open a new remote conversation with ``prompt``."""
    path = await actions.submit_prompt(
        session.page,
        payload.get("prompt", ""),
        from_home=payload.get("fromHomePage", True),
    )
    session.transcript = TranscriptState()
    session.remote_session_id = actions.conversation_id(path)
    return {
        "success": True,
        "sessionPath": path,
        "sessionUrl": target_url(path),
        "sessionId": session.remote_session_id,
    }


async def cmd_upload_files(session: Session, payload: dict) -> dict:
    count = await actions.upload_files(session.page, payload.get("files"))
    return {"success": True, "count": count}


async def cmd_get_messages(session: Session, payload: dict) -> dict:
    sampled = await _sample_into(session)
    reply: dict[str, Any] = {
        "success": True,
        "url": session.url,
        "messages": session.transcript.to_wire(),
        "delta": [],
        "consecutiveFailures": session.sample_failures,
    }
    if sampled is None:
        reply["stale"] = True
        return reply
    result, snapshot = sampled
    reply["delta"] = [entry.to_wire() for entry in result.delta]
    reply["streaming"] = snapshot.streaming
    if snapshot.error_banner:
        reply["hasError"] = True
        reply["error"] = snapshot.error_banner
    return reply


async def cmd_get_generation_progress(session: Session, payload: dict) -> dict:
    try:
        progress = await extraction.sample_progress(session.page)
    except Exception as exc:
        if is_context_invalidated(exc):
            raise
        session.sample_failures += 1
        log.warning("Progress sampling failed for %s: %s", session.identity, exc)
        last = session.transcript.progress or GenerationProgress()
        return {
            "success": True,
            "data": last.to_wire(),
            "stale": True,
            "consecutiveFailures": session.sample_failures,
        }
    session.sample_failures = 0
    session.transcript = session.transcript.model_copy(update={"progress": progress})
    return {"success": True, "data": progress.to_wire()}


async def cmd_get_video_url(session: Session, payload: dict) -> dict:
    """Resolve the most recent pending video to a playable reference."""
    resolved = await extraction.resolve_video(
        session.page, prefer_thumbnail=_latest_pending_thumbnail(session),
    )
    before = len(session.transcript.fingerprints)
    result = merge(session.transcript, RawSnapshot(elements=[resolved], url=session.url))
    # not a surface sample: the last observed progress still stands
    session.transcript = result.state.model_copy(update={"progress": session.transcript.progress})
    return {
        "success": True,
        "data": {
            "videoUrl": resolved.video_url,
            "poster": resolved.poster,
            "title": resolved.title,
        },
        "duplicate": len(result.state.fingerprints) == before,
    }


def _with_resolved(snapshot: RawSnapshot, videos: list[VideoResolved]) -> RawSnapshot:
    """Swap placeholders for the videos resolved from the same card."""
    by_thumbnail = {strip_query(v.thumbnail): v for v in videos if v.thumbnail}
    used: set[int] = set()
    elements = []
    for element in snapshot.elements:
        if isinstance(element, VideoPlaceholder):
            video = by_thumbnail.get(strip_query(element.thumbnail))
            if video is not None and id(video) not in used:
                used.add(id(video))
                elements.append(video.model_copy(update={
                    "title": element.title or video.title,
                    "subtitle": element.subtitle or video.subtitle,
                }))
                continue
        elements.append(element)
    elements.extend(v for v in videos if id(v) not in used)
    return snapshot.model_copy(update={"elements": elements})


async def cmd_initial_load(session: Session, payload: dict) -> dict:
    """Full resync: resolve every card, then rebuild the transcript from scratch."""
    _follow_conversation(session)
    videos = await extraction.resolve_all(session.page)
    snapshot = await extraction.sample(session.page, wait_ms=Config.TRANSCRIPT_WAIT)
    result = merge(TranscriptState(), _with_resolved(snapshot, videos))
    session.transcript = result.state
    session.sample_failures = 0
    return {
        "success": True,
        "url": session.url,
        "messages": result.state.to_wire(),
        "videos": len(videos),
    }


HANDLERS: dict[str, CommandHandler] = {
    "navigate": cmd_navigate,
    "back": cmd_back,
    "send_message": cmd_send_message,
    "submit_prompt": cmd_submit_prompt,
    "upload_files": cmd_upload_files,
    "get_messages": cmd_get_messages,
    "get_generation_progress": cmd_get_generation_progress,
    "get_video_url": cmd_get_video_url,
    "initial_load": cmd_initial_load,
}


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def _tag(command: Command, reply: dict) -> dict:
    reply.setdefault("action", command.action)
    if command.request_id is not None:
        reply["id"] = command.request_id
    return reply


async def _run_locked(registry: SessionRegistry, session: Session,
                      handler: CommandHandler, payload: dict) -> dict:
    async with session.lock:
        if session.closing:
            raise ContextInvalidatedError("Session was closed")
        try:
            return await handler(session, payload)
        except PlaywrightError as exc:
            raise classify_error(exc) from exc
        finally:
            registry.touch(session)


async def execute(registry: SessionRegistry, identity: str, command: Command) -> dict:
    """Run one command for ``identity`` and return its reply."""
    action = command.action
    if action == "ping":
        return _tag(command, {"success": True, "message": "pong"})
    if action == "logout":
        released = await registry.release(identity)
        return _tag(command, {"success": True, "released": released})

    handler = HANDLERS.get(action)
    if handler is None:
        error = CommandExecutionError(
            f"Unknown action: {action}. Available: {', '.join(sorted(HANDLERS))}",
            code="INVALID_COMMAND",
        )
        return _tag(command, error.to_reply(action))

    try:
        session = await registry.acquire(identity)
        try:
            reply = await _run_locked(registry, session, handler, command.payload)
        except ContextInvalidatedError as exc:
            log.warning("Context lost for %s during %s (%s); recreating session",
                        identity, action, exc.message)
            session = await registry.recreate(session)
            reply = await _run_locked(registry, session, handler, command.payload)
    except BridgeError as exc:
        level = logging.INFO if exc.recoverability is Recoverability.RECOVERABLE else logging.WARNING
        log.log(level, "%s failed for %s: [%s] %s%s", action, identity, exc.code, exc.message,
                f" ({exc.details['cause']})" if exc.details.get("cause") else "")
        reply = exc.to_reply(action)
    return _tag(command, reply)
