#!/usr/bin/env python3
"""
HTTP and websocket server for livebridge.

Keeps one automated browsing session per identity alive between requests
and exposes it over:
  GET  /ws                persistent command channel (see channel.py)
  POST /submit-prompt     start a remote conversation
  GET  /agent/{id}        open a conversation and return its transcript
  POST /navigate-agent    same as GET /agent/{id}, id in the body
  POST /reload-context    drop every session after credentials changed
  GET  /health            liveness and session count

Usage:
    livebridge-server [--port 8500] [--host 127.0.0.1]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from http import HTTPStatus

from aiohttp import web

from livebridge import commands
from livebridge.auth import TokenVerifier
from livebridge.browser_engine import BrowserEngine
from livebridge.channel import handle_ws, request_token
from livebridge.config import Config
from livebridge.credentials import CredentialStore
from livebridge.models import Command
from livebridge.registry import SessionRegistry

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identity middleware
# ---------------------------------------------------------------------------

@web.middleware
async def identity_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Resolve the caller identity from the token cookie or Bearer header.

    A missing, invalid or expired token means anonymous; the websocket
    handles its own authentication.
    """
    if request.path not in ("/health", "/ws"):
        request["identity"] = request.app["verifier"].identify(request_token(request))
    return await handler(request)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def _status_for(reply: dict) -> int:
    if reply.get("success"):
        return HTTPStatus.OK
    code = reply.get("code", "")
    if code == "INVALID_COMMAND":
        return HTTPStatus.BAD_REQUEST
    if code in ("SESSION_CREATE_FAILED", "SESSION_LIMIT"):
        return HTTPStatus.SERVICE_UNAVAILABLE
    return HTTPStatus.INTERNAL_SERVER_ERROR


async def _read_json(request: web.Request) -> dict | web.Response:
    try:
        body = await request.json()
    except (json.JSONDecodeError, web.HTTPBadRequest) as e:
        return web.json_response(
            {"success": False, "error": f"Invalid JSON: {e}"},
            status=HTTPStatus.BAD_REQUEST,
        )
    if not isinstance(body, dict):
        return web.json_response(
            {"success": False, "error": "Request body must be a JSON object"},
            status=HTTPStatus.BAD_REQUEST,
        )
    return body


async def _run(request: web.Request, action: str, payload: dict) -> web.Response:
    command = Command(action=action, payload=payload)
    try:
        reply = await commands.execute(request.app["registry"], request["identity"], command)
    except Exception as e:
        log.exception("Unhandled error in %s", action)
        reply = {"success": False, "action": action, "error": f"Unhandled error: {e}"}
    return web.json_response(reply, status=_status_for(reply))


async def handle_submit_prompt(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if isinstance(body, web.Response):
        return body
    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        return web.json_response(
            {"success": False, "error": "Prompt is required"},
            status=HTTPStatus.BAD_REQUEST,
        )
    return await _run(request, "submit_prompt", {
        "prompt": prompt,
        "fromHomePage": body.get("fromHomePage", True),
    })


async def _open_conversation(request: web.Request, session_id: str) -> web.Response:
    if not session_id:
        return web.json_response(
            {"success": False, "error": "Session ID is required"},
            status=HTTPStatus.BAD_REQUEST,
        )
    return await _run(request, "navigate", {"url": f"/agent/{session_id}"})


async def handle_agent(request: web.Request) -> web.Response:
    return await _open_conversation(request, request.match_info["session_id"])


async def handle_navigate_agent(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if isinstance(body, web.Response):
        return body
    return await _open_conversation(request, str(body.get("sessionId") or ""))


async def handle_reload_context(request: web.Request) -> web.Response:
    """Tear down every session so new ones pick up refreshed credentials."""
    credentials: CredentialStore = request.app["credentials"]
    if not credentials.has_shared():
        return web.json_response({
            "success": False,
            "error": f"No credentials found at {credentials.shared_file}",
        })
    closed = await request.app["registry"].invalidate_all()
    log.info("Context reload requested by %s: %d session(s) closed", request["identity"], closed)
    return web.json_response({"success": True, "closed": closed})


async def handle_health(request: web.Request) -> web.Response:
    registry: SessionRegistry = request.app["registry"]
    return web.json_response({
        "status": "ok",
        "active_sessions": len(registry),
        "channels": len(request.app["channels"]),
        "sessions": registry.list_sessions(),
    })


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def _session_sweeper(app: web.Application) -> None:
    """Periodic background task that reaps idle sessions."""
    interval = app["sweep_interval"]
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                reaped = await app["registry"].sweep()
                if reaped:
                    log.info("[gc] reaped %d idle session(s): %s", len(reaped), reaped)
            except Exception as e:
                log.error("[gc] sweep error: %s", e)
    except asyncio.CancelledError:
        pass


async def on_startup(app: web.Application) -> None:
    """Start background tasks on server startup."""
    app["sweeper_task"] = asyncio.create_task(_session_sweeper(app))


async def cleanup(app: web.Application) -> None:
    """Close every session and the browser on shutdown."""
    sweeper = app.get("sweeper_task")
    if sweeper:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

    await app["registry"].close()
    engine = app.get("engine")
    if engine is not None:
        await engine.stop()


def create_app(
    registry: SessionRegistry | None = None,
    *,
    engine: BrowserEngine | None = None,
    credentials: CredentialStore | None = None,
    verifier: TokenVerifier | None = None,
    sweep_interval: float | None = None,
) -> web.Application:
    """Build the application. Collaborators can be injected (tests pass fakes)."""
    credentials = credentials or CredentialStore()
    if registry is None:
        engine = engine or BrowserEngine()
        registry = SessionRegistry(engine, credentials)

    app = web.Application(middlewares=[identity_middleware])
    app["registry"] = registry
    app["engine"] = engine
    app["credentials"] = credentials
    app["verifier"] = verifier or TokenVerifier()
    app["channels"] = set()
    app["sweep_interval"] = sweep_interval or Config.SESSION_SWEEP_INTERVAL

    app.router.add_get("/ws", handle_ws)
    app.router.add_post("/submit-prompt", handle_submit_prompt)
    app.router.add_get("/agent/{session_id}", handle_agent)
    app.router.add_post("/navigate-agent", handle_navigate_agent)
    app.router.add_post("/reload-context", handle_reload_context)
    app.router.add_get("/health", handle_health)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(cleanup)
    return app


def main():
    parser = argparse.ArgumentParser(description="livebridge session server")
    parser.add_argument("--port", type=int, default=Config.DEFAULT_PORT,
                        help=f"Port (default: {Config.DEFAULT_PORT})")
    parser.add_argument("--host", default=Config.DEFAULT_HOST,
                        help=f"Host (default: {Config.DEFAULT_HOST})")
    parser.add_argument("--tier", type=int, default=Config.ENGINE_TIER,
                        help="Engine tier: 1 = playwright, 2 = patchright")
    args = parser.parse_args()

    logging.basicConfig(
        level=Config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    Config.ensure_dirs()

    app = create_app(engine=BrowserEngine(tier=args.tier))
    if Config.AUTH_SECRET == "dev-secret-change-me":
        log.warning("AUTH_SECRET is the development default; set it in production")
    log.info("livebridge server starting on %s:%d (target %s)", args.host, args.port, Config.TARGET_URL)
    web.run_app(app, host=args.host, port=args.port, print=None)


if __name__ == "__main__":
    main()
