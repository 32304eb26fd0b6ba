"""
Command channel: one persistent websocket per client.

Each connection owns a FIFO queue drained by a single task, so commands from
one connection run strictly one after another, side effects included. The
session lock (see registry.Session) serializes connections that share an
identity.

Protocol: one JSON object per message, ``{"action": ..., "id"?: ..., ...}``.
Every command gets exactly one reply carrying the same action and id.
A connection starts out anonymous; ``{"action": "authenticate", "token": ...}``
binds it to the token's identity.

Closing the connection drops its queued commands but lets the command in
flight finish; the session itself stays up for other connections.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable

from aiohttp import WSMsgType, web
from pydantic import ValidationError

from livebridge import commands
from livebridge.auth import ANONYMOUS, TokenVerifier
from livebridge.config import Config
from livebridge.errors import AuthenticationError
from livebridge.models import Command
from livebridge.registry import SessionRegistry

log = logging.getLogger(__name__)

SendFn = Callable[[dict], Awaitable[None]]

_STOP = object()


class CommandChannel:
    """Per-connection queue, drain loop and identity binding."""

    def __init__(
        self,
        send: SendFn,
        registry: SessionRegistry,
        verifier: TokenVerifier,
        identity: str = ANONYMOUS,
    ):
        self._send = send
        self._registry = registry
        self._verifier = verifier
        self.identity = identity
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._order = itertools.count(1)
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drain())

    # -----------------------------------------------------------------------
    # Inbound
    # -----------------------------------------------------------------------

    async def submit(self, raw: str | dict) -> None:
        """Parse one inbound message and queue it.

        Malformed messages are answered immediately with an error reply.
        """
        if self._closed:
            return
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
            if not isinstance(data, dict):
                raise ValueError("message must be a JSON object")
            command = Command.from_wire(data, arrival_order=next(self._order))
        except (ValueError, ValidationError) as exc:
            await self._reply({"success": False, "action": "error", "error": f"Invalid message: {exc}"})
            return
        self._queue.put_nowait(command)

    # -----------------------------------------------------------------------
    # Drain loop
    # -----------------------------------------------------------------------

    async def _drain(self) -> None:
        while True:
            command = await self._queue.get()
            if command is _STOP:
                return
            try:
                reply = await self.process(command)
            except Exception as exc:
                log.exception("Unhandled error in %s for %s", command.action, self.identity)
                reply = {"success": False, "action": command.action, "error": f"Unhandled error: {exc}"}
                if command.request_id is not None:
                    reply["id"] = command.request_id
            await self._reply(reply)

    async def process(self, command: Command) -> dict:
        if command.action == "authenticate":
            return self._authenticate(command)
        return await commands.execute(self._registry, self.identity, command)

    def _authenticate(self, command: Command) -> dict:
        token = command.payload.get("token", "")
        try:
            identity = self._verifier.require(token)
        except AuthenticationError as exc:
            log.info("Authentication failed on channel: %s", exc.message)
            reply = {"action": "authentication_failed", "success": False, "error": exc.message}
        else:
            previous, self.identity = self.identity, identity
            log.info("Channel authenticated as %s (was %s)", identity, previous)
            reply = {"action": "authenticated", "success": True, "identity": identity}
        if command.request_id is not None:
            reply["id"] = command.request_id
        return reply

    async def _reply(self, reply: dict) -> None:
        if self._closed:
            return
        try:
            await self._send(reply)
        except ConnectionError as exc:
            log.debug("Reply dropped, connection gone: %s", exc)

    # -----------------------------------------------------------------------
    # Shutdown
    # -----------------------------------------------------------------------

    async def aclose(self) -> None:
        """Drop queued commands and wait for the one in flight, if any."""
        if self._closed:
            return
        self._closed = True
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        if dropped:
            log.info("Dropped %d queued command(s) for %s", dropped, self.identity)
        if self._task is not None:
            self._queue.put_nowait(_STOP)
            await self._task


# ---------------------------------------------------------------------------
# aiohttp endpoint
# ---------------------------------------------------------------------------

def request_token(request: web.Request) -> str | None:
    """Credential presented with an HTTP/websocket request: cookie, then Bearer header."""
    token = request.cookies.get(Config.TOKEN_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    """Websocket endpoint; the aiohttp heartbeat closes connections that stop answering pings."""
    app = request.app
    ws = web.WebSocketResponse(heartbeat=Config.WS_HEARTBEAT)
    await ws.prepare(request)

    verifier: TokenVerifier = app["verifier"]
    channel = CommandChannel(
        send=ws.send_json,
        registry=app["registry"],
        verifier=verifier,
        identity=verifier.identify(request_token(request)),
    )
    channel.start()
    app["channels"].add(channel)
    log.info("Channel opened for %s", channel.identity)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await channel.submit(msg.data)
            elif msg.type == WSMsgType.ERROR:
                log.warning("Channel error for %s: %s", channel.identity, ws.exception())
    finally:
        app["channels"].discard(channel)
        await channel.aclose()
        log.info("Channel closed for %s", channel.identity)
    return ws
