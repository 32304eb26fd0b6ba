"""
Consumer-side client for the command channel.

Implements the polling contract: generation is observed by repeated short
commands, a failed or stale sample counts as "still waiting", and only a
bounded run of consecutive failures is treated as terminal.

    async with BridgeClient("http://127.0.0.1:8500", token=token) as client:
        await client.request("navigate", url="/agent/abc")
        video = await client.wait_for_video()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

import aiohttp

from livebridge.config import Config

log = logging.getLogger(__name__)

TIMEOUT = aiohttp.ClientTimeout(total=90)


class PollingGaveUp(Exception):
    """Raised after too many consecutive failed polls."""


class BridgeClient:
    def __init__(self, base_url: str, token: str | None = None, *,
                 session: aiohttp.ClientSession | None = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._http = session
        self._owns_http = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> BridgeClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _headers(self) -> dict:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def connect(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=TIMEOUT)
        self._ws = await self._http.ws_connect(
            f"{self.base_url}/ws", heartbeat=Config.WS_HEARTBEAT,
        )
        if self.token:
            reply = await self.request("authenticate", token=self.token)
            if reply.get("action") != "authenticated":
                raise PermissionError(reply.get("error", "authentication failed"))

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    async def request(self, action: str, **payload: Any) -> dict:
        """Send one command and wait for the reply carrying its id."""
        if self._ws is None:
            raise RuntimeError("Client is not connected")
        request_id = next(self._ids)
        await self._ws.send_json({"action": action, "id": request_id, **payload})
        while True:
            reply = await self._ws.receive_json()
            if reply.get("id") == request_id:
                return reply
            log.debug("Ignoring uncorrelated reply: %s", reply.get("action"))

    # -----------------------------------------------------------------------
    # Polling
    # -----------------------------------------------------------------------

    async def poll(
        self,
        action: str,
        done,
        *,
        interval: float = 2.0,
        max_failures: int = 5,
        max_polls: int | None = None,
    ) -> dict:
        """Repeat ``action`` until ``done(reply)`` is true.

        Failed or stale replies count towards ``max_failures``; any good
        reply resets the count.
        """
        failures = 0
        polls = 0
        while True:
            reply = await self.request(action)
            polls += 1
            if reply.get("success") and not reply.get("stale"):
                failures = 0
                if done(reply):
                    return reply
            else:
                failures += 1
                log.debug("%s poll failed (%d/%d): %s", action, failures, max_failures, reply.get("error"))
                if failures >= max_failures:
                    raise PollingGaveUp(f"{action} failed {failures} times in a row: {reply.get('error')}")
            if max_polls is not None and polls >= max_polls:
                raise PollingGaveUp(f"{action} not done after {polls} polls")
            await asyncio.sleep(interval)

    async def wait_for_generation(self, **kwargs: Any) -> dict:
        reply = await self.poll(
            "get_generation_progress",
            lambda r: not r.get("data", {}).get("isGenerating"),
            **kwargs,
        )
        return reply["data"]

    async def wait_for_video(self, **kwargs: Any) -> dict:
        """Poll get_video_url until the remote hands out a playable reference."""
        reply = await self.poll("get_video_url", lambda r: bool(r.get("data", {}).get("videoUrl")), **kwargs)
        return reply["data"]

    async def submit_prompt(self, prompt: str, from_home: bool = True) -> dict:
        async with self._http.post(
            f"{self.base_url}/submit-prompt",
            json={"prompt": prompt, "fromHomePage": from_home},
            headers=self._headers(),
        ) as resp:
            return await resp.json()

    async def health(self) -> dict:
        async with self._http.get(f"{self.base_url}/health") as resp:
            return await resp.json()
