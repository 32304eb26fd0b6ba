"""
Shared automated-browsing engine with BrowserTier ABC pattern.

One browser process serves the whole service; every session gets its own
isolated browsing context from it.

Tier 1: Vanilla Playwright Chromium, fastest startup.
Tier 2: Patchright, patched Chromium with stealth (no user_agent override).

All tiers implement BrowserTier ABC: detect() → init() → teardown().
"""

from __future__ import annotations

import abc
import asyncio
import importlib.util
import logging
from typing import Any

from livebridge.config import Config

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# BrowserTier ABC
# ---------------------------------------------------------------------------

class BrowserTier(abc.ABC):
    """Abstract base class for browser tiers.

    Each tier implements the lifecycle:
      detect()   → can this tier run on this system?
      init()     → start the driver and launch the shared browser
      teardown() → clean shutdown
    """

    @property
    @abc.abstractmethod
    def tier_number(self) -> int:
        ...

    @property
    @abc.abstractmethod
    def name(self) -> str:
        ...

    @abc.abstractmethod
    async def detect(self) -> bool:
        """Check if this tier's dependencies are available."""
        ...

    @abc.abstractmethod
    async def init(self) -> tuple[Any, Any]:
        """Launch browser. Returns (driver_handle, browser)."""
        ...

    def context_options(self) -> dict[str, Any]:
        return Config.context_options()

    async def teardown(self, handle: Any, browser: Any) -> None:
        """Clean shutdown of browser resources."""
        try:
            await browser.close()
        except Exception as exc:
            log.debug("browser.close failed: %s", exc)
        try:
            await handle.stop()
        except Exception as exc:
            log.debug("driver stop failed: %s", exc)


class Tier1Playwright(BrowserTier):
    """Vanilla Playwright Chromium."""

    @property
    def tier_number(self) -> int:
        return 1

    @property
    def name(self) -> str:
        return "playwright"

    async def detect(self) -> bool:
        return importlib.util.find_spec("playwright") is not None

    async def init(self) -> tuple[Any, Any]:
        from playwright.async_api import async_playwright

        pw = await async_playwright().start()
        browser = await pw.chromium.launch(headless=Config.HEADLESS)
        return pw, browser


class Tier2Patchright(BrowserTier):
    """Patchright, patched Chromium with stealth.

    Key differences from Tier 1:
      - Imports from patchright.async_api (``stealth`` extra)
      - No custom user_agent (Patchright's default Chrome UA is stealthier)
    """

    @property
    def tier_number(self) -> int:
        return 2

    @property
    def name(self) -> str:
        return "patchright"

    async def detect(self) -> bool:
        return importlib.util.find_spec("patchright") is not None

    async def init(self) -> tuple[Any, Any]:
        from patchright.async_api import async_playwright

        pw = await async_playwright().start()
        # Chrome 143+ needs --no-sandbox for DNS resolution in containers
        browser = await pw.chromium.launch(
            headless=Config.HEADLESS,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        return pw, browser

    def context_options(self) -> dict[str, Any]:
        opts = Config.context_options()
        opts.pop("user_agent", None)
        return opts


TIERS: dict[int, BrowserTier] = {
    1: Tier1Playwright(),
    2: Tier2Patchright(),
}


# ---------------------------------------------------------------------------
# Dialog handling
# ---------------------------------------------------------------------------

def _setup_dialog_handler(context: Any) -> None:
    """Auto-handle dialogs so a stray alert never blocks automation.

    alert/confirm/beforeunload are accepted, prompt is dismissed.
    """

    async def _on_dialog(dialog):
        try:
            if dialog.type in ("alert", "confirm", "beforeunload"):
                await dialog.accept()
            else:
                await dialog.dismiss()
        except Exception as exc:
            log.debug("dialog handling failed: %s", exc)

    context.on("dialog", _on_dialog)


# ---------------------------------------------------------------------------
# Engine handle
# ---------------------------------------------------------------------------

class BrowserEngine:
    """Process-wide engine instance that spawns isolated browsing contexts.

    The browser is launched lazily on the first context request and
    relaunched if it disconnects.
    """

    def __init__(self, tier: int | None = None):
        tier = tier or Config.ENGINE_TIER
        if tier not in TIERS:
            raise ValueError(f"Unknown engine tier {tier}; valid: {sorted(TIERS)}")
        self.tier: BrowserTier = TIERS[tier]
        self._handle: Any = None
        self._browser: Any = None
        self._start_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def start(self) -> None:
        async with self._start_lock:
            if self.running:
                return
            if self._handle is not None:
                await self.tier.teardown(self._handle, self._browser)
            if not await self.tier.detect():
                raise RuntimeError(f"Engine tier '{self.tier.name}' is not installed")
            self._handle, self._browser = await self.tier.init()
            log.info("Browser engine started (tier %d: %s)", self.tier.tier_number, self.tier.name)

    async def new_context(self, cookies: list[dict[str, Any]] | None = None) -> Any:
        """Create an isolated browsing context seeded with ``cookies``."""
        await self.start()
        opts = self.tier.context_options()
        if cookies:
            opts["storage_state"] = {"cookies": cookies, "origins": []}
        context = await self._browser.new_context(**opts)
        context.set_default_timeout(Config.ACTION_TIMEOUT)
        context.set_default_navigation_timeout(Config.NAVIGATION_TIMEOUT)
        _setup_dialog_handler(context)
        return context

    async def stop(self) -> None:
        async with self._start_lock:
            if self._handle is None:
                return
            await self.tier.teardown(self._handle, self._browser)
            self._handle = self._browser = None
            log.info("Browser engine stopped")
