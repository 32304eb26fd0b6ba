"""
Surface interactions: the automation steps commands are built from.

Each function drives the page of one session and raises
CommandExecutionError for failures the caller should report; raw
Playwright errors propagate so the command layer can classify them
(a dead context is recreated, anything else fails the command).
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from livebridge.config import Config, target_url
from livebridge.errors import CommandExecutionError
from livebridge.extraction import load_selectors
from livebridge.models import SurfaceSelectors

log = logging.getLogger(__name__)


def current_path(page) -> str:
    return urlparse(page.url).path or "/"


def conversation_id(url: str) -> str | None:
    """Remote conversation id embedded in a conversation URL."""
    m = Config.CONVERSATION_PATH_RE.search(urlparse(url).path)
    return m.group(1) if m else None


def _same_location(a: str, b: str) -> bool:
    pa, pb = urlparse(a), urlparse(b)
    return (pa.netloc, pa.path.rstrip("/"), pa.query) == (pb.netloc, pb.path.rstrip("/"), pb.query)


async def navigate(page, url: str) -> bool:
    """Go to ``url`` (relative to the target). Returns False when already there."""
    if not url:
        raise CommandExecutionError("Missing required param: url", code="INVALID_COMMAND")
    destination = target_url(url)
    if _same_location(page.url, destination):
        return False
    await page.goto(destination, wait_until="domcontentloaded", timeout=Config.NAVIGATION_TIMEOUT)
    return True


async def go_back(page) -> str:
    await page.go_back(wait_until="domcontentloaded", timeout=Config.NAVIGATION_TIMEOUT)
    return page.url


async def _fill_and_submit(page, text: str, selectors: SurfaceSelectors) -> None:
    prompt = page.locator(selectors.prompt_input).first
    try:
        await prompt.wait_for(state="visible", timeout=Config.ACTION_TIMEOUT)
    except PlaywrightTimeoutError as exc:
        raise CommandExecutionError("Prompt input not found on page") from exc
    await prompt.click()
    await prompt.fill(text)

    submit = page.locator(selectors.submit_button).first
    try:
        await submit.wait_for(state="visible", timeout=Config.ACTION_TIMEOUT)
    except PlaywrightTimeoutError as exc:
        raise CommandExecutionError("Submit button is not available") from exc
    await submit.click()


async def send_message(page, message: str, selectors: SurfaceSelectors | None = None) -> None:
    """Type a message into the prompt box and submit it.

    Messages replaying an earlier conversation start from the landing page.
    """
    selectors = selectors or load_selectors()
    if not message or not message.strip():
        raise CommandExecutionError("Message is required", code="INVALID_COMMAND")
    if current_path(page) == Config.LANDING_PATH or Config.HISTORY_CONTEXT_MARKER in message:
        await navigate(page, Config.LANDING_PATH)
    await _fill_and_submit(page, message, selectors)


async def submit_prompt(
    page,
    prompt: str,
    *,
    from_home: bool = True,
    selectors: SurfaceSelectors | None = None,
) -> str:
    """Start a new conversation and wait for the remote to assign it a URL.

    Returns the conversation path (e.g. ``/agent/<id>``).
    """
    selectors = selectors or load_selectors()
    if not prompt or not prompt.strip():
        raise CommandExecutionError("Prompt is required", code="INVALID_COMMAND")
    if from_home:
        await navigate(page, Config.LANDING_PATH)
    await _fill_and_submit(page, prompt, selectors)
    try:
        await page.wait_for_url(
            re.compile(Config.CONVERSATION_PATH_RE.pattern), timeout=Config.NAVIGATION_TIMEOUT,
        )
    except PlaywrightTimeoutError as exc:
        raise CommandExecutionError("Remote did not open a conversation for the prompt") from exc
    return urlparse(page.url).path


def _decode_files(files: Any) -> list[dict[str, Any]]:
    if not isinstance(files, list) or not files:
        raise CommandExecutionError("No files provided", code="INVALID_COMMAND")
    payloads = []
    for item in files:
        if not isinstance(item, dict) or not item.get("name") or not item.get("content"):
            raise CommandExecutionError("Each file needs a name and base64 content", code="INVALID_COMMAND")
        content = item["content"]
        if isinstance(content, str) and content.startswith("data:"):
            content = content.split(",", 1)[-1]
        try:
            buffer = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CommandExecutionError(f"Invalid base64 content for {item['name']}",
                                        code="INVALID_COMMAND") from exc
        payloads.append({
            "name": item["name"],
            "mimeType": item.get("mimeType") or item.get("type") or "application/octet-stream",
            "buffer": buffer,
        })
    return payloads


async def upload_files(page, files: Any, selectors: SurfaceSelectors | None = None) -> int:
    """Attach files to the prompt's file input. Returns the number attached."""
    selectors = selectors or load_selectors()
    payloads = _decode_files(files)
    file_input = page.locator(selectors.file_input).first
    if not await page.locator(selectors.file_input).count():
        raise CommandExecutionError("No file input on page")
    await file_input.set_input_files(payloads)
    log.debug("Attached %d file(s)", len(payloads))
    return len(payloads)
