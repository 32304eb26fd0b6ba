"""
Extraction engine: point-in-time reads of the remote surface.

The remote UI has no event subscription, so everything here is sampling:
  sample()          → RawSnapshot of the transcript (user turns, agent text,
                      video placeholders / resolved videos, progress widget)
  sample_progress() → GenerationProgress only
  resolve_video()   → open one placeholder card, read its playable
                      reference, dismiss the player
  resolve_all()     → resolve_video() over every card (initial load)

The in-page scripts only collect raw rows; classification, filtering and
validation into the tagged SurfaceElement variants happen in Python so the
merge engine only ever sees validated data. sample() and
sample_progress() do not interact with the page and can be repeated freely.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import TypeAdapter, ValidationError

from livebridge.config import Config
from livebridge.errors import CommandExecutionError, is_context_invalidated
from livebridge.media import extract_video_title, is_playable, validate_playable
from livebridge.models import (
    GenerationProgress,
    RawSnapshot,
    SurfaceElement,
    SurfaceSelectors,
    VideoResolved,
    strip_query,
)

log = logging.getLogger(__name__)

_ELEMENT = TypeAdapter(SurfaceElement)


@lru_cache(maxsize=1)
def load_selectors() -> SurfaceSelectors:
    return SurfaceSelectors(**Config.selector_overrides())


# ---------------------------------------------------------------------------
# In-page scripts
# ---------------------------------------------------------------------------

_JS_HELPERS = """
  const text = (el) => (el ? (el.innerText || el.textContent || '').trim() : '');
  const visible = (el) => !!el && el.offsetParent !== null;
  const videoSrc = (v) => v.currentSrc || v.src || (v.querySelector('source') ? v.querySelector('source').src : '');
  const readCard = (card) => {
    const img = card.querySelector(s.card_thumbnail);
    return {
      thumbnail: img ? (img.currentSrc || img.src || '') : '',
      title: text(card.querySelector(s.card_title)),
      subtitle: text(card.querySelector(s.card_subtitle)),
    };
  };
  const readProgress = (card) => {
    const steps = [...card.querySelectorAll(s.progress_step)].map((row) => {
      let status = 'pending';
      if (row.querySelector(s.step_completed_icon)) status = 'completed';
      else if (row.querySelector(s.step_current_icon)) status = 'current';
      return { text: text(row), status };
    }).filter((step) => step.text);
    const current = steps.find((step) => step.status === 'current');
    const percentage = text(card.querySelector(s.progress_percent));
    return {
      isGenerating: !!percentage || !!current,
      percentage,
      currentStatus: text(card.querySelector(s.progress_status)),
      currentStep: current ? current.text : '',
      message: text(card.querySelector(s.progress_message)),
      steps,
    };
  };
  const isProgress = (el) => el.matches(s.progress_card)
    && !!el.querySelector(s.progress_percent + ', ' + s.progress_step);
  const isCard = (el) => el.matches(s.video_card) || el.matches(s.completed_card);
"""

SAMPLE_JS = """(s) => {
""" + _JS_HELPERS + """
  const rows = [];
  const emitCard = (card) => {
    const info = readCard(card);
    const video = card.querySelector(s.player_video);
    const src = video ? videoSrc(video) : '';
    if (src) {
      rows.push({ kind: 'video_resolved', videoUrl: src, poster: video.poster || '', ...info });
    } else {
      rows.push({ kind: 'video_placeholder', ...info });
    }
  };
  const all = [s.progress_card, s.video_card, s.completed_card, s.user_row, s.agent_row].join(', ');
  for (const el of document.querySelectorAll(all)) {
    if (el.parentElement && el.parentElement.closest(all)) continue;
    if (isProgress(el)) { rows.push({ kind: 'generation_progress', progress: readProgress(el) }); continue; }
    if (isCard(el)) { emitCard(el); continue; }
    if (el.matches(s.user_row)) {
      const images = [...el.querySelectorAll(s.user_images)]
        .filter((img) => img.src)
        .map((img) => ({ url: img.src, alt: img.alt || '' }));
      rows.push({ kind: 'user_turn', text: text(el.querySelector(s.user_bubble)), images });
      continue;
    }
    let reply = '';
    for (const sel of s.agent_reply) {
      const node = el.querySelector(sel);
      if (node && !node.closest(s.reasoning)) {
        reply = text(node);
        if (reply) break;
      }
    }
    if (reply) {
      const streaming = [...el.querySelectorAll(s.streaming_marker)].some(visible);
      rows.push({ kind: 'agent_text', text: reply, streaming });
    }
    for (const nested of el.querySelectorAll([s.progress_card, s.video_card, s.completed_card].join(', '))) {
      if (isProgress(nested)) rows.push({ kind: 'generation_progress', progress: readProgress(nested) });
      else emitCard(nested);
    }
    for (const video of el.querySelectorAll(s.player_video)) {
      if (video.closest([s.video_card, s.completed_card].join(', '))) continue;
      const src = videoSrc(video);
      if (src) rows.push({ kind: 'video_resolved', videoUrl: src, poster: video.poster || '', thumbnail: video.poster || '' });
    }
  }
  const banner = document.querySelector(s.error_banner);
  return { url: location.href, rows, errorBanner: banner ? text(banner) : null };
}"""

PROGRESS_JS = """(s) => {
""" + _JS_HELPERS + """
  const cards = [...document.querySelectorAll(s.progress_card)].filter(isProgress);
  return cards.length ? readProgress(cards[cards.length - 1]) : null;
}"""

CARDS_JS = """(cards, s) => {
""" + _JS_HELPERS + """
  return cards.map(readCard);
}"""

PLAYER_JS = """(s) => {
""" + _JS_HELPERS + """
  return [...document.querySelectorAll(s.player_video)]
    .map((v) => ({ videoUrl: videoSrc(v), poster: v.poster || '' }))
    .filter((v) => v.videoUrl);
}"""


# ---------------------------------------------------------------------------
# Row classification
# ---------------------------------------------------------------------------

_PRELOADER_TEXTS = {"thinking", "thinking...", "reasoning", "reasoning..."}

_LIMIT_PATTERNS = [
    re.compile(r"reached.*limit", re.IGNORECASE),
    re.compile(r"add generative credits", re.IGNORECASE),
    re.compile(r"switch to unlimited mode", re.IGNORECASE),
    re.compile(r"video agent.*limit", re.IGNORECASE),
]


def is_preloader_text(text: str) -> bool:
    """Placeholder text the agent shows while it works ("Thinking...")."""
    normalized = text.strip().lower()
    return normalized in _PRELOADER_TEXTS or (len(normalized) < 15 and "..." in normalized)


def is_limit_banner(text: str) -> bool:
    return any(p.search(text) for p in _LIMIT_PATTERNS)


def classify_rows(rows: list[dict[str, Any]], host_prefix: str | None = None) -> list[SurfaceElement]:
    """Validate raw rows into surface elements, dropping noise.

    Resolved rows whose reference is not playable yet (loading animation,
    foreign host) are downgraded to placeholders.
    """
    elements: list[SurfaceElement] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        kind = row.get("kind")
        text = row.get("text") or ""
        if kind == "agent_text" and (is_preloader_text(text) or is_limit_banner(text)):
            continue
        if kind == "user_turn" and Config.HISTORY_CONTEXT_MARKER in text:
            continue
        if kind == "video_resolved" and not is_playable(row.get("videoUrl"), host_prefix):
            row = {
                "kind": "video_placeholder",
                "thumbnail": row.get("thumbnail") or row.get("poster") or "",
                "title": row.get("title") or "",
                "subtitle": row.get("subtitle") or "",
            }
        try:
            elements.append(_ELEMENT.validate_python(row))
        except ValidationError as exc:
            log.debug("Dropping malformed %s row: %s", kind, exc.errors()[0]["msg"])
    return elements


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

async def sample(page, selectors: SurfaceSelectors | None = None, *, wait_ms: int = 0) -> RawSnapshot:
    """Read the transcript surface once.

    With ``wait_ms`` the transcript container is awaited first (used right
    after navigation); a timeout just means an empty transcript.
    """
    selectors = selectors or load_selectors()
    if wait_ms:
        try:
            await page.wait_for_selector(selectors.transcript_ready, timeout=wait_ms)
        except PlaywrightTimeoutError:
            log.debug("Transcript not ready after %dms on %s", wait_ms, page.url)
    raw = await page.evaluate(SAMPLE_JS, selectors.model_dump())
    if not isinstance(raw, dict):
        raw = {}
    return RawSnapshot(
        elements=classify_rows(raw.get("rows") or []),
        url=raw.get("url") or page.url,
        error_banner=raw.get("errorBanner") or None,
    )


async def sample_progress(page, selectors: SurfaceSelectors | None = None) -> GenerationProgress:
    selectors = selectors or load_selectors()
    raw = await page.evaluate(PROGRESS_JS, selectors.model_dump())
    if not raw:
        return GenerationProgress()
    return GenerationProgress.model_validate(raw)


# ---------------------------------------------------------------------------
# Video resolution
# ---------------------------------------------------------------------------

async def _read_player(page, selectors: SurfaceSelectors) -> tuple[dict | None, dict | None]:
    """Return (first playable video, first unusable video) currently on the page."""
    playable = unusable = None
    for video in await page.evaluate(PLAYER_JS, selectors.model_dump()) or []:
        if is_playable(video.get("videoUrl")):
            playable = playable or video
        else:
            unusable = unusable or video
    return playable, unusable


async def _open_and_read(page, card, selectors: SurfaceSelectors) -> tuple[dict | None, dict | None]:
    """Click a card until the player shows a playable reference."""
    playable = unusable = None
    clicked = False
    for attempt in range(Config.RESOLVE_ATTEMPTS):
        if not clicked:
            await card.click(timeout=Config.ACTION_TIMEOUT)
        try:
            await page.wait_for_selector(selectors.player_video, timeout=Config.PLAYER_WAIT)
            clicked = True
        except PlaywrightTimeoutError:
            log.debug("No player after click (attempt %d)", attempt + 1)
            clicked = False
            continue
        playable, unusable = await _read_player(page, selectors)
        if playable:
            break
        await page.wait_for_timeout(1000)
    return playable, unusable


async def dismiss_player(page, selectors: SurfaceSelectors | None = None) -> None:
    """Close the video player; Escape when there is no close button."""
    selectors = selectors or load_selectors()
    try:
        close = page.locator(selectors.close_button)
        if await close.count():
            await close.first.click(timeout=Config.ACTION_TIMEOUT)
        else:
            await page.keyboard.press("Escape")
    except PlaywrightError as exc:
        if is_context_invalidated(exc):
            raise
        log.debug("Player dismissal failed: %s", exc)


def _pick_card(cards_info: list[dict], prefer_thumbnail: str | None) -> int:
    if prefer_thumbnail:
        wanted = strip_query(prefer_thumbnail)
        for index in range(len(cards_info) - 1, -1, -1):
            if strip_query(cards_info[index].get("thumbnail")) == wanted:
                return index
    return len(cards_info) - 1


def _resolved(video: dict, card: dict) -> VideoResolved:
    url = video["videoUrl"]
    return VideoResolved(
        video_url=url,
        poster=video.get("poster") or card.get("thumbnail") or "",
        thumbnail=card.get("thumbnail") or "",
        title=extract_video_title(url, default=card.get("title") or None),
        subtitle=card.get("subtitle") or "",
    )


async def resolve_video(
    page,
    selectors: SurfaceSelectors | None = None,
    *,
    prefer_thumbnail: str | None = None,
) -> VideoResolved:
    """Resolve one video to a playable reference.

    Uses a player already open on the page if there is one; otherwise opens
    the card matching ``prefer_thumbnail`` (or the most recent card). The
    player is always dismissed before returning. Raises
    CommandExecutionError when no playable reference can be read.
    """
    selectors = selectors or load_selectors()
    playable, unusable = await _read_player(page, selectors)
    card_info: dict = {}
    opened = False
    try:
        if playable is None:
            cards = page.locator(selectors.video_card)
            cards_info = await cards.evaluate_all(CARDS_JS, selectors.model_dump())
            if not cards_info:
                error = validate_playable(unusable["videoUrl"]) if unusable else "No video found"
                raise CommandExecutionError(error)
            index = _pick_card(cards_info, prefer_thumbnail)
            card_info = cards_info[index]
            opened = True
            playable, unusable = await _open_and_read(page, cards.nth(index), selectors)
        if playable is None:
            raise CommandExecutionError(
                validate_playable(unusable["videoUrl"]) if unusable else "No video element found"
            )
        return _resolved(playable, card_info)
    finally:
        if opened:
            await dismiss_player(page, selectors)


async def resolve_all(page, selectors: SurfaceSelectors | None = None) -> list[VideoResolved]:
    """Open every video card in turn and collect the playable references."""
    selectors = selectors or load_selectors()
    cards = page.locator(selectors.video_card)
    cards_info = await cards.evaluate_all(CARDS_JS, selectors.model_dump())
    resolved: list[VideoResolved] = []
    for index, info in enumerate(cards_info):
        try:
            playable, _ = await _open_and_read(page, cards.nth(index), selectors)
        except PlaywrightError as exc:
            if is_context_invalidated(exc):
                raise
            log.warning("Card %d could not be opened: %s", index, exc)
            continue
        finally:
            await dismiss_player(page, selectors)
        if playable:
            resolved.append(_resolved(playable, info))
    log.info("Resolved %d of %d video card(s)", len(resolved), len(cards_info))
    return resolved
