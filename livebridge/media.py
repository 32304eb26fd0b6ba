"""Helpers for media references read off the remote surface.

All pure functions over strings, so extraction and reconciliation agree on
what a reference means.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qs, unquote, urlparse

from livebridge.config import Config
from livebridge.models import strip_query

_TRANSCODE_RE = re.compile(r"/transcode/([a-f0-9]+)/", re.IGNORECASE)
_CAPTION_RE = re.compile(r"caption_([a-f0-9]+)\.mp4", re.IGNORECASE)
_FILENAME_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def parse_fingerprint(ref: str | None) -> str | None:
    """Content fingerprint of a playable reference.

    The same video is served from differently signed URLs; the transcode
    hash (or caption hash) in the path is stable across them.
    """
    if not ref:
        return None
    m = _TRANSCODE_RE.search(ref) or _CAPTION_RE.search(ref)
    if m:
        return m.group(1).lower()
    return None


def fingerprint_or_ref(ref: str) -> str:
    """Fingerprint, or the query-stripped reference when the path carries none."""
    return parse_fingerprint(ref) or strip_query(ref)


def is_loading_animation(ref: str | None) -> bool:
    return bool(ref) and any(marker in ref for marker in Config.LOADING_ANIMATION_MARKERS)


def is_playable(ref: str | None, host_prefix: str | None = None) -> bool:
    """A reference the consumer can play: on the media host and not the loading animation."""
    prefix = host_prefix or Config.VIDEO_HOST_PREFIX
    return bool(ref) and ref.startswith(prefix) and not is_loading_animation(ref)


def validate_playable(ref: str | None, host_prefix: str | None = None) -> str | None:
    """Return an error message for an unusable reference, None when it is playable."""
    if not ref:
        return "No video element found"
    if is_loading_animation(ref):
        return "Loading animation detected, please wait..."
    if not ref.startswith(host_prefix or Config.VIDEO_HOST_PREFIX):
        return "Invalid video URL format"
    return None


def extract_video_title(ref: str | None, default: str | None = None) -> str:
    """Title from the ``response-content-disposition`` filename, without extension."""
    default = default if default is not None else Config.DEFAULT_VIDEO_TITLE
    if not ref:
        return default
    query = parse_qs(urlparse(ref).query)
    disposition = (query.get("response-content-disposition") or [""])[0]
    m = _FILENAME_RE.search(unquote(disposition))
    if not m:
        return default
    title = m.group(1).strip()
    if title.lower().endswith(".mp4"):
        title = title[:-4]
    return title or default
