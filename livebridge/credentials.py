"""
Credential store for remote-application cookies.

Cookies are read at session-creation time and seeded into the new browsing
context. Lookup order for an identity:
  1. <CREDENTIALS_DIR>/<identity>.json (per-identity cookies)
  2. SHARED_COOKIES_FILE (the account the service logs in with)

Both files hold either a bare cookie list or ``{"cookies": [...]}``, the
format Playwright's ``storage_state`` and most cookie exporters produce.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from livebridge.config import Config, safe_identity_path, validate_identity_name

log = logging.getLogger(__name__)


def _read_cookie_file(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text())
    cookies = data.get("cookies", []) if isinstance(data, dict) else data
    if not isinstance(cookies, list):
        raise ValueError(f"{path}: cookies must be a list")
    return [_normalize_cookie(c) for c in cookies if isinstance(c, dict) and c.get("name")]


def _normalize_cookie(cookie: dict[str, Any]) -> dict[str, Any]:
    """Coerce exported cookies into the shape Playwright's add_cookies accepts."""
    out = {k: cookie[k] for k in ("name", "value", "domain", "path", "expires", "httpOnly", "secure")
           if k in cookie}
    out.setdefault("value", "")
    out.setdefault("path", "/")
    same_site = cookie.get("sameSite")
    if isinstance(same_site, str):
        same_site = same_site.capitalize()
        if same_site in ("Strict", "Lax", "None"):
            out["sameSite"] = same_site
    if "expires" in out and out["expires"] in (None, -1):
        out.pop("expires")
    return out


class CredentialStore:
    """File-backed cookie store keyed by identity."""

    def __init__(self, base_dir: Path | None = None, shared_file: Path | None = None):
        self.base_dir = base_dir or Config.CREDENTIALS_DIR
        self.shared_file = shared_file or Config.SHARED_COOKIES_FILE

    def _identity_file(self, identity: str) -> Path | None:
        if validate_identity_name(identity):
            return None
        return safe_identity_path(self.base_dir, identity)

    def has_shared(self) -> bool:
        return self.shared_file.exists()

    def load(self, identity: str) -> list[dict[str, Any]]:
        """Cookies to seed a new context for ``identity``. Empty if none are stored."""
        candidates = [self._identity_file(identity), self.shared_file]
        for path in candidates:
            if path is None or not path.exists():
                continue
            try:
                cookies = _read_cookie_file(path)
            except (OSError, ValueError) as exc:
                log.warning("Unreadable cookie file %s: %s", path, exc)
                continue
            log.debug("Loaded %d cookies for %s from %s", len(cookies), identity, path.name)
            return cookies
        return []

    def save(self, identity: str, cookies: list[dict[str, Any]]) -> dict:
        """Persist cookies for an identity."""
        path = self._identity_file(identity)
        if path is None:
            return {"success": False, "error": f"Invalid identity: {identity}"}
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"cookies": cookies}, indent=2))
        return {"success": True, "path": str(path), "count": len(cookies)}

    def delete(self, identity: str) -> bool:
        path = self._identity_file(identity)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True
