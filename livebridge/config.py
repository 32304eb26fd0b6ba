"""Configuration for the livebridge service."""

import json
import os
import re
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv()


# Identity names become file names in the credential store
IDENTITY_FILE_RE = re.compile(r"^[a-zA-Z0-9._@+:-]+$")


def validate_identity_name(identity: str) -> str | None:
    """Validate an identity for use as a credential file name. Returns error string or None."""
    if not identity:
        return "Identity cannot be empty"
    if not IDENTITY_FILE_RE.match(identity):
        return f"Invalid identity '{identity}': only [a-zA-Z0-9._@+:-] allowed"
    if ".." in identity or identity.startswith("/"):
        return f"Invalid identity '{identity}': path traversal not allowed"
    return None


def safe_identity_path(base_dir: Path, identity: str, suffix: str = ".json") -> Path | None:
    """Resolve the credential file for an identity, rejecting traversal attempts."""
    if validate_identity_name(identity):
        return None
    filename = identity.replace(":", "__") + suffix
    resolved = (base_dir / filename).resolve()
    if not resolved.is_relative_to(base_dir.resolve()):
        return None
    return resolved


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Remote application
    TARGET_URL = os.getenv("LIVEBRIDGE_TARGET_URL", "https://app.heygen.com").rstrip("/")
    LANDING_PATH = "/home"
    CONVERSATION_PATH_RE = re.compile(r"/(?:agent|session)/([^/?#]+)")
    # Marker the remote UI embeds in prompts that replay an earlier conversation
    HISTORY_CONTEXT_MARKER = "This is the context of our previous chat:"

    # Identity / tokens
    AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-secret-change-me")
    TOKEN_COOKIE = "arena_token"
    TOKEN_TTL = 7 * 24 * 3600  # seconds

    # Credential store
    CREDENTIALS_DIR = Path(os.getenv(
        "LIVEBRIDGE_CREDENTIALS_DIR", str(Path.home() / ".livebridge" / "credentials")
    ))
    SHARED_COOKIES_FILE = Path(os.getenv(
        "LIVEBRIDGE_COOKIES_FILE", str(Path.home() / ".livebridge" / "cookies.json")
    ))

    # Browser engine
    ENGINE_TIER = int(os.getenv("LIVEBRIDGE_TIER", "1"))
    HEADLESS = _env_bool("LIVEBRIDGE_HEADLESS", True)
    DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
    USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/131.0.0.0 Safari/537.36"
    )
    LOCALE = "en-US"
    TIMEZONE = "America/New_York"

    # Timeouts (ms)
    NAVIGATION_TIMEOUT = 60_000
    ACTION_TIMEOUT = 10_000
    TRANSCRIPT_WAIT = 5_000
    PLAYER_WAIT = 5_000

    # Session GC
    SESSION_IDLE_TTL = 30 * 60  # seconds before idle session is reaped
    SESSION_SWEEP_INTERVAL = 60  # seconds between GC sweeps
    MAX_SESSIONS = int(os.getenv("LIVEBRIDGE_MAX_SESSIONS", "50"))

    # Command channel
    WS_HEARTBEAT = 30.0  # seconds

    # Reconciliation
    TRANSCRIPT_WINDOW = 200

    # Video resolution
    VIDEO_HOST_PREFIX = "https://resource2.heygen.ai/"
    LOADING_ANIMATION_MARKERS = ("liteSharePreviewAnimation",)
    DEFAULT_VIDEO_TITLE = "Your video is ready!"
    RESOLVE_ATTEMPTS = 3

    # Server
    DEFAULT_HOST = "127.0.0.1"
    DEFAULT_PORT = 8500
    LOG_LEVEL = os.getenv("LIVEBRIDGE_LOG_LEVEL", "INFO")

    # Surface selector overrides (JSON object of SurfaceSelectors fields)
    SELECTORS_FILE = os.getenv("LIVEBRIDGE_SELECTORS_FILE", "")

    @classmethod
    def ensure_dirs(cls) -> None:
        cls.CREDENTIALS_DIR.mkdir(parents=True, exist_ok=True)

    @classmethod
    def context_options(cls) -> dict[str, Any]:
        """Options for every new isolated browsing context."""
        return {
            "viewport": cls.DEFAULT_VIEWPORT,
            "user_agent": cls.USER_AGENT,
            "locale": cls.LOCALE,
            "timezone_id": cls.TIMEZONE,
            "bypass_csp": True,
            "ignore_https_errors": True,
        }

    @classmethod
    def selector_overrides(cls) -> dict[str, Any]:
        if not cls.SELECTORS_FILE:
            return {}
        return json.loads(Path(cls.SELECTORS_FILE).read_text())


def target_url(path: str) -> str:
    """Resolve a path (or absolute URL) against the target application."""
    if path.startswith(("http://", "https://")):
        return path
    if not path.startswith("/"):
        path = "/" + path
    return Config.TARGET_URL + path
