"""Error taxonomy for livebridge.

Four failure classes cross component boundaries:
- AuthenticationError: bad or expired credential (caller retries with a fresh token)
- SessionCreationError: the engine could not produce a session; every waiter sees it
- CommandExecutionError: one automation step failed; the queue moves on
- ContextInvalidatedError: the browsing context died; the session is recreated
  and the command retried once

Automation-engine exceptions are mapped onto this taxonomy by
``classify_error`` using the message patterns Playwright produces.
"""

from __future__ import annotations

import re
from typing import Any

from livebridge.models import Recoverability


# ---------------------------------------------------------------------------
# Error catalog: stable codes with default recoverability
# ---------------------------------------------------------------------------

_CATALOG: dict[str, Recoverability] = {
    "AUTH_INVALID": Recoverability.RECOVERABLE,
    "AUTH_EXPIRED": Recoverability.RECOVERABLE,
    "SESSION_CREATE_FAILED": Recoverability.RECOVERABLE,
    "SESSION_LIMIT": Recoverability.RECOVERABLE,
    "INVALID_COMMAND": Recoverability.NON_RECOVERABLE,
    "COMMAND_FAILED": Recoverability.RECOVERABLE,
    "TIMEOUT_ACTION": Recoverability.RECOVERABLE,
    "NETWORK_ERROR": Recoverability.RECOVERABLE,
    "CONTEXT_INVALIDATED": Recoverability.ESCALATABLE,
    "UNKNOWN": Recoverability.NON_RECOVERABLE,
}


class BridgeError(Exception):
    """Base error with a stable code and recoverability."""

    default_code = "UNKNOWN"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.recoverability = _CATALOG.get(self.code, _CATALOG["UNKNOWN"])
        self.details = details or {}

    def to_reply(self, action: str) -> dict[str, Any]:
        """Wire form of a failed command."""
        return {"success": False, "action": action, "error": self.message, "code": self.code}


class AuthenticationError(BridgeError):
    default_code = "AUTH_INVALID"


class SessionCreationError(BridgeError):
    default_code = "SESSION_CREATE_FAILED"


class CommandExecutionError(BridgeError):
    default_code = "COMMAND_FAILED"


class ContextInvalidatedError(BridgeError):
    default_code = "CONTEXT_INVALIDATED"


# ---------------------------------------------------------------------------
# Playwright exception classification
# ---------------------------------------------------------------------------

def _extract_timeout(msg: str) -> str:
    m = re.search(r"(\d+)ms", msg)
    return m.group(1) if m else "?"


def _extract_net_error(msg: str) -> str:
    m = re.search(r"net::(ERR_\w+)", msg)
    return m.group(1) if m else "unknown network error"


# Ordered: the first matching substring wins
_PATTERN_MAP: list[tuple[str, type[BridgeError], str, Any]] = [
    ("Target closed", ContextInvalidatedError, "CONTEXT_INVALIDATED",
     lambda e: "Browser tab or context was closed."),
    ("has been closed", ContextInvalidatedError, "CONTEXT_INVALIDATED",
     lambda e: "Browser page, context or browser has been closed."),
    ("Browser has disconnected", ContextInvalidatedError, "CONTEXT_INVALIDATED",
     lambda e: "Browser process disconnected."),
    ("crashed", ContextInvalidatedError, "CONTEXT_INVALIDATED",
     lambda e: "Browser page crashed."),
    ("Timeout", CommandExecutionError, "TIMEOUT_ACTION",
     lambda e: f"Action timed out after {_extract_timeout(str(e))}ms."),
    ("net::ERR_", CommandExecutionError, "NETWORK_ERROR",
     lambda e: f"Network error: {_extract_net_error(str(e))}."),
    ("Execution context was destroyed", CommandExecutionError, "COMMAND_FAILED",
     lambda e: "Page navigated during the action."),
]


def classify_error(error: BaseException) -> BridgeError:
    """Map an automation-engine exception onto the error taxonomy."""
    if isinstance(error, BridgeError):
        return error
    msg = str(error)
    for pattern, cls, code, msg_fn in _PATTERN_MAP:
        if pattern.lower() in msg.lower():
            return cls(msg_fn(error), code=code, details={"cause": msg.splitlines()[0] if msg else ""})
    return CommandExecutionError(f"Browser error: {msg}", code="COMMAND_FAILED")


def is_context_invalidated(error: BaseException) -> bool:
    return isinstance(classify_error(error), ContextInvalidatedError)
