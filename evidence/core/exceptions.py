"""Capture error kinds.

Everything below the orchestrator raises a CaptureError subclass; the
orchestrator turns each one into an AttemptRecord and only
AllEnginesExhausted ever reaches a caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from evidence.schemas.capture import CaptureFailure

# Messages that mean the browser process (or its connection) is gone
BROWSER_CLOSED_PHRASES = (
    "browser has been closed",
    "target page, context or browser has been closed",
    "browser.new_context",
    "connection closed",
    "browser closed",
    "target closed",
    "no such window",
    "chrome not reachable",
    "invalid session id",
    "session deleted because of page crash",
    "websocket is not open",
)


class CaptureError(Exception):
    """Base class for failures of a single engine attempt."""

    kind = "CaptureError"

    def __init__(self, message: str, engine: str | None = None):
        self.engine = engine
        self.message = message
        super().__init__(message)


class NavigationFailure(CaptureError):
    """Network/DNS/timeout reaching the page, or the page is a block page."""

    kind = "NavigationFailure"


class ChallengeTimeout(CaptureError):
    """Bot challenge still present when the wait deadline passed."""

    kind = "ChallengeTimeout"

    def __init__(self, message: str, engine: str | None = None, waited: float = 0):
        self.waited = waited
        super().__init__(message, engine)


class ElementNotFound(CaptureError):
    """Target text absent after every locator strategy."""

    kind = "ElementNotFound"


class EngineCrash(CaptureError):
    """The underlying browser process died mid-attempt."""

    kind = "EngineCrash"


class EngineUnavailable(CaptureError):
    """Engine disabled, or its library, binary or API key is missing."""

    kind = "EngineUnavailable"


class AttemptTimeout(CaptureError):
    """One engine attempt ran past ENGINE_ATTEMPT_TIMEOUT and was cancelled."""

    kind = "AttemptTimeout"


class AllEnginesExhausted(Exception):
    """Raised when every engine in the cascade failed."""

    kind = "AllEnginesExhausted"

    def __init__(self, failure: CaptureFailure):
        self.failure = failure
        engines = ", ".join(
            f"{a.engine}={a.error_kind}" for a in failure.attempted_engines
        )
        super().__init__(f"All capture engines exhausted for {failure.url} ({engines})")


def is_browser_closed_error(exc: BaseException) -> bool:
    """Check if an exception indicates the browser process has died."""
    msg = str(exc).lower()
    return any(phrase in msg for phrase in BROWSER_CLOSED_PHRASES)


def is_engine_crash(exc: BaseException) -> bool:
    """True for errors that end the attempt rather than one page script."""
    return isinstance(exc, EngineCrash) or is_browser_closed_error(exc)
