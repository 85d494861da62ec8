"""Bot-challenge detection and the bounded wait for it to clear.

Also home to block-page detection: a page that loaded fine but is an
"access denied" or captcha wall must not be captured as evidence.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from evidence.config import settings
from evidence.core import metrics
from evidence.core.exceptions import is_engine_crash
from evidence.services.page import PageDriver

logger = logging.getLogger(__name__)


class ChallengeState(str, Enum):
    UNKNOWN = "unknown"
    PRESENT = "present"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"


# Any one of these in title or body means a challenge is showing
STRONG_PATTERNS = (
    "verifying you are human",
    "verify you are human",
    "checking your browser",
    "just a moment",
    "ddos protection",
    "cf-browser-verification",
    "cf_chl_opt",
    "checking if the site connection is secure",
    "needs to review the security of your connection",
    "performance & security by cloudflare",
    "attention required",
)

# Too common on real pages; only trusted on short pages
WEAK_PATTERNS = (
    "please wait",
    "ray id",
    "one more step",
)
SHORT_PAGE = 1500

CHALLENGE_SELECTORS = (
    "#cf-wrapper",
    ".cf-browser-verification",
    "#challenge-running",
    "#challenge-stage",
    "#cf-challenge-running",
    "[data-cf-settings]",
    "#challenge-form",
    'iframe[src*="challenges.cloudflare.com"]',
    "#turnstile-wrapper",
    ".cf-turnstile",
)

CAPTCHA_SELECTORS = (
    'iframe[src*="recaptcha"]',
    'iframe[src*="hcaptcha"]',
    ".g-recaptcha",
    ".h-captcha",
    "[data-sitekey]",
    "#px-captcha",
    "#ddg-challenge",
)

ERROR_PATTERNS = (
    "access denied",
    "403 forbidden",
    "404 not found",
    "page not found",
    "site can't be reached",
    "this site can’t be reached",
    "err_connection",
    "unusual traffic",
    "are you a robot",
    "captcha",
    "request blocked",
    "bad gateway",
    "service unavailable",
)

AKAMAI_PATTERNS = (
    "reference #",
    "errors.edgesuite.net",
    "your request has been blocked",
)

CHALLENGE_PROBE_JS = """(selectors) => {
    const body = document.body ? (document.body.innerText || '') : '';
    const markers = selectors.filter((s) => {
        try { return !!document.querySelector(s); } catch (e) { return false; }
    });
    const result = window.cloudflareBypassResult;
    return {
        title: (document.title || '').toLowerCase(),
        body_text: body.slice(0, 5000).toLowerCase(),
        text_length: body.trim().length,
        markers: markers,
        extension_complete: window.cloudflareBypassComplete === true,
        extension_result: (result && typeof result === 'object') ? result : null,
    };
}"""

PROBE_SELECTORS = list(CHALLENGE_SELECTORS) + list(CAPTCHA_SELECTORS)


@dataclass
class ChallengeOutcome:
    state: ChallengeState
    waited: float = 0.0
    extension_result: dict | None = None

    @property
    def resolved(self) -> bool:
        return self.state == ChallengeState.RESOLVED


def challenge_markers(probe: dict) -> list[str]:
    """Reasons the probed page looks like a challenge; empty when it does not."""
    found = []
    title = probe.get("title", "")
    body = probe.get("body_text", "")
    for pattern in STRONG_PATTERNS:
        if pattern in title or pattern in body:
            found.append(pattern)
    if probe.get("text_length", 0) < SHORT_PAGE:
        for pattern in WEAK_PATTERNS:
            if pattern in title or pattern in body:
                found.append(pattern)
    found.extend(m for m in probe.get("markers", []) if m in CHALLENGE_SELECTORS)
    return found


def detect_block(probe: dict) -> str | None:
    """Reason the page is a block/error page, or None."""
    title = probe.get("title", "")
    body = probe.get("body_text", "")
    short = probe.get("text_length", 0) < SHORT_PAGE

    for pattern in ERROR_PATTERNS:
        if pattern in title or (short and pattern in body):
            return f"error page: {pattern}"
    for selector in probe.get("markers", []):
        if selector in CAPTCHA_SELECTORS:
            return f"captcha: {selector}"
    for pattern in AKAMAI_PATTERNS:
        if pattern in title or (short and pattern in body):
            return f"akamai block: {pattern}"
    return None


async def probe_page(page: PageDriver) -> dict:
    return await page.evaluate(CHALLENGE_PROBE_JS, PROBE_SELECTORS) or {}


class ChallengeMonitor:
    """Polls one navigation's page until the challenge is gone or time runs out.

    States: UNKNOWN on entry, PRESENT once markers are seen, RESOLVED when
    they disappear and the page has real content (or the extension reports
    completion), TIMED_OUT at the deadline.
    """

    def __init__(
        self,
        timeout: float | None = None,
        interval: float | None = None,
        min_content: int | None = None,
        use_extension: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.timeout = settings.CHALLENGE_WAIT_TIMEOUT if timeout is None else timeout
        self.interval = settings.CHALLENGE_POLL_INTERVAL if interval is None else interval
        self.min_content = settings.CHALLENGE_MIN_CONTENT if min_content is None else min_content
        self.use_extension = use_extension
        self._clock = clock
        self._sleep = sleep
        self.state = ChallengeState.UNKNOWN

    def _step(self, probe: dict) -> ChallengeState:
        if self.use_extension and probe.get("extension_complete"):
            result = probe.get("extension_result") or {}
            if result.get("success", True):
                return ChallengeState.RESOLVED
        markers = challenge_markers(probe)
        if markers:
            if self.state != ChallengeState.PRESENT:
                logger.info("Challenge detected: %s", ", ".join(markers[:3]))
            return ChallengeState.PRESENT
        if self.state == ChallengeState.PRESENT and probe.get("text_length", 0) < self.min_content:
            # Markers gone but the real page has not rendered yet
            return ChallengeState.PRESENT
        return ChallengeState.RESOLVED

    async def wait(self, page: PageDriver) -> ChallengeOutcome:
        self.state = ChallengeState.UNKNOWN
        start = self._clock()
        deadline = start + self.timeout
        probe: dict = {}
        while True:
            try:
                probe = await probe_page(page)
            except Exception as e:
                if is_engine_crash(e):
                    raise
                # The challenge page navigating away destroys the script context
                logger.debug("Challenge probe failed mid-navigation: %s", e)
                self.state = ChallengeState.PRESENT
            else:
                self.state = self._step(probe)
            if self.state == ChallengeState.RESOLVED:
                break
            remaining = deadline - self._clock()
            if remaining <= 0:
                self.state = ChallengeState.TIMED_OUT
                break
            await self._sleep(min(self.interval, remaining))

        waited = self._clock() - start
        metrics.challenge_outcomes_total.labels(state=self.state.value).inc()
        if self.state == ChallengeState.TIMED_OUT:
            logger.warning("Challenge not resolved after %.1fs", waited)
        elif waited > 0:
            logger.info("Challenge resolved after %.1fs", waited)
        return ChallengeOutcome(
            state=self.state,
            waited=waited,
            extension_result=probe.get("extension_result"),
        )
