"""Per-domain request spacing shared by every capture in the process.

Each domain gets a randomized minimum gap between requests. Once a domain has
seen more than RATE_LIMIT_MAX_REQUESTS within the rolling window, every extra
request adds another RATE_LIMIT_COOLDOWN on top, so the delay escalates until
the window rolls over.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from urllib.parse import urlparse

from evidence.config import settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitState:
    last_request_time: float | None = None
    window_start: float = 0.0
    count_in_window: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def domain_of(url: str) -> str:
    host = urlparse(url).hostname or url
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


class RateLimiter:
    """Single-writer per domain: all mutation happens under the domain's lock."""

    def __init__(
        self,
        min_delay: float | None = None,
        max_delay: float | None = None,
        window: float | None = None,
        max_requests: int | None = None,
        cooldown: float | None = None,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.min_delay = settings.RATE_LIMIT_MIN_DELAY if min_delay is None else min_delay
        self.max_delay = settings.RATE_LIMIT_MAX_DELAY if max_delay is None else max_delay
        self.max_delay = max(self.max_delay, self.min_delay)
        self.window = settings.RATE_LIMIT_WINDOW if window is None else window
        self.max_requests = (
            settings.RATE_LIMIT_MAX_REQUESTS if max_requests is None else max_requests
        )
        self.cooldown = settings.RATE_LIMIT_COOLDOWN if cooldown is None else cooldown
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._states: dict[str, RateLimitState] = {}

    def state(self, domain: str) -> RateLimitState:
        # No await between lookup and insert, so this is race-free on one loop
        st = self._states.get(domain)
        if st is None:
            st = RateLimitState(window_start=self._clock())
            self._states[domain] = st
        return st

    def _required_gap(self, st: RateLimitState) -> float:
        gap = self._rng.uniform(self.min_delay, self.max_delay)
        overflow = st.count_in_window - self.max_requests
        if overflow > 0:
            gap += self.cooldown * overflow
        return gap

    async def wait(self, url_or_domain: str) -> float:
        """Block until the domain may be hit again. Returns seconds slept."""
        domain = domain_of(url_or_domain) if "/" in url_or_domain else url_or_domain.lower()
        st = self.state(domain)
        async with st.lock:
            now = self._clock()
            if now - st.window_start >= self.window:
                st.window_start = now
                st.count_in_window = 0
            st.count_in_window += 1

            slept = 0.0
            if st.last_request_time is not None:
                gap = self._required_gap(st)
                slept = max(0.0, st.last_request_time + gap - now)
                if slept > 0:
                    if st.count_in_window > self.max_requests:
                        logger.info(
                            "Rate limit cooldown for %s: %d requests in window, waiting %.1fs",
                            domain,
                            st.count_in_window,
                            slept,
                        )
                    await self._sleep(slept)
            st.last_request_time = self._clock()
            return slept

    def reset(self, domain: str | None = None) -> None:
        if domain is None:
            self._states.clear()
        else:
            self._states.pop(domain, None)
