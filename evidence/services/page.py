"""Engine-neutral page handle used by the capture pipeline.

Each engine wraps its native page/tab/driver in a PageDriver so consent
defense, challenge monitoring, location and region calculation run the same
code regardless of which automation library is underneath.

Scripts passed to ``evaluate`` are always JavaScript function expressions
taking one JSON-serializable argument, e.g. ``"(arg) => arg.x + 1"``.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable

from evidence.schemas.capture import Viewport

# Returns True when the request URL must be aborted
RequestFilter = Callable[[str], bool]

# Marks the element a native text search found so later scripts can use it
MARK_ELEMENT_JS = """(el) => {
    window.__evidenceCandidates = [el];
    return true;
}"""

# Click for engines without a native visible-click primitive
CLICK_VISIBLE_JS = """(selector) => {
    let el;
    try { el = document.querySelector(selector); } catch (e) { return false; }
    if (!el) return false;
    const r = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    if (r.width === 0 || r.height === 0 || style.visibility === "hidden" || style.display === "none") return false;
    el.click();
    return true;
}"""


class PageDriver(ABC):
    """One live page of one engine attempt."""

    engine: str = "unknown"

    def __init__(self, viewport: Viewport):
        self._viewport = viewport

    @property
    def viewport(self) -> Viewport:
        return self._viewport

    @property
    def supports_request_filter(self) -> bool:
        """Whether per-request callbacks (and hence counters) are available."""
        return False

    @abstractmethod
    async def add_init_script(self, script: str) -> None:
        """Run `script` in every new document before any page script."""

    @abstractmethod
    async def add_cookies(self, cookies: list[dict]) -> None:
        """Add cookies ({name, value, domain, path, expires})."""

    async def set_request_filter(self, should_block: RequestFilter) -> None:
        """Install a per-request filter; blocked requests are aborted.

        Only called when ``supports_request_filter`` is True.
        """
        raise NotImplementedError

    async def block_urls(self, patterns: list[str]) -> None:
        """Block requests matching wildcard URL patterns (CDP style)."""
        raise NotImplementedError

    @abstractmethod
    async def goto(self, url: str, timeout: float) -> None:
        """Navigate; raise on network failure or timeout."""

    @abstractmethod
    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Call a JS function expression with one argument, return its value."""

    @abstractmethod
    async def find_text(self, text: str) -> bool:
        """Native text search; on success the hit becomes candidate 0."""

    @abstractmethod
    async def click_if_visible(self, selector: str) -> bool:
        """Click the first visible match of a CSS selector."""

    @abstractmethod
    async def press_escape(self) -> None:
        ...

    @abstractmethod
    async def screenshot(self) -> bytes:
        """PNG of the current viewport."""

    async def wait(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
