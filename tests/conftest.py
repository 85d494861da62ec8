"""Shared fakes: a scripted PageDriver and a scripted engine."""

import io

import pytest
from PIL import Image

from evidence.schemas.capture import (
    BoundingRegion,
    CaptureResult,
    ConsentDefenseStats,
    FingerprintProfile,
    Viewport,
)
from evidence.services import challenge, consent, locator, region
from evidence.services.engines.base import EngineAdapter
from evidence.services.page import PageDriver


def make_png(width: int, height: int, color=(255, 255, 255)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


class FakePage(PageDriver):
    """A page whose script results are scripted per test.

    Scripts are dispatched by identity against the module constants, so the
    fake answers exactly the questions the pipeline asks.
    """

    engine = "fake"

    def __init__(self, viewport: Viewport | None = None):
        super().__init__(viewport or Viewport(width=1440, height=900))
        self.init_scripts: list[str] = []
        self.cookies: list[dict] = []
        self.request_filter = None
        self.blocked_patterns: list[str] = []
        self.visited: list[str] = []
        self.clicked: list[str] = []
        self.escape_presses = 0
        self.css_applied = 0

        self.elements: list[dict] = []  # {tag, text, rect}
        self.text_runs: list[dict] = []
        self.native_hit: dict | None = None
        self.main_content: dict | None = None
        self.overlays: list[dict] = []  # overlay candidate dicts
        self.overlay_target: str | None = None
        self.probes: list[dict | Exception] = [{"title": "home", "body_text": "", "text_length": 5000, "markers": []}]
        self.readiness = {"text_length": 5000, "main_visible": True}
        self.readiness_errors: list[Exception] = []
        self.ancestry: dict | None = None
        self.visible_buttons: set[str] = set()
        self.screenshot_size: tuple[int, int] | None = None

        self._candidates: list[dict] = []
        self.target: dict | None = None
        self.highlighted = False
        self.evaluated: list[str] = []

    @property
    def supports_request_filter(self) -> bool:
        return True

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def add_cookies(self, cookies: list[dict]) -> None:
        self.cookies.extend(cookies)

    async def set_request_filter(self, should_block) -> None:
        self.request_filter = should_block

    async def block_urls(self, patterns: list[str]) -> None:
        self.blocked_patterns = list(patterns)

    async def goto(self, url: str, timeout: float) -> None:
        self.visited.append(url)

    @property
    def neutralized(self) -> bool:
        return any("__cmpNeutralized" in s for s in self.init_scripts)

    async def evaluate(self, script, arg=None):
        self.evaluated.append(script)
        if script is consent.CONSENT_PROBE_JS:
            granted = self.neutralized
            return {k: granted for k in ("tcf", "onetrust", "cookiebot", "quantcast", "generic")}
        if script is consent.APPLY_CSS_JS:
            self.css_applied += 1
            return True
        if script is consent.OVERLAY_CANDIDATES_JS:
            self.overlay_target = arg
            return [dict(c, index=i) for i, c in enumerate(self.overlays)]
        if script is consent.REMOVE_OVERLAYS_JS:
            doomed = set(arg)
            self.overlays = [c for i, c in enumerate(self.overlays) if i not in doomed]
            return len(doomed)
        if script is consent.READINESS_PROBE_JS:
            if self.readiness_errors:
                raise self.readiness_errors.pop(0)
            return dict(self.readiness)
        if script is challenge.CHALLENGE_PROBE_JS:
            probe = self.probes.pop(0) if len(self.probes) > 1 else self.probes[0]
            if isinstance(probe, Exception):
                raise probe
            return dict(probe)
        if script is locator.CANDIDATES_JS:
            return self._matching(self.elements, arg)
        if script is locator.TEXT_RUNS_JS:
            return self._matching(self.text_runs, arg)
        if script is locator.MAIN_CONTENT_JS:
            if self.main_content is None:
                return None
            self._candidates = [self.main_content]
            return dict(self.main_content, index=0)
        if script is locator.MARK_TARGET_JS:
            if arg >= len(self._candidates):
                return None
            self.target = self._candidates[arg]
            return {"tag": self.target["tag"], "text": self.target["text"], "rect": self.target["rect"]}
        if script is locator.REVEAL_STEP_JS:
            return True
        if script is locator.SCROLL_TOP_JS:
            return True
        if script is region.ANCESTRY_JS:
            if self.ancestry is not None:
                return self.ancestry
            if self.target is None:
                return None
            return {"element": {"tag": self.target["tag"], "classes": "", "rect": self.target["rect"]}, "ancestors": []}
        if script is region.HIGHLIGHT_JS:
            self.highlighted = True
            return True
        raise AssertionError(f"Unexpected script: {script[:60]!r}")

    def _matching(self, pool: list[dict], target: str) -> list[dict]:
        want = locator.normalize(target)
        self._candidates = [e for e in pool if want and want in locator.normalize(e["text"])]
        return [dict(e, index=i) for i, e in enumerate(self._candidates)]

    async def find_text(self, text: str) -> bool:
        if self.native_hit and locator.normalize(text) in locator.normalize(self.native_hit["text"]):
            self._candidates = [self.native_hit]
            return True
        return False

    async def click_if_visible(self, selector: str) -> bool:
        if selector in self.visible_buttons:
            self.clicked.append(selector)
            self.visible_buttons.discard(selector)
            return True
        return False

    async def press_escape(self) -> None:
        self.escape_presses += 1

    async def screenshot(self) -> bytes:
        w, h = self.screenshot_size or (self.viewport.width, self.viewport.height)
        return make_png(w, h)

    async def wait(self, seconds: float) -> None:
        return None


def make_result(engine: str = "fake", request_id: str = "") -> CaptureResult:
    return CaptureResult(
        request_id=request_id,
        url="https://example.com",
        image_bytes=b"png",
        engine_used=engine,
        selector_description="p via visible-elements",
        bounding_region=BoundingRegion(x=0, y=0, width=300, height=200),
        neutralization_stats=ConsentDefenseStats(),
    )


class FakeEngine(EngineAdapter):
    """Engine that replays a scripted list of outcomes, one per call."""

    def __init__(self, name: str, outcomes: list, is_available: bool = True):
        super().__init__()
        self.name = name
        self.outcomes = list(outcomes)
        self.is_available = is_available
        self.calls: list[tuple[str, str, FingerprintProfile]] = []

    def available(self) -> bool:
        return self.is_available

    async def _capture(self, url, text, fingerprint):
        self.calls.append((url, text, fingerprint))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def fake_page():
    return FakePage()
