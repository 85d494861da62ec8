"""Turn a located element into a crop region with a little context.

The element alone is usually a single line of text. Walking up its ancestors
finds a container that shows the fragment in context (its card, article or
section) without sweeping in unrelated neighbours.
"""

import logging
from dataclasses import dataclass

from evidence.config import settings
from evidence.schemas.capture import BoundingRegion, Viewport
from evidence.services.page import PageDriver

logger = logging.getLogger(__name__)

MAX_DEPTH = 5
MAX_CONTEXT_HEIGHT = 800
MAX_CONTEXT_WIDTH = 1400

# Children below this size never count as grid cells
MIN_CELL_WIDTH = 200
MIN_CELL_HEIGHT = 200
SIMILARITY_TOLERANCE = 0.3

MAX_SIZE_RATIO = 10
TIGHT_SIZE_RATIO = 3
TIGHT_BONUS = 2

# Ancestry of window.__evidenceTarget in viewport coordinates
ANCESTRY_JS = """(maxDepth) => {
    const el = window.__evidenceTarget;
    if (!el) return null;
    const box = (node) => {
        const r = node.getBoundingClientRect();
        let x = r.x, y = r.y;
        let win = node.ownerDocument.defaultView;
        while (win && win.frameElement) {
            const fr = win.frameElement.getBoundingClientRect();
            x += fr.x; y += fr.y;
            win = win.parent;
        }
        return { x, y, width: r.width, height: r.height };
    };
    const classesOf = (node) => (typeof node.className === 'string' ? node.className : '') || '';
    const ancestors = [];
    let current = el.parentElement;
    while (current && ancestors.length < maxDepth) {
        ancestors.push({
            tag: current.tagName.toLowerCase(),
            classes: classesOf(current),
            rect: box(current),
            children: Array.from(current.children).map(box),
        });
        current = current.parentElement;
    }
    return {
        element: { tag: el.tagName.toLowerCase(), classes: classesOf(el), rect: box(el) },
        ancestors: ancestors,
    };
}"""

HIGHLIGHT_JS = """() => {
    const el = window.__evidenceTarget;
    if (!el || !el.style) return false;
    el.style.outline = '2px solid rgba(255, 196, 0, 0.85)';
    el.style.outlineOffset = '2px';
    return true;
}"""


@dataclass
class RegionLimits:
    padding: int
    min_width: int
    max_width: int
    min_height: int
    max_height: int

    @classmethod
    def from_settings(cls) -> "RegionLimits":
        return cls(
            padding=settings.REGION_PADDING,
            min_width=settings.REGION_MIN_WIDTH,
            max_width=settings.REGION_MAX_WIDTH,
            min_height=settings.REGION_MIN_HEIGHT,
            max_height=settings.REGION_MAX_HEIGHT,
        )


@dataclass
class ContextChoice:
    tag: str
    classes: str
    rect: dict
    score: int
    depth: int


def _similar(a: dict, b: dict) -> bool:
    wa, wb = a["width"], b["width"]
    ha, hb = a["height"], b["height"]
    return (
        abs(wa - wb) <= SIMILARITY_TOLERANCE * max(wa, wb)
        and abs(ha - hb) <= SIMILARITY_TOLERANCE * max(ha, hb)
    )


def is_card_grid(children: list[dict]) -> bool:
    """True when two or more sizable children share nearly the same size."""
    cells = [
        c for c in children
        if c.get("width", 0) >= MIN_CELL_WIDTH and c.get("height", 0) >= MIN_CELL_HEIGHT
    ]
    for i, a in enumerate(cells):
        matches = sum(1 for b in cells[i + 1:] if _similar(a, b))
        if matches >= 1:
            return True
    return False


def container_score(tag: str, classes: str, rect: dict) -> int:
    classes = classes.lower()
    height = rect.get("height", 0)
    if "card" in classes or tag == "article":
        return 10
    if "hero" in classes or "banner" in classes:
        return 8
    if tag == "section" and height < 600:
        return 5
    if "container" in classes and height < 500:
        return 3
    return 0


def _area(rect: dict) -> float:
    return max(0.0, rect.get("width", 0)) * max(0.0, rect.get("height", 0))


def choose_context(element_rect: dict, ancestors: list[dict], max_depth: int = MAX_DEPTH) -> ContextChoice | None:
    """Best-scoring ancestor, or None to crop around the element itself."""
    element_area = max(_area(element_rect), 1.0)
    best = None
    for depth, anc in enumerate(ancestors[:max_depth]):
        rect = anc["rect"]
        if rect["height"] > MAX_CONTEXT_HEIGHT or rect["width"] > MAX_CONTEXT_WIDTH:
            continue
        if is_card_grid(anc.get("children", [])):
            logger.debug("Skipping %s at depth %d: card grid", anc["tag"], depth)
            continue
        score = container_score(anc["tag"], anc.get("classes", ""), rect)
        ratio = _area(rect) / element_area
        if ratio > MAX_SIZE_RATIO:
            score = 0
        elif ratio < TIGHT_SIZE_RATIO:
            score += TIGHT_BONUS
        if score > 0 and (best is None or score > best.score):
            best = ContextChoice(anc["tag"], anc.get("classes", ""), rect, score, depth)
    return best


def clamp_region(rect: dict, viewport: Viewport, limits: RegionLimits) -> BoundingRegion:
    """Pad, then clamp to the size limits and to the viewport."""
    pad = limits.padding
    x = max(0.0, rect["x"] - pad)
    y = max(0.0, rect["y"] - pad)
    width = rect["width"] + 2 * pad
    height = rect["height"] + 2 * pad

    width = max(limits.min_width, min(width, limits.max_width))
    height = max(limits.min_height, min(height, limits.max_height))
    # A viewport smaller than the minimum wins over the minimum
    width = min(width, viewport.width)
    height = min(height, viewport.height)

    if x + width > viewport.width:
        x = max(0.0, viewport.width - width)
    if y + height > viewport.height:
        y = max(0.0, viewport.height - height)
    return BoundingRegion(x=x, y=y, width=width, height=height)


class RegionCalculator:
    def __init__(self, limits: RegionLimits | None = None, max_depth: int = MAX_DEPTH):
        self.limits = limits or RegionLimits.from_settings()
        self.max_depth = max_depth

    def compute(self, element_rect: dict, ancestors: list[dict], viewport: Viewport) -> tuple[BoundingRegion, ContextChoice | None]:
        choice = choose_context(element_rect, ancestors, self.max_depth)
        base = choice.rect if choice else element_rect
        return clamp_region(base, viewport, self.limits), choice

    async def region_for_target(self, page: PageDriver) -> tuple[BoundingRegion, ContextChoice | None]:
        """Region around window.__evidenceTarget on a live page."""
        data = await page.evaluate(ANCESTRY_JS, self.max_depth)
        if not data:
            # Target vanished (re-render); fall back to the whole viewport
            vp = page.viewport
            return BoundingRegion(x=0, y=0, width=vp.width, height=vp.height), None
        return self.compute(data["element"]["rect"], data.get("ancestors", []), page.viewport)
