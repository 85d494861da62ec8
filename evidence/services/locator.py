"""Find the DOM element that shows a target text fragment.

Scripts only collect raw candidates (text + rect); matching, scoring and the
choice between candidates happen here in Python so they are testable without
a browser. The winning element is exposed to later scripts as
``window.__evidenceTarget``.

Strategies, first hit wins:
    1. visible elements (document, open shadow roots, same-origin frames)
    2. text split across adjacent text nodes -> nearest common container
    3. the engine's native text search
    4. shorter prefixes of the target
    5. salient keywords of the target
    6. the page's main-content container (then <body>)
"""

import asyncio
import logging
import re
import unicodedata
from dataclasses import dataclass

from evidence.core import metrics
from evidence.core.exceptions import ElementNotFound, is_engine_crash
from evidence.schemas.capture import BoundingRegion
from evidence.services.page import PageDriver

logger = logging.getLogger(__name__)

_SEPARATOR_RE = re.compile(r"[\-‐-―/\\|]")
_PUNCT_RE = re.compile(r"[^\w\s]|_")
_WS_RE = re.compile(r"\s+")

PREFIX_LENGTHS = (50, 40, 30, 20)
KEYWORD_MIN_LENGTH = 4
KEY_TERM_MIN_LENGTH = 5
MAX_KEY_TERMS = 3
REVEAL_STEPS = 8
REVEAL_PAUSE = 0.3

SCORE_EXACT = 100
SCORE_EDGE = 80
SCORE_CONTAINS = 60

STRATEGY_ELEMENTS = "visible-elements"
STRATEGY_TEXT_RUNS = "split-text"
STRATEGY_NATIVE = "native-text-search"
STRATEGY_PREFIX = "prefix"
STRATEGY_KEYWORDS = "keywords"
STRATEGY_MAIN_CONTENT = "main-content"


def normalize(text: str) -> str:
    """Fold compatibility forms, lowercase, drop punctuation, collapse whitespace.

    Dashes and slashes separate words, every other punctuation mark is
    removed outright so "don't" and "dont" compare equal. Idempotent.
    """
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text).lower()
    text = _SEPARATOR_RE.sub(" ", text)
    text = _PUNCT_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def match_score(candidate_text: str, target: str) -> int:
    """0 when the normalized candidate does not contain the normalized target."""
    cand = normalize(candidate_text)
    tgt = normalize(target)
    if not tgt or tgt not in cand:
        return 0
    if cand == tgt:
        return SCORE_EXACT
    if cand.startswith(tgt) or cand.endswith(tgt):
        return SCORE_EDGE
    return SCORE_CONTAINS


def rect_area(rect: dict) -> float:
    return max(0.0, rect.get("width", 0)) * max(0.0, rect.get("height", 0))


def pick_best(candidates: list[dict], target: str) -> tuple[dict, int] | None:
    """Smallest-area match; ties broken by exact > prefix/suffix > contains."""
    best = None
    best_key = None
    for c in candidates:
        area = rect_area(c.get("rect") or {})
        if area <= 0:
            continue
        score = match_score(c.get("text", ""), target)
        if not score:
            continue
        key = (area, -score)
        if best_key is None or key < best_key:
            best, best_key = c, key
    if best is None:
        return None
    return best, -best_key[1]


def prefix_variants(text: str) -> list[str]:
    clean = _WS_RE.sub(" ", text).strip()
    out = []
    for n in PREFIX_LENGTHS:
        if len(clean) > n:
            prefix = clean[:n].strip()
            if prefix and prefix not in out:
                out.append(prefix)
    return out


def keyword_variants(text: str) -> list[str]:
    """A phrase of the first significant words, then the longest terms."""
    words = [w for w in text.split() if len(w) >= KEYWORD_MIN_LENGTH]
    out = []
    if len(words) > 1:
        out.append(" ".join(words[:3]))
    terms = []
    for w in text.split():
        term = normalize(w)
        if len(term) >= KEY_TERM_MIN_LENGTH and term not in terms:
            terms.append(term)
    terms.sort(key=len, reverse=True)
    for t in terms[:MAX_KEY_TERMS]:
        if t not in out:
            out.append(t)
    if not out and words:
        out.append(words[0])
    return out


@dataclass
class LocatedElement:
    strategy: str
    tag: str
    rect: BoundingRegion
    text: str = ""
    score: int = 0
    query: str = ""

    @property
    def description(self) -> str:
        excerpt = self.text[:60].replace("\n", " ").strip()
        return f"{self.tag} via {self.strategy} (score={self.score}): {excerpt!r}"


# ---------------------------------------------------------------------------
# Page scripts
# ---------------------------------------------------------------------------

# Mirrors normalize() so the page only ships back plausible matches
_JS_NORMALIZE = r"""
    const norm = (s) => (s || '').normalize('NFKC').toLowerCase()
        .replace(/[\-‐-―\/\\|]/g, ' ')
        .replace(/[^\p{L}\p{N}\s]|_/gu, '')
        .replace(/\s+/g, ' ').trim();
    const offsetOf = (el) => {
        let x = 0, y = 0;
        let win = el.ownerDocument.defaultView;
        while (win && win.frameElement) {
            const fr = win.frameElement.getBoundingClientRect();
            x += fr.x; y += fr.y;
            win = win.parent;
        }
        return { x, y };
    };
    const rectOf = (el) => {
        const r = el.getBoundingClientRect();
        const o = offsetOf(el);
        return { x: r.x + o.x, y: r.y + o.y, width: r.width, height: r.height };
    };
    const visible = (el) => {
        const r = el.getBoundingClientRect();
        if (r.width <= 0 || r.height <= 0) return false;
        const cs = el.ownerDocument.defaultView.getComputedStyle(el);
        return cs.visibility !== 'hidden' && cs.display !== 'none' && cs.opacity !== '0';
    };
    const roots = () => {
        const out = [document];
        const walk = (root) => {
            for (const el of root.querySelectorAll('*')) {
                if (el.shadowRoot) { out.push(el.shadowRoot); walk(el.shadowRoot); }
                if (el.tagName === 'IFRAME') {
                    try {
                        const d = el.contentDocument;
                        if (d && d.body) { out.push(d); walk(d); }
                    } catch (e) {}
                }
            }
        };
        walk(document);
        return out;
    };
"""

CANDIDATES_JS = (
    "(target) => {"
    + _JS_NORMALIZE
    + r"""
    const want = norm(target);
    const found = [];
    const out = [];
    if (!want) return out;
    const skip = new Set(['SCRIPT', 'STYLE', 'NOSCRIPT', 'TEMPLATE', 'HEAD', 'HTML', 'IFRAME']);
    for (const root of roots()) {
        for (const el of root.querySelectorAll('*')) {
            if (skip.has(el.tagName)) continue;
            const text = el.innerText || el.textContent || '';
            if (!norm(text).includes(want)) continue;
            if (!visible(el)) continue;
            found.push(el);
            out.push({
                index: found.length - 1,
                tag: el.tagName.toLowerCase(),
                text: text.slice(0, 5000),
                rect: rectOf(el),
            });
        }
    }
    window.__evidenceCandidates = found;
    return out;
}"""
)

TEXT_RUNS_JS = (
    "(target) => {"
    + _JS_NORMALIZE
    + r"""
    const want = norm(target);
    const found = [];
    const out = [];
    if (!want) return out;
    for (const root of roots()) {
        const body = root.body || root;
        const walker = (root.ownerDocument || root).createTreeWalker(body, NodeFilter.SHOW_TEXT, null);
        const nodes = [];
        let n;
        while ((n = walker.nextNode())) {
            if (n.textContent.trim()) nodes.push(n);
        }
        for (let i = 0; i < nodes.length && out.length < 50; i++) {
            let joined = nodes[i].textContent.trim();
            for (let j = i + 1; j < Math.min(nodes.length, i + 6); j++) {
                joined += ' ' + nodes[j].textContent.trim();
                if (!norm(joined).includes(want)) continue;
                let common = nodes[i].parentElement;
                while (common && !common.contains(nodes[j])) common = common.parentElement;
                if (common && visible(common)) {
                    found.push(common);
                    out.push({
                        index: found.length - 1,
                        tag: common.tagName.toLowerCase(),
                        text: joined.slice(0, 5000),
                        rect: rectOf(common),
                    });
                }
                break;
            }
        }
    }
    window.__evidenceCandidates = found;
    return out;
}"""
)

MAIN_CONTENT_JS = (
    "() => {"
    + _JS_NORMALIZE
    + r"""
    const selectors = ['main', 'article', '[role="main"]', '.content', '.main-content', '#content', '#main'];
    for (const sel of selectors) {
        const el = document.querySelector(sel);
        if (el && visible(el)) {
            window.__evidenceCandidates = [el];
            return { index: 0, tag: el.tagName.toLowerCase(), selector: sel, text: (el.innerText || '').slice(0, 200), rect: rectOf(el) };
        }
    }
    const body = document.body;
    if (body && visible(body) && (body.innerText || '').trim()) {
        window.__evidenceCandidates = [body];
        return { index: 0, tag: 'body', selector: 'body', text: (body.innerText || '').slice(0, 200), rect: rectOf(body) };
    }
    return null;
}"""
)

# Promote candidate `index` to the capture target and center it
MARK_TARGET_JS = """(index) => {
    const el = (window.__evidenceCandidates || [])[index];
    if (!el) return null;
    window.__evidenceTarget = el;
    try { el.scrollIntoView({ block: 'center', inline: 'nearest' }); } catch (e) {}
    const r = el.getBoundingClientRect();
    return { tag: el.tagName.toLowerCase(), text: (el.innerText || el.textContent || '').slice(0, 500), rect: { x: r.x, y: r.y, width: r.width, height: r.height } };
}"""

REVEAL_STEP_JS = """(step) => {
    const total = Math.max(document.body ? document.body.scrollHeight : 0, window.innerHeight);
    const y = Math.min(total, (step + 1) * window.innerHeight);
    window.scrollTo(0, y);
    window.dispatchEvent(new Event('scroll'));
    return y >= total - window.innerHeight;
}"""

SCROLL_TOP_JS = "() => { window.scrollTo(0, 0); return true; }"


class ElementLocator:
    """Runs the strategy sequence against one page."""

    def __init__(self, reveal_steps: int = REVEAL_STEPS, reveal_pause: float = REVEAL_PAUSE):
        self.reveal_steps = reveal_steps
        self.reveal_pause = reveal_pause

    async def locate(self, page: PageDriver, target_text: str) -> LocatedElement:
        """Return the located element or raise ElementNotFound."""
        found = await self._exact_strategies(page, target_text)
        if found is None:
            # Lazy-loaded sections only render after being scrolled into view
            await self.reveal(page)
            found = await self._exact_strategies(page, target_text)

        if found is None:
            for prefix in prefix_variants(target_text):
                found = await self._exact_strategies(page, prefix, strategy=STRATEGY_PREFIX)
                if found:
                    break

        if found is None:
            for keyword in keyword_variants(target_text):
                found = await self._exact_strategies(page, keyword, strategy=STRATEGY_KEYWORDS)
                if found:
                    break

        if found is None:
            found = await self._main_content(page)

        if found is None:
            raise ElementNotFound(f"Could not find text {target_text[:80]!r} on page")

        metrics.locator_strategy_total.labels(strategy=found.strategy).inc()
        logger.info("Located target: %s", found.description)
        return found

    async def _exact_strategies(
        self, page: PageDriver, text: str, strategy: str | None = None
    ) -> LocatedElement | None:
        hit = await self._by_elements(page, text)
        if hit is None:
            hit = await self._by_text_runs(page, text)
        if hit is None:
            hit = await self._by_native_search(page, text)
        if hit is not None and strategy:
            hit.strategy = f"{strategy}/{hit.strategy}"
        return hit

    async def _by_elements(self, page: PageDriver, text: str) -> LocatedElement | None:
        candidates = await page.evaluate(CANDIDATES_JS, text) or []
        return await self._promote(page, pick_best(candidates, text), STRATEGY_ELEMENTS, text)

    async def _by_text_runs(self, page: PageDriver, text: str) -> LocatedElement | None:
        candidates = await page.evaluate(TEXT_RUNS_JS, text) or []
        return await self._promote(page, pick_best(candidates, text), STRATEGY_TEXT_RUNS, text)

    async def _by_native_search(self, page: PageDriver, text: str) -> LocatedElement | None:
        try:
            hit = await page.find_text(text)
        except Exception as e:
            if is_engine_crash(e):
                raise
            logger.debug("Native text search failed: %s", e)
            return None
        if not hit:
            return None
        return await self._mark(page, 0, STRATEGY_NATIVE, text, SCORE_CONTAINS)

    async def _promote(self, page, best, strategy: str, text: str) -> LocatedElement | None:
        if best is None:
            return None
        candidate, score = best
        return await self._mark(page, candidate["index"], strategy, text, score)

    async def _mark(self, page, index: int, strategy: str, text: str, score: int):
        info = await page.evaluate(MARK_TARGET_JS, index)
        if not info:
            return None
        return LocatedElement(
            strategy=strategy,
            tag=info.get("tag", "?"),
            rect=BoundingRegion(**info["rect"]),
            text=info.get("text", ""),
            score=score,
            query=text,
        )

    async def _main_content(self, page: PageDriver) -> LocatedElement | None:
        info = await page.evaluate(MAIN_CONTENT_JS)
        if not info:
            return None
        marked = await self._mark(page, 0, STRATEGY_MAIN_CONTENT, info.get("selector", ""), 0)
        if marked:
            marked.tag = info.get("selector", marked.tag)
        return marked

    async def reveal(self, page: PageDriver) -> None:
        """Scroll through the page in viewport steps, then back to the top."""
        for step in range(self.reveal_steps):
            at_end = await page.evaluate(REVEAL_STEP_JS, step)
            await asyncio.sleep(self.reveal_pause)
            if at_end:
                break
        await page.evaluate(SCROLL_TOP_JS)