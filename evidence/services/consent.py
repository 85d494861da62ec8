"""Consent-management-platform (CMP) defense.

Permissive by default: CMP scripts are never blocked, because many sites do
not render until their CMP has finished. Instead the CMP APIs are answered
with "consent granted" before any page script runs, consent state is
pre-seeded, and whatever banner still escapes is hidden and finally removed.

Stages (in order):
    1. API neutralization     - init script, one routine per CmpVendor
    2. State pre-injection    - localStorage init script + cookies
    3. Network filtering      - tracker denylist only
    4. Visual suppression     - CSS hide + scroll restore
    5. DOM pruning            - remove dialog / high z-index overlays
    6. Readiness detection    - bounded poll for readable content
"""

import asyncio
import logging
import time
from enum import Enum
from urllib.parse import urlparse

from evidence.config import settings
from evidence.core import metrics
from evidence.core.exceptions import is_engine_crash
from evidence.schemas.capture import ConsentDefenseStats, Viewport
from evidence.services.locator import normalize
from evidence.services.page import PageDriver

logger = logging.getLogger(__name__)


class CmpVendor(str, Enum):
    TCF = "tcf"  # generic IAB Transparency & Consent Framework v2
    ONETRUST = "onetrust"
    COOKIEBOT = "cookiebot"
    QUANTCAST = "quantcast"
    GENERIC = "generic"  # common window.* consent flags


# ---------------------------------------------------------------------------
# Stage 1: one deterministic routine per vendor
# ---------------------------------------------------------------------------

_VENDOR_ROUTINES: dict[CmpVendor, str] = {
    CmpVendor.TCF: """
    const tcData = {
        tcString: '', gdprApplies: false, cmpLoaded: true, cmpStatus: 'loaded',
        displayStatus: 'hidden', eventStatus: 'tcloaded', apiVersion: '2.0',
        purpose: { consents: {}, legitimateInterests: {} },
        vendor: { consents: {}, legitimateInterests: {} },
    };
    window.__tcfapi = function(command, version, callback) {
        if (typeof callback !== 'function') return;
        if (command === 'ping') {
            callback({ gdprApplies: false, cmpLoaded: true, cmpStatus: 'loaded', displayStatus: 'hidden', apiVersion: '2.0' }, true);
        } else if (command === 'getTCData' || command === 'addEventListener') {
            callback(tcData, true);
        } else {
            callback(null, true);
        }
    };
    window.__tcfapiLocator = window.__tcfapiLocator || {};
""",
    CmpVendor.ONETRUST: """
    const noop = function() {};
    window.OneTrust = {
        IsAlertBoxClosed: () => true,
        IsAlertBoxClosedAndValid: () => true,
        Close: noop, AllowAll: noop, RejectAll: noop, ToggleInfoDisplay: noop,
        OnConsentChanged: noop,
        GetDomainData: () => ({ Groups: [] }),
    };
    window.Optanon = window.OneTrust;
    window.OptanonWrapper = noop;
    window.OptanonActiveGroups = ',C0001,C0002,C0003,C0004,';
""",
    CmpVendor.COOKIEBOT: """
    const cbNoop = function() {};
    window.Cookiebot = {
        consent: { necessary: true, preferences: true, statistics: true, marketing: true, stamp: String(Date.now()) },
        consented: true, declined: false, hasResponse: true, doNotTrack: false,
        show: cbNoop, hide: cbNoop, renew: cbNoop, withdraw: cbNoop, submitCustomConsent: cbNoop,
    };
    window.CookieConsent = window.Cookiebot;
""",
    CmpVendor.QUANTCAST: """
    window.__cmp = function(command, parameter, callback) {
        if (typeof callback !== 'function') return;
        if (command === 'ping') {
            callback({ gdprAppliesGlobally: false, cmpLoaded: true }, true);
        } else if (command === 'getConsentData') {
            callback({ consentData: '', gdprApplies: false, hasGlobalScope: false }, true);
        } else {
            callback(null, true);
        }
    };
""",
    CmpVendor.GENERIC: """
    window.cookieConsentGiven = true;
    window.gdprConsent = true;
    window.hasConsent = true;
    window.cookiesAccepted = true;
    window.privacyPolicyAccepted = true;
""",
}


def build_neutralizer_script(vendors: list[CmpVendor] | None = None) -> str:
    """All vendor routines behind a single idempotence guard."""
    vendors = vendors or list(CmpVendor)
    body = "\n".join(
        f"    try {{\n{_VENDOR_ROUTINES[v]}\n    }} catch (e) {{}}" for v in vendors
    )
    return (
        "(() => {\n"
        "    if (window.__cmpNeutralized) return;\n"
        "    window.__cmpNeutralized = true;\n"
        f"{body}\n"
        "})();\n"
    )


SERVICE_WORKER_DISABLE_JS = """
(() => {
    if (!('serviceWorker' in navigator)) return;
    try {
        navigator.serviceWorker.register = () => Promise.resolve();
        navigator.serviceWorker.getRegistration = () => Promise.resolve(undefined);
        navigator.serviceWorker.getRegistrations = () => Promise.resolve([]);
    } catch (e) {}
})();
"""

# Reports what a page script would see when asking "has the user consented?"
CONSENT_PROBE_JS = """() => {
    const out = { tcf: false, onetrust: false, cookiebot: false, quantcast: false, generic: false };
    try {
        if (typeof window.__tcfapi === 'function') {
            window.__tcfapi('ping', 2, (d) => { out.tcf = !!(d && d.cmpLoaded && d.gdprApplies === false); });
        }
    } catch (e) {}
    try { out.onetrust = !!(window.OneTrust && window.OneTrust.IsAlertBoxClosed()); } catch (e) {}
    try { out.cookiebot = !!(window.Cookiebot && window.Cookiebot.consented && window.Cookiebot.consent.marketing); } catch (e) {}
    try {
        if (typeof window.__cmp === 'function') {
            window.__cmp('ping', null, (d) => { out.quantcast = !!(d && d.cmpLoaded); });
        }
    } catch (e) {}
    out.generic = window.cookieConsentGiven === true && window.hasConsent === true;
    return out;
}"""

# ---------------------------------------------------------------------------
# Stage 2: consent state
# ---------------------------------------------------------------------------

CONSENT_STORAGE_JS = """
(() => {
    try {
        const set = (k, v) => { if (localStorage.getItem(k) === null) localStorage.setItem(k, v); };
        set('OptanonConsent', 'groups=C0001:1,C0002:1,C0003:1,C0004:1');
        set('OptanonAlertBoxClosed', new Date().toISOString());
        set('CookieConsent', JSON.stringify({ necessary: true, preferences: true, statistics: true, marketing: true, stamp: Date.now() }));
        set('cookieConsent', 'true');
        set('gdprConsent', 'true');
        set('cookiesAccepted', 'true');
        set('privacyPolicyAccepted', 'true');
    } catch (e) {}
})();
"""

_CONSENT_COOKIES = {
    "cookieconsent_status": "dismiss",
    "cookie_consent": "true",
    "gdpr_consent": "true",
}

_ONE_YEAR = 365 * 24 * 60 * 60


def consent_cookies(url: str, now: float | None = None) -> list[dict]:
    """Consent cookies scoped to the target's registrable-ish domain."""
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return []
    if host.startswith("www."):
        host = host[4:]
    now = now or time.time()
    expires = int(now) + _ONE_YEAR
    values = dict(_CONSENT_COOKIES)
    values["OptanonAlertBoxClosed"] = time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime(now))
    return [
        {"name": k, "value": v, "domain": f".{host}", "path": "/", "expires": expires}
        for k, v in values.items()
    ]


# ---------------------------------------------------------------------------
# Stage 3: tracker denylist (CMP hosts are deliberately absent)
# ---------------------------------------------------------------------------

TRACKER_PATTERNS = (
    "doubleclick.net",
    "googlesyndication.com",
    "adservice.google",
    "amazon-adsystem.com",
    "hotjar.com",
    "mouseflow.com",
    "fullstory.com",
    "logrocket.com",
    "clarity.ms",
    "facebook.net/en_US/fbevents.js",
    "connect.facebook.net",
    "twitter.com/i/adsct",
    "analytics.tiktok.com",
    "snap.licdn.com",
)


def is_tracker(url: str) -> bool:
    lowered = url.lower()
    return any(p.lower() in lowered for p in TRACKER_PATTERNS)


def tracker_url_patterns() -> list[str]:
    """Wildcard form of the denylist for CDP Network.setBlockedURLs."""
    return [f"*{p}*" for p in TRACKER_PATTERNS]


# ---------------------------------------------------------------------------
# Stage 4: CSS
# ---------------------------------------------------------------------------

OVERLAY_CSS = """
#onetrust-consent-sdk, #onetrust-banner-sdk, .onetrust-pc-dark-filter, .optanon-alert-box-wrapper,
#CybotCookiebotDialog, #CybotCookiebotDialogBodyUnderlay,
.qc-cmp2-container, #qc-cmp2-ui,
[class*="cookie-banner"], [class*="consent-banner"], [class*="gdpr-banner"],
[id*="cookie-banner"], [id*="consent-banner"], [id*="gdpr-banner"],
[class*="cookie-notice"], [class*="cookie-consent"],
[role="dialog"][aria-label*="cookie" i], [role="dialog"][aria-label*="consent" i] {
    display: none !important;
    visibility: hidden !important;
    opacity: 0 !important;
    pointer-events: none !important;
}
html, body {
    overflow: auto !important;
}
body {
    position: static !important;
}
body::before, body::after {
    display: none !important;
}
"""

APPLY_CSS_JS = """(css) => {
    let style = document.getElementById('evidence-overlay-css');
    if (!style) {
        style = document.createElement('style');
        style.id = 'evidence-overlay-css';
        (document.head || document.documentElement).appendChild(style);
    }
    style.textContent = css;
    if (document.body) {
        document.body.classList.remove('onetrust-consent-sdk-modal-open', 'modal-open', 'no-scroll');
    }
    return true;
}"""

# ---------------------------------------------------------------------------
# Stage 5: DOM pruning. JS lists candidates, Python decides, JS removes.
# ---------------------------------------------------------------------------

OVERLAY_CANDIDATES_JS = r"""(target) => {
    const norm = (s) => (s || '').normalize('NFKC').toLowerCase()
        .replace(/[\-‐-―\/\\|]/g, ' ')
        .replace(/[^\p{L}\p{N}\s]|_/gu, '')
        .replace(/\s+/g, ' ').trim();
    const want = norm(target);
    const located = window.__evidenceTarget;
    const out = [];
    const found = [];
    const all = document.body ? document.body.querySelectorAll('*') : [];
    for (const el of all) {
        const cs = window.getComputedStyle(el);
        if (cs.display === 'none') continue;
        const role = (el.getAttribute('role') || '').toLowerCase();
        const modal = el.getAttribute('aria-modal') === 'true';
        const z = parseInt(cs.zIndex, 10);
        const positioned = cs.position === 'fixed' || cs.position === 'sticky' || cs.position === 'absolute';
        const marker = /cookie|consent|gdpr|onetrust|cybot|qc-cmp|cmp-|privacy-banner/i.test((el.id || '') + ' ' + (typeof el.className === 'string' ? el.className : ''));
        if (!(role === 'dialog' || role === 'alertdialog' || modal || marker || (positioned && z >= 1000))) continue;
        const r = el.getBoundingClientRect();
        found.push(el);
        out.push({
            index: found.length - 1,
            tag: el.tagName.toLowerCase(),
            id: el.id || '',
            classes: typeof el.className === 'string' ? el.className : '',
            role: role,
            aria_modal: modal,
            aria_label: el.getAttribute('aria-label') || '',
            position: cs.position,
            z_index: isNaN(z) ? 0 : z,
            rect: { x: r.x, y: r.y, width: r.width, height: r.height },
            text: (el.innerText || '').slice(0, 2000),
            contains_target: Boolean((located && el.contains(located)) || (want && norm(el.innerText).includes(want))),
        });
    }
    window.__evidenceOverlays = found;
    return out;
}"""

REMOVE_OVERLAYS_JS = """(indices) => {
    const found = window.__evidenceOverlays || [];
    let removed = 0;
    for (const i of indices) {
        const el = found[i];
        if (el && el.isConnected) { el.remove(); removed++; }
    }
    window.__evidenceOverlays = [];
    return removed;
}"""

VENDOR_MARKERS = (
    "onetrust",
    "optanon",
    "cybotcookiebot",
    "qc-cmp",
    "cookie-banner",
    "cookie-consent",
    "cookie-notice",
    "consent-banner",
    "gdpr-banner",
    "cookiebanner",
    "cookieconsent",
)

OVERLAY_KEYWORDS = (
    "cookie",
    "consent",
    "privacy",
    "gdpr",
    "newsletter",
    "subscribe",
    "popup",
    "modal",
    "overlay",
)

# Never removed: removing them would blank the page
_PROTECTED_TAGS = frozenset({"html", "body", "main", "article", "header", "nav"})

HIGH_Z_INDEX = 1000
LARGE_COVERAGE = 0.3


def is_overlay(candidate: dict, viewport: Viewport, target_text: str | None = None) -> bool:
    """Decide whether an overlay candidate should be pruned."""
    tag = candidate.get("tag", "")
    if tag in _PROTECTED_TAGS:
        return False
    text = candidate.get("text") or ""
    if candidate.get("contains_target"):
        return False
    if target_text and normalize(target_text) and normalize(target_text) in normalize(text):
        return False

    ident = f"{candidate.get('id', '')} {candidate.get('classes', '')}".lower()
    if any(m in ident for m in VENDOR_MARKERS):
        return True

    label = f"{ident} {candidate.get('aria_label', '')} {text[:300]}".lower()
    keyword = any(k in label for k in OVERLAY_KEYWORDS)

    if candidate.get("role") in ("dialog", "alertdialog") or candidate.get("aria_modal"):
        return True

    rect = candidate.get("rect") or {}
    area = max(0.0, rect.get("width", 0)) * max(0.0, rect.get("height", 0))
    coverage = area / max(1, viewport.width * viewport.height)
    high = candidate.get("z_index", 0) >= HIGH_Z_INDEX
    position = candidate.get("position")

    if position in ("fixed", "sticky") and high:
        return True
    if position == "absolute" and high and (keyword or coverage >= LARGE_COVERAGE):
        return True
    return False


# ---------------------------------------------------------------------------
# Stage 6: readiness
# ---------------------------------------------------------------------------

READINESS_PROBE_JS = """() => {
    const text = ((document.body && document.body.innerText) || '').trim();
    const mains = document.querySelectorAll('main, article, [role="main"], #content, .content');
    const mainVisible = Array.from(mains).some(el => {
        const r = el.getBoundingClientRect();
        return r.width > 0 && r.height > 0;
    });
    return { text_length: text.length, main_visible: mainVisible };
}"""


class ConsentDefenseLayer:
    """Applies the six stages to one page. One instance per engine attempt."""

    def __init__(
        self,
        vendors: list[CmpVendor] | None = None,
        readiness_timeout: float | None = None,
        readiness_interval: float | None = None,
        readiness_min_text: int | None = None,
    ):
        self.vendors = vendors or list(CmpVendor)
        self.readiness_timeout = (
            settings.READINESS_TIMEOUT if readiness_timeout is None else readiness_timeout
        )
        self.readiness_interval = (
            settings.READINESS_POLL_INTERVAL if readiness_interval is None else readiness_interval
        )
        self.readiness_min_text = (
            settings.READINESS_MIN_TEXT if readiness_min_text is None else readiness_min_text
        )
        self.stats = ConsentDefenseStats()

    def reset_stats(self) -> None:
        self.stats.reset()

    # -- before navigation -------------------------------------------------

    async def prepare(self, page: PageDriver, url: str) -> None:
        """Stages 1-3. Must run before the first navigation."""
        self.reset_stats()
        await self.neutralize_apis(page)
        await self.inject_state(page, url)
        await self.install_network_filter(page)

    async def neutralize_apis(self, page: PageDriver) -> None:
        await page.add_init_script(build_neutralizer_script(self.vendors))
        await page.add_init_script(SERVICE_WORKER_DISABLE_JS)
        self.stats.cmp_neutralized = True
        logger.debug("Consent stage 1: %d CMP vendor routines installed", len(self.vendors))

    async def inject_state(self, page: PageDriver, url: str) -> None:
        await page.add_init_script(CONSENT_STORAGE_JS)
        cookies = consent_cookies(url)
        if cookies:
            try:
                await page.add_cookies(cookies)
            except Exception as e:
                # localStorage seeding still applies
                logger.debug("Consent cookies rejected for %s: %s", url, e)
        self.stats.consent_state_injected = True

    def _filter(self, request_url: str) -> bool:
        if is_tracker(request_url):
            self.stats.trackers_blocked += 1
            metrics.consent_trackers_blocked_total.inc()
            return True
        self.stats.scripts_allowed += 1
        return False

    async def install_network_filter(self, page: PageDriver) -> None:
        if page.supports_request_filter:
            await page.set_request_filter(self._filter)
        else:
            # No per-request callback, so no allowed/blocked counts either
            await page.block_urls(tracker_url_patterns())

    # -- after navigation --------------------------------------------------

    async def suppress_visuals(self, page: PageDriver) -> None:
        """Stage 4. Idempotent: the style element is reused."""
        await page.evaluate(APPLY_CSS_JS, OVERLAY_CSS)
        self.stats.css_applied = True

    async def prune_overlays(self, page: PageDriver, target_text: str | None = None) -> int:
        """Stage 5. Idempotent: a second pass finds nothing left to remove."""
        candidates = await page.evaluate(OVERLAY_CANDIDATES_JS, target_text or "") or []
        doomed = [
            c["index"] for c in candidates if is_overlay(c, page.viewport, target_text)
        ]
        if not doomed:
            return 0
        removed = int(await page.evaluate(REMOVE_OVERLAYS_JS, doomed) or 0)
        self.stats.overlays_removed += removed
        metrics.consent_overlays_removed_total.inc(removed)
        logger.debug("Consent stage 5: removed %d overlay elements", removed)
        return removed

    async def wait_until_readable(self, page: PageDriver) -> bool:
        """Stage 6. Bounded poll; returns whether readiness was reached."""
        deadline = time.monotonic() + self.readiness_timeout
        while True:
            try:
                probe = await page.evaluate(READINESS_PROBE_JS) or {}
            except Exception as e:
                if is_engine_crash(e):
                    raise
                logger.debug("Consent stage 6: readiness probe failed: %s", e)
                probe = {}
            if probe.get("text_length", 0) > self.readiness_min_text or probe.get("main_visible"):
                self.stats.readiness_achieved = True
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info("Consent stage 6: readiness timeout, proceeding anyway")
                return False
            await asyncio.sleep(min(self.readiness_interval, remaining))

    async def clean(self, page: PageDriver, target_text: str | None = None) -> None:
        """Stages 4 and 5 together; safe to call any number of times."""
        await self.suppress_visuals(page)
        await self.prune_overlays(page, target_text)

    async def consent_report(self, page: PageDriver) -> dict[str, bool]:
        """What each vendor API currently answers to a consent query."""
        return await page.evaluate(CONSENT_PROBE_JS) or {}
