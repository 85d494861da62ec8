"""Randomized, internally-consistent browser identities.

Every value is drawn independently from a fixed pool, but derived values
(platform, client hints, Accept-Language) always follow the drawn user agent
and locale so a site never sees a Windows UA with a MacIntel platform.
"""

import json
import random
import re

from evidence.config import settings
from evidence.schemas.capture import FingerprintProfile, Viewport

# ---------------------------------------------------------------------------
# Pools, Chrome family only: every engine drives a Chromium build
# ---------------------------------------------------------------------------

CHROME_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1680, "height": 1050},
    {"width": 1280, "height": 720},
    {"width": 2560, "height": 1440},
    {"width": 1600, "height": 900},
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Los_Angeles",
    "America/Denver",
    "America/Phoenix",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Australia/Sydney",
    "America/Toronto",
]

LOCALES = ["en-US", "en-GB", "en-AU", "en-CA"]

DEVICE_MEMORIES = [4, 8, 16, 32]
HARDWARE_CONCURRENCIES = [4, 6, 8, 12, 16]
COLOR_DEPTHS = [24, 24, 24, 30, 32]

# WebGL strings per OS token; a Mac UA never reports a Direct3D renderer
WEBGL_RENDERERS = {
    "Win32": [
        ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce GTX 1080 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
        ("Google Inc. (AMD)", "ANGLE (AMD, AMD Radeon RX 6700 XT Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ],
    "MacIntel": [
        ("Google Inc. (Apple)", "ANGLE (Apple, Apple M1, OpenGL 4.1)"),
        ("Google Inc. (Apple)", "ANGLE (Apple, Apple M2, OpenGL 4.1)"),
        ("Google Inc. (Intel)", "ANGLE (Intel Inc., Intel(R) Iris(TM) Plus Graphics 655, OpenGL 4.1)"),
    ],
    "Linux x86_64": [
        ("Google Inc. (Intel)", "ANGLE (Intel, Mesa Intel(R) UHD Graphics 620 (KBL GT2), OpenGL 4.6)"),
        ("Google Inc. (AMD)", "ANGLE (AMD, AMD Radeon RX 580 (polaris10, LLVM 15.0.7), OpenGL 4.6)"),
    ],
}

_CHROME_VERSION_RE = re.compile(r"Chrome/(\d+)")


def platform_for(user_agent: str) -> str:
    """navigator.platform matching the UA's OS token."""
    if "Windows" in user_agent:
        return "Win32"
    if "Macintosh" in user_agent:
        return "MacIntel"
    return "Linux x86_64"


def chrome_major(user_agent: str) -> str:
    m = _CHROME_VERSION_RE.search(user_agent)
    return m.group(1) if m else "131"


def _eligible_viewports(min_width: int, min_height: int) -> list[dict]:
    fits = [v for v in VIEWPORTS if v["width"] >= min_width and v["height"] >= min_height]
    return fits or [{"width": min_width, "height": min_height}]


class FingerprintProvider:
    """Draws FingerprintProfile values. One draw per engine attempt."""

    def __init__(
        self,
        min_width: int | None = None,
        min_height: int | None = None,
        rng: random.Random | None = None,
    ):
        self._min_width = min_width or settings.CAPTURE_WIDTH
        self._min_height = min_height or settings.CAPTURE_HEIGHT
        self._rng = rng or random.Random()

    def draw(self) -> FingerprintProfile:
        rng = self._rng
        ua = rng.choice(CHROME_USER_AGENTS)
        platform = platform_for(ua)
        vp = rng.choice(_eligible_viewports(self._min_width, self._min_height))
        webgl_vendor, webgl_renderer = rng.choice(WEBGL_RENDERERS[platform])
        return FingerprintProfile(
            user_agent=ua,
            viewport=Viewport(**vp),
            locale=rng.choice(LOCALES),
            timezone=rng.choice(TIMEZONES),
            hardware_concurrency=rng.choice(HARDWARE_CONCURRENCIES),
            device_memory=rng.choice(DEVICE_MEMORIES),
            platform=platform,
            chrome_version=chrome_major(ua),
            color_depth=rng.choice(COLOR_DEPTHS),
            webgl_vendor=webgl_vendor,
            webgl_renderer=webgl_renderer,
        )


def client_hint_platform(profile: FingerprintProfile) -> str:
    return {
        "Win32": '"Windows"',
        "MacIntel": '"macOS"',
    }.get(profile.platform, '"Linux"')


def build_headers(profile: FingerprintProfile) -> dict[str, str]:
    """HTTP headers a real Chrome with this identity would send."""
    v = profile.chrome_version
    return {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7",
        "Accept-Language": f"{profile.locale},en;q=0.9",
        "Accept-Encoding": "gzip, deflate, br",
        "Sec-Ch-Ua": f'"Not_A Brand";v="8", "Chromium";v="{v}", "Google Chrome";v="{v}"',
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": client_hint_platform(profile),
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
        "Upgrade-Insecure-Requests": "1",
    }


def build_stealth_script(profile: FingerprintProfile) -> str:
    """Init script pinning navigator/screen/WebGL values to the profile."""
    languages = json.dumps(profile.languages)
    vendor = json.dumps(profile.webgl_vendor)
    renderer = json.dumps(profile.webgl_renderer)
    w = profile.viewport.width
    h = profile.viewport.height
    return f"""
(() => {{
    const define = (obj, prop, value) => {{
        try {{ Object.defineProperty(obj, prop, {{ get: () => value, configurable: true }}); }} catch (e) {{}}
    }};

    // navigator: the most checked automation signals
    define(navigator, 'webdriver', false);
    define(navigator, 'languages', {languages});
    define(navigator, 'language', {json.dumps(profile.locale)});
    define(navigator, 'platform', {json.dumps(profile.platform)});
    define(navigator, 'hardwareConcurrency', {profile.hardware_concurrency});
    define(navigator, 'deviceMemory', {profile.device_memory});
    define(navigator, 'maxTouchPoints', 0);

    // window.chrome is missing in headless Chromium
    if (!window.chrome) {{
        window.chrome = {{
            runtime: {{ connect: function() {{}}, sendMessage: function() {{}}, id: undefined }},
            loadTimes: function() {{ return {{ navigationType: 'Other', connectionInfo: 'h2' }}; }},
            csi: function() {{ return {{ onloadT: Date.now(), tran: 15 }}; }},
        }};
    }}

    // Plugins: headless reports none
    const fakePlugins = ['Chrome PDF Plugin', 'Chrome PDF Viewer', 'Native Client'];
    define(navigator, 'plugins', Object.assign(fakePlugins.map(name => ({{ name, filename: 'internal-pdf-viewer', description: '' }})), {{
        item: function(i) {{ return this[i]; }},
        namedItem: function(n) {{ return this.find(p => p.name === n); }},
        refresh: function() {{}},
    }}));

    // WebGL vendor/renderer follow the UA's OS
    const patchGL = (proto) => {{
        if (!proto) return;
        const orig = proto.getParameter;
        proto.getParameter = function(param) {{
            if (param === 37445) return {vendor};
            if (param === 37446) return {renderer};
            return orig.call(this, param);
        }};
    }};
    if (window.WebGLRenderingContext) patchGL(WebGLRenderingContext.prototype);
    if (window.WebGL2RenderingContext) patchGL(WebGL2RenderingContext.prototype);

    // Permissions API answers like a real profile
    const origQuery = window.Permissions && window.Permissions.prototype.query;
    if (origQuery) {{
        window.Permissions.prototype.query = function(params) {{
            if (params && params.name === 'notifications') return Promise.resolve({{ state: 'default' }});
            return origQuery.call(this, params);
        }};
    }}

    // Screen matches the viewport
    define(screen, 'width', {w});
    define(screen, 'height', {h});
    define(screen, 'availWidth', {w});
    define(screen, 'availHeight', {h - 40});
    define(screen, 'colorDepth', {profile.color_depth});
    define(screen, 'pixelDepth', {profile.color_depth});

    // Leftover driver globals
    ['cdc_adoQpoasnfa76pfcZLmcfl_Array', 'cdc_adoQpoasnfa76pfcZLmcfl_Promise',
     'cdc_adoQpoasnfa76pfcZLmcfl_Symbol', '__webdriver_evaluate', '__driver_evaluate',
     '__selenium_unwrapped', '__webdriver_script_fn', 'domAutomation', 'domAutomationController']
        .forEach(p => {{ try {{ delete window[p]; }} catch (e) {{}} }});

    define(document, 'hidden', false);
    define(document, 'visibilityState', 'visible');
}})();
"""
