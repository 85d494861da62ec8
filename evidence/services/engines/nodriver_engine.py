"""nodriver engine: real headed Chrome over CDP on an Xvfb display.

nodriver talks to Chrome directly (no WebDriver, no chromedriver), and a
headed browser on a virtual framebuffer passes headless detection that
trips the Playwright engines.
"""

import asyncio
import base64
import json
import logging
import shutil
from typing import Any

import nodriver as uc
from nodriver import cdp
from pyvirtualdisplay import Display

from evidence.config import settings
from evidence.schemas.capture import CaptureResult, FingerprintProfile, Viewport
from evidence.services.engines.base import EngineAdapter
from evidence.services.fingerprint import build_stealth_script
from evidence.services.page import CLICK_VISIBLE_JS, MARK_ELEMENT_JS, PageDriver

logger = logging.getLogger(__name__)

_FIND_TIMEOUT = 3


def find_chrome_binary() -> str | None:
    """Find a usable Chrome/Chromium binary on the system."""
    candidates = [
        "chromium",
        "chromium-browser",
        "google-chrome",
        "google-chrome-stable",
    ]
    for name in candidates:
        path = shutil.which(name)
        if path:
            return path
    return None


def wrap_call(script: str, arg: Any) -> str:
    """One expression calling `script` with `arg`, JSON-encoded result."""
    return f"JSON.stringify(({script})({json.dumps(arg)}))"


def describe_js_error(details) -> str:
    """Readable text for a CDP ExceptionDetails."""
    exception = getattr(details, "exception", None)
    description = getattr(exception, "description", None)
    if description:
        return description.splitlines()[0]
    return getattr(details, "text", None) or repr(details)


class NodriverPage(PageDriver):
    engine = "nodriver"

    def __init__(self, tab, viewport: Viewport):
        super().__init__(viewport)
        self.tab = tab

    async def add_init_script(self, script: str) -> None:
        await self.tab.send(cdp.page.add_script_to_evaluate_on_new_document(source=script))

    async def add_cookies(self, cookies: list[dict]) -> None:
        params = [
            cdp.network.CookieParam(
                name=c["name"],
                value=c["value"],
                domain=c.get("domain"),
                path=c.get("path", "/"),
                expires=cdp.network.TimeSinceEpoch(c["expires"]) if c.get("expires") else None,
            )
            for c in cookies
        ]
        await self.tab.send(cdp.network.set_cookies(params))

    async def block_urls(self, patterns: list[str]) -> None:
        await self.tab.send(cdp.network.enable())
        await self.tab.send(cdp.network.set_blocked_ur_ls(urls=patterns))

    async def goto(self, url: str, timeout: float) -> None:
        await asyncio.wait_for(self.tab.get(url), timeout=timeout)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        raw = await self.tab.evaluate(wrap_call(script, arg), await_promise=False, return_by_value=True)
        if isinstance(raw, str):
            return json.loads(raw)
        # undefined results come back as None; a thrown error as ExceptionDetails
        if raw is not None:
            message = describe_js_error(raw)
            logger.warning("nodriver script error: %s", message)
            raise RuntimeError(f"Evaluation failed: {message}")
        return None

    async def find_text(self, text: str) -> bool:
        try:
            element = await self.tab.find(text, best_match=True, timeout=_FIND_TIMEOUT)
        except asyncio.TimeoutError:
            return False
        if element is None:
            return False
        return bool(await element.apply(MARK_ELEMENT_JS))

    async def click_if_visible(self, selector: str) -> bool:
        return bool(await self.evaluate(CLICK_VISIBLE_JS, selector))

    async def press_escape(self) -> None:
        for kind in ("keyDown", "keyUp"):
            await self.tab.send(
                cdp.input_.dispatch_key_event(
                    kind, key="Escape", code="Escape", windows_virtual_key_code=27
                )
            )

    async def screenshot(self) -> bytes:
        data = await self.tab.send(cdp.page.capture_screenshot(format_="png"))
        return base64.b64decode(data)


class NodriverEngine(EngineAdapter):
    name = "nodriver"

    def available(self) -> bool:
        return find_chrome_binary() is not None

    async def _capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        vp = fingerprint.viewport
        chrome_path = find_chrome_binary()
        browser_args = [
            "--no-first-run",
            "--no-default-browser-check",
            f"--window-size={vp.width},{vp.height}",
            "--disable-gpu",
            "--disable-dev-shm-usage",
            f"--user-agent={fingerprint.user_agent}",
        ]
        if self.proxy:
            browser_args.append(f"--proxy-server={self.proxy.server}")

        display = None
        browser = None
        try:
            # Start virtual display (Xvfb) for headed mode
            display = Display(visible=False, size=(vp.width, vp.height))
            display.start()
            logger.debug("Xvfb started on display :%s", display.display)

            browser = await uc.start(
                headless=False,
                browser_executable_path=chrome_path,
                sandbox=False,
                lang=fingerprint.locale,
                browser_args=browser_args,
            )
            tab = await browser.get("about:blank")
            await tab.send(
                cdp.emulation.set_device_metrics_override(
                    width=vp.width, height=vp.height, device_scale_factor=1, mobile=False
                )
            )
            await tab.send(cdp.emulation.set_timezone_override(timezone_id=fingerprint.timezone))
            page = NodriverPage(tab, vp)
            await page.add_init_script(build_stealth_script(fingerprint))

            output = await self.new_pipeline().run(page, url, text)
            return self.build_result(url, output)
        finally:
            if browser:
                try:
                    browser.stop()
                except Exception as e:
                    logger.debug("nodriver stop: %s", e)
            if display:
                try:
                    display.stop()
                except Exception as e:
                    logger.debug("Xvfb stop: %s", e)
