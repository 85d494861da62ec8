"""Playwright engines: a one-shot Chromium session, and a persistent-profile
session with the challenge-assist extension loaded."""

import asyncio
import logging
from pathlib import Path
from typing import Any

from playwright.async_api import BrowserContext, Page, async_playwright

from evidence.config import settings
from evidence.schemas.capture import CaptureResult, FingerprintProfile, Viewport
from evidence.services.challenge import ChallengeMonitor
from evidence.services.engines.base import EngineAdapter
from evidence.services.fingerprint import build_headers, build_stealth_script
from evidence.services.page import MARK_ELEMENT_JS, PageDriver, RequestFilter
from evidence.services.pipeline import CapturePipeline
from evidence.services.profiles import temporary_profile
from evidence.services.proxy import Proxy

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-hang-monitor",
    "--disable-prompt-on-repost",
    "--disable-sync",
    "--metrics-recording-only",
    "--disable-features=TranslateUI",
    "--disable-gpu",
]

# Bounds for the element-level calls inside one page
_CLICK_TIMEOUT_MS = 2000
_FIND_TIMEOUT_MS = 3000


class PlaywrightPage(PageDriver):
    engine = "playwright"

    def __init__(self, page: Page, context: BrowserContext, viewport: Viewport):
        super().__init__(viewport)
        self.page = page
        self.context = context

    @property
    def supports_request_filter(self) -> bool:
        return True

    async def add_init_script(self, script: str) -> None:
        await self.context.add_init_script(script)

    async def add_cookies(self, cookies: list[dict]) -> None:
        await self.context.add_cookies(cookies)

    async def set_request_filter(self, should_block: RequestFilter) -> None:
        async def _route_handler(route, request):
            if should_block(request.url):
                await route.abort()
            else:
                await route.continue_()

        await self.context.route("**/*", _route_handler)

    async def goto(self, url: str, timeout: float) -> None:
        await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self.page.evaluate(script, arg)

    async def find_text(self, text: str) -> bool:
        locator = self.page.get_by_text(text, exact=False).first
        if await locator.count() == 0:
            return False
        handle = await locator.element_handle(timeout=_FIND_TIMEOUT_MS)
        if handle is None:
            return False
        return bool(await self.page.evaluate(MARK_ELEMENT_JS, handle))

    async def click_if_visible(self, selector: str) -> bool:
        locator = self.page.locator(selector).first
        if not await locator.is_visible():
            return False
        await locator.click(timeout=_CLICK_TIMEOUT_MS)
        return True

    async def press_escape(self) -> None:
        await self.page.keyboard.press("Escape")

    async def screenshot(self) -> bytes:
        return await self.page.screenshot(type="png", full_page=False)


def context_options(fingerprint: FingerprintProfile, proxy: Proxy | None = None) -> dict:
    """new_context / launch_persistent_context kwargs for one identity."""
    options = dict(
        user_agent=fingerprint.user_agent,
        viewport={"width": fingerprint.viewport.width, "height": fingerprint.viewport.height},
        locale=fingerprint.locale,
        timezone_id=fingerprint.timezone,
        ignore_https_errors=True,
        java_script_enabled=True,
        has_touch=False,
        is_mobile=False,
        color_scheme="light",
        extra_http_headers=build_headers(fingerprint),
    )
    if proxy:
        options["proxy"] = proxy.to_playwright()
    return options


async def _safe_close(target) -> None:
    """Close a browser or context, shielded from cancellation."""
    if target is None:
        return
    try:
        await asyncio.shield(target.close())
    except (asyncio.CancelledError, Exception) as e:
        # shield keeps the close running even if the caller was cancelled
        logger.debug("Playwright close: %s", e)


class PlaywrightEngine(EngineAdapter):
    """Fresh headless Chromium per attempt; no state survives the call."""

    name = "playwright"

    async def _capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        vp = fingerprint.viewport
        async with async_playwright() as pw:
            browser = await pw.chromium.launch(
                headless=settings.BROWSER_HEADLESS,
                args=CHROMIUM_ARGS + [f"--window-size={vp.width},{vp.height}"],
            )
            try:
                context = await browser.new_context(
                    service_workers="block", **context_options(fingerprint, self.proxy)
                )
                await context.add_init_script(build_stealth_script(fingerprint))
                page = await context.new_page()
                driver = PlaywrightPage(page, context, vp)
                output = await self.new_pipeline().run(driver, url, text)
                return self.build_result(url, output)
            finally:
                await _safe_close(browser)


class ExtensionPlaywrightEngine(EngineAdapter):
    """Persistent context in a throwaway profile with the extension loaded.

    The extension reports challenge completion (and the page HTML) through
    window.cloudflareBypassComplete / window.cloudflareBypassResult, so the
    challenge wait here polls that channel with a longer deadline.
    """

    name = "playwright_extension"

    def __init__(self, proxy: Proxy | None = None, extension_path: str | None = None):
        super().__init__(proxy)
        self.extension_path = Path(extension_path or settings.EXTENSION_PATH)

    def available(self) -> bool:
        return (self.extension_path / "manifest.json").is_file()

    def new_pipeline(self) -> CapturePipeline:
        return CapturePipeline(
            challenge=ChallengeMonitor(timeout=settings.EXTENSION_WAIT_TIMEOUT, use_extension=True)
        )

    async def _capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        vp = fingerprint.viewport
        ext = str(self.extension_path.resolve())
        args = CHROMIUM_ARGS + [
            f"--window-size={vp.width},{vp.height}",
            f"--disable-extensions-except={ext}",
            f"--load-extension={ext}",
        ]
        with temporary_profile() as profile_dir:
            async with async_playwright() as pw:
                context = None
                try:
                    # The bundled "chromium" channel is the one build that
                    # loads extensions in headless mode
                    context = await pw.chromium.launch_persistent_context(
                        user_data_dir=str(profile_dir),
                        headless=settings.BROWSER_HEADLESS,
                        channel="chromium",
                        args=args,
                        **context_options(fingerprint, self.proxy),
                    )
                    await context.add_init_script(build_stealth_script(fingerprint))
                    page = context.pages[0] if context.pages else await context.new_page()
                    driver = PlaywrightPage(page, context, vp)
                    driver.engine = self.name
                    output = await self.new_pipeline().run(driver, url, text)
                    if output.html_evidence:
                        logger.info("Extension exported %d chars of HTML", len(output.html_evidence))
                    return self.build_result(url, output)
                finally:
                    await _safe_close(context)
