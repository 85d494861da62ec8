"""Selenium engine: a one-shot Chrome session over WebDriver.

Selenium is blocking, so every driver call runs in a worker thread.
"""

import asyncio
import logging
from typing import Any

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By
from selenium.webdriver.common.keys import Keys

from evidence.config import settings
from evidence.schemas.capture import CaptureResult, FingerprintProfile, Viewport
from evidence.services.engines.base import EngineAdapter
from evidence.services.fingerprint import build_headers, build_stealth_script
from evidence.services.page import CLICK_VISIBLE_JS, MARK_ELEMENT_JS, PageDriver

logger = logging.getLogger(__name__)


def xpath_literal(text: str) -> str:
    """Quote `text` for use inside an XPath expression."""
    if "'" not in text:
        return f"'{text}'"
    if '"' not in text:
        return f'"{text}"'
    parts = text.split("'")
    return "concat(" + ", \"'\", ".join(f"'{p}'" for p in parts) + ")"


def build_options(fingerprint: FingerprintProfile, proxy_server: str | None = None) -> webdriver.ChromeOptions:
    vp = fingerprint.viewport
    options = webdriver.ChromeOptions()
    if settings.BROWSER_HEADLESS:
        options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument(f"--window-size={vp.width},{vp.height}")
    options.add_argument(f"--lang={fingerprint.locale}")
    options.add_argument(f"--user-agent={fingerprint.user_agent}")
    if proxy_server:
        options.add_argument(f"--proxy-server={proxy_server}")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    return options


class SeleniumPage(PageDriver):
    engine = "selenium"

    def __init__(self, driver: webdriver.Chrome, viewport: Viewport):
        super().__init__(viewport)
        self.driver = driver

    async def _cdp(self, cmd: str, params: dict) -> Any:
        return await asyncio.to_thread(self.driver.execute_cdp_cmd, cmd, params)

    async def add_init_script(self, script: str) -> None:
        await self._cdp("Page.addScriptToEvaluateOnNewDocument", {"source": script})

    async def add_cookies(self, cookies: list[dict]) -> None:
        for c in cookies:
            await self._cdp("Network.setCookie", {
                "name": c["name"],
                "value": c["value"],
                "domain": c.get("domain"),
                "path": c.get("path", "/"),
                "expires": c.get("expires"),
            })

    async def block_urls(self, patterns: list[str]) -> None:
        await self._cdp("Network.enable", {})
        await self._cdp("Network.setBlockedURLs", {"urls": patterns})

    async def goto(self, url: str, timeout: float) -> None:
        self.driver.set_page_load_timeout(timeout)
        await asyncio.to_thread(self.driver.get, url)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await asyncio.to_thread(
            self.driver.execute_script, f"return ({script})(arguments[0]);", arg
        )

    async def find_text(self, text: str) -> bool:
        xpath = f"//body//*[contains(normalize-space(.), {xpath_literal(text)})]"
        elements = await asyncio.to_thread(self.driver.find_elements, By.XPATH, xpath)
        if not elements:
            return False
        # Document order puts the deepest match last
        return bool(await self.evaluate(MARK_ELEMENT_JS, elements[-1]))

    async def click_if_visible(self, selector: str) -> bool:
        return bool(await self.evaluate(CLICK_VISIBLE_JS, selector))

    async def press_escape(self) -> None:
        body = await asyncio.to_thread(self.driver.find_element, By.TAG_NAME, "body")
        await asyncio.to_thread(body.send_keys, Keys.ESCAPE)

    async def screenshot(self) -> bytes:
        return await asyncio.to_thread(self.driver.get_screenshot_as_png)


class SeleniumEngine(EngineAdapter):
    name = "selenium"

    async def _capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        proxy_server = self.proxy.server if self.proxy else None
        options = build_options(fingerprint, proxy_server)
        driver = await asyncio.to_thread(webdriver.Chrome, options=options)
        try:
            vp = fingerprint.viewport
            page = SeleniumPage(driver, vp)
            await page._cdp("Emulation.setDeviceMetricsOverride", {
                "width": vp.width, "height": vp.height, "deviceScaleFactor": 1, "mobile": False,
            })
            await page._cdp("Emulation.setTimezoneOverride", {"timezoneId": fingerprint.timezone})
            headers = {k: v for k, v in build_headers(fingerprint).items() if not k.startswith("Sec-Fetch")}
            await page._cdp("Network.enable", {})
            await page._cdp("Network.setExtraHTTPHeaders", {"headers": headers})
            await page.add_init_script(build_stealth_script(fingerprint))

            output = await self.new_pipeline().run(page, url, text)
            return self.build_result(url, output)
        finally:
            try:
                await asyncio.to_thread(driver.quit)
            except WebDriverException as e:
                logger.debug("Selenium quit: %s", e)
