"""The per-page capture pipeline shared by every browser engine.

Order on one page:
    consent stages 1-3 (before navigation) -> navigate -> challenge wait ->
    readiness -> settle -> CSS + prune -> block-page check -> popup
    dismissal -> locate -> CSS + prune again -> region -> highlight ->
    screenshot -> crop
"""

import asyncio
import logging
from dataclasses import dataclass

from evidence.config import settings
from evidence.core.exceptions import (
    CaptureError,
    ChallengeTimeout,
    EngineCrash,
    NavigationFailure,
    is_browser_closed_error,
)
from evidence.schemas.capture import BoundingRegion, ConsentDefenseStats
from evidence.services.challenge import ChallengeMonitor, ChallengeState, detect_block, probe_page
from evidence.services.consent import ConsentDefenseLayer
from evidence.services.imaging import crop_png
from evidence.services.locator import SCROLL_TOP_JS, ElementLocator, LocatedElement
from evidence.services.page import PageDriver
from evidence.services.region import HIGHLIGHT_JS, ContextChoice, RegionCalculator

logger = logging.getLogger(__name__)

# Accept/close buttons of common CMPs and modal libraries
DISMISS_SELECTORS = (
    "#onetrust-accept-btn-handler",
    "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll",
    "#CybotCookiebotDialogBodyButtonAccept",
    ".qc-cmp2-summary-buttons button[mode='primary']",
    "#truste-consent-button",
    "button[aria-label*='accept' i]",
    "button[aria-label*='close' i]",
    "button.close",
    "[class*='close-button' i]",
    "[class*='close-btn' i]",
)


@dataclass
class PipelineOutput:
    image_bytes: bytes
    selector_description: str
    bounding_region: BoundingRegion
    stats: ConsentDefenseStats
    located: LocatedElement
    context: ContextChoice | None = None
    html_evidence: str | None = None


class CapturePipeline:
    """Runs every stage against one PageDriver. One instance per attempt."""

    def __init__(
        self,
        consent: ConsentDefenseLayer | None = None,
        challenge: ChallengeMonitor | None = None,
        locator: ElementLocator | None = None,
        region: RegionCalculator | None = None,
        settle_delay: float | None = None,
        page_timeout: float | None = None,
        highlight: bool = True,
    ):
        self.consent = consent or ConsentDefenseLayer()
        self.challenge = challenge or ChallengeMonitor()
        self.locator = locator or ElementLocator()
        self.region = region or RegionCalculator()
        self.settle_delay = settings.SETTLE_DELAY if settle_delay is None else settle_delay
        self.page_timeout = settings.PAGE_LOAD_TIMEOUT if page_timeout is None else page_timeout
        self.highlight = highlight

    async def prepare(self, page: PageDriver, url: str) -> None:
        await self.consent.prepare(page, url)

    async def navigate(self, page: PageDriver, url: str) -> None:
        try:
            await page.goto(url, self.page_timeout)
        except CaptureError:
            raise
        except Exception as e:
            if is_browser_closed_error(e):
                raise EngineCrash(f"Browser died while loading {url}: {e}") from e
            raise NavigationFailure(f"Navigation to {url} failed: {e}") from e

    async def dismiss_popups(self, page: PageDriver) -> int:
        """Escape plus clicks on visible accept/close buttons, then back to top."""
        clicked = 0
        try:
            await page.press_escape()
        except Exception as e:
            if is_browser_closed_error(e):
                raise
            logger.debug("Escape key failed: %s", e)
        for selector in DISMISS_SELECTORS:
            try:
                if await page.click_if_visible(selector):
                    clicked += 1
                    await page.wait(0.3)
            except Exception as e:
                if is_browser_closed_error(e):
                    raise
                logger.debug("Dismiss click %s failed: %s", selector, e)
        await page.evaluate(SCROLL_TOP_JS)
        if clicked:
            logger.debug("Dismissed %d popups", clicked)
        return clicked

    async def run(self, page: PageDriver, url: str, target_text: str, prepared: bool = False) -> PipelineOutput:
        if not prepared:
            await self.prepare(page, url)
        await self.navigate(page, url)

        outcome = await self.challenge.wait(page)
        if outcome.state == ChallengeState.TIMED_OUT:
            raise ChallengeTimeout(
                f"Challenge on {url} not resolved within {self.challenge.timeout:.0f}s",
                waited=outcome.waited,
            )
        html_evidence = None
        if outcome.extension_result:
            html_evidence = outcome.extension_result.get("html") or None

        await self.consent.wait_until_readable(page)
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)
        await self.consent.clean(page, target_text)

        reason = detect_block(await probe_page(page))
        if reason:
            raise NavigationFailure(f"{url} served a block page ({reason})")

        await self.dismiss_popups(page)
        located = await self.locator.locate(page, target_text)

        # Pruning must have run at least once after the last DOM change
        await self.consent.clean(page, target_text)
        region, context = await self.region.region_for_target(page)
        if self.highlight:
            await page.evaluate(HIGHLIGHT_JS)

        png = await page.screenshot()
        image = crop_png(png, region, page.viewport)

        description = located.description
        if context:
            description += f" in <{context.tag}> context"
        logger.info("Neutralization: %s", self.consent.stats.summary())
        return PipelineOutput(
            image_bytes=image,
            selector_description=description,
            bounding_region=region,
            stats=self.consent.stats.model_copy(),
            located=located,
            context=context,
            html_evidence=html_evidence,
        )
