"""Scrappey screenshot API, the paid terminal fallback.

Scrappey solves anti-bot protection on its side and returns one viewport
screenshot. There is no live DOM, so nothing can be located or cropped: the
whole image is the evidence and the region is the full capture.
"""

import base64
import logging

import httpx

from evidence.config import settings
from evidence.core.context import get_request_id
from evidence.core.exceptions import NavigationFailure
from evidence.schemas.capture import (
    BoundingRegion,
    CaptureResult,
    ConsentDefenseStats,
    FingerprintProfile,
)
from evidence.services.engines.base import EngineAdapter
from evidence.services.imaging import image_size
from evidence.services.proxy import Proxy

logger = logging.getLogger(__name__)


class ScrappeyEngine(EngineAdapter):
    name = "scrappey"

    def __init__(
        self,
        proxy: Proxy | None = None,
        api_key: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(proxy)
        self.api_key = settings.SCRAPPEY_API_KEY if api_key is None else api_key
        self.api_url = api_url or settings.SCRAPPEY_API_URL
        self.timeout = settings.SCRAPPEY_TIMEOUT if timeout is None else timeout
        self._transport = transport

    def available(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def fetch_screenshot(self, url: str, width: int, height: int) -> bytes:
        payload = {
            "cmd": "request.get",
            "url": url,
            "screenshot": True,
            "screenshotUpload": False,
            "screenshotWidth": width,
            "screenshotHeight": height,
        }
        if self.proxy:
            payload["proxy"] = self.proxy.to_url()
        logger.info("Scrappey: capturing %s (%dx%d)", url, width, height)
        async with self._client() as client:
            try:
                resp = await client.post(self.api_url, params={"key": self.api_key}, json=payload)
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise NavigationFailure(
                    f"Scrappey API error ({e.response.status_code}) for {url}: {e.response.text[:200]}"
                ) from e
            except httpx.HTTPError as e:
                raise NavigationFailure(f"Scrappey request failed for {url}: {e}") from e

            data = resp.json()
            if data.get("error") or data.get("status") == "error":
                message = data.get("message") or data.get("error") or "unknown error"
                raise NavigationFailure(f"Scrappey API error for {url}: {message}")
            solution = data.get("solution")
            if not solution:
                raise NavigationFailure(f"Scrappey response for {url} has no solution")

            if solution.get("screenshot"):
                return base64.b64decode(solution["screenshot"])
            if solution.get("screenshotUrl"):
                try:
                    img = await client.get(solution["screenshotUrl"])
                    img.raise_for_status()
                except httpx.HTTPError as e:
                    raise NavigationFailure(f"Scrappey screenshot download failed: {e}") from e
                return img.content
        raise NavigationFailure(f"Scrappey response for {url} has no screenshot data")

    async def _capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        vp = fingerprint.viewport
        png = await self.fetch_screenshot(url, vp.width, vp.height)
        width, height = image_size(png)
        return CaptureResult(
            request_id=get_request_id(),
            url=url,
            image_bytes=png,
            engine_used=self.name,
            selector_description="full page (remote screenshot, no locator)",
            bounding_region=BoundingRegion(x=0, y=0, width=width, height=height),
            neutralization_stats=ConsentDefenseStats(),
        )
