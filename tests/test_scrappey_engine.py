"""Unit tests for the Scrappey fallback engine, with httpx.MockTransport."""

import base64
import json

import httpx
import pytest

from evidence.core.exceptions import EngineUnavailable, NavigationFailure
from evidence.schemas.capture import FingerprintProfile, Viewport
from evidence.services.engines.scrappey_engine import ScrappeyEngine
from evidence.services.proxy import Proxy

from tests.conftest import make_png

API = "https://publisher.scrappey.com/api/v1"
FINGERPRINT = FingerprintProfile(
    user_agent="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    viewport=Viewport(width=1440, height=900),
    locale="en-US",
    timezone="America/New_York",
    hardware_concurrency=8,
    device_memory=8,
    platform="Linux x86_64",
    chrome_version="131",
)


def _engine(handler, **kwargs) -> ScrappeyEngine:
    return ScrappeyEngine(api_key="k-123", api_url=API, transport=httpx.MockTransport(handler), **kwargs)


class TestScrappeyEngine:
    def test_available_only_with_key(self):
        assert ScrappeyEngine(api_key="k").available()
        assert not ScrappeyEngine(api_key="").available()

    @pytest.mark.asyncio
    async def test_no_key_is_unavailable(self):
        with pytest.raises(EngineUnavailable):
            await ScrappeyEngine(api_key="").capture("https://example.com", "x", FINGERPRINT)

    @pytest.mark.asyncio
    async def test_base64_screenshot(self):
        png = make_png(1440, 900)
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.url.params["key"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"solution": {"screenshot": base64.b64encode(png).decode()}})

        result = await _engine(handler).capture("https://example.com", "x", FINGERPRINT)
        assert result.image_bytes == png
        assert result.engine_used == "scrappey"
        assert (result.bounding_region.width, result.bounding_region.height) == (1440, 900)
        assert "no locator" in result.selector_description
        assert seen["key"] == "k-123"
        assert seen["payload"]["cmd"] == "request.get"
        assert seen["payload"]["screenshotWidth"] == 1440
        assert "proxy" not in seen["payload"]

    @pytest.mark.asyncio
    async def test_proxy_is_forwarded(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"solution": {"screenshot": base64.b64encode(make_png(10, 10)).decode()}})

        engine = _engine(handler, proxy=Proxy.from_url("http://u:p@proxy:3128"))
        await engine.fetch_screenshot("https://example.com", 1440, 900)
        assert seen["payload"]["proxy"] == "http://u:p@proxy:3128"

    @pytest.mark.asyncio
    async def test_screenshot_url(self):
        png = make_png(800, 600)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"solution": {"screenshotUrl": "https://cdn.scrappey.com/s/1.png"}})
            assert str(request.url) == "https://cdn.scrappey.com/s/1.png"
            return httpx.Response(200, content=png)

        result = await _engine(handler).capture("https://example.com", "x", FINGERPRINT)
        assert result.image_bytes == png
        assert result.bounding_region.width == 800

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"error": "CODE-0001", "message": "Target blocked"},
            {"status": "error"},
            {"solution": None},
            {"solution": {"statusCode": 200}},
        ],
    )
    async def test_bad_responses(self, body):
        engine = _engine(lambda request: httpx.Response(200, json=body))
        with pytest.raises(NavigationFailure) as exc_info:
            await engine.capture("https://example.com", "x", FINGERPRINT)
        assert exc_info.value.engine == "scrappey"

    @pytest.mark.asyncio
    async def test_http_error(self):
        engine = _engine(lambda request: httpx.Response(401, text="invalid key"))
        with pytest.raises(NavigationFailure, match="401"):
            await engine.fetch_screenshot("https://example.com", 1440, 900)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NavigationFailure):
            await _engine(handler).fetch_screenshot("https://example.com", 1440, 900)
