"""Unit tests for the engine adapters — shared error translation and pure helpers."""

import logging
from types import SimpleNamespace

import pytest

from evidence.core.exceptions import EngineCrash, EngineUnavailable, NavigationFailure
from evidence.schemas.capture import FingerprintProfile, Viewport
from evidence.services.engines.nodriver_engine import NodriverPage, describe_js_error, wrap_call
from evidence.services.engines.playwright_engine import ExtensionPlaywrightEngine, context_options
from evidence.services.engines.selenium_engine import build_options, xpath_literal
from evidence.services.proxy import Proxy

from tests.conftest import FakeEngine, make_result

FINGERPRINT = FingerprintProfile(
    user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    viewport=Viewport(width=1920, height=1080),
    locale="en-GB",
    timezone="Europe/London",
    hardware_concurrency=8,
    device_memory=8,
    platform="Win32",
    chrome_version="131",
)


class TestEngineAdapter:
    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        engine = FakeEngine("playwright", [make_result("playwright")])
        result = await engine.capture("https://example.com", "x", FINGERPRINT)
        assert result.engine_used == "playwright"

    @pytest.mark.asyncio
    async def test_unavailable(self):
        engine = FakeEngine("nodriver", [], is_available=False)
        with pytest.raises(EngineUnavailable) as exc_info:
            await engine.capture("https://example.com", "x", FINGERPRINT)
        assert exc_info.value.engine == "nodriver"
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_capture_errors_get_engine_name(self):
        engine = FakeEngine("selenium", [NavigationFailure("dns")])
        with pytest.raises(NavigationFailure) as exc_info:
            await engine.capture("https://example.com", "x", FINGERPRINT)
        assert exc_info.value.engine == "selenium"

    @pytest.mark.asyncio
    async def test_existing_engine_name_is_kept(self):
        engine = FakeEngine("selenium", [NavigationFailure("dns", engine="other")])
        with pytest.raises(NavigationFailure) as exc_info:
            await engine.capture("https://example.com", "x", FINGERPRINT)
        assert exc_info.value.engine == "other"

    @pytest.mark.asyncio
    async def test_browser_death_becomes_crash(self):
        engine = FakeEngine("playwright", [RuntimeError("Target page, context or browser has been closed")])
        with pytest.raises(EngineCrash) as exc_info:
            await engine.capture("https://example.com", "x", FINGERPRINT)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        engine = FakeEngine("playwright", [ValueError("bad")])
        with pytest.raises(ValueError):
            await engine.capture("https://example.com", "x", FINGERPRINT)


class TestPlaywrightHelpers:
    def test_context_options(self):
        options = context_options(FINGERPRINT, Proxy.from_url("http://u:p@proxy:3128"))
        assert options["viewport"] == {"width": 1920, "height": 1080}
        assert options["locale"] == "en-GB"
        assert options["timezone_id"] == "Europe/London"
        assert options["extra_http_headers"]["Sec-Ch-Ua-Platform"] == '"Windows"'
        assert options["proxy"] == {"server": "http://proxy:3128", "username": "u", "password": "p"}

    def test_context_options_without_proxy(self):
        assert "proxy" not in context_options(FINGERPRINT)

    def test_extension_availability(self, tmp_path):
        assert not ExtensionPlaywrightEngine(extension_path=str(tmp_path)).available()
        (tmp_path / "manifest.json").write_text("{}")
        assert ExtensionPlaywrightEngine(extension_path=str(tmp_path)).available()

    def test_bundled_extension_is_available(self):
        assert ExtensionPlaywrightEngine().available()

    def test_extension_pipeline_waits_on_extension(self):
        pipeline = ExtensionPlaywrightEngine().new_pipeline()
        assert pipeline.challenge.use_extension


class ScriptedTab:
    """Stands in for a nodriver Tab whose evaluate returns one canned value."""

    def __init__(self, value):
        self.value = value
        self.expressions: list[str] = []

    async def evaluate(self, expression, await_promise=False, return_by_value=True):
        self.expressions.append(expression)
        return self.value


class TestNodriverHelpers:
    def test_wrap_call(self):
        expr = wrap_call("(sel) => sel.length", ["#a", "#b"])
        assert expr == 'JSON.stringify(((sel) => sel.length)(["#a", "#b"]))'

    def test_wrap_call_without_arg(self):
        assert wrap_call("() => 1", None).endswith("(null))")

    def test_describe_js_error_prefers_exception_description(self):
        details = SimpleNamespace(
            text="Uncaught",
            exception=SimpleNamespace(description="TypeError: x is null\n    at <anonymous>:1:5"),
        )
        assert describe_js_error(details) == "TypeError: x is null"
        assert describe_js_error(SimpleNamespace(text="Uncaught", exception=None)) == "Uncaught"

    @pytest.mark.asyncio
    async def test_evaluate_decodes_json(self):
        page = NodriverPage(ScriptedTab('{"a": 1}'), Viewport(width=1440, height=900))
        assert await page.evaluate("() => ({a: 1})") == {"a": 1}

    @pytest.mark.asyncio
    async def test_evaluate_undefined_is_none(self):
        page = NodriverPage(ScriptedTab(None), Viewport(width=1440, height=900))
        assert await page.evaluate("() => undefined") is None

    @pytest.mark.asyncio
    async def test_script_error_raises_and_warns(self, caplog):
        details = SimpleNamespace(text="Uncaught", exception=SimpleNamespace(description="ReferenceError: foo is not defined"))
        page = NodriverPage(ScriptedTab(details), Viewport(width=1440, height=900))
        with caplog.at_level(logging.WARNING, logger="evidence.services.engines.nodriver_engine"):
            with pytest.raises(RuntimeError, match="ReferenceError"):
                await page.evaluate("() => foo")
        assert "ReferenceError" in caplog.text


class TestSeleniumHelpers:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("plain", "'plain'"),
            ("it's", '"it\'s"'),
            ('it\'s "quoted"', 'concat(\'it\', "\'", \'s "quoted"\')'),
        ],
    )
    def test_xpath_literal(self, text, expected):
        assert xpath_literal(text) == expected

    def test_build_options(self):
        options = build_options(FINGERPRINT, "http://proxy:3128")
        assert "--window-size=1920,1080" in options.arguments
        assert f"--user-agent={FINGERPRINT.user_agent}" in options.arguments
        assert "--proxy-server=http://proxy:3128" in options.arguments
        assert options.experimental_options["excludeSwitches"] == ["enable-automation"]
