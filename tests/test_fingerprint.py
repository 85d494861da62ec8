"""Unit tests for evidence.services.fingerprint — consistent browser identities."""

import random

import pytest

from evidence.services.fingerprint import (
    FingerprintProvider,
    build_headers,
    build_stealth_script,
    chrome_major,
    platform_for,
)


@pytest.fixture
def profiles():
    provider = FingerprintProvider(min_width=1440, min_height=900, rng=random.Random(7))
    return [provider.draw() for _ in range(50)]


class TestDerivedValues:
    def test_platform_follows_ua(self):
        assert platform_for("Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/131.0.0.0") == "Win32"
        assert platform_for("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) Chrome/130.0.0.0") == "MacIntel"
        assert platform_for("Mozilla/5.0 (X11; Linux x86_64) Chrome/129.0.0.0") == "Linux x86_64"

    def test_chrome_major(self):
        assert chrome_major("... Chrome/129.0.0.0 Safari/537.36") == "129"


class TestFingerprintProvider:
    def test_profiles_are_consistent(self, profiles):
        for p in profiles:
            assert p.platform == platform_for(p.user_agent)
            assert f"Chrome/{p.chrome_version}." in p.user_agent
            if p.platform == "MacIntel":
                assert "Direct3D" not in p.webgl_renderer

    def test_viewport_at_least_capture_size(self, profiles):
        for p in profiles:
            assert p.viewport.width >= 1440
            assert p.viewport.height >= 900

    def test_oversized_minimum_falls_back_to_minimum(self):
        p = FingerprintProvider(min_width=4000, min_height=3000).draw()
        assert (p.viewport.width, p.viewport.height) == (4000, 3000)

    def test_draws_vary(self, profiles):
        assert len({p.user_agent for p in profiles}) > 1


class TestHeadersAndScript:
    def test_client_hints_match_profile(self, profiles):
        for p in profiles:
            headers = build_headers(p)
            assert f'"Chromium";v="{p.chrome_version}"' in headers["Sec-Ch-Ua"]
            assert headers["Accept-Language"].startswith(p.locale)
            expected = {"Win32": '"Windows"', "MacIntel": '"macOS"'}.get(p.platform, '"Linux"')
            assert headers["Sec-Ch-Ua-Platform"] == expected

    def test_stealth_script_pins_values(self, profiles):
        p = profiles[0]
        script = build_stealth_script(p)
        assert f"define(navigator, 'platform', \"{p.platform}\")" in script
        assert f"define(screen, 'width', {p.viewport.width})" in script
        assert f"define(navigator, 'hardwareConcurrency', {p.hardware_concurrency})" in script
        assert "define(navigator, 'webdriver', false)" in script
