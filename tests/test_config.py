"""Unit tests for evidence.config."""

from evidence.config import Settings


class TestSettings:
    def test_max_delay_below_min_is_clamped(self):
        s = Settings(RATE_LIMIT_MIN_DELAY=4.0, RATE_LIMIT_MAX_DELAY=1.0)
        assert s.RATE_LIMIT_MAX_DELAY == 4.0

    def test_proxy_urls(self):
        s = Settings(PROXY_LIST="http://a:1, ,http://b:2 ")
        assert s.proxy_urls == ["http://a:1", "http://b:2"]

    def test_defaults(self):
        s = Settings()
        assert s.CHALLENGE_WAIT_TIMEOUT == 30.0
        assert s.ENGINE_ATTEMPT_TIMEOUT > s.EXTENSION_WAIT_TIMEOUT
        assert s.EXTENSION_PATH.endswith("extension")

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CAPTURE_WIDTH", "1920")
        assert Settings().CAPTURE_WIDTH == 1920
