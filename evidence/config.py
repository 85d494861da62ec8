import logging
from pathlib import Path

from pydantic_settings import BaseSettings

_logger = logging.getLogger(__name__)

_BUNDLED_EXTENSION = Path(__file__).resolve().parent / "extension"


class Settings(BaseSettings):
    # App
    APP_NAME: str = "evidence-capture"
    APP_VERSION: str = "0.1.0"

    # Capture viewport
    CAPTURE_WIDTH: int = 1440
    CAPTURE_HEIGHT: int = 900
    BROWSER_HEADLESS: bool = True

    # Engine cascade toggles (cascade order is fixed)
    ENABLE_EXTENSION_ENGINE: bool = True
    ENABLE_PLAYWRIGHT_ENGINE: bool = True
    ENABLE_NODRIVER_ENGINE: bool = True
    ENABLE_SELENIUM_ENGINE: bool = True
    ENABLE_SCRAPPEY_ENGINE: bool = True

    # Timeouts (seconds)
    PAGE_LOAD_TIMEOUT: float = 60.0
    CHALLENGE_WAIT_TIMEOUT: float = 30.0
    CHALLENGE_POLL_INTERVAL: float = 2.0
    CHALLENGE_MIN_CONTENT: int = 200
    EXTENSION_WAIT_TIMEOUT: float = 180.0
    SETTLE_DELAY: float = 2.0
    READINESS_TIMEOUT: float = 30.0
    READINESS_POLL_INTERVAL: float = 0.5
    READINESS_MIN_TEXT: int = 200
    # Hard ceiling on one engine attempt, covering browser launch to screenshot
    ENGINE_ATTEMPT_TIMEOUT: float = 300.0

    # Rate limiting (per domain)
    RATE_LIMIT_MIN_DELAY: float = 1.0
    RATE_LIMIT_MAX_DELAY: float = 3.0
    RATE_LIMIT_WINDOW: float = 60.0
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_COOLDOWN: float = 5.0

    # Proxy (comma-separated URLs, empty = direct)
    PROXY_LIST: str = ""

    # Crop region
    REGION_PADDING: int = 40
    REGION_MIN_WIDTH: int = 300
    REGION_MAX_WIDTH: int = 1200
    REGION_MIN_HEIGHT: int = 200
    REGION_MAX_HEIGHT: int = 800

    # Extension engine
    EXTENSION_PATH: str = str(_BUNDLED_EXTENSION)
    PROFILE_ROOT: str = ""  # empty = system temp dir
    PROFILE_MAX_AGE_MINUTES: int = 60

    # Paid terminal fallback
    SCRAPPEY_API_KEY: str = ""
    SCRAPPEY_API_URL: str = "https://publisher.scrappey.com/api/v1"
    SCRAPPEY_TIMEOUT: float = 180.0

    # Batch
    MAX_CONCURRENT_CAPTURES: int = 3

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_ENVIRONMENT: str = "development"

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    def model_post_init(self, __context) -> None:
        if self.RATE_LIMIT_MAX_DELAY < self.RATE_LIMIT_MIN_DELAY:
            _logger.warning(
                "RATE_LIMIT_MAX_DELAY (%s) < RATE_LIMIT_MIN_DELAY (%s), using min for both",
                self.RATE_LIMIT_MAX_DELAY,
                self.RATE_LIMIT_MIN_DELAY,
            )
            object.__setattr__(self, "RATE_LIMIT_MAX_DELAY", self.RATE_LIMIT_MIN_DELAY)

    @property
    def proxy_urls(self) -> list[str]:
        return [p.strip() for p in self.PROXY_LIST.split(",") if p.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
