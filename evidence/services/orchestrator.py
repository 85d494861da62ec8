"""Engine cascade for one capture request."""

import asyncio
import logging
import time

import sentry_sdk

from evidence.config import settings
from evidence.core import metrics
from evidence.core.context import bind_request_id
from evidence.core.exceptions import (
    AllEnginesExhausted,
    AttemptTimeout,
    CaptureError,
    EngineCrash,
    EngineUnavailable,
    NavigationFailure,
)
from evidence.schemas.capture import (
    AttemptRecord,
    CaptureFailure,
    CaptureRequest,
    CaptureResult,
    FingerprintProfile,
)
from evidence.services.engines.base import EngineAdapter
from evidence.services.fingerprint import FingerprintProvider
from evidence.services.proxy import ProxyRotator
from evidence.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ENGINE_ERROR = "EngineError"


def default_engines() -> list[EngineAdapter]:
    """Enabled engines in cascade order: cheapest/most capable first, paid last."""
    from evidence.services.engines.nodriver_engine import NodriverEngine
    from evidence.services.engines.playwright_engine import ExtensionPlaywrightEngine, PlaywrightEngine
    from evidence.services.engines.scrappey_engine import ScrappeyEngine
    from evidence.services.engines.selenium_engine import SeleniumEngine

    engines: list[EngineAdapter] = []
    if settings.ENABLE_EXTENSION_ENGINE:
        engines.append(ExtensionPlaywrightEngine())
    if settings.ENABLE_PLAYWRIGHT_ENGINE:
        engines.append(PlaywrightEngine())
    if settings.ENABLE_NODRIVER_ENGINE:
        engines.append(NodriverEngine())
    if settings.ENABLE_SELENIUM_ENGINE:
        engines.append(SeleniumEngine())
    if settings.ENABLE_SCRAPPEY_ENGINE:
        engines.append(ScrappeyEngine())
    return engines


class CaptureOrchestrator:
    """Tries engines strictly in order; returns the first success or a failure.

    An engine whose browser crashed gets exactly one retry (recorded as
    ``<name>-retry``). No other error is retried.
    """

    def __init__(
        self,
        engines: list[EngineAdapter] | None = None,
        rate_limiter: RateLimiter | None = None,
        proxy_rotator: ProxyRotator | None = None,
        fingerprints: FingerprintProvider | None = None,
        attempt_timeout: float | None = None,
    ):
        self.engines = default_engines() if engines is None else engines
        self.rate_limiter = rate_limiter or RateLimiter()
        self.proxy_rotator = proxy_rotator or ProxyRotator.from_urls(settings.proxy_urls)
        self.fingerprints = fingerprints or FingerprintProvider()
        self.attempt_timeout = (
            settings.ENGINE_ATTEMPT_TIMEOUT if attempt_timeout is None else attempt_timeout
        )

    async def capture(self, request: CaptureRequest) -> CaptureResult | CaptureFailure:
        start = time.monotonic()
        attempts: list[AttemptRecord] = []
        with bind_request_id(request.request_id):
            logger.info("Capture started for %s (%d engines)", request.url, len(self.engines))
            for engine in self.engines:
                result = await self._attempt(engine, engine.name, request, attempts)
                if result is None and attempts[-1].error_kind == EngineCrash.kind:
                    logger.warning("%s crashed, retrying once with a fresh browser", engine.name)
                    result = await self._attempt(engine, f"{engine.name}-retry", request, attempts)
                if result is not None:
                    metrics.capture_requests_total.labels(status="success").inc()
                    metrics.capture_duration_seconds.observe(time.monotonic() - start)
                    logger.info(
                        "Capture succeeded with %s after %d attempts", result.engine_used, len(attempts)
                    )
                    return result.model_copy(
                        update={"request_id": request.request_id, "attempts": list(attempts)}
                    )

            metrics.capture_requests_total.labels(status="failed").inc()
            metrics.capture_duration_seconds.observe(time.monotonic() - start)
            logger.error(
                "All engines exhausted for %s: %s",
                request.url,
                ", ".join(f"{a.engine}={a.error_kind}" for a in attempts),
            )
            return CaptureFailure(
                request_id=request.request_id, url=request.url, attempted_engines=attempts
            )

    async def capture_or_raise(self, request: CaptureRequest) -> CaptureResult:
        outcome = await self.capture(request)
        if isinstance(outcome, CaptureFailure):
            raise AllEnginesExhausted(outcome)
        return outcome

    async def _run_bounded(
        self, engine: EngineAdapter, request: CaptureRequest, fingerprint: FingerprintProfile
    ) -> CaptureResult:
        """Run one attempt under the deadline; on expiry the engine task is cancelled."""
        deadline = asyncio.timeout(self.attempt_timeout)
        try:
            async with deadline:
                return await engine.capture(request.url, request.target_text, fingerprint)
        except TimeoutError as e:
            if not deadline.expired():
                raise
            raise AttemptTimeout(
                f"{engine.name} did not finish within {self.attempt_timeout:g}s", engine=engine.name
            ) from e

    async def _attempt(
        self,
        engine: EngineAdapter,
        label: str,
        request: CaptureRequest,
        attempts: list[AttemptRecord],
    ) -> CaptureResult | None:
        if not engine.available():
            attempts.append(AttemptRecord(
                engine=label, error_kind=EngineUnavailable.kind, message=f"{engine.name} is not available"
            ))
            metrics.engine_attempts_total.labels(engine=engine.name, outcome=EngineUnavailable.kind).inc()
            logger.info("Skipping %s: not available", engine.name)
            return None

        await self.rate_limiter.wait(request.url)
        fingerprint = self.fingerprints.draw()
        proxy = self.proxy_rotator.next()
        engine.proxy = proxy

        started = time.monotonic()
        result = None
        error_kind = None
        message = ""
        try:
            result = await self._run_bounded(engine, request, fingerprint)
        except CaptureError as e:
            error_kind, message = e.kind, str(e)
            if proxy and isinstance(e, NavigationFailure):
                self.proxy_rotator.mark_failed(proxy)
            logger.warning("%s failed: %s: %s", label, e.kind, e)
        except Exception as e:
            error_kind, message = ENGINE_ERROR, f"{type(e).__name__}: {e}"
            sentry_sdk.capture_exception(e)
            logger.exception("%s raised an unexpected error", label)

        duration = time.monotonic() - started
        attempts.append(AttemptRecord(engine=label, error_kind=error_kind, message=message, duration=duration))
        metrics.engine_attempts_total.labels(engine=engine.name, outcome=error_kind or "success").inc()
        metrics.engine_attempt_duration_seconds.labels(engine=engine.name).observe(duration)
        if result is not None and proxy:
            self.proxy_rotator.mark_ok(proxy)
        return result
