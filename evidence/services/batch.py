"""Run many capture requests with bounded concurrency.

Each request gets its own orchestrator (and therefore its own engines and
browsers). Only the rate limiter and the proxy rotator are shared.
"""

import asyncio
import logging
from typing import Callable

from evidence.config import settings
from evidence.schemas.capture import CaptureRequest, EvidenceRecord
from evidence.services.orchestrator import CaptureOrchestrator
from evidence.services.proxy import ProxyRotator
from evidence.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# (completed, total, record)
ProgressCallback = Callable[[int, int, EvidenceRecord], None]


async def capture_batch(
    requests: list[CaptureRequest],
    on_progress: ProgressCallback | None = None,
    max_concurrency: int | None = None,
    orchestrator_factory: Callable[..., CaptureOrchestrator] = CaptureOrchestrator,
    rate_limiter: RateLimiter | None = None,
    proxy_rotator: ProxyRotator | None = None,
) -> list[EvidenceRecord]:
    """One EvidenceRecord per request, in input order."""
    total = len(requests)
    limiter = rate_limiter or RateLimiter()
    rotator = proxy_rotator or ProxyRotator.from_urls(settings.proxy_urls)
    semaphore = asyncio.Semaphore(max_concurrency or settings.MAX_CONCURRENT_CAPTURES)
    completed = 0

    async def _one(request: CaptureRequest) -> EvidenceRecord:
        nonlocal completed
        async with semaphore:
            orchestrator = orchestrator_factory(rate_limiter=limiter, proxy_rotator=rotator)
            outcome = await orchestrator.capture(request)
        record = EvidenceRecord.from_outcome(request, outcome)
        completed += 1
        if on_progress:
            on_progress(completed, total, record)
        return record

    logger.info("Batch capture of %d requests", total)
    records = await asyncio.gather(*(_one(r) for r in requests))
    failed = sum(1 for r in records if r.status == "failed")
    logger.info("Batch finished: %d succeeded, %d failed", total - failed, failed)
    return list(records)
