"""Common contract for every capture engine in the cascade."""

import logging
from abc import ABC, abstractmethod

from evidence.core.context import get_request_id
from evidence.core.exceptions import CaptureError, EngineCrash, EngineUnavailable, is_browser_closed_error
from evidence.schemas.capture import CaptureResult, FingerprintProfile
from evidence.services.pipeline import CapturePipeline, PipelineOutput
from evidence.services.proxy import Proxy

logger = logging.getLogger(__name__)


class EngineAdapter(ABC):
    """One capture technology.

    Subclasses implement ``_capture``; ``capture`` adds the shared error
    translation (browser death -> EngineCrash, engine name on every error).
    Each call owns its own browser and releases it before returning.
    """

    name: str = "engine"

    def __init__(self, proxy: Proxy | None = None):
        self.proxy = proxy

    def available(self) -> bool:
        """Whether the engine can run here (library, binary, API key)."""
        return True

    async def capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        if not self.available():
            raise EngineUnavailable(f"{self.name} is not available", engine=self.name)
        try:
            return await self._capture(url, text, fingerprint)
        except CaptureError as e:
            e.engine = e.engine or self.name
            raise
        except Exception as e:
            if is_browser_closed_error(e):
                raise EngineCrash(f"{self.name} browser died: {e}", engine=self.name) from e
            raise

    @abstractmethod
    async def _capture(self, url: str, text: str, fingerprint: FingerprintProfile) -> CaptureResult:
        ...

    def new_pipeline(self) -> CapturePipeline:
        return CapturePipeline()

    def build_result(self, url: str, output: PipelineOutput) -> CaptureResult:
        return CaptureResult(
            request_id=get_request_id(),
            url=url,
            image_bytes=output.image_bytes,
            engine_used=self.name,
            selector_description=output.selector_description,
            bounding_region=output.bounding_region,
            neutralization_stats=output.stats,
            html_evidence=output.html_evidence,
        )
