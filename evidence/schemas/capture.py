import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def _normalize_url(url: str) -> str:
    """Prepend https:// if no protocol is present."""
    url = url.strip()
    if url and not url.startswith(("http://", "https://", "//")):
        url = f"https://{url}"
    return url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaptureRequest(BaseModel):
    url: str
    target_text: str
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    model_config = {"frozen": True}

    @field_validator("url", mode="before")
    @classmethod
    def _add_protocol(cls, v: str) -> str:
        return _normalize_url(v)

    @field_validator("target_text")
    @classmethod
    def _non_empty_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("target_text must not be empty")
        return v


class Viewport(BaseModel):
    width: int
    height: int

    model_config = {"frozen": True}


class FingerprintProfile(BaseModel):
    """One browser identity, constant for a whole engine attempt."""

    user_agent: str
    viewport: Viewport
    locale: str
    timezone: str
    hardware_concurrency: int
    device_memory: int
    platform: str  # Win32, MacIntel, Linux x86_64
    chrome_version: str  # major version from the UA
    color_depth: int = 24
    webgl_vendor: str = "Google Inc. (Intel)"
    webgl_renderer: str = "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"

    model_config = {"frozen": True}

    @property
    def languages(self) -> list[str]:
        lang = self.locale.split("-")[0]
        return [self.locale, lang] if lang != self.locale else [self.locale]


class BoundingRegion(BaseModel):
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height


class ConsentDefenseStats(BaseModel):
    scripts_allowed: int = 0
    trackers_blocked: int = 0
    overlays_removed: int = 0
    readiness_achieved: bool = False
    cmp_neutralized: bool = False
    consent_state_injected: bool = False
    css_applied: bool = False

    def reset(self) -> None:
        for name, field in type(self).model_fields.items():
            setattr(self, name, field.default)

    def summary(self) -> str:
        parts = []
        if self.cmp_neutralized:
            parts.append("CMP APIs neutralized")
        if self.consent_state_injected:
            parts.append("consent state pre-injected")
        if self.css_applied:
            parts.append("CSS overlays hidden")
        if self.scripts_allowed:
            parts.append(f"{self.scripts_allowed} requests allowed")
        if self.trackers_blocked:
            parts.append(f"{self.trackers_blocked} trackers blocked")
        if self.overlays_removed:
            parts.append(f"{self.overlays_removed} overlays removed")
        if self.readiness_achieved:
            parts.append("DOM readiness achieved")
        return ", ".join(parts) or "no actions taken"


class AttemptRecord(BaseModel):
    engine: str
    error_kind: str | None = None  # None = success
    message: str = ""
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None


class CaptureResult(BaseModel):
    request_id: str
    url: str
    image_bytes: bytes
    engine_used: str
    selector_description: str
    bounding_region: BoundingRegion
    neutralization_stats: ConsentDefenseStats
    captured_at: datetime = Field(default_factory=_utcnow)
    html_evidence: str | None = None
    attempts: list[AttemptRecord] = []


class CaptureFailure(BaseModel):
    request_id: str
    url: str
    attempted_engines: list[AttemptRecord] = []
    failed_at: datetime = Field(default_factory=_utcnow)


class EvidenceRecord(BaseModel):
    """What the persistence collaborator stores for one request."""

    request_id: str
    original_url: str
    message_content: str
    status: Literal["success", "failed"]
    image_bytes: bytes | None = None
    engine_used: str | None = None
    selector_description: str | None = None
    neutralization_stats: dict[str, Any] | None = None
    attempts: list[AttemptRecord] = []

    @classmethod
    def from_outcome(
        cls, request: CaptureRequest, outcome: "CaptureResult | CaptureFailure"
    ) -> "EvidenceRecord":
        if isinstance(outcome, CaptureResult):
            return cls(
                request_id=request.request_id,
                original_url=request.url,
                message_content=request.target_text,
                status="success",
                image_bytes=outcome.image_bytes,
                engine_used=outcome.engine_used,
                selector_description=outcome.selector_description,
                neutralization_stats=outcome.neutralization_stats.model_dump(),
                attempts=outcome.attempts,
            )
        return cls(
            request_id=request.request_id,
            original_url=request.url,
            message_content=request.target_text,
            status="failed",
            attempts=outcome.attempted_engines,
        )
