"""Unit tests for evidence.schemas.capture — request validation and record building."""

import pytest
from pydantic import ValidationError

from evidence.schemas.capture import (
    AttemptRecord,
    BoundingRegion,
    CaptureFailure,
    CaptureRequest,
    EvidenceRecord,
)

from tests.conftest import make_result


class TestCaptureRequest:
    def test_adds_protocol(self):
        req = CaptureRequest(url="  example.com/about ", target_text="hello")
        assert req.url == "https://example.com/about"

    def test_keeps_http(self):
        assert CaptureRequest(url="http://example.com", target_text="x").url == "http://example.com"

    def test_blank_text_rejected(self):
        with pytest.raises(ValidationError):
            CaptureRequest(url="https://example.com", target_text="   ")

    def test_request_ids_are_unique(self):
        a = CaptureRequest(url="example.com", target_text="x")
        b = CaptureRequest(url="example.com", target_text="x")
        assert a.request_id != b.request_id

    def test_frozen(self):
        req = CaptureRequest(url="example.com", target_text="x")
        with pytest.raises(ValidationError):
            req.url = "https://other.com"


class TestBoundingRegion:
    def test_edges(self):
        r = BoundingRegion(x=10, y=20, width=300, height=200)
        assert (r.right, r.bottom, r.area) == (310, 220, 60000)


class TestEvidenceRecord:
    def test_success(self):
        req = CaptureRequest(url="https://example.com", target_text="hello", request_id="r1")
        record = EvidenceRecord.from_outcome(req, make_result("playwright", "r1"))
        assert record.status == "success"
        assert record.image_bytes == b"png"
        assert record.engine_used == "playwright"
        assert record.message_content == "hello"
        assert record.neutralization_stats["trackers_blocked"] == 0

    def test_failure(self):
        req = CaptureRequest(url="https://example.com", target_text="hello", request_id="r2")
        failure = CaptureFailure(
            request_id="r2",
            url=req.url,
            attempted_engines=[AttemptRecord(engine="playwright", error_kind="ElementNotFound")],
        )
        record = EvidenceRecord.from_outcome(req, failure)
        assert record.status == "failed"
        assert record.image_bytes is None
        assert record.attempts[0].error_kind == "ElementNotFound"
        assert not record.attempts[0].succeeded
