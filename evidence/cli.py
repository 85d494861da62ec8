"""Command-line entry point for evidence capture.

Usage:
    python -m evidence.cli capture https://example.com "Trusted partner for digital transformation"
    python -m evidence.cli capture https://example.com "Some text" --out evidence.png
    python -m evidence.cli batch requests.json --out-dir ./evidence
    python -m evidence.cli cleanup-profiles --max-age 30

The batch file is a JSON list of {"url": ..., "target_text": ..., "request_id"?: ...}.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import sentry_sdk

from evidence.config import settings
from evidence.core.logging_config import configure_logging

logger = logging.getLogger(__name__)


def _init_observability(verbose: bool = False):
    configure_logging(
        log_format=settings.LOG_FORMAT,
        log_level="DEBUG" if verbose else settings.LOG_LEVEL,
    )
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            environment=settings.SENTRY_ENVIRONMENT,
            release=f"{settings.APP_NAME}@{settings.APP_VERSION}",
        )


def _write_metrics(path: str | None):
    if not (settings.METRICS_ENABLED and path):
        return
    from evidence.core.metrics import render_metrics

    Path(path).write_bytes(render_metrics())


def _record_summary(record) -> dict:
    return record.model_dump(mode="json", exclude={"image_bytes"})


async def _cmd_capture(args) -> int:
    """Capture one URL/text pair."""
    from evidence.schemas.capture import CaptureRequest, EvidenceRecord
    from evidence.services.orchestrator import CaptureOrchestrator

    request = CaptureRequest(url=args.url, target_text=args.text)
    outcome = await CaptureOrchestrator().capture(request)
    record = EvidenceRecord.from_outcome(request, outcome)
    if record.image_bytes and args.out:
        Path(args.out).write_bytes(record.image_bytes)
    print(json.dumps(_record_summary(record), indent=2, ensure_ascii=False))
    return 0 if record.status == "success" else 2


async def _cmd_batch(args) -> int:
    """Capture every request in a JSON file."""
    from evidence.schemas.capture import CaptureRequest
    from evidence.services.batch import capture_batch

    raw = json.loads(Path(args.file).read_text(encoding="utf-8"))
    requests = [CaptureRequest(**item) for item in raw]
    out_dir = Path(args.out_dir) if args.out_dir else None
    if out_dir:
        out_dir.mkdir(parents=True, exist_ok=True)

    def _progress(done: int, total: int, record):
        print(f"[{done}/{total}] {record.status}: {record.original_url}", file=sys.stderr)

    records = await capture_batch(requests, on_progress=_progress, max_concurrency=args.concurrency)
    summaries = []
    for record in records:
        summary = _record_summary(record)
        if out_dir and record.image_bytes:
            image_path = out_dir / f"{record.request_id}.png"
            image_path.write_bytes(record.image_bytes)
            summary["image_path"] = str(image_path)
        summaries.append(summary)
    print(json.dumps(summaries, indent=2, ensure_ascii=False))
    return 0 if all(r.status == "success" for r in records) else 2


async def _cmd_cleanup_profiles(args) -> int:
    """Remove stale temporary browser profiles."""
    from evidence.services.profiles import cleanup_stale_profiles

    report = cleanup_stale_profiles(max_age_minutes=args.max_age)
    print(json.dumps({"cleaned": report.cleaned, "errors": report.errors}))
    return 0 if not report.errors else 1


def main():
    parser = argparse.ArgumentParser(
        prog="evidence",
        description="Capture cropped screenshot evidence of text on live web pages",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--metrics-file", default=None, help="Write Prometheus metrics here on exit")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- capture ---
    capture_parser = subparsers.add_parser("capture", help="Capture evidence for one URL")
    capture_parser.add_argument("url", help="Page URL")
    capture_parser.add_argument("text", help="Text fragment to locate")
    capture_parser.add_argument("--out", default=None, help="Write the cropped PNG here")

    # --- batch ---
    batch_parser = subparsers.add_parser("batch", help="Capture every request in a JSON file")
    batch_parser.add_argument("file", help="JSON list of {url, target_text, request_id?}")
    batch_parser.add_argument("--out-dir", default=None, help="Directory for PNG files")
    batch_parser.add_argument(
        "--concurrency", type=int, default=None,
        help="Concurrent requests (default: MAX_CONCURRENT_CAPTURES)",
    )

    # --- cleanup-profiles ---
    cleanup_parser = subparsers.add_parser("cleanup-profiles", help="Remove stale browser profiles")
    cleanup_parser.add_argument(
        "--max-age", type=float, default=None,
        help="Age in minutes (default: PROFILE_MAX_AGE_MINUTES)",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _init_observability(args.verbose)

    if args.command == "capture":
        code = asyncio.run(_cmd_capture(args))
    elif args.command == "batch":
        code = asyncio.run(_cmd_batch(args))
    else:
        code = asyncio.run(_cmd_cleanup_profiles(args))

    _write_metrics(args.metrics_file)
    sys.exit(code)


if __name__ == "__main__":
    main()
