"""Temporary browser profile directories for persistent-context engines."""

import logging
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from evidence.config import settings

logger = logging.getLogger(__name__)

PROFILE_PREFIX = "evidence-profile-"


def profile_root() -> Path:
    return Path(settings.PROFILE_ROOT) if settings.PROFILE_ROOT else Path(tempfile.gettempdir())


@contextmanager
def temporary_profile(root: Path | None = None):
    """Yield a fresh profile directory, removed on every exit path."""
    base = root or profile_root()
    base.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=PROFILE_PREFIX, dir=base))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed profile directory %s", path)


@dataclass
class CleanupReport:
    cleaned: int = 0
    errors: int = 0


def cleanup_stale_profiles(
    max_age_minutes: float | None = None,
    root: Path | None = None,
    now: float | None = None,
) -> CleanupReport:
    """Remove profile directories left behind by killed processes."""
    max_age = (settings.PROFILE_MAX_AGE_MINUTES if max_age_minutes is None else max_age_minutes) * 60
    base = root or profile_root()
    now = time.time() if now is None else now
    report = CleanupReport()
    if not base.is_dir():
        return report

    for entry in base.iterdir():
        if not entry.is_dir() or not entry.name.startswith(PROFILE_PREFIX):
            continue
        try:
            age = now - entry.stat().st_mtime
            if age > max_age:
                shutil.rmtree(entry)
                report.cleaned += 1
                logger.info("Removed stale profile %s (age: %dmin)", entry.name, age // 60)
        except OSError as e:
            report.errors += 1
            logger.warning("Failed to remove %s: %s", entry.name, e)

    if report.cleaned or report.errors:
        logger.info("Profile cleanup: %d removed, %d errors", report.cleaned, report.errors)
    return report
