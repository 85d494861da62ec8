from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
)

# ---------------------------------------------------------------------------
# Capture outcomes
# ---------------------------------------------------------------------------
capture_requests_total = Counter(
    "evidence_capture_requests_total",
    "Total capture requests by final status",
    ["status"],
)
capture_duration_seconds = Histogram(
    "evidence_capture_duration_seconds",
    "Wall time of a whole capture request (all engines)",
    buckets=[1, 5, 10, 20, 30, 60, 120, 300, 600],
)

# ---------------------------------------------------------------------------
# Engine attempts
# ---------------------------------------------------------------------------
engine_attempts_total = Counter(
    "evidence_engine_attempts_total",
    "Engine attempts by engine and outcome (success or error kind)",
    ["engine", "outcome"],
)
engine_attempt_duration_seconds = Histogram(
    "evidence_engine_attempt_duration_seconds",
    "Duration of a single engine attempt",
    ["engine"],
    buckets=[0.5, 1, 2, 5, 10, 20, 30, 60, 120, 240],
)

# ---------------------------------------------------------------------------
# Pipeline diagnostics
# ---------------------------------------------------------------------------
consent_trackers_blocked_total = Counter(
    "evidence_consent_trackers_blocked_total",
    "Tracker requests blocked by the consent defense network filter",
)
consent_overlays_removed_total = Counter(
    "evidence_consent_overlays_removed_total",
    "Overlay elements pruned from the DOM before capture",
)
challenge_outcomes_total = Counter(
    "evidence_challenge_outcomes_total",
    "Challenge monitor final states",
    ["state"],
)
locator_strategy_total = Counter(
    "evidence_locator_strategy_total",
    "Which locator strategy found the target",
    ["strategy"],
)


def render_metrics() -> bytes:
    """Prometheus text exposition of every metric above."""
    return generate_latest()
