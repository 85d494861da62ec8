"""Per-capture request id tracking.

The orchestrator stores the current CaptureRequest.request_id in a
contextvars.ContextVar so every log line emitted while that request is being
captured (including from engines and pipeline stages) carries it.
"""

import contextvars
from contextlib import contextmanager

# Context variable accessible from anywhere in the same async task
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


@contextmanager
def bind_request_id(rid: str):
    token = request_id_var.set(rid)
    try:
        yield rid
    finally:
        request_id_var.reset(token)


def get_request_id() -> str:
    """Get the current request ID (empty string outside a capture)."""
    return request_id_var.get()
