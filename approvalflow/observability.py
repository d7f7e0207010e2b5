"""
Lightweight execution tracing.

Every model call, tool dispatch, policy evaluation and lifecycle write is
wrapped in a span so a slow or failing turn can be reconstructed from logs
alone.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

logger = logging.getLogger("approvalflow.trace")


@contextmanager
def trace_span(name: str, **metadata):
    """
    Measure execution duration of a critical operation.

    Example log:
    [TRACE] tool.get_pto_balance duration_ms=4.21 employee=E001

    Guarantees
    ----------
    - Always logs completion (even if exception occurs)
    - Never suppresses exceptions
    - Produces structured key=value logs
    """
    start = time.perf_counter()
    failed = False
    try:
        yield
    except BaseException:
        failed = True
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        if failed:
            metadata = {**metadata, "status": "error"}
        meta = " ".join(f"{k}={v}" for k, v in metadata.items())
        logger.info("[TRACE] %s duration_ms=%.2f %s", name, duration_ms, meta)
