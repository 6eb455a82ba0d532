from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.observability import get_tracer

logger = logging.getLogger(__name__)


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


async def reap_expired_attempts(controller: AttemptLifecycleController) -> list[str]:
    """One reaper pass: auto-submit attempts abandoned past their deadline."""
    tracer = get_tracer()
    start = time.perf_counter()
    with tracer.start_as_current_span("reaper.pass") as span:
        submitted = await controller.reap_expired()
        span.set_attribute("reaper.submitted.count", len(submitted))
        span.set_attribute("reaper.latency_ms", round(_ms_since(start), 3))
    return submitted


async def run_reaper(
    controller: AttemptLifecycleController,
    interval_seconds: int,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run reaper passes every ``interval_seconds`` until ``stop_event`` is set."""
    stop_event = stop_event or asyncio.Event()
    logger.info(f"Reaper started (every {interval_seconds}s)")
    while not stop_event.is_set():
        try:
            await reap_expired_attempts(controller)
        except Exception as e:
            # A failed pass must not stop the loop; the next pass picks the attempts up again
            logger.error(f"Reaper pass failed: {e}", exc_info=True)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
    logger.info("Reaper stopped")
