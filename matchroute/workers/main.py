from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from matchroute.core.config import Settings, get_settings
from matchroute.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from matchroute.services.repository import get_repository
from matchroute.services.workflow import build_workflow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_scheduler(workflow, settings: Settings, *, stop_event: asyncio.Event | None = None) -> None:
    """Run SLA sweeps and notification dispatch passes until ``stop_event`` is set."""
    stop_event = stop_event or asyncio.Event()
    idle_sleep = min(settings.sla_sweep_interval_seconds, settings.notify_dispatch_interval_seconds)
    backoff = idle_sleep
    last_sweep_at = float("-inf")
    last_dispatch_at = float("-inf")

    while not stop_event.is_set():
        try:
            with tracer.start_as_current_span("worker.poll_cycle"):
                now = time.monotonic()
                if now - last_sweep_at >= settings.sla_sweep_interval_seconds:
                    summary = await workflow.run_sla_sweep()
                    # The sweep ends with a dispatch pass of its own.
                    last_sweep_at = last_dispatch_at = now
                    if summary.notifications.claimed:
                        logger.info("sweep dispatched notifications: %s", summary.notifications.as_dict())
                elif now - last_dispatch_at >= settings.notify_dispatch_interval_seconds:
                    await workflow.dispatch_notifications()
                    last_dispatch_at = now
            backoff = idle_sleep
            await _wait(stop_event, idle_sleep)
        except Exception as exc:  # pragma: no cover - scheduler robustness
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
            logger.exception("scheduler iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await _wait(stop_event, sleep_for)
            backoff = sleep_for


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    workflow = build_workflow(settings, repository=get_repository())
    try:
        await run_scheduler(workflow, settings)
    finally:
        await workflow.close()
        shutdown_worker_telemetry(telemetry_runtime)


async def _wait(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


if __name__ == "__main__":
    asyncio.run(run_worker())
