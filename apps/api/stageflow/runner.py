"""
Automation worker with two concurrent loops:
1) scan_loop: duration scan over every organization on a fixed interval
2) execute_loop: drain due action requests with jittered polling

Usage:
  python -m stageflow.runner
"""
from __future__ import annotations

import asyncio
import logging
import random
import signal

from stageflow.automation.errors import ScanTickFailed
from stageflow.automation.executor import action_executor
from stageflow.automation.scheduler import duration_scan_scheduler
from stageflow.core.config import get_settings
from stageflow.core.database import SessionLocal
from stageflow.logging import configure_logging
from stageflow.otel import setup_otel


logger = logging.getLogger("stageflow.runner")

_shutdown_event: asyncio.Event | None = None


def jitter_sleep_seconds(min_ms: int, max_ms: int) -> float:
    return random.randint(min_ms, max(min_ms, max_ms)) / 1000.0


def run_scan_tick() -> int:
    with SessionLocal() as session:
        return duration_scan_scheduler.scan_all(session)


def run_drain_tick() -> int:
    with SessionLocal() as session:
        return action_executor.drain(session).processed


async def _wait_or_shutdown(timeout: float) -> None:
    assert _shutdown_event is not None
    try:
        await asyncio.wait_for(_shutdown_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass


async def scan_loop() -> None:
    assert _shutdown_event is not None
    settings = get_settings()
    logger.info(
        "scan_loop.started",
        extra={"worker_id": settings.worker_id, "partition": f"{settings.scan_partition_index}/{settings.scan_partition_count}"},
    )

    while not _shutdown_event.is_set():
        try:
            await asyncio.to_thread(run_scan_tick)
        except ScanTickFailed:
            # logged as scan.tick_failed
            pass
        except Exception as exc:
            logger.exception("scan_loop.error", extra={"error": str(exc)})
        await _wait_or_shutdown(settings.scan_interval_seconds)

    logger.info("scan_loop.stopped")


async def execute_loop() -> None:
    assert _shutdown_event is not None
    settings = get_settings()
    logger.info("execute_loop.started", extra={"worker_id": settings.worker_id})

    while not _shutdown_event.is_set():
        try:
            await asyncio.to_thread(run_drain_tick)
        except Exception as exc:
            logger.exception("execute_loop.error", extra={"error": str(exc)})
        await _wait_or_shutdown(jitter_sleep_seconds(settings.executor_poll_min_ms, settings.executor_poll_max_ms))

    logger.info("execute_loop.stopped")


def _handle_shutdown(signum, frame) -> None:  # type: ignore[no-untyped-def]
    logger.info("runner.shutdown_requested", extra={"status": signal.Signals(signum).name})
    if _shutdown_event is not None:
        _shutdown_event.set()


async def main() -> None:
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    settings = get_settings()
    if settings.otel_enabled:
        setup_otel("worker", True)

    logger.info("runner.started", extra={"worker_id": settings.worker_id})
    try:
        await asyncio.gather(scan_loop(), execute_loop())
    finally:
        logger.info("runner.stopped", extra={"worker_id": settings.worker_id})


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
