from celery import Celery

from stageflow.core.config import get_settings
from stageflow.runner import run_drain_tick, run_scan_tick

settings = get_settings()

celery_app = Celery("stageflow", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "scan-durations": {
        "task": "stageflow.scan_durations",
        "schedule": float(settings.scan_interval_seconds),
    },
    "drain-actions": {
        "task": "stageflow.drain_actions",
        "schedule": max(settings.executor_poll_max_ms / 1000.0, 1.0),
    },
}


@celery_app.task(name="stageflow.scan_durations")
def scan_durations_task() -> int:
    return run_scan_tick()


@celery_app.task(name="stageflow.drain_actions")
def drain_actions_task() -> int:
    return run_drain_tick()
