from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from stageflow.api.routes import router as api_router
from stageflow.automation.executor import action_executor
from stageflow.core.config import get_settings
from stageflow.core.context import RequestContextMiddleware
from stageflow.core.database import SessionLocal, get_db
from stageflow.core.events import InternalEvent, event_bus
from stageflow.logging import configure_logging
from stageflow.middleware.correlation_id import CorrelationIdMiddleware
from stageflow.middleware.deferred_drain import DeferredDrainMiddleware, defer_drain
from stageflow.middleware.request_logging import RequestLoggingMiddleware
from stageflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("stageflow.lifecycle")
_subscriptions_registered = False

_queue_event_pattern = "automation.record.*"


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"status": event.name})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _drain_actions(organization_id: str | None) -> None:
    try:
        with _session_scope() as session:
            action_executor.drain(session)
    except Exception as exc:
        logger.exception(
            "executor.auto_drain_failed",
            extra={"organization_id": organization_id, "error": str(exc)[:500]},
        )


def _on_queue_event(event: InternalEvent) -> None:
    if not get_settings().auto_drain_actions:
        return
    envelope: dict[str, Any] = event.payload if isinstance(event.payload, dict) else {}
    organization_id = envelope.get("organization_id")
    # inside a request the drain waits until the response is sent
    if defer_drain(organization_id):
        return
    _drain_actions(organization_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(_queue_event_pattern, _on_queue_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Stageflow Automation API", version="0.1.0", lifespan=lifespan)
app.add_middleware(DeferredDrainMiddleware, drain=_drain_actions)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
