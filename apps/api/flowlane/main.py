from contextlib import asynccontextmanager
import logging
from collections.abc import Callable
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session

from flowlane.api.routes import router as api_router
from flowlane.automations.cascade import shutdown_thread_dispatcher
from flowlane.automations.service import build_automation_service
from flowlane.context import reset_correlation_id, set_correlation_id
from flowlane.core.config import get_settings
from flowlane.core.database import SessionLocal, get_session_factory
from flowlane.core.events import InternalEvent, event_bus
from flowlane.logging import configure_logging
from flowlane.middleware.correlation_id import CorrelationIdMiddleware
from flowlane.middleware.request_logging import RequestLoggingMiddleware
from flowlane.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("flowlane.lifecycle")
_subscriptions_registered = False

_trigger_types_by_event = {
    "card.stage_changed": "card_enters_stage",
    "card.field_changed": "card_field_value",
    "form.submitted": "form_submission",
}


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _automation_session_factory() -> Callable[[], Session]:
    override = app.dependency_overrides.get(get_session_factory) if "app" in globals() else None
    if override is None:
        return SessionLocal
    return override()


def _trigger_context(event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    if event_name == "card.stage_changed":
        return {"stageId": payload.get("stage_id")}
    if event_name == "card.field_changed":
        return {"fieldKey": payload.get("field_key"), "fieldValue": payload.get("field_value")}
    return {"formId": payload.get("form_id")}


def _parse_depth(meta: Any) -> int:
    if not isinstance(meta, dict):
        return 0
    try:
        depth = int(meta.get("cascade_depth", 0))
    except (TypeError, ValueError):
        return 0
    return depth if depth >= 0 else 0


def _on_board_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    trigger_type = _trigger_types_by_event.get(event.name)
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    card_id = payload.get("card_id")
    pipe_id = payload.get("pipe_id")
    if trigger_type is None or not card_id or not pipe_id:
        return

    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
    token = set_correlation_id(correlation_id)
    try:
        service = build_automation_service(_automation_session_factory())
        service.run(
            trigger_type,
            card_id,
            pipe_id,
            _trigger_context(event.name, payload),
            cascade_depth=_parse_depth(envelope.get("meta")),
        )
    except Exception as exc:
        logger.exception(
            "automation_auto_run_failed",
            extra={"event_name": event.name, "card_id": str(card_id), "error": str(exc)[:500]},
        )
    finally:
        reset_correlation_id(token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _trigger_types_by_event:
            event_bus.subscribe(event_name, _on_board_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield
    shutdown_thread_dispatcher()


app = FastAPI(title="FlowLane API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("flowlane-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
