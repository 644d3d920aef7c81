"""HTTP surface of the Event Bus (FastAPI)."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from eventbus import __version__
from eventbus.errors import NotFoundError, TransportError, ValidationError
from eventbus.models import iso
from eventbus.service import EventBusService

logger = logging.getLogger(__name__)


def _ok(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return JSONResponse(body, status_code=status_code)


def create_app(service: EventBusService, manage_lifecycle: bool = True) -> FastAPI:
    """Build the app. With manage_lifecycle the lifespan starts and stops the service."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()

    app = FastAPI(title="Event Bus", version=__version__, lifespan=lifespan)
    app.state.service = service
    started_at = time.monotonic()

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": exc.message, "details": exc.details}, status_code=400
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse({"error": "Validation failed", "details": details}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse({"error": "Not Found", "message": str(exc)}, status_code=404)

    @app.exception_handler(TransportError)
    async def _transport_error(request: Request, exc: TransportError) -> JSONResponse:
        logger.error("Broker error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": "Broker unavailable", "message": str(exc)}, status_code=503)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        report = await service.health()
        return {
            **report,
            "service": "event-bus",
            "version": __version__,
            "timestamp": iso(time.time()),
            "uptime": round(time.monotonic() - started_at, 3),
        }

    @app.post("/api/events/publish")
    async def publish(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        event_id = await service.publish(payload)
        return _ok(
            {
                "event_id": event_id,
                "event_type": payload.get("event_type"),
                "source_service": payload.get("source_service"),
                "timestamp": iso(time.time()),
            },
            message="Event published successfully",
            status_code=201,
        )

    @app.post("/api/events/publish-batch")
    async def publish_batch(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        events = payload.get("events")
        if not isinstance(events, list) or not events:
            raise ValidationError("Events array is required")
        result = await service.publish_batch(events, created_by=payload.get("created_by"))
        return _ok(result.model_dump(), message="Batch events processed", status_code=201)

    @app.post("/api/events/subscribe")
    async def subscribe(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        subscription_id = await service.subscribe(payload)
        return _ok(
            {
                "subscription_id": subscription_id,
                "event_types": payload.get("event_types"),
                "service_name": payload.get("service_name"),
            },
            message="Subscription created successfully",
            status_code=201,
        )

    @app.get("/api/events/subscriptions")
    async def list_subscriptions(
        service_name: str | None = None,
        event_type: str | None = None,
        include_inactive: bool = False,
    ) -> JSONResponse:
        subs = await service.list_subscriptions(
            service_name=service_name, event_type=event_type, include_inactive=include_inactive
        )
        return _ok([s.to_dict() for s in subs])

    @app.get("/api/events/subscriptions/{subscription_id}")
    async def get_subscription(subscription_id: str) -> JSONResponse:
        sub = await service.get_subscription(subscription_id)
        return _ok(sub.to_dict())

    @app.delete("/api/events/subscriptions/{subscription_id}")
    async def delete_subscription(subscription_id: str) -> JSONResponse:
        await service.delete_subscription(subscription_id)
        return _ok(message="Subscription deleted successfully")

    @app.get("/api/events/history")
    async def history(
        event_type: str | None = None,
        source_service: str | None = None,
        status: str | None = None,
        correlation_id: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JSONResponse:
        events = await service.get_history(
            event_type=event_type,
            source_service=source_service,
            status=status,
            correlation_id=correlation_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return _ok(
            {
                "events": [e.to_dict() for e in events],
                "pagination": {"limit": limit, "offset": offset, "count": len(events)},
            }
        )

    @app.get("/api/events/stats")
    async def stats(days: int = 7) -> JSONResponse:
        return _ok(await service.get_stats(days))

    @app.post("/api/events/replay")
    async def replay(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        event_ids = payload.get("event_ids")
        if not isinstance(event_ids, list) or not event_ids:
            raise ValidationError("Event IDs array is required")
        results = await service.replay(event_ids, payload.get("target_service"))
        return _ok(
            [r.model_dump() for r in results], message="Event replay initiated"
        )

    @app.get("/api/events/{event_id}")
    async def get_event(event_id: str) -> JSONResponse:
        event = await service.get_event(event_id)
        attempts = await service.list_attempts(event_id)
        return _ok({**event.to_dict(), "attempts": [a.to_dict() for a in attempts]})

    return app
