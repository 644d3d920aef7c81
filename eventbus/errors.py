"""Event Bus error taxonomy."""

from typing import Any

import pydantic


class EventBusError(Exception):
    """Base class for all Event Bus errors."""


class ValidationError(EventBusError):
    """Malformed publish/subscribe input. Rejected synchronously, never persisted."""

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    @classmethod
    def from_pydantic(cls, exc: pydantic.ValidationError, message: str) -> "ValidationError":
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        return cls(message, details)


class NotFoundError(EventBusError):
    """Unknown event or subscription id."""


class TransportError(EventBusError):
    """Broker unreachable or rejected the message."""


class DeliveryError(EventBusError):
    """Subscriber callback failed (non-2xx, timeout, connection error)."""

    def __init__(self, message: str, http_status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status
