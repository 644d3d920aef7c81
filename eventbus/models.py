"""Event Bus data model: persisted records (dataclasses) and validated inputs (Pydantic)."""

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "AttemptOutcome",
    "BatchResult",
    "DeliveryAttempt",
    "Event",
    "EventIn",
    "EventStatus",
    "PublishResult",
    "ReplayResult",
    "Subscription",
    "SubscriptionIn",
    "clamp_priority",
    "iso",
]

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


class EventStatus(StrEnum):
    ACCEPTED = "accepted"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


# Statuses the recovery scan treats as unfinished work.
OPEN_STATUSES = (EventStatus.ACCEPTED, EventStatus.DISPATCHED, EventStatus.FAILED)
TERMINAL_STATUSES = (EventStatus.DELIVERED, EventStatus.DEAD_LETTERED)

# to_status -> statuses it may be reached from. Never back to accepted/dispatched.
ALLOWED_TRANSITIONS: dict[EventStatus, tuple[EventStatus, ...]] = {
    EventStatus.DISPATCHED: (EventStatus.ACCEPTED,),
    EventStatus.FAILED: (EventStatus.ACCEPTED, EventStatus.DISPATCHED),
    EventStatus.DELIVERED: (
        EventStatus.ACCEPTED,
        EventStatus.DISPATCHED,
        EventStatus.FAILED,
        EventStatus.DEAD_LETTERED,
    ),
    EventStatus.DEAD_LETTERED: (
        EventStatus.ACCEPTED,
        EventStatus.DISPATCHED,
        EventStatus.FAILED,
    ),
}


class AttemptOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


def iso(ts: float | None) -> str | None:
    """Epoch seconds -> ISO 8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat()


def clamp_priority(value: int | None) -> int:
    if value is None:
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


# --- Persisted records ---


@dataclass(frozen=True)
class Event:
    """Immutable view of an accepted event."""

    event_id: str
    event_type: str
    data: dict
    source_service: str
    created_at: float
    correlation_id: str | None = None
    priority: int = DEFAULT_PRIORITY
    created_by: str | None = None
    status: str = EventStatus.ACCEPTED
    sequence: int = 0
    delivery_round: int = 0
    updated_at: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        """Body sent to subscriber callbacks."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "data": self.data,
            "source_service": self.source_service,
            "correlation_id": self.correlation_id,
            "priority": self.priority,
            "created_by": self.created_by,
            "timestamp": iso(self.created_at),
            "version": "1.0",
        }

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = str(self.status)
        d["created_at"] = iso(self.created_at)
        d["updated_at"] = iso(self.updated_at)
        return d


@dataclass(frozen=True)
class Subscription:
    """Standing interest registration. Soft-deleted rows keep active=False."""

    subscription_id: str
    event_types: list[str]
    callback_url: str
    service_name: str
    created_at: float
    filter_criteria: dict | None = None
    created_by: str | None = None
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["created_at"] = iso(self.created_at)
        return d


@dataclass(frozen=True)
class DeliveryAttempt:
    """One try to deliver one event to one subscription."""

    event_id: str
    subscription_id: str
    attempt_number: int
    outcome: str
    http_status_or_error: str
    attempted_at: float
    delivery_round: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["outcome"] = str(self.outcome)
        d["attempted_at"] = iso(self.attempted_at)
        return d


# --- Validated inputs ---


def _require_text(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} is required")
    return value.strip()


class EventIn(BaseModel):
    """Publish input. Priority is clamped to [1, 10], not rejected."""

    event_type: str
    data: dict
    source_service: str
    correlation_id: str | None = None
    priority: int | None = Field(default=None, validate_default=True)
    created_by: str | None = None

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        return _require_text(v, "event_type")

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: dict) -> dict:
        """Ensure data is stored and sent as plain JSON."""
        try:
            json.dumps(v, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"data must be JSON-serializable: {e}") from e
        return v

    @field_validator("source_service")
    @classmethod
    def validate_source_service(cls, v: str) -> str:
        return _require_text(v, "source_service")

    @field_validator("correlation_id")
    @classmethod
    def validate_correlation_id(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: int | None) -> int:
        return clamp_priority(v)


class SubscriptionIn(BaseModel):
    """Subscription input."""

    event_types: list[str] = Field(..., min_length=1)
    callback_url: str
    service_name: str
    filter_criteria: dict | None = None
    created_by: str | None = None

    @field_validator("event_types")
    @classmethod
    def validate_event_types(cls, v: list[str]) -> list[str]:
        """Ensure every pattern is a non-empty string; drop duplicates, keep order."""
        cleaned: list[str] = []
        for pattern in v:
            pattern = _require_text(pattern, "event_types entry")
            if pattern not in cleaned:
                cleaned.append(pattern)
        return cleaned

    @field_validator("callback_url")
    @classmethod
    def validate_callback_url(cls, v: str) -> str:
        """Ensure URL is absolute http(s) with a host."""
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("callback_url must be an absolute http(s) URL")
        return v.strip()

    @field_validator("service_name")
    @classmethod
    def validate_service_name(cls, v: str) -> str:
        return _require_text(v, "service_name")


# --- Operation results ---


class PublishResult(BaseModel):
    """Per-event outcome inside a batch publish."""

    index: int
    success: bool
    event_id: str | None = None
    event_type: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    total: int
    successful: int
    failed: int
    results: list[PublishResult] = Field(default_factory=list)


class ReplayResult(BaseModel):
    """Per-event outcome of a replay request: replayed / not_found / failed."""

    event_id: str
    status: str
    delivery_round: int | None = None
    error: str | None = None
