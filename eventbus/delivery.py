"""Outbound subscriber callbacks over HTTP."""

import logging
import time
from dataclasses import dataclass

import httpx

from eventbus.errors import DeliveryError
from eventbus.models import Event

logger = logging.getLogger(__name__)

# Per-call timeout in seconds
DEFAULT_TIMEOUT = 30.0


@dataclass
class DeliveryResult:
    """Result of one callback attempt."""

    success: bool
    http_status: int | None
    duration_ms: int
    error: str = ""

    @property
    def detail(self) -> str:
        """Value stored in DeliveryAttempt.http_status_or_error."""
        if self.error:
            return self.error
        return f"HTTP {self.http_status}"


def build_headers(event: Event, attempt_number: int) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Event-ID": event.event_id,
        "X-Event-Type": event.event_type,
        "X-Source-Service": event.source_service,
        "X-Delivery-Attempt": str(attempt_number),
    }
    if event.correlation_id:
        headers["X-Correlation-ID"] = event.correlation_id
    return headers


class CallbackClient:
    """POSTs the full event to a subscriber callback. Any 2xx is success.

    Never raises for subscriber-side failures: timeouts, connection errors and
    non-2xx responses come back as an unsuccessful DeliveryResult.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def deliver(self, url: str, event: Event, attempt_number: int = 1) -> DeliveryResult:
        start_time = time.monotonic()
        try:
            response = await self._get_client().post(
                url,
                json=event.to_payload(),
                headers=build_headers(event, attempt_number),
                timeout=self._timeout,
            )
            duration_ms = int((time.monotonic() - start_time) * 1000)
            if not 200 <= response.status_code < 300:
                raise DeliveryError(f"HTTP {response.status_code}", response.status_code)
            return DeliveryResult(
                success=True, http_status=response.status_code, duration_ms=duration_ms
            )

        except DeliveryError as e:
            return DeliveryResult(
                success=False,
                http_status=e.http_status,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error=str(e),
            )

        except httpx.TimeoutException:
            return DeliveryResult(
                success=False,
                http_status=None,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error=f"Request timed out after {self._timeout}s",
            )

        except httpx.HTTPError as e:
            logger.warning("Callback to %s failed: %s", url, e)
            return DeliveryResult(
                success=False,
                http_status=None,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error=f"{type(e).__name__}: {e}",
            )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
