"""Tests for CallbackClient: headers, success, and failure classification."""

import json
import time

import httpx
import pytest

from eventbus.delivery import CallbackClient
from eventbus.models import Event

CALLBACK_URL = "http://notification-service/events"


def _event(**overrides) -> Event:
    fields = {
        "event_id": "e1",
        "event_type": "order.created",
        "data": {"order_id": "o1"},
        "source_service": "order-service",
        "created_at": time.time(),
        "correlation_id": "chain-1",
    }
    fields.update(overrides)
    return Event(**fields)


@pytest.mark.asyncio
async def test_deliver_posts_full_event_with_headers(httpx_mock) -> None:
    """2xx is success; body is the full event, headers identify it."""
    httpx_mock.add_response(url=CALLBACK_URL, method="POST", status_code=202)
    client = CallbackClient(timeout=5.0)
    result = await client.deliver(CALLBACK_URL, _event(), attempt_number=3)
    await client.aclose()

    assert result.success is True
    assert result.http_status == 202
    assert result.detail == "HTTP 202"
    request = httpx_mock.get_request()
    assert request.headers["X-Event-ID"] == "e1"
    assert request.headers["X-Event-Type"] == "order.created"
    assert request.headers["X-Source-Service"] == "order-service"
    assert request.headers["X-Correlation-ID"] == "chain-1"
    assert request.headers["X-Delivery-Attempt"] == "3"
    body = json.loads(request.content)
    assert body["event_id"] == "e1"
    assert body["data"] == {"order_id": "o1"}


@pytest.mark.asyncio
async def test_no_correlation_header_without_chain(httpx_mock) -> None:
    httpx_mock.add_response(url=CALLBACK_URL, status_code=200)
    client = CallbackClient()
    await client.deliver(CALLBACK_URL, _event(correlation_id=None))
    await client.aclose()
    assert "X-Correlation-ID" not in httpx_mock.get_request().headers


@pytest.mark.asyncio
async def test_non_2xx_is_failure(httpx_mock) -> None:
    httpx_mock.add_response(url=CALLBACK_URL, status_code=503)
    client = CallbackClient()
    result = await client.deliver(CALLBACK_URL, _event())
    await client.aclose()
    assert result.success is False
    assert result.http_status == 503
    assert result.detail == "HTTP 503"


@pytest.mark.asyncio
async def test_timeout_is_failure(httpx_mock) -> None:
    httpx_mock.add_exception(httpx.ReadTimeout("read timed out"), url=CALLBACK_URL)
    client = CallbackClient(timeout=2.0)
    result = await client.deliver(CALLBACK_URL, _event())
    await client.aclose()
    assert result.success is False
    assert result.http_status is None
    assert result.detail == "Request timed out after 2.0s"


@pytest.mark.asyncio
async def test_connection_error_is_failure(httpx_mock) -> None:
    httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=CALLBACK_URL)
    client = CallbackClient()
    result = await client.deliver(CALLBACK_URL, _event())
    await client.aclose()
    assert result.success is False
    assert result.detail.startswith("ConnectError")


@pytest.mark.asyncio
async def test_injected_client_is_not_closed() -> None:
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    client = CallbackClient(client=http)
    result = await client.deliver(CALLBACK_URL, _event())
    await client.aclose()
    assert result.success is True
    assert not http.is_closed
    await http.aclose()
