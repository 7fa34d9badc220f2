import asyncio

import httpx
import pytest

from app.processor import ProcessorClient, ProcessorError, ProcessorNotFound, ProcessorUnavailable


def _client(handler, retries=3):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://processor.test")
    return ProcessorClient(http, access_token="tok", retries=retries, retry_delay=0)


def test_get_payment_sends_bearer_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["path"] = request.url.path
        return httpx.Response(200, json={"id": 5, "status": "approved"})

    data = asyncio.run(_client(handler).get_payment("5"))

    assert data["status"] == "approved"
    assert seen == {"auth": "Bearer tok", "path": "/v1/payments/5"}


def test_server_errors_are_retried_until_success():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"id": 5})

    assert asyncio.run(_client(handler).get_payment("5")) == {"id": 5}
    assert len(calls) == 3


def test_network_errors_exhaust_into_unavailable():
    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(ProcessorUnavailable):
        asyncio.run(_client(handler, retries=2).get_payment("5"))
    assert len(calls) == 2


def test_not_found_is_not_retried():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(404, json={"message": "not found"})

    with pytest.raises(ProcessorNotFound):
        asyncio.run(_client(handler).get_payment("5"))
    assert len(calls) == 1


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(401)

    with pytest.raises(ProcessorError) as exc:
        asyncio.run(_client(handler).get_merchant_order("1"))
    assert exc.value.status_code == 401
    assert not isinstance(exc.value, ProcessorUnavailable)
    assert len(calls) == 1


def test_merchant_order_waits_for_payments():
    calls = []

    def handler(request):
        calls.append(1)
        payments = [{"id": 1, "status": "approved"}] if len(calls) >= 2 else []
        return httpx.Response(200, json={"id": 10, "payments": payments})

    data = asyncio.run(_client(handler).get_merchant_order("10"))
    assert data["payments"]
    assert len(calls) == 2


def test_merchant_order_without_payments_is_returned_after_bound():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200, json={"id": 10, "payments": []})

    data = asyncio.run(_client(handler, retries=3).get_merchant_order("10"))
    assert data == {"id": 10, "payments": []}
    assert len(calls) == 3


def test_create_preference_is_sent_once():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    with pytest.raises(ProcessorUnavailable):
        asyncio.run(_client(handler).create_preference({"items": []}))
    assert len(calls) == 1
    assert calls[0].method == "POST"
    assert calls[0].url.path == "/checkout/preferences"


def test_server_error_on_last_attempt_raises_unavailable_with_status():
    def handler(request):
        return httpx.Response(502)

    with pytest.raises(ProcessorUnavailable) as exc:
        asyncio.run(_client(handler, retries=0).get_payment("5"))
    assert exc.value.status_code == 502


def test_preapproval_is_created_once_and_cancelled_with_put():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(503)
        return httpx.Response(200, json={"id": "pre-1", "status": "cancelled"})

    client = _client(handler)
    with pytest.raises(ProcessorUnavailable):
        asyncio.run(client.create_preapproval({"reason": "Pro"}))
    assert asyncio.run(client.update_preapproval("pre-1", {"status": "cancelled"}))["status"] == "cancelled"
    assert calls == [("POST", "/preapproval"), ("PUT", "/preapproval/pre-1")]
