import base64
import json
from decimal import Decimal

import httpx
import pytest

from aurelia.common.circuit_breaker import CircuitBreaker
from aurelia.common.custom_exceptions import (
    ConfigurationError,
    GatewayAuthError,
    GatewayNotFoundError,
    GatewayRateLimitedError,
    GatewayRequestError,
    GatewayUnavailableError,
)
from aurelia.config.settings import Settings
from aurelia.payments.gateway import RazorpayGateway
from tests.fakes import KEY_ID, KEY_SECRET, WEBHOOK_SECRET, sign_checkout, sign_webhook


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        nxt = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def make_gateway(recorder, *, max_attempts=3, circuit=None):
    return RazorpayGateway(
        KEY_ID, KEY_SECRET, WEBHOOK_SECRET,
        base_url="https://rzp.test/v1",
        max_attempts=max_attempts,
        backoff_base=0.0,
        circuit=circuit,
        transport=httpx.MockTransport(recorder),
    )


def error(status, description="nope"):
    return httpx.Response(status, json={"error": {"code": "BAD_REQUEST_ERROR", "description": description}})


@pytest.mark.asyncio
async def test_create_remote_order_sends_paise_and_basic_auth():
    rec = Recorder(httpx.Response(200, json={"id": "order_1", "amount": 100000, "status": "created"}))
    remote = await make_gateway(rec).create_remote_order(42, Decimal("1000.00"), "INR")

    assert remote["id"] == "order_1"
    req = rec.requests[0]
    assert req.method == "POST"
    assert req.url.path == "/v1/orders"
    body = json.loads(req.content)
    assert body["amount"] == 100000
    assert body["receipt"] == "order_42"
    assert body["notes"]["order_id"] == "42"
    assert req.headers["Idempotency-Key"] == "order_42"
    assert req.headers["Authorization"] == "Basic " + base64.b64encode(f"{KEY_ID}:{KEY_SECRET}".encode()).decode()


@pytest.mark.asyncio
async def test_fetch_payments_unwraps_items():
    rec = Recorder(httpx.Response(200, json={"count": 1, "items": [{"id": "pay_1", "status": "captured"}]}))
    items = await make_gateway(rec).fetch_payments("order_1")
    assert items == [{"id": "pay_1", "status": "captured"}]
    assert rec.requests[0].url.path == "/v1/orders/order_1/payments"


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    rec = Recorder(error(502), error(503), httpx.Response(200, json={"id": "pay_1"}))
    assert await make_gateway(rec).fetch_payment("pay_1") == {"id": "pay_1"}
    assert len(rec.requests) == 3


@pytest.mark.asyncio
async def test_network_errors_map_to_unavailable():
    rec = Recorder(httpx.ConnectError("refused"))
    with pytest.raises(GatewayUnavailableError):
        await make_gateway(rec, max_attempts=2).fetch_payment("pay_1")
    assert len(rec.requests) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status,exc_type,retried", [
    (400, GatewayRequestError, False),
    (401, GatewayAuthError, True),
    (404, GatewayNotFoundError, False),
    (429, GatewayRateLimitedError, True),
])
async def test_error_statuses_are_typed(status, exc_type, retried):
    rec = Recorder(error(status))
    with pytest.raises(exc_type) as exc:
        await make_gateway(rec).fetch_payment("pay_1")
    assert exc.value.gateway_status == status
    assert len(rec.requests) == (3 if retried else 1)


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_outages():
    rec = Recorder(error(503))
    breaker = CircuitBreaker(name="razorpay-test", failure_threshold=2, recovery_timeout=60)
    gw = make_gateway(rec, max_attempts=1, circuit=breaker)

    for _ in range(2):
        with pytest.raises(GatewayUnavailableError):
            await gw.fetch_payment("pay_1")
    assert breaker.state == "OPEN"

    with pytest.raises(GatewayUnavailableError):
        await gw.fetch_payment("pay_1")
    assert len(rec.requests) == 2


@pytest.mark.asyncio
async def test_client_errors_do_not_trip_the_circuit():
    rec = Recorder(error(400))
    breaker = CircuitBreaker(name="razorpay-test", failure_threshold=1)
    gw = make_gateway(rec, max_attempts=1, circuit=breaker)
    with pytest.raises(GatewayRequestError):
        await gw.fetch_payment("pay_1")
    assert breaker.state == "CLOSED"


def test_signatures():
    gw = make_gateway(Recorder(httpx.Response(200, json={})))
    assert gw.verify_signature("order_1", "pay_1", sign_checkout("order_1", "pay_1"))
    assert not gw.verify_signature("order_1", "pay_2", sign_checkout("order_1", "pay_1"))
    assert not gw.verify_signature("order_1", "pay_1", "")
    body = b'{"event":"payment.captured"}'
    assert gw.verify_webhook_signature(body, sign_webhook(body))
    assert not gw.verify_webhook_signature(body, sign_webhook(body, secret="other"))


def test_from_settings_fails_fast_on_missing_credentials():
    settings = Settings(_env_file=None, RZPAY_KEY=KEY_ID, RZPAY_SECRET=None, RAZORPAY_WEBHOOK_SECRET=None)
    with pytest.raises(ConfigurationError) as exc:
        RazorpayGateway.from_settings(settings)
    assert exc.value.details["missing"] == ["RZPAY_SECRET", "RAZORPAY_WEBHOOK_SECRET"]
