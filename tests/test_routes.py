import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from aurelia.config.admin_config import Settings as AdminSettings
from aurelia.main import create_app
from tests.fakes import encode, payment_entity, sign_checkout, sign_webhook, webhook_payload

url_prefix = "/api/v1"
ADMIN = {"X-Admin-Secret": "s3cret", "X-Admin-Id": "ops1"}


@pytest.fixture
async def ac_client(settings, session_factory, gateway, mail_sender):
    app = create_app(
        settings,
        admin_settings=AdminSettings(_env_file=None, ADMIN_SECRET="s3cret"),
        session_factory=session_factory,
        gateway=gateway,
        mail_sender=mail_sender,
        enable_scheduler=False,
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


async def place_order(ac, **extra):
    body = {
        "items": [{"product_id": 7, "product_name": "Pearl pendant", "quantity": 2, "unit_price": "300.00"}],
        "contact_email": "buyer@example.com",
        **extra,
    }
    resp = await ac.post(f"{url_prefix}/orders", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["order"]


async def post_webhook(ac, payload, signature=None, headers=None):
    body = encode(payload)
    hdrs = {"Content-Type": "application/json", "X-Razorpay-Signature": signature or sign_webhook(body)}
    hdrs.update(headers or {})
    return await ac.post(f"{url_prefix}/webhooks/razorpay", content=body, headers=hdrs)


@pytest.mark.asyncio
async def test_checkout_and_webhook_end_to_end(ac_client):
    order = await place_order(ac_client)
    assert order["status"] == "pending"
    assert (order["subtotal"], order["shipping"], order["tax"], order["total"]) == ("600.00", "0.00", "108.00", "708.00")

    resp = await ac_client.post(f"{url_prefix}/payments/create-order", json={"order_id": order["id"]})
    assert resp.status_code == 201
    data = resp.json()["data"]
    remote_id = data["razorpay_order"]["id"]
    assert data["razorpay_order"]["amount"] == 70800
    assert data["key_id"] == "rzp_test_key"

    payload = webhook_payload("payment.captured", payment=payment_entity(remote_id, "pay_E2E", 70800))
    first = await post_webhook(ac_client, payload)
    dup = await post_webhook(ac_client, payload)
    assert first.status_code == 200
    assert first.json()["data"]["status"] == "processed"
    assert dup.status_code == 200
    assert dup.json()["data"]["status"] == "duplicate"

    got = (await ac_client.get(f"{url_prefix}/orders/{order['id']}")).json()["data"]["order"]
    assert got["status"] == "confirmed"
    assert got["payment_status"] == "paid"

    payment = (await ac_client.get(f"{url_prefix}/payments/{data['payment']['id']}")).json()["data"]["payment"]
    assert payment["status"] == "paid"
    assert payment["gateway_payment_id"] == "pay_E2E"


@pytest.mark.asyncio
async def test_webhook_rejections(ac_client, settings):
    payload = webhook_payload("payment.captured", payment={"id": "pay_1"})

    missing = await ac_client.post(f"{url_prefix}/webhooks/razorpay", content=encode(payload))
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "MISSING_SIGNATURE"

    bad = await post_webhook(ac_client, payload, signature="f" * 64)
    assert bad.status_code == 401
    assert bad.json()["error"]["code"] == "INVALID_SIGNATURE"

    big = b"{" + b" " * settings.WEBHOOK_MAX_BODY_BYTES + b"}"
    too_large = await ac_client.post(f"{url_prefix}/webhooks/razorpay", content=big,
                                     headers={"X-Razorpay-Signature": sign_webhook(big)})
    assert too_large.status_code == 413
    assert too_large.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.asyncio
async def test_amount_mismatch_surfaces_as_bad_request(ac_client):
    order = await place_order(ac_client)
    data = (await ac_client.post(f"{url_prefix}/payments/create-order", json={"order_id": order["id"]})).json()["data"]
    payload = webhook_payload("payment.captured",
                              payment=payment_entity(data["razorpay_order"]["id"], "pay_1", 100))

    resp = await post_webhook(ac_client, payload)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "AMOUNT_MISMATCH"


@pytest.mark.asyncio
async def test_verify_route(ac_client, gateway):
    order = await place_order(ac_client)
    data = (await ac_client.post(f"{url_prefix}/payments/create-order", json={"order_id": order["id"]})).json()["data"]
    remote_id = data["razorpay_order"]["id"]
    gateway.add_payment(remote_id, "pay_V", 70800)

    resp = await ac_client.post(f"{url_prefix}/payments/verify", json={
        "payment_id": data["payment"]["id"],
        "razorpay_payment_id": "pay_V",
        "razorpay_signature": sign_checkout(remote_id, "pay_V"),
    })
    assert resp.status_code == 200
    assert resp.json()["data"]["payment"]["status"] == "paid"


@pytest.mark.asyncio
async def test_cod_and_admin_status_flow(ac_client):
    order = await place_order(ac_client, payment_method="cod")
    resp = await ac_client.post(f"{url_prefix}/payments/cod", json={"order_id": order["id"]})
    assert resp.status_code == 201
    assert resp.json()["data"]["payment"]["gateway"] == "cod"

    path = f"{url_prefix}/admin/orders/{order['id']}/status"
    denied = await ac_client.patch(path, json={"status": "processing"})
    assert denied.status_code == 403

    for target in ("processing", "shipped"):
        ok = await ac_client.patch(path, json={"status": target}, headers=ADMIN)
        assert ok.status_code == 200

    invalid = await ac_client.patch(path, json={"status": "cancelled"}, headers=ADMIN)
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "INVALID_TRANSITION"

    delivered = await ac_client.patch(path, json={"status": "delivered"}, headers=ADMIN)
    assert delivered.json()["data"]["order"]["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_admin_refund(ac_client):
    order = await place_order(ac_client)
    data = (await ac_client.post(f"{url_prefix}/payments/create-order", json={"order_id": order["id"]})).json()["data"]
    await post_webhook(ac_client, webhook_payload(
        "payment.captured", payment=payment_entity(data["razorpay_order"]["id"], "pay_1", 70800)))
    path = f"{url_prefix}/admin/payments/{data['payment']['id']}/refund"

    resp = await ac_client.post(path, json={"amount": "100.00", "reason": "damaged clasp"}, headers=ADMIN)
    assert resp.status_code == 201
    body = resp.json()["data"]
    assert body["refund"]["amount"] == "100.00"
    assert body["payment"]["status"] == "paid"

    listing = await ac_client.get(f"{url_prefix}/admin/payments/{data['payment']['id']}/refunds", headers=ADMIN)
    assert len(listing.json()["data"]["refunds"]) == 1


@pytest.mark.asyncio
async def test_admin_job_trigger(ac_client):
    resp = await ac_client.post(f"{url_prefix}/admin/jobs/reconciliation/run", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["data"]["result"] == {"processed": 0, "updated": 0, "errors": 0}

    missing = await ac_client.post(f"{url_prefix}/admin/jobs/nope/run", headers=ADMIN)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_health_and_request_id(ac_client):
    resp = await ac_client.get(f"{url_prefix}/health", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "healthy"
    assert resp.headers["X-Request-ID"] == "req-123"

    hook = await ac_client.get(f"{url_prefix}/webhooks/razorpay/health")
    assert hook.json()["data"] == {"status": "healthy", "pending_failed_webhooks": 0}


@pytest.mark.asyncio
async def test_unknown_order_is_404(ac_client):
    resp = await ac_client.get(f"{url_prefix}/orders/999")
    assert resp.status_code == 404
    assert resp.json()["status"] == "error"


@pytest.mark.asyncio
async def test_invalid_body_is_422(ac_client):
    resp = await ac_client.post(f"{url_prefix}/orders", json={"items": []})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "UNPROCESSABLE_ENTITY"
