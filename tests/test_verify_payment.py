import pytest

from aurelia.common.custom_exceptions import SignatureVerificationError, ValidationError
from aurelia.schema.full_schema import PaymentStatus
from tests.fakes import encode, payment_entity, sign_checkout, sign_webhook, webhook_payload


@pytest.fixture
async def checkout(payment_service, make_order):
    order_id = await make_order("10.00")
    payment, remote = await payment_service.create_payment(order_id)
    return payment, remote


@pytest.mark.asyncio
async def test_verified_checkout_captures_payment(payment_service, gateway, checkout, audit_actions):
    payment, remote = checkout
    gateway.add_payment(remote["id"], "pay_V1", 1000)

    result = await payment_service.verify_payment(payment.id, "pay_V1", sign_checkout(remote["id"], "pay_V1"))

    assert result.status == PaymentStatus.PAID
    assert result.gateway_payment_id == "pay_V1"
    assert await audit_actions(payment.id) == ["payment.created", "payment.verified"]


@pytest.mark.asyncio
async def test_bad_signature_never_reaches_gateway(payment_service, gateway, checkout):
    payment, remote = checkout
    gateway.add_payment(remote["id"], "pay_V1", 1000)

    with pytest.raises(SignatureVerificationError):
        await payment_service.verify_payment(payment.id, "pay_V1", sign_checkout("order_other", "pay_V1"))
    assert "fetch_payment" not in gateway.calls
    assert (await payment_service.get_payment(payment.id)).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_uncaptured_payment_is_reported(payment_service, gateway, checkout):
    payment, remote = checkout
    gateway.add_payment(remote["id"], "pay_V1", 1000, status="created")

    with pytest.raises(ValidationError) as exc:
        await payment_service.verify_payment(payment.id, "pay_V1", sign_checkout(remote["id"], "pay_V1"))
    assert exc.value.message == "Payment not captured. Status: created"


@pytest.mark.asyncio
async def test_payment_from_another_order_rejected(payment_service, gateway, checkout):
    payment, remote = checkout
    gateway.add_payment("order_elsewhere", "pay_V1", 1000)

    with pytest.raises(ValidationError):
        await payment_service.verify_payment(payment.id, "pay_V1", sign_checkout(remote["id"], "pay_V1"))


@pytest.mark.asyncio
async def test_verify_after_webhook_is_idempotent(payment_service, gateway, checkout, audit_actions):
    payment, remote = checkout
    gateway.add_payment(remote["id"], "pay_V1", 1000)
    body = encode(webhook_payload("payment.captured", payment=payment_entity(remote["id"], "pay_V1", 1000)))
    await payment_service.handle_webhook(body, sign_webhook(body))

    result = await payment_service.verify_payment(payment.id, "pay_V1", sign_checkout(remote["id"], "pay_V1"))

    assert result.status == PaymentStatus.PAID
    assert await audit_actions(payment.id) == ["payment.created", "payment.captured"]
