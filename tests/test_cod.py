import pytest

from aurelia.common.custom_exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from aurelia.orders.repository import get_order_by_id
from aurelia.payments import repository as repo
from aurelia.schema.full_schema import OrderStatus, PaymentStatus
from tests.fakes import encode, payment_entity, sign_webhook, webhook_payload


@pytest.mark.asyncio
async def test_cod_lifecycle(payment_service, order_service, make_order, audit_actions, notifier, mail_sender):
    order_id = await make_order("1200.00", payment_method="cod")

    payment = await payment_service.process_cod(order_id)
    assert payment.gateway == "cod"
    assert payment.status == PaymentStatus.PENDING
    assert (await order_service.get_order(order_id)).status == OrderStatus.CONFIRMED

    for target in ("processing", "shipped"):
        await order_service.update_status(order_id, target, performed_by="admin:ops")
        assert (await payment_service.get_payment(payment.id)).status == PaymentStatus.PENDING

    order = await order_service.update_status(order_id, "delivered", performed_by="admin:ops")
    assert order.status == OrderStatus.DELIVERED
    assert order.payment_status == PaymentStatus.PAID
    assert (await payment_service.get_payment(payment.id)).status == PaymentStatus.PAID
    assert await audit_actions(payment.id) == ["payment.created", "payment.cod_paid"]

    await notifier.drain()
    assert [m["metadata"]["new_status"] for m in mail_sender.sent] == ["CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED"]


@pytest.mark.asyncio
async def test_process_cod_is_idempotent(payment_service, make_order, audit_actions):
    order_id = await make_order(payment_method="cod")
    first = await payment_service.process_cod(order_id)
    second = await payment_service.process_cod(order_id)
    assert first.id == second.id
    assert await audit_actions(first.id) == ["payment.created"]


@pytest.mark.asyncio
async def test_cod_rejected_when_online_payment_exists(payment_service, make_order):
    order_id = await make_order()
    await payment_service.create_payment(order_id)
    with pytest.raises(ConflictError):
        await payment_service.process_cod(order_id)


@pytest.mark.asyncio
async def test_cod_needs_a_confirmable_order(payment_service, make_order):
    order_id = await make_order(status=OrderStatus.CANCELLED, payment_method="cod")
    with pytest.raises(InvalidTransitionError):
        await payment_service.process_cod(order_id)


@pytest.mark.asyncio
async def test_mark_cod_paid_only_for_cod(payment_service, make_order):
    order_id = await make_order()
    await payment_service.create_payment(order_id)
    with pytest.raises(ValidationError):
        await payment_service.mark_cod_paid(order_id)


@pytest.mark.asyncio
async def test_webhook_cannot_settle_cod(payment_service, make_order, session_factory):
    order_id = await make_order("10.00", payment_method="cod")
    payment = await payment_service.process_cod(order_id)
    body = encode(webhook_payload("payment.captured", payment=payment_entity("order_unknown", "pay_Z", 1000,
                                                                             order_id=order_id)))

    with pytest.raises(ValidationError):
        await payment_service.handle_webhook(body, sign_webhook(body))
    assert (await payment_service.get_payment(payment.id)).status == PaymentStatus.PENDING
    async with session_factory() as session:
        assert (await get_order_by_id(session, order_id)).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_mark_cod_paid_twice_settles_once(payment_service, order_service, make_order, audit_actions):
    order_id = await make_order("750.00", payment_method="cod")
    payment = await payment_service.process_cod(order_id)

    first = await payment_service.mark_cod_paid(order_id, performed_by="admin:ops")
    second = await payment_service.mark_cod_paid(order_id, performed_by="admin:ops")

    assert (first.changed, first.note) == (True, "cod_paid")
    assert (second.changed, second.note) == (False, "already_paid")
    assert second.payment.status == PaymentStatus.PAID
    assert await audit_actions(payment.id) == ["payment.created", "payment.cod_paid"]
    order = await order_service.get_order(order_id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_delivery_without_cod_payment_leaves_order_shipped(order_service, make_order, notifier, mail_sender):
    # confirmed by hand, process_cod never ran
    order_id = await make_order("750.00", status=OrderStatus.CONFIRMED, payment_method="cod")
    for target in ("processing", "shipped"):
        await order_service.update_status(order_id, target, performed_by="admin:ops")
    await notifier.drain()
    sent_before = len(mail_sender.sent)

    with pytest.raises(NotFoundError):
        await order_service.update_status(order_id, "delivered", performed_by="admin:ops")

    order = await order_service.get_order(order_id)
    assert order.status == OrderStatus.SHIPPED
    assert order.payment_status == PaymentStatus.PENDING
    await notifier.drain()
    assert len(mail_sender.sent) == sent_before


@pytest.mark.asyncio
async def test_delivery_rolls_back_when_cod_payment_not_pending(payment_service, order_service, make_order,
                                                                session_factory, audit_actions):
    order_id = await make_order("750.00", payment_method="cod")
    payment = await payment_service.process_cod(order_id)
    for target in ("processing", "shipped"):
        await order_service.update_status(order_id, target, performed_by="admin:ops")
    async with session_factory() as session:
        async with session.begin():
            await repo.compare_and_set_payment(session, payment.id, PaymentStatus.PENDING.value,
                                               status=PaymentStatus.FAILED.value)

    with pytest.raises(ValidationError):
        await order_service.update_status(order_id, "delivered", performed_by="admin:ops")

    assert (await order_service.get_order(order_id)).status == OrderStatus.SHIPPED
    assert await audit_actions(payment.id) == ["payment.created"]
