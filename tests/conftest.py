from decimal import Decimal
from typing import List, Optional

import pytest
from sqlmodel import SQLModel

import aurelia.schema.full_schema  # noqa: F401
from aurelia.config.settings import Settings
from aurelia.db.connection import create_engine_and_session
from aurelia.notifications.dispatcher import OrderNotifier
from aurelia.orders.repository import insert_order
from aurelia.orders.services import OrderService
from aurelia.payments import repository as repo
from aurelia.payments.services import PaymentService
from aurelia.schema.full_schema import OrderStatus, PaymentStatus
from tests.fakes import KEY_ID, KEY_SECRET, WEBHOOK_SECRET, FakeGateway, InMemoryMailSender


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'aurelia_test.db'}",
        RZPAY_KEY=KEY_ID,
        RZPAY_SECRET=KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        ENABLE_SCHEDULER=False,
        ENABLE_METRICS=False,
        GATEWAY_BACKOFF_BASE=0.0,
    )


@pytest.fixture
async def session_factory(settings):
    engine, factory = create_engine_and_session(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield factory
    await engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mail_sender():
    return InMemoryMailSender()


@pytest.fixture
def notifier(mail_sender):
    return OrderNotifier(mail_sender)


@pytest.fixture
def payment_service(session_factory, gateway, notifier, settings):
    return PaymentService(session_factory, gateway, notifier, settings)


@pytest.fixture
def order_service(session_factory, notifier, settings, payment_service):
    return OrderService(session_factory, notifier, settings, payment_service=payment_service)


@pytest.fixture
def make_order(session_factory):
    """Insert an order with fixed totals, bypassing pricing."""

    async def _make(total: str = "10.00", *, status: OrderStatus = OrderStatus.PENDING,
                    payment_method: str = "razorpay", contact_email: Optional[str] = "buyer@example.com") -> int:
        amount = Decimal(total)
        values = {
            "status": status.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": payment_method,
            "contact_email": contact_email,
            "subtotal": amount,
            "shipping": Decimal("0"),
            "tax": Decimal("0"),
            "total": amount,
        }
        items = [{"product_id": 1, "product_name": "Gold hoop earrings", "quantity": 1, "unit_price_snapshot": amount}]
        async with session_factory() as session:
            async with session.begin():
                order = await insert_order(session, values, items)
        return order.id

    return _make


@pytest.fixture
def audit_actions(session_factory):
    async def _actions(payment_id: int) -> List[str]:
        async with session_factory() as session:
            rows = await repo.list_audit_logs(session, payment_id)
        return [r.action for r in rows]

    return _actions
