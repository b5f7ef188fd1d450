from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from aurelia.common.utils import now
from aurelia.schema.full_schema import (
    FailedWebhook,
    Payment,
    PaymentAuditLog,
    PaymentGateway,
    PaymentStatus,
    Refund,
    RefundStatus,
    WebhookEvent,
)

SUCCESSFUL_REFUND_STATUSES = (RefundStatus.PROCESSED.value,)


def status_name(status: Optional[int]) -> Optional[str]:
    return PaymentStatus(status).name if status is not None else None


# ---------------------------------------------------------------- payments

async def get_payment_by_id(session: AsyncSession, payment_id: int, *, for_update: bool = False) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.id == payment_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_payment_by_order_id(session: AsyncSession, order_id: int, *, for_update: bool = False) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.order_id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_payment_by_gateway_payment_id(session: AsyncSession, gateway_payment_id: str) -> Optional[Payment]:
    res = await session.execute(select(Payment).where(Payment.gateway_payment_id == gateway_payment_id))
    return res.scalar_one_or_none()


async def get_payment_by_gateway_order_id(session: AsyncSession, gateway_order_id: str) -> Optional[Payment]:
    res = await session.execute(select(Payment).where(Payment.gateway_order_id == gateway_order_id))
    return res.scalar_one_or_none()


async def get_payment_status(session: AsyncSession, payment_id: int, *, for_update: bool = False) -> Optional[int]:
    stmt = select(Payment.status).where(Payment.id == payment_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def insert_payment(session: AsyncSession, **values) -> Payment:
    payment = Payment(**values)
    session.add(payment)
    await session.flush()
    return payment


async def compare_and_set_payment(session: AsyncSession, payment_id: int, expected, **values) -> bool:
    """Conditional update: only applies while the row still holds the expected status.

    `expected` is a single status or a SQL condition built by the caller. The
    rowcount tells whether this transaction won the transition.
    """
    stmt = update(Payment).where(Payment.id == payment_id)
    if isinstance(expected, int):
        stmt = stmt.where(Payment.status == expected)
    else:
        stmt = stmt.where(expected)
    res = await session.execute(stmt.values(updated_at=now(), **values))
    return res.rowcount == 1


async def list_reconcilable_payments(session: AsyncSession, since: datetime, limit: int) -> List[Payment]:
    stmt = (
        select(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.gateway == PaymentGateway.RAZORPAY.value,
            Payment.gateway_order_id.is_not(None),
            Payment.created_at >= since,
        )
        .order_by(Payment.created_at, Payment.id)
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


# ---------------------------------------------------------------- audit

async def insert_audit_log(session: AsyncSession, payment_id: int, action: str, performed_by: str, *,
                           old_status: Optional[int] = None, new_status: Optional[int] = None,
                           metadata: Optional[Dict[str, Any]] = None) -> PaymentAuditLog:
    row = PaymentAuditLog(
        payment_id=payment_id,
        action=action,
        performed_by=performed_by,
        old_status=status_name(old_status),
        new_status=status_name(new_status),
        audit_metadata=metadata,
        created_at=now(),
    )
    session.add(row)
    await session.flush()
    return row


async def list_audit_logs(session: AsyncSession, payment_id: int, actions: Optional[Iterable[str]] = None) -> List[PaymentAuditLog]:
    stmt = select(PaymentAuditLog).where(PaymentAuditLog.payment_id == payment_id)
    if actions is not None:
        stmt = stmt.where(PaymentAuditLog.action.in_(list(actions)))
    res = await session.execute(stmt.order_by(PaymentAuditLog.id))
    return list(res.scalars().all())


# ---------------------------------------------------------------- refunds

async def get_refund_by_gateway_id(session: AsyncSession, gateway_refund_id: str) -> Optional[Refund]:
    res = await session.execute(select(Refund).where(Refund.gateway_refund_id == gateway_refund_id))
    return res.scalar_one_or_none()


async def insert_refund(session: AsyncSession, **values) -> Refund:
    refund = Refund(**values)
    session.add(refund)
    await session.flush()
    return refund


async def update_refund_status(session: AsyncSession, refund_id: int, status: str) -> None:
    await session.execute(update(Refund).where(Refund.id == refund_id).values(status=status, updated_at=now()))


async def sum_successful_refunds(session: AsyncSession, payment_id: int) -> Decimal:
    stmt = select(func.coalesce(func.sum(Refund.amount), 0)).where(
        Refund.payment_id == payment_id,
        Refund.status.in_(SUCCESSFUL_REFUND_STATUSES),
    )
    res = await session.execute(stmt)
    return Decimal(str(res.scalar_one()))


async def sum_committed_refunds(session: AsyncSession, payment_id: int) -> Decimal:
    # pending refunds have already been requested from the gateway
    stmt = select(func.coalesce(func.sum(Refund.amount), 0)).where(
        Refund.payment_id == payment_id,
        Refund.status != RefundStatus.FAILED.value,
    )
    res = await session.execute(stmt)
    return Decimal(str(res.scalar_one()))


async def list_refunds(session: AsyncSession, payment_id: int) -> List[Refund]:
    res = await session.execute(select(Refund).where(Refund.payment_id == payment_id).order_by(Refund.id))
    return list(res.scalars().all())


# ---------------------------------------------------------------- webhooks

async def get_webhook_event(session: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
    res = await session.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
    return res.scalar_one_or_none()


async def insert_webhook_event(session: AsyncSession, **values) -> WebhookEvent:
    ev = WebhookEvent(created_at=now(), **values)
    session.add(ev)
    await session.flush()
    return ev


async def mark_webhook_event_processed(session: AsyncSession, event_id: str, error: Optional[str] = None) -> None:
    stmt = (
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(processed=True, processed_at=now(), error=error)
    )
    await session.execute(stmt)


async def insert_failed_webhook(session: AsyncSession, **values) -> FailedWebhook:
    row = FailedWebhook(**values)
    session.add(row)
    await session.flush()
    return row


async def list_retryable_failed_webhooks(session: AsyncSession, limit: int) -> List[FailedWebhook]:
    stmt = (
        select(FailedWebhook)
        .where(
            FailedWebhook.processed.is_(False),
            FailedWebhook.retries < FailedWebhook.max_retries,
        )
        .order_by(FailedWebhook.created_at, FailedWebhook.id)
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def update_failed_webhook(session: AsyncSession, failed_id: int, **values) -> None:
    await session.execute(update(FailedWebhook).where(FailedWebhook.id == failed_id).values(updated_at=now(), **values))


async def count_pending_failed_webhooks(session: AsyncSession) -> int:
    stmt = select(func.count(FailedWebhook.id)).where(FailedWebhook.processed.is_(False))
    res = await session.execute(stmt)
    return int(res.scalar_one())
