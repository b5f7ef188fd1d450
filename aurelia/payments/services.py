import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aurelia.common.custom_exceptions import (
    AmountMismatchError,
    ConflictError,
    GatewayNotFoundError,
    NotFoundError,
    OrderStateConflictError,
    SignatureVerificationError,
    ValidationError,
    is_retryable_error,
)
from aurelia.common.utils import now, paise_to_amount, to_money
from aurelia.notifications.dispatcher import OrderNotifier
from aurelia.orders.repository import get_order_by_id, get_order_status, update_order_fields
from aurelia.orders.utils import PAYABLE_ORDER_STATUSES, ensure_transition
from aurelia.payments import repository as repo
from aurelia.payments.constants import (
    ACTOR_CLIENT,
    ACTOR_SYSTEM,
    ACTOR_WEBHOOK,
    AMOUNT_TOLERANCE,
    CAPTURED_PAYMENT_STATUSES,
    DEFAULT_FAILURE_REASON,
    PAYMENT_AMOUNT_MISMATCH,
    PAYMENT_CAPTURED,
    PAYMENT_COD_PAID,
    PAYMENT_CREATED,
    PAYMENT_FAILED,
    PAYMENT_ORDER_STATE_CONFLICT,
    PAYMENT_VERIFIED,
    REFUND_FAILED,
    REFUND_INITIATED,
    REFUND_PROCESSED,
    logger,
)
from aurelia.payments.events import WebhookEventType, derive_event_id, entity, parse_event_type
from aurelia.payments.gateway import PaymentGatewayAdapter
from aurelia.schema.full_schema import OrderStatus, Payment, PaymentGateway, PaymentStatus, Refund, RefundStatus


SETTLED_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value)


@dataclass
class TransitionResult:
    payment: Payment
    changed: bool
    note: str


@dataclass
class RefundResult:
    refund: Refund
    payment: Payment
    changed: bool


def first_captured_payment(items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for item in items:
        if (item.get("status") or "").lower() in CAPTURED_PAYMENT_STATUSES:
            return item
    return None


def _notes_order_id(payment_entity: Dict[str, Any]) -> Optional[int]:
    notes = payment_entity.get("notes") or {}
    if not isinstance(notes, dict):
        return None
    raw = notes.get("order_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _instrument_fields(payment_entity: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "method": payment_entity.get("method"),
        "bank": payment_entity.get("bank"),
        "wallet": payment_entity.get("wallet"),
        "vpa": payment_entity.get("vpa"),
    }


def _capturable(gateway_payment_id: Optional[str]):
    """PENDING, or FAILED by a different gateway payment (a new attempt on the same remote order)."""
    if not gateway_payment_id:
        return Payment.status == PaymentStatus.PENDING.value
    return or_(
        Payment.status == PaymentStatus.PENDING.value,
        and_(
            Payment.status == PaymentStatus.FAILED.value,
            or_(Payment.gateway_payment_id.is_(None), Payment.gateway_payment_id != gateway_payment_id),
        ),
    )


class PaymentService:
    """
    Payment reconciliation engine.

    Every route that can move a payment (webhook delivery, client-side
    verification, reconciliation sweep, webhook retry) funnels through the
    methods below. State changes are written as one transaction covering
    Payment, Order and the audit row; each transaction starts by re-reading
    the payment status and applies the change as a conditional UPDATE, so
    concurrent deliveries of the same capture collapse into one transition.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], gateway: PaymentGatewayAdapter,
                 notifier: OrderNotifier, settings):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings

    # ------------------------------------------------------------ reads

    async def get_payment(self, payment_id: int) -> Payment:
        async with self.session_factory() as session:
            payment = await repo.get_payment_by_id(session, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_payment_for_order(self, order_id: int) -> Payment:
        async with self.session_factory() as session:
            payment = await repo.get_payment_by_order_id(session, order_id)
        if payment is None:
            raise NotFoundError("Payment for order", order_id)
        return payment

    async def list_refunds(self, payment_id: int) -> List[Refund]:
        async with self.session_factory() as session:
            return await repo.list_refunds(session, payment_id)

    async def audit(self, payment_id: int, action: str, performed_by: str, *,
                    status: Optional[int] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record an audit row outside of any state change (rejections, job errors)."""
        async with self.session_factory() as session:
            async with session.begin():
                await repo.insert_audit_log(session, payment_id, action, performed_by,
                                            old_status=status, new_status=status, metadata=metadata)

    async def _locate_payment(self, session: AsyncSession, payment_entity: Dict[str, Any]) -> Optional[Payment]:
        gateway_payment_id = payment_entity.get("id")
        if gateway_payment_id:
            payment = await repo.get_payment_by_gateway_payment_id(session, gateway_payment_id)
            if payment is not None:
                return payment
        order_id = _notes_order_id(payment_entity)
        if order_id is not None:
            payment = await repo.get_payment_by_order_id(session, order_id)
            if payment is not None:
                return payment
        gateway_order_id = payment_entity.get("order_id")
        if gateway_order_id:
            return await repo.get_payment_by_gateway_order_id(session, gateway_order_id)
        return None

    def _notify(self, order_id: int, contact_email: Optional[str], old_status: int, new_status: int) -> None:
        if old_status != new_status:
            self.notifier.order_status_changed(order_id, contact_email, old_status, new_status)

    # ------------------------------------------------------------ checkout

    async def create_payment(self, order_id: int, amount: Optional[Decimal] = None,
                             gateway: str = PaymentGateway.RAZORPAY.value) -> Tuple[Payment, Optional[Dict[str, Any]]]:
        """Idempotently create the local payment and its remote order. Returns (payment, remote_order)."""
        gateway = PaymentGateway(gateway)
        if gateway == PaymentGateway.COD:
            return await self.process_cod(order_id), None

        async with self.session_factory() as session:
            order = await get_order_by_id(session, order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            payment = await repo.get_payment_by_order_id(session, order_id)

        amount = to_money(order.total if amount is None else amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if abs(amount - to_money(order.total)) > AMOUNT_TOLERANCE:
            raise ValidationError(
                "Payment amount does not match order total",
                details={"amount": str(amount), "order_total": str(order.total)},
            )

        if payment is not None and payment.gateway != PaymentGateway.RAZORPAY.value:
            raise ConflictError(f"Order {order_id} already has a {payment.gateway} payment")

        if payment is None:
            if OrderStatus(order.status) not in PAYABLE_ORDER_STATUSES:
                raise OrderStateConflictError(
                    f"Order {order_id} is {OrderStatus(order.status).name} and cannot be paid",
                )
            payment = await self._insert_online_payment(order_id, amount, order.currency)

        if payment.status in SETTLED_STATUSES:
            return payment, None

        if payment.gateway_order_id:
            try:
                remote = await self.gateway.fetch_remote_order(payment.gateway_order_id)
                return payment, remote
            except GatewayNotFoundError:
                logger.warning(
                    "payment.remote_order.missing",
                    extra={"payment_id": payment.id, "gateway_order_id": payment.gateway_order_id},
                )

        remote = await self.gateway.create_remote_order(
            order_id,
            payment.amount,
            payment.currency,
            receipt=f"order_{order_id}",
            notes={"order_id": str(order_id), "payment_id": str(payment.id)},
        )
        async with self.session_factory() as session:
            async with session.begin():
                await repo.compare_and_set_payment(
                    session,
                    payment.id,
                    Payment.status.in_((PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)),
                    gateway_order_id=remote["id"],
                )
        logger.info(
            "payment.remote_order.created",
            extra={"payment_id": payment.id, "order_id": order_id, "gateway_order_id": remote["id"]},
        )
        return await self.get_payment(payment.id), remote

    async def _insert_online_payment(self, order_id: int, amount: Decimal, currency: str) -> Payment:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    payment = await repo.insert_payment(
                        session,
                        order_id=order_id,
                        gateway=PaymentGateway.RAZORPAY.value,
                        amount=amount,
                        currency=currency,
                        status=PaymentStatus.PENDING.value,
                    )
                    await repo.insert_audit_log(
                        session, payment.id, PAYMENT_CREATED, ACTOR_SYSTEM,
                        new_status=PaymentStatus.PENDING.value,
                        metadata={"gateway": PaymentGateway.RAZORPAY.value, "amount": str(amount)},
                    )
            return payment
        except IntegrityError:
            # a concurrent checkout for the same order won the insert
            async with self.session_factory() as session:
                payment = await repo.get_payment_by_order_id(session, order_id)
            if payment is None:
                raise
            return payment

    # ------------------------------------------------------------ capture

    async def apply_capture(self, payment_entity: Dict[str, Any], *, performed_by: str,
                            action: str = PAYMENT_CAPTURED, payment_id: Optional[int] = None) -> TransitionResult:
        """The only path that moves a payment to PAID from a gateway payment record."""
        gateway_payment_id = payment_entity.get("id")

        async with self.session_factory() as session:
            if payment_id is not None:
                payment = await repo.get_payment_by_id(session, payment_id)
            else:
                payment = await self._locate_payment(session, payment_entity)
            if payment is None:
                raise NotFoundError("Payment", gateway_payment_id or payment_id)
            order = await get_order_by_id(session, payment.order_id)

        if payment.gateway != PaymentGateway.RAZORPAY.value:
            # cash on delivery settles only through delivery confirmation
            raise ValidationError(f"Payment {payment.id} is {payment.gateway} and cannot be captured online")
        if payment.status in SETTLED_STATUSES:
            logger.info("payment.capture.already_settled", extra={"payment_id": payment.id, "actor": performed_by})
            return TransitionResult(payment, False, "already_paid")
        if payment.status == PaymentStatus.FAILED.value and payment.gateway_payment_id == gateway_payment_id:
            logger.info("payment.capture.stale_after_failure", extra={"payment_id": payment.id, "actor": performed_by})
            return TransitionResult(payment, False, "stale_event")

        received = paise_to_amount(payment_entity.get("amount") or 0)
        if abs(received - to_money(payment.amount)) > AMOUNT_TOLERANCE:
            logger.error(
                "payment.capture.amount_mismatch",
                extra={"payment_id": payment.id, "expected": str(payment.amount), "received": str(received),
                       "gateway_payment_id": gateway_payment_id, "actor": performed_by},
            )
            await self.audit(
                payment.id, PAYMENT_AMOUNT_MISMATCH, performed_by, status=payment.status,
                metadata={"expected": str(payment.amount), "received": str(received),
                          "gateway_payment_id": gateway_payment_id},
            )
            raise AmountMismatchError(payment.amount, received, payment_id=payment.id)

        if order is None:
            raise NotFoundError("Order", payment.order_id)
        if OrderStatus(order.status) not in PAYABLE_ORDER_STATUSES:
            await self._reject_for_order_state(payment, order.status, gateway_payment_id, performed_by)

        old_order_status = order.status
        new_order_status = order.status
        moved_order_status = None
        async with self.session_factory() as session:
            async with session.begin():
                current = await repo.get_payment_status(session, payment.id, for_update=True)
                if current in SETTLED_STATUSES:
                    return TransitionResult(payment, False, "already_paid")

                order_status = await get_order_status(session, payment.order_id, for_update=True)
                if OrderStatus(order_status) not in PAYABLE_ORDER_STATUSES:
                    # the order moved on between the checks and this transaction; nothing written yet
                    moved_order_status = order_status
                else:
                    confirmed_status = await self._commit_capture(
                        session, payment, payment_entity, current, order_status,
                        action=action, performed_by=performed_by, received=received,
                    )
                    if confirmed_status is None:
                        return TransitionResult(payment, False, "concurrent_update")
                    old_order_status = order_status
                    new_order_status = confirmed_status

        if moved_order_status is not None:
            await self._reject_for_order_state(payment, moved_order_status, gateway_payment_id, performed_by)

        logger.info(
            "payment.captured",
            extra={"payment_id": payment.id, "order_id": payment.order_id, "action": action, "actor": performed_by},
        )
        self._notify(payment.order_id, order.contact_email, old_order_status, new_order_status)
        return TransitionResult(await self.get_payment(payment.id), True, "captured")

    async def _commit_capture(self, session: AsyncSession, payment: Payment, payment_entity: Dict[str, Any],
                              current: int, order_status: int, *, action: str, performed_by: str,
                              received: Decimal) -> Optional[int]:
        """Write the PAID transition, the order update and the audit row. Returns the new order status, None if lost."""
        gateway_payment_id = payment_entity.get("id")
        won = await repo.compare_and_set_payment(
            session,
            payment.id,
            _capturable(gateway_payment_id),
            status=PaymentStatus.PAID.value,
            gateway_payment_id=gateway_payment_id or payment.gateway_payment_id,
            failure_reason=None,
            pay_metadata=payment_entity,
            paid_at=now(),
            **_instrument_fields(payment_entity),
        )
        if not won:
            return None

        if order_status == OrderStatus.PENDING.value:
            new_order_status = ensure_transition(order_status, OrderStatus.CONFIRMED).value
        else:
            new_order_status = order_status

        await update_order_fields(
            session,
            payment.order_id,
            status=new_order_status,
            payment_status=PaymentStatus.PAID.value,
            payment_id=gateway_payment_id or payment.gateway_payment_id,
        )
        await repo.insert_audit_log(
            session, payment.id, action, performed_by,
            old_status=current, new_status=PaymentStatus.PAID.value,
            metadata={
                "gateway_payment_id": gateway_payment_id,
                "amount": str(received),
                "method": payment_entity.get("method"),
            },
        )
        return new_order_status

    async def _reject_for_order_state(self, payment: Payment, order_status: int,
                                      gateway_payment_id: Optional[str], performed_by: str) -> None:
        state = OrderStatus(order_status).name
        logger.error(
            "payment.capture.order_state_conflict",
            extra={"payment_id": payment.id, "order_id": payment.order_id, "order_status": state,
                   "gateway_payment_id": gateway_payment_id},
        )
        await self.audit(
            payment.id, PAYMENT_ORDER_STATE_CONFLICT, performed_by, status=payment.status,
            metadata={"order_status": state, "gateway_payment_id": gateway_payment_id},
        )
        raise OrderStateConflictError(
            f"Order {payment.order_id} is {state} and cannot be confirmed by a captured payment",
            details={"order_id": payment.order_id, "order_status": state},
        )

    # ------------------------------------------------------------ failure

    async def apply_failure(self, payment_entity: Dict[str, Any], *, performed_by: str) -> TransitionResult:
        gateway_payment_id = payment_entity.get("id")
        async with self.session_factory() as session:
            payment = await self._locate_payment(session, payment_entity)
        if payment is None:
            raise NotFoundError("Payment", gateway_payment_id)

        if payment.status == PaymentStatus.FAILED.value:
            return TransitionResult(payment, False, "already_failed")
        if payment.status in SETTLED_STATUSES:
            logger.warning(
                "payment.failure.ignored_after_capture",
                extra={"payment_id": payment.id, "gateway_payment_id": gateway_payment_id},
            )
            return TransitionResult(payment, False, "already_paid")

        reason = payment_entity.get("error_description") or payment_entity.get("error_reason") or DEFAULT_FAILURE_REASON

        async with self.session_factory() as session:
            async with session.begin():
                current = await repo.get_payment_status(session, payment.id, for_update=True)
                if current != PaymentStatus.PENDING.value:
                    return TransitionResult(payment, False, "concurrent_update")
                won = await repo.compare_and_set_payment(
                    session,
                    payment.id,
                    PaymentStatus.PENDING.value,
                    status=PaymentStatus.FAILED.value,
                    failure_reason=reason,
                    gateway_payment_id=gateway_payment_id or payment.gateway_payment_id,
                    pay_metadata=payment_entity,
                    **_instrument_fields(payment_entity),
                )
                if not won:
                    return TransitionResult(payment, False, "concurrent_update")
                await update_order_fields(session, payment.order_id, payment_status=PaymentStatus.FAILED.value)
                await repo.insert_audit_log(
                    session, payment.id, PAYMENT_FAILED, performed_by,
                    old_status=current, new_status=PaymentStatus.FAILED.value,
                    metadata={"reason": reason, "error_code": payment_entity.get("error_code"),
                              "gateway_payment_id": gateway_payment_id},
                )

        logger.info("payment.failed", extra={"payment_id": payment.id, "reason": reason, "actor": performed_by})
        return TransitionResult(await self.get_payment(payment.id), True, "failed")

    # ------------------------------------------------------------ refunds

    async def record_refund(self, refund_entity: Dict[str, Any], *, performed_by: str, action: str,
                            reason: Optional[str] = None) -> RefundResult:
        """Persist a gateway refund and roll its amount into the payment totals."""
        for attempt in (1, 2):
            try:
                return await self._record_refund_once(refund_entity, performed_by=performed_by, action=action, reason=reason)
            except IntegrityError:
                # same refund id inserted concurrently (webhook racing the admin call), re-run as an update
                if attempt == 2:
                    raise
                logger.info("refund.insert.race", extra={"gateway_refund_id": refund_entity.get("id")})
        raise AssertionError("unreachable")

    async def _record_refund_once(self, refund_entity: Dict[str, Any], *, performed_by: str, action: str,
                                  reason: Optional[str]) -> RefundResult:
        gateway_refund_id = refund_entity.get("id")
        gateway_payment_id = refund_entity.get("payment_id")
        if not gateway_refund_id or not gateway_payment_id:
            raise ValidationError("Refund payload is missing the refund or payment id")
        refund_status = (refund_entity.get("status") or RefundStatus.PENDING.value).lower()
        amount = paise_to_amount(refund_entity.get("amount") or 0)

        async with self.session_factory() as session:
            async with session.begin():
                located = await repo.get_payment_by_gateway_payment_id(session, gateway_payment_id)
                if located is None:
                    raise NotFoundError("Payment", gateway_payment_id)
                payment = await repo.get_payment_by_id(session, located.id, for_update=True)

                refund = await repo.get_refund_by_gateway_id(session, gateway_refund_id)
                if refund is not None:
                    if refund.status == refund_status:
                        return RefundResult(refund, payment, False)
                    await repo.update_refund_status(session, refund.id, refund_status)
                else:
                    if amount <= 0:
                        raise ValidationError("Refund amount must be positive")
                    refund = await repo.insert_refund(
                        session,
                        payment_id=payment.id,
                        gateway_refund_id=gateway_refund_id,
                        amount=amount,
                        currency=refund_entity.get("currency") or payment.currency,
                        status=refund_status,
                        reason=reason,
                        notes=refund_entity.get("notes") or None,
                    )

                total_refunded = await repo.sum_successful_refunds(session, payment.id)
                if total_refunded > to_money(payment.amount) + AMOUNT_TOLERANCE:
                    raise ValidationError(
                        "Refund total would exceed the payment amount",
                        details={"payment_id": payment.id, "amount": str(payment.amount),
                                 "total_refunded": str(total_refunded)},
                    )

                old_status = payment.status
                new_status = old_status
                if (old_status == PaymentStatus.PAID.value
                        and total_refunded >= to_money(payment.amount) - AMOUNT_TOLERANCE):
                    new_status = PaymentStatus.REFUNDED.value

                won = await repo.compare_and_set_payment(
                    session,
                    payment.id,
                    old_status,
                    status=new_status,
                    refund_amount=total_refunded,
                    refund_status=refund_status,
                )
                if not won:
                    raise ConflictError(f"Payment {payment.id} changed while recording refund {gateway_refund_id}")
                if new_status != old_status:
                    await update_order_fields(session, payment.order_id, payment_status=new_status)

                await repo.insert_audit_log(
                    session, payment.id, action, performed_by,
                    old_status=old_status, new_status=new_status,
                    metadata={
                        "gateway_refund_id": gateway_refund_id,
                        "amount": str(refund.amount),
                        "refund_status": refund_status,
                        "total_refunded": str(total_refunded),
                    },
                )
                refund_id, payment_id = refund.id, payment.id

        logger.info(
            "refund.recorded",
            extra={"payment_id": payment_id, "gateway_refund_id": gateway_refund_id,
                   "refund_status": refund_status, "total_refunded": str(total_refunded), "actor": performed_by},
        )
        async with self.session_factory() as session:
            refund = await repo.get_refund_by_gateway_id(session, gateway_refund_id)
            payment = await repo.get_payment_by_id(session, payment_id)
        return RefundResult(refund, payment, True)

    async def process_refund(self, payment_id: int, amount: Optional[Decimal] = None, *,
                             performed_by: str, reason: Optional[str] = None) -> RefundResult:
        payment = await self.get_payment(payment_id)
        if payment.status != PaymentStatus.PAID.value:
            raise ValidationError(
                f"Only paid payments can be refunded, payment {payment_id} is {PaymentStatus(payment.status).name}",
            )
        if payment.gateway != PaymentGateway.RAZORPAY.value or not payment.gateway_payment_id:
            raise ValidationError(f"Payment {payment_id} has no gateway payment to refund")

        async with self.session_factory() as session:
            committed = await repo.sum_committed_refunds(session, payment.id)
        remaining = to_money(payment.amount) - to_money(committed)
        refund_amount = remaining if amount is None else to_money(amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund_amount > remaining + AMOUNT_TOLERANCE:
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                details={"requested": str(refund_amount), "refundable": str(remaining)},
            )

        notes = {"payment_id": str(payment.id), "order_id": str(payment.order_id), "performed_by": performed_by}
        if reason:
            notes["reason"] = reason
        remote = await self.gateway.refund(payment.gateway_payment_id, refund_amount, notes=notes)
        remote.setdefault("payment_id", payment.gateway_payment_id)
        logger.info(
            "refund.initiated",
            extra={"payment_id": payment.id, "gateway_refund_id": remote.get("id"),
                   "amount": str(refund_amount), "actor": performed_by},
        )
        return await self.record_refund(remote, performed_by=performed_by, action=REFUND_INITIATED, reason=reason)

    # ------------------------------------------------------------ verification

    async def verify_payment(self, payment_id: int, remote_payment_id: str, signature: str) -> Payment:
        payment = await self.get_payment(payment_id)
        if not payment.gateway_order_id:
            raise ValidationError(f"Payment {payment_id} has no gateway order to verify against")

        if not self.gateway.verify_signature(payment.gateway_order_id, remote_payment_id, signature):
            logger.warning(
                "payment.verify.invalid_signature",
                extra={"payment_id": payment_id, "gateway_payment_id": remote_payment_id, "security_event": True},
            )
            raise SignatureVerificationError("Invalid payment signature")

        if payment.status in SETTLED_STATUSES:
            return payment

        remote = await self.gateway.fetch_payment(remote_payment_id)
        if remote.get("order_id") and remote["order_id"] != payment.gateway_order_id:
            logger.warning(
                "payment.verify.order_mismatch",
                extra={"payment_id": payment_id, "gateway_payment_id": remote_payment_id, "security_event": True},
            )
            raise ValidationError("Payment does not belong to this order")

        remote_status = (remote.get("status") or "").lower()
        if remote_status not in CAPTURED_PAYMENT_STATUSES:
            raise ValidationError(f"Payment not captured. Status: {remote_status or 'unknown'}")

        result = await self.apply_capture(remote, performed_by=ACTOR_CLIENT, action=PAYMENT_VERIFIED, payment_id=payment.id)
        return result.payment

    # ------------------------------------------------------------ cash on delivery

    async def process_cod(self, order_id: int) -> Payment:
        try:
            return await self._process_cod_once(order_id)
        except IntegrityError:
            async with self.session_factory() as session:
                payment = await repo.get_payment_by_order_id(session, order_id)
            if payment is not None and payment.gateway == PaymentGateway.COD.value:
                return payment
            raise

    async def _process_cod_once(self, order_id: int) -> Payment:
        async with self.session_factory() as session:
            async with session.begin():
                order = await get_order_by_id(session, order_id, for_update=True)
                if order is None:
                    raise NotFoundError("Order", order_id)
                existing = await repo.get_payment_by_order_id(session, order_id)
                if existing is not None:
                    if existing.gateway == PaymentGateway.COD.value:
                        return existing
                    raise ConflictError(f"Order {order_id} already has an online payment")

                old_status = order.status
                if old_status != OrderStatus.CONFIRMED.value:
                    ensure_transition(old_status, OrderStatus.CONFIRMED)

                payment = await repo.insert_payment(
                    session,
                    order_id=order_id,
                    gateway=PaymentGateway.COD.value,
                    amount=to_money(order.total),
                    currency=order.currency,
                    status=PaymentStatus.PENDING.value,
                    method=PaymentGateway.COD.value,
                )
                await update_order_fields(
                    session,
                    order_id,
                    status=OrderStatus.CONFIRMED.value,
                    payment_method=PaymentGateway.COD.value,
                    payment_status=PaymentStatus.PENDING.value,
                )
                await repo.insert_audit_log(
                    session, payment.id, PAYMENT_CREATED, ACTOR_SYSTEM,
                    new_status=PaymentStatus.PENDING.value,
                    metadata={"gateway": PaymentGateway.COD.value, "amount": str(payment.amount),
                              "note": "COD payment - pending until delivery"},
                )
                contact_email = order.contact_email

        logger.info("payment.cod.created", extra={"payment_id": payment.id, "order_id": order_id})
        self._notify(order_id, contact_email, old_status, OrderStatus.CONFIRMED.value)
        return payment

    async def mark_cod_paid(self, order_id: int, *, performed_by: str = ACTOR_SYSTEM) -> TransitionResult:
        """Delivery confirmation for cash on delivery. Never reachable from inbound webhooks."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await self.settle_cod(session, order_id, performed_by=performed_by)

        if result.changed:
            logger.info("payment.cod.paid", extra={"payment_id": result.payment.id, "order_id": order_id,
                                                   "actor": performed_by})
        return TransitionResult(await self.get_payment(result.payment.id), result.changed, result.note)

    async def settle_cod(self, session: AsyncSession, order_id: int, *, performed_by: str) -> TransitionResult:
        """
        Settle the cash on delivery payment of an order inside the caller's transaction.

        Raises when the order has no pending COD payment, so the caller's own
        writes (the DELIVERED update) roll back with it.
        """
        payment = await repo.get_payment_by_order_id(session, order_id, for_update=True)
        if payment is None:
            raise NotFoundError("Payment for order", order_id)
        if payment.gateway != PaymentGateway.COD.value:
            raise ValidationError(f"Payment for order {order_id} is not cash on delivery")
        if payment.status == PaymentStatus.PAID.value:
            return TransitionResult(payment, False, "already_paid")
        if payment.status != PaymentStatus.PENDING.value:
            raise ValidationError(
                f"Cash on delivery payment for order {order_id} is {PaymentStatus(payment.status).name}",
            )

        won = await repo.compare_and_set_payment(
            session,
            payment.id,
            PaymentStatus.PENDING.value,
            status=PaymentStatus.PAID.value,
            paid_at=now(),
        )
        if not won:
            return TransitionResult(payment, False, "concurrent_update")
        await update_order_fields(session, order_id, payment_status=PaymentStatus.PAID.value)
        await repo.insert_audit_log(
            session, payment.id, PAYMENT_COD_PAID, performed_by,
            old_status=PaymentStatus.PENDING.value, new_status=PaymentStatus.PAID.value,
            metadata={"amount": str(payment.amount)},
        )
        return TransitionResult(payment, True, "cod_paid")

    # ------------------------------------------------------------ webhooks

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str],
                             event_id: Optional[str] = None) -> Dict[str, Any]:
        """Verify, deduplicate and dispatch one inbound webhook delivery."""
        payload = self._verified_payload(raw_body, signature)
        evt_id = derive_event_id(payload, event_id)
        event_type = payload.get("event") or "unknown"

        registered = await self._register_webhook_event(evt_id, event_type, payload)
        if not registered:
            logger.info("razorpay.webhook.duplicate", extra={"event_id": evt_id, "event_type": event_type})
            return {"status": "duplicate", "event_id": evt_id}

        try:
            note = await self.dispatch_event(payload, performed_by=ACTOR_WEBHOOK)
        except Exception as exc:
            await self._record_webhook_failure(raw_body, signature, evt_id, exc)
            raise

        await self.mark_webhook_event_processed(evt_id)
        return {"status": "processed", "event_id": evt_id, "note": note}

    async def replay_webhook(self, raw_body: bytes, signature: str, event_id: Optional[str], *,
                             performed_by: str) -> str:
        """Re-run a stored delivery through the live dispatch path. Raises on failure."""
        payload = self._verified_payload(raw_body, signature)
        note = await self.dispatch_event(payload, performed_by=performed_by)
        if event_id:
            await self.mark_webhook_event_processed(event_id)
        return note

    def _verified_payload(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature or not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning(
                "razorpay.webhook.invalid_signature",
                extra={"security_event": True, "signature_present": bool(signature), "body_bytes": len(raw_body)},
            )
            raise SignatureVerificationError("Invalid webhook signature")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON") from None
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return payload

    async def _register_webhook_event(self, evt_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        async with self.session_factory() as session:
            if await repo.get_webhook_event(session, evt_id) is not None:
                return False
            payment = await self._locate_webhook_payment(session, payload)
            try:
                await repo.insert_webhook_event(
                    session,
                    event_id=evt_id,
                    event_type=event_type,
                    payment_id=payment.id if payment else None,
                    order_id=payment.order_id if payment else None,
                    payload=payload,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def _locate_webhook_payment(self, session: AsyncSession, payload: Dict[str, Any]) -> Optional[Payment]:
        payment_entity = entity(payload, "payment")
        if payment_entity:
            return await self._locate_payment(session, payment_entity)
        refund_entity = entity(payload, "refund")
        if refund_entity.get("payment_id"):
            return await repo.get_payment_by_gateway_payment_id(session, refund_entity["payment_id"])
        order_entity = entity(payload, "order")
        if order_entity.get("id"):
            return await repo.get_payment_by_gateway_order_id(session, order_entity["id"])
        return None

    async def mark_webhook_event_processed(self, evt_id: str, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await repo.mark_webhook_event_processed(session, evt_id, error=error)

    async def _record_webhook_failure(self, raw_body: bytes, signature: str, evt_id: str, exc: Exception) -> None:
        error = f"{exc.__class__.__name__}: {exc}"
        retryable = is_retryable_error(exc)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await repo.mark_webhook_event_processed(session, evt_id, error=error)
                    if retryable:
                        await repo.insert_failed_webhook(
                            session,
                            event_id=evt_id,
                            raw_body=raw_body.decode("utf-8"),
                            signature=signature,
                            error=error,
                            max_retries=self.settings.WEBHOOK_MAX_RETRIES,
                        )
        except Exception as rec_err:
            logger.error(
                "razorpay.webhook.record_error_failure",
                exc_info=(type(rec_err), rec_err, rec_err.__traceback__),
                extra={"event_id": evt_id},
            )
        logger.error(
            "razorpay.webhook.processing_failed",
            extra={"event_id": evt_id, "error": error, "dead_lettered": retryable},
        )

    async def dispatch_event(self, payload: Dict[str, Any], *, performed_by: str) -> str:
        raw_type = payload.get("event")
        event_type = parse_event_type(raw_type)
        if event_type is None:
            logger.info("razorpay.webhook.unhandled_event", extra={"event_type": raw_type})
            return "ignored"

        if event_type in (WebhookEventType.PAYMENT_CAPTURED, WebhookEventType.PAYMENT_AUTHORIZED):
            result = await self.apply_capture(entity(payload, "payment"), performed_by=performed_by)
            return result.note
        elif event_type == WebhookEventType.PAYMENT_FAILED:
            result = await self.apply_failure(entity(payload, "payment"), performed_by=performed_by)
            return result.note
        elif event_type == WebhookEventType.REFUND_PROCESSED:
            refund = await self.record_refund(entity(payload, "refund"), performed_by=performed_by, action=REFUND_PROCESSED)
            return "refund_recorded" if refund.changed else "refund_unchanged"
        elif event_type == WebhookEventType.REFUND_FAILED:
            refund = await self.record_refund(entity(payload, "refund"), performed_by=performed_by, action=REFUND_FAILED)
            return "refund_recorded" if refund.changed else "refund_unchanged"
        elif event_type == WebhookEventType.ORDER_PAID:
            return await self.handle_order_paid(payload, performed_by=performed_by)
        else:
            logger.warning("razorpay.webhook.unrouted_event", extra={"event_type": event_type.value})
            return "ignored"

    async def handle_order_paid(self, payload: Dict[str, Any], *, performed_by: str) -> str:
        order_entity = entity(payload, "order")
        remote_order_id = order_entity.get("id")
        if not remote_order_id:
            raise ValidationError("order.paid payload has no order id")

        async with self.session_factory() as session:
            payment = await repo.get_payment_by_gateway_order_id(session, remote_order_id)
        if payment is None:
            logger.warning("razorpay.order_paid.unknown_order", extra={"gateway_order_id": remote_order_id})
            return "ignored"
        if payment.status in SETTLED_STATUSES:
            return "already_paid"

        captured = first_captured_payment(await self.gateway.fetch_payments(remote_order_id))
        if captured is None:
            logger.warning("razorpay.order_paid.no_captured_payment", extra={"payment_id": payment.id})
            return "no_captured_payment"

        result = await self.apply_capture(captured, performed_by=performed_by, payment_id=payment.id)
        return result.note
