from datetime import timedelta
from typing import Dict

from aurelia.background_workers.constants import RECONCILIATION_JOB, logger
from aurelia.common.utils import now
from aurelia.metrics.payment_metrics import JOB_ITEMS_TOTAL
from aurelia.payments import repository as repo
from aurelia.payments.constants import (
    ACTOR_RECONCILIATION,
    PAYMENT_RECONCILED,
    RECONCILIATION_ERROR,
    REMOTE_ORDER_PAID,
)
from aurelia.payments.services import PaymentService, first_captured_payment
from aurelia.schema.full_schema import Payment


class ReconciliationJob:
    """Sweeps recent PENDING online payments and settles the ones the gateway reports as paid."""

    def __init__(self, payment_service: PaymentService, *, lookback_hours: int = 24, batch_size: int = 100):
        self.payment_service = payment_service
        self.lookback_hours = lookback_hours
        self.batch_size = batch_size

    @classmethod
    def from_settings(cls, payment_service: PaymentService, settings) -> "ReconciliationJob":
        return cls(
            payment_service,
            lookback_hours=settings.RECONCILIATION_LOOKBACK_HOURS,
            batch_size=settings.RECONCILIATION_BATCH_SIZE,
        )

    async def run(self) -> Dict[str, int]:
        since = now() - timedelta(hours=self.lookback_hours)
        async with self.payment_service.session_factory() as session:
            candidates = await repo.list_reconcilable_payments(session, since, self.batch_size)

        stats = {"processed": 0, "updated": 0, "errors": 0}
        for payment in candidates:
            stats["processed"] += 1
            try:
                if await self._reconcile(payment):
                    stats["updated"] += 1
            except Exception as exc:
                stats["errors"] += 1
                logger.exception(
                    "reconciliation.payment.failed",
                    extra={"payment_id": payment.id, "gateway_order_id": payment.gateway_order_id},
                )
                await self._audit_error(payment, exc)

        for result in ("processed", "updated", "errors"):
            JOB_ITEMS_TOTAL.labels(job=RECONCILIATION_JOB, result=result).inc(stats[result])
        logger.info("reconciliation.completed", extra=stats)
        return stats

    async def _audit_error(self, payment: Payment, exc: Exception) -> None:
        # the failure may be the database itself; the sweep carries on either way
        try:
            await self.payment_service.audit(
                payment.id, RECONCILIATION_ERROR, ACTOR_RECONCILIATION, status=payment.status,
                metadata={"error": f"{exc.__class__.__name__}: {exc}"},
            )
        except Exception:
            logger.exception("reconciliation.audit.failed", extra={"payment_id": payment.id})

    async def _reconcile(self, payment: Payment) -> bool:
        gateway = self.payment_service.gateway
        remote_order = await gateway.fetch_remote_order(payment.gateway_order_id)
        if remote_order.get("status") != REMOTE_ORDER_PAID:
            return False

        captured = first_captured_payment(await gateway.fetch_payments(payment.gateway_order_id))
        if captured is None:
            logger.warning("reconciliation.paid_without_capture", extra={"payment_id": payment.id})
            return False

        result = await self.payment_service.apply_capture(
            captured, performed_by=ACTOR_RECONCILIATION, action=PAYMENT_RECONCILED, payment_id=payment.id,
        )
        return result.changed
