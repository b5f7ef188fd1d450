from typing import Dict

from aurelia.background_workers.constants import RETRY_BASE_DELAY_MS, RETRY_MAX_DELAY_MS, WEBHOOK_RETRY_JOB, logger
from aurelia.common.utils import as_utc, now
from aurelia.metrics.payment_metrics import JOB_ITEMS_TOTAL
from aurelia.payments import repository as repo
from aurelia.payments.constants import ACTOR_WEBHOOK_RETRY
from aurelia.payments.services import PaymentService
from aurelia.schema.full_schema import FailedWebhook


def compute_retry_delay_ms(retries: int) -> int:
    return min(RETRY_BASE_DELAY_MS * (2 ** retries), RETRY_MAX_DELAY_MS)


class WebhookRetryJob:
    """Replays dead-lettered webhook deliveries through the live dispatch path with backoff."""

    def __init__(self, payment_service: PaymentService, *, batch_size: int = 50):
        self.payment_service = payment_service
        self.batch_size = batch_size

    async def run(self) -> Dict[str, int]:
        async with self.payment_service.session_factory() as session:
            rows = await repo.list_retryable_failed_webhooks(session, self.batch_size)

        stats = {"processed": 0, "retried": 0, "failed": 0, "skipped": 0}
        current = now()
        for row in rows:
            if not self._due(row, current):
                stats["skipped"] += 1
                continue

            stats["retried"] += 1
            try:
                await self.payment_service.replay_webhook(
                    row.raw_body.encode("utf-8"), row.signature, row.event_id, performed_by=ACTOR_WEBHOOK_RETRY,
                )
            except Exception as exc:
                stats["failed"] += 1
                await self._record_attempt(row, exc)
                continue

            await self._update(row.id, processed=True, last_retry_at=now(), error=None)
            stats["processed"] += 1
            logger.info("webhook_retry.succeeded", extra={"failed_webhook_id": row.id, "event_id": row.event_id})

        for result, count in stats.items():
            JOB_ITEMS_TOTAL.labels(job=WEBHOOK_RETRY_JOB, result=result).inc(count)
        logger.info("webhook_retry.completed", extra=stats)
        return stats

    @staticmethod
    def _due(row: FailedWebhook, current) -> bool:
        reference = as_utc(row.last_retry_at or row.created_at)
        elapsed_ms = (current - reference).total_seconds() * 1000
        return elapsed_ms >= compute_retry_delay_ms(row.retries)

    async def _record_attempt(self, row: FailedWebhook, exc: Exception) -> None:
        retries = row.retries + 1
        exhausted = retries >= row.max_retries
        await self._update(
            row.id,
            retries=retries,
            last_retry_at=now(),
            error=f"{exc.__class__.__name__}: {exc}",
            processed=exhausted,
        )
        if exhausted:
            logger.error(
                "webhook_retry.exhausted",
                extra={"failed_webhook_id": row.id, "event_id": row.event_id, "retries": retries},
            )
        else:
            logger.warning(
                "webhook_retry.failed",
                extra={"failed_webhook_id": row.id, "event_id": row.event_id, "retries": retries,
                       "error": str(exc)},
            )

    async def _update(self, failed_id: int, **values) -> None:
        async with self.payment_service.session_factory() as session:
            async with session.begin():
                await repo.update_failed_webhook(session, failed_id, **values)
