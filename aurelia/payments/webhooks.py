from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aurelia.api.dependencies import get_payment_service
from aurelia.common.constants import EVENT_ID_HEADER, SIGNATURE_HEADER
from aurelia.common.custom_exceptions import AppError, ValidationError
from aurelia.common.utils import success_response
from aurelia.db.dependencies import get_session
from aurelia.metrics.payment_metrics import WEBHOOK_DELIVERIES_TOTAL
from aurelia.payments.constants import logger
from aurelia.payments.repository import count_pending_failed_webhooks
from aurelia.payments.services import PaymentService

webhooks_router = APIRouter()


class PayloadTooLargeError(AppError):
    status_code = status.HTTP_413_CONTENT_TOO_LARGE
    code = "PAYLOAD_TOO_LARGE"


async def razorpay_webhook(request: Request, payment_service: PaymentService = Depends(get_payment_service)):
    max_bytes = request.app.state.settings.WEBHOOK_MAX_BODY_BYTES

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome="too_large").inc()
        raise PayloadTooLargeError(f"Webhook body exceeds {max_bytes} bytes")
    body = await request.body()
    if len(body) > max_bytes:
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome="too_large").inc()
        raise PayloadTooLargeError(f"Webhook body exceeds {max_bytes} bytes")

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome="missing_signature").inc()
        logger.warning("razorpay.webhook.missing_signature", extra={"security_event": True})
        raise ValidationError("Missing webhook signature", code="MISSING_SIGNATURE")

    try:
        result = await payment_service.handle_webhook(body, signature, request.headers.get(EVENT_ID_HEADER))
    except AppError as exc:
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome=exc.code.lower()).inc()
        raise
    except Exception:
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome="error").inc()
        raise

    WEBHOOK_DELIVERIES_TOTAL.labels(outcome=result["status"]).inc()
    return success_response(result)


@webhooks_router.get("/razorpay/health")
async def razorpay_webhook_health(session: AsyncSession = Depends(get_session)):
    await session.execute(select(1))
    pending = await count_pending_failed_webhooks(session)
    return success_response({"status": "healthy", "pending_failed_webhooks": pending})
