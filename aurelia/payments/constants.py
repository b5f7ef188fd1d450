from decimal import Decimal
from aurelia.common.logging_setup import get_logger

logger = get_logger("aurelia.payments")

AMOUNT_TOLERANCE = Decimal("0.01")

# gateway payment states that count as money received
CAPTURED_PAYMENT_STATUSES = ("captured", "authorized")
REMOTE_ORDER_PAID = "paid"

# audit actions
PAYMENT_CREATED = "payment.created"
PAYMENT_CAPTURED = "payment.captured"
PAYMENT_VERIFIED = "payment.verified"
PAYMENT_RECONCILED = "payment.reconciled"
PAYMENT_AMOUNT_MISMATCH = "payment.amount_mismatch"
PAYMENT_ORDER_STATE_CONFLICT = "payment.order_state_conflict"
PAYMENT_FAILED = "payment.failed"
PAYMENT_COD_PAID = "payment.cod_paid"
REFUND_INITIATED = "refund.initiated"
REFUND_PROCESSED = "refund.processed"
REFUND_FAILED = "refund.failed"
RECONCILIATION_ERROR = "reconciliation.error"

# actors recorded in the audit trail
ACTOR_WEBHOOK = "razorpay_webhook"
ACTOR_WEBHOOK_RETRY = "webhook_retry_job"
ACTOR_CLIENT = "client_verification"
ACTOR_RECONCILIATION = "reconciliation_job"
ACTOR_SYSTEM = "system"

DEFAULT_FAILURE_REASON = "Payment failed"
