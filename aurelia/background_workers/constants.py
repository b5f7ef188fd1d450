from aurelia.common.logging_setup import get_logger

logger = get_logger("aurelia.jobs")

RECONCILIATION_JOB = "reconciliation"
WEBHOOK_RETRY_JOB = "webhook_retry"

RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 300_000
