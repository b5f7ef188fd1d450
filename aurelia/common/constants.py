import contextvars
from typing import Optional

# Context variables for request and trace id
request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"
ADMIN_SECRET_HEADER = "X-Admin-Secret"
ADMIN_ID_HEADER = "X-Admin-Id"
