import enum
from typing import Any, Dict, Optional


class WebhookEventType(str, enum.Enum):
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_FAILED = "payment.failed"
    REFUND_PROCESSED = "refund.processed"
    REFUND_FAILED = "refund.failed"
    ORDER_PAID = "order.paid"


def parse_event_type(raw: Optional[str]) -> Optional[WebhookEventType]:
    """None for event types this service does not handle."""
    if not raw:
        return None
    try:
        return WebhookEventType(raw)
    except ValueError:
        return None


def derive_event_id(payload: Dict[str, Any], header_event_id: Optional[str] = None) -> str:
    # razorpay sends the id in a header; older payloads only carry it in the body
    if header_event_id:
        return header_event_id
    if payload.get("id"):
        return str(payload["id"])
    return f"{payload.get('event')}_{payload.get('created_at')}_{payload.get('account_id')}"


def entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    return ((payload.get("payload") or {}).get(name) or {}).get("entity") or {}
