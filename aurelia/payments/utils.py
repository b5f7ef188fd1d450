from typing import Any, Dict

from aurelia.schema.full_schema import Payment, PaymentStatus, Refund


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "public_id": str(payment.public_id),
        "order_id": payment.order_id,
        "gateway": payment.gateway,
        "gateway_order_id": payment.gateway_order_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": PaymentStatus(payment.status).name.lower(),
        "method": payment.method,
        "refund_amount": str(payment.refund_amount),
        "refund_status": payment.refund_status,
        "failure_reason": payment.failure_reason,
        "paid_at": payment.paid_at,
    }


def refund_to_dict(refund: Refund) -> Dict[str, Any]:
    return {
        "id": refund.id,
        "gateway_refund_id": refund.gateway_refund_id,
        "amount": str(refund.amount),
        "currency": refund.currency,
        "status": refund.status,
        "reason": refund.reason,
        "created_at": refund.created_at,
    }
