from fastapi import APIRouter, Depends, status

from aurelia.api.dependencies import admin_actor, get_payment_service
from aurelia.common.utils import success_response
from aurelia.payments.models import CodPaymentInput, CreatePaymentInput, RefundInput, VerifyPaymentInput
from aurelia.payments.services import PaymentService
from aurelia.payments.utils import payment_to_dict, refund_to_dict

payments_router = APIRouter()
payments_admin_router = APIRouter()


@payments_router.post("/create-order")
async def create_payment_order(payload: CreatePaymentInput,
                               payment_service: PaymentService = Depends(get_payment_service)):
    payment, remote = await payment_service.create_payment(payload.order_id, payload.amount, payload.gateway)
    data = {"payment": payment_to_dict(payment)}
    if remote is not None:
        # what the checkout widget needs to open
        data["razorpay_order"] = {
            "id": remote.get("id"),
            "amount": remote.get("amount"),
            "currency": remote.get("currency"),
            "receipt": remote.get("receipt"),
        }
        data["key_id"] = payment_service.settings.RZPAY_KEY
    return success_response(data, status_code=status.HTTP_201_CREATED)


@payments_router.post("/verify")
async def verify_payment(payload: VerifyPaymentInput,
                         payment_service: PaymentService = Depends(get_payment_service)):
    payment = await payment_service.verify_payment(
        payload.payment_id, payload.razorpay_payment_id, payload.razorpay_signature,
    )
    return success_response({"payment": payment_to_dict(payment)})


@payments_router.post("/cod")
async def create_cod_payment(payload: CodPaymentInput,
                             payment_service: PaymentService = Depends(get_payment_service)):
    payment = await payment_service.process_cod(payload.order_id)
    return success_response({"payment": payment_to_dict(payment)}, status_code=status.HTTP_201_CREATED)


@payments_router.get("/{payment_id}")
async def get_payment(payment_id: int, payment_service: PaymentService = Depends(get_payment_service)):
    payment = await payment_service.get_payment(payment_id)
    return success_response({"payment": payment_to_dict(payment)})


@payments_admin_router.post("/{payment_id}/refund")
async def refund_payment(payment_id: int, payload: RefundInput,
                         actor: str = Depends(admin_actor),
                         payment_service: PaymentService = Depends(get_payment_service)):
    result = await payment_service.process_refund(
        payment_id, payload.amount, performed_by=actor, reason=payload.reason,
    )
    data = {"refund": refund_to_dict(result.refund), "payment": payment_to_dict(result.payment)}
    return success_response(data, status_code=status.HTTP_201_CREATED)


@payments_admin_router.get("/{payment_id}/refunds")
async def list_payment_refunds(payment_id: int, payment_service: PaymentService = Depends(get_payment_service)):
    payment = await payment_service.get_payment(payment_id)
    refunds = await payment_service.list_refunds(payment_id)
    return success_response({"payment": payment_to_dict(payment), "refunds": [refund_to_dict(r) for r in refunds]})
