from fastapi import APIRouter, Depends, status

from aurelia.api.dependencies import admin_actor, get_order_service
from aurelia.common.utils import success_response
from aurelia.orders.models import CreateOrderInput, OrderStatusInput
from aurelia.orders.services import OrderService
from aurelia.orders.utils import order_to_dict

orders_router = APIRouter()
orders_admin_router = APIRouter()

@orders_router.post("")
async def place_order(payload: CreateOrderInput, order_service: OrderService = Depends(get_order_service)):
    order = await order_service.create_order(
        items=[it.model_dump() for it in payload.items],
        payment_method=payload.payment_method,
        user_id=payload.user_id,
        address_id=payload.address_id,
        contact_email=payload.contact_email,
        notes=payload.notes,
    )
    return success_response({"order": order_to_dict(order)}, status_code=status.HTTP_201_CREATED)


@orders_router.get("/{order_id}")
async def get_order(order_id: int, order_service: OrderService = Depends(get_order_service)):
    order = await order_service.get_order(order_id)
    return success_response({"order": order_to_dict(order)})


@orders_admin_router.patch("/{order_id}/status")
async def update_order_status(order_id: int, payload: OrderStatusInput,
                              actor: str = Depends(admin_actor),
                              order_service: OrderService = Depends(get_order_service)):
    order = await order_service.update_status(order_id, payload.status, performed_by=actor)
    return success_response({"order": order_to_dict(order)})

