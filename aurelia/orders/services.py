from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aurelia.common.custom_exceptions import ConfigurationError, ConflictError, NotFoundError, ValidationError
from aurelia.notifications.dispatcher import OrderNotifier
from aurelia.orders.constants import MAX_ITEMS_PER_ORDER, MAX_QUANTITY_PER_ITEM, logger
from aurelia.orders.repository import get_order_by_id, insert_order, update_order_fields
from aurelia.orders.utils import compute_order_totals, ensure_transition
from aurelia.schema.full_schema import OrderStatus, Orders, PaymentGateway, PaymentStatus


class OrderService:
    """Places orders and walks them through the fulfilment state machine."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], notifier: OrderNotifier, settings,
                 payment_service=None):
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings
        self.payment_service = payment_service

    async def create_order(self, *, items: List[Dict[str, Any]], payment_method: str = PaymentGateway.RAZORPAY.value,
                           user_id: Optional[int] = None, address_id: Optional[int] = None,
                           contact_email: Optional[str] = None, notes: Optional[str] = None) -> Orders:
        try:
            method = PaymentGateway(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method {payment_method}") from None
        if len(items) > MAX_ITEMS_PER_ORDER:
            raise ValidationError(f"An order can hold at most {MAX_ITEMS_PER_ORDER} items")
        for it in items:
            if int(it["quantity"]) > MAX_QUANTITY_PER_ITEM:
                raise ValidationError(f"At most {MAX_QUANTITY_PER_ITEM} units of product {it['product_id']} per order")

        totals = compute_order_totals(
            items,
            free_shipping_threshold=self.settings.FREE_SHIPPING_THRESHOLD,
            flat_shipping_fee=self.settings.FLAT_SHIPPING_FEE,
            tax_rate=self.settings.TAX_RATE,
        )
        values = {
            "user_id": user_id,
            "address_id": address_id,
            "contact_email": contact_email,
            "notes": notes,
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": method.value,
            "currency": self.settings.CURRENCY,
            **totals,
        }
        lines = [
            {
                "product_id": it["product_id"],
                "variant_id": it.get("variant_id"),
                "product_name": it.get("product_name"),
                "quantity": int(it["quantity"]),
                "unit_price_snapshot": Decimal(str(it["unit_price"])),
            }
            for it in items
        ]

        async with self.session_factory() as session:
            async with session.begin():
                order = await insert_order(session, values, lines)
            order_id = order.id

        logger.info("order.created", extra={"order_id": order_id, "total": str(totals["total"]), "payment_method": method.value})
        return await self.get_order(order_id)

    async def get_order(self, order_id: int) -> Orders:
        async with self.session_factory() as session:
            order = await get_order_by_id(session, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def update_status(self, order_id: int, target: Union[OrderStatus, int, str], *,
                            performed_by: str) -> Orders:
        async with self.session_factory() as session:
            async with session.begin():
                order = await get_order_by_id(session, order_id, for_update=True)
                if order is None:
                    raise NotFoundError("Order", order_id)
                old_status = order.status
                new_status = ensure_transition(old_status, target)
                changed = await update_order_fields(session, order_id, expected_status=old_status, status=new_status.value)
                if not changed:
                    raise ConflictError(f"Order {order_id} was modified concurrently")

                # delivery settles a cash on delivery payment in the same transaction
                settled = None
                if new_status == OrderStatus.DELIVERED and order.payment_method == PaymentGateway.COD.value:
                    if self.payment_service is None:
                        raise ConfigurationError("Cash on delivery settlement needs a payment service")
                    settled = await self.payment_service.settle_cod(session, order_id, performed_by=performed_by)
                contact_email = order.contact_email

        logger.info(
            "order.status_changed",
            extra={"order_id": order_id, "old_status": OrderStatus(old_status).name,
                   "new_status": new_status.name, "actor": performed_by},
        )
        if settled is not None and settled.changed:
            logger.info("payment.cod.paid", extra={"payment_id": settled.payment.id, "order_id": order_id,
                                                   "actor": performed_by})

        self.notifier.order_status_changed(order_id, contact_email, old_status, new_status.value)
        return await self.get_order(order_id)
