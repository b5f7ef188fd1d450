from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Mapping, Union

from aurelia.common.custom_exceptions import InvalidTransitionError, ValidationError
from aurelia.common.utils import to_money
from aurelia.schema.full_schema import OrderStatus, PaymentStatus

ORDER_STATUS_FLOW: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

# statuses a captured payment may still confirm
PAYABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


def as_order_status(value: Union[OrderStatus, int, str]) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    if isinstance(value, str):
        try:
            return OrderStatus[value.upper()]
        except KeyError:
            raise ValidationError(f"Unknown order status {value}") from None
    return OrderStatus(int(value))


def can_transition(current, target) -> bool:
    return as_order_status(target) in ORDER_STATUS_FLOW[as_order_status(current)]


def ensure_transition(current, target) -> OrderStatus:
    cur, tgt = as_order_status(current), as_order_status(target)
    if tgt not in ORDER_STATUS_FLOW[cur]:
        raise InvalidTransitionError(cur.name, tgt.name)
    return tgt


def is_terminal(status) -> bool:
    return not ORDER_STATUS_FLOW[as_order_status(status)]


def compute_order_totals(items: Iterable[Mapping], *, free_shipping_threshold: Decimal,
                         flat_shipping_fee: Decimal, tax_rate: Decimal) -> Dict[str, Decimal]:
    """Totals are computed once when the order is placed and never recomputed."""
    lines: List[Mapping] = list(items)
    if not lines:
        raise ValidationError("Order must contain at least one item")

    subtotal = Decimal("0")
    for it in lines:
        quantity = int(it["quantity"])
        unit_price = to_money(it["unit_price"])
        if quantity <= 0:
            raise ValidationError(f"Invalid quantity {quantity} for product {it['product_id']}")
        if unit_price < 0:
            raise ValidationError(f"Invalid price for product {it['product_id']}")
        subtotal += unit_price * quantity

    subtotal = to_money(subtotal)
    shipping = Decimal("0") if subtotal > free_shipping_threshold else to_money(flat_shipping_fee)
    tax = to_money(subtotal * tax_rate)

    return {
        "subtotal": subtotal,
        "shipping": to_money(shipping),
        "tax": tax,
        "total": to_money(subtotal + shipping + tax),
    }


def order_to_dict(order) -> Dict:
    return {
        "id": order.id,
        "public_id": str(order.public_id),
        "status": OrderStatus(order.status).name.lower(),
        "payment_status": PaymentStatus(order.payment_status).name.lower(),
        "payment_method": order.payment_method,
        "payment_id": order.payment_id,
        "currency": order.currency,
        "subtotal": str(order.subtotal),
        "shipping": str(order.shipping),
        "tax": str(order.tax),
        "total": str(order.total),
        "contact_email": order.contact_email,
        "items": [
            {
                "product_id": it.product_id,
                "variant_id": it.variant_id,
                "product_name": it.product_name,
                "quantity": it.quantity,
                "unit_price": str(it.unit_price_snapshot),
            }
            for it in order.items
        ],
        "created_at": order.created_at,
    }
