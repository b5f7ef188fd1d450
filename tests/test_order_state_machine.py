from decimal import Decimal

import pytest

from aurelia.common.custom_exceptions import InvalidTransitionError, ValidationError
from aurelia.orders.utils import can_transition, compute_order_totals, ensure_transition, is_terminal
from aurelia.schema.full_schema import OrderStatus as S

ALLOWED = {
    (S.PENDING, S.CONFIRMED), (S.PENDING, S.CANCELLED),
    (S.CONFIRMED, S.PROCESSING), (S.CONFIRMED, S.CANCELLED),
    (S.PROCESSING, S.SHIPPED), (S.PROCESSING, S.CANCELLED),
    (S.SHIPPED, S.DELIVERED),
    (S.DELIVERED, S.RETURNED),
}


@pytest.mark.parametrize("current", list(S))
@pytest.mark.parametrize("target", list(S))
def test_transition_table(current, target):
    assert can_transition(current, target) == ((current, target) in ALLOWED)


def test_shipped_order_cannot_be_cancelled():
    with pytest.raises(InvalidTransitionError) as exc:
        ensure_transition(S.SHIPPED, S.CANCELLED)
    assert exc.value.message == "Cannot transition order from SHIPPED to CANCELLED"
    assert exc.value.status_code == 400


def test_transition_accepts_names_and_ints():
    assert ensure_transition("pending", S.CONFIRMED.value) == S.CONFIRMED
    with pytest.raises(ValidationError):
        ensure_transition("pending", "teleported")


def test_terminal_statuses():
    assert is_terminal(S.CANCELLED)
    assert is_terminal(S.RETURNED)
    assert not is_terminal(S.DELIVERED)


PRICING = dict(free_shipping_threshold=Decimal("499"), flat_shipping_fee=Decimal("50"), tax_rate=Decimal("0.18"))


def test_totals_below_free_shipping_threshold():
    totals = compute_order_totals([{"product_id": 1, "quantity": 2, "unit_price": "100.00"}], **PRICING)
    assert totals == {
        "subtotal": Decimal("200.00"),
        "shipping": Decimal("50.00"),
        "tax": Decimal("36.00"),
        "total": Decimal("286.00"),
    }


def test_threshold_itself_still_pays_shipping():
    totals = compute_order_totals([{"product_id": 1, "quantity": 1, "unit_price": "499"}], **PRICING)
    assert totals["shipping"] == Decimal("50.00")


def test_totals_above_threshold_ship_free():
    totals = compute_order_totals([{"product_id": 7, "quantity": 2, "unit_price": "300.00"}], **PRICING)
    assert totals["shipping"] == Decimal("0")
    assert totals["tax"] == Decimal("108.00")
    assert totals["total"] == Decimal("708.00")


@pytest.mark.parametrize("items", [[], [{"product_id": 1, "quantity": 0, "unit_price": "5"}]])
def test_invalid_lines_rejected(items):
    with pytest.raises(ValidationError):
        compute_order_totals(items, **PRICING)
