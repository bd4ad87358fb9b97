import pytest

from fieldops.errors import ValidationFailed
from fieldops.services.billing import calculate_totals, money


def test_money_rounds_half_up():
    assert money(2.675) == 2.68
    assert money(None) == 0.0
    assert money("10.005") == 10.01


def test_totals_with_percentage_discount_fees_and_tax():
    items = [{"quantity": 3, "unit_price": 125.0}, {"quantity": 1, "unit_price": 49.99}]
    totals = calculate_totals(items, "percentage", 10, additional_fees=25, tax_rate=8.25)
    assert totals["line_totals"] == [375.0, 49.99]
    assert totals["subtotal"] == 424.99
    assert totals["discount_amount"] == 42.5
    assert totals["taxable_amount"] == 407.49
    assert totals["tax_amount"] == 33.62
    assert totals["total"] == 441.11


def test_discounts_are_capped():
    items = [{"quantity": 1, "unit_price": 100}]
    assert calculate_totals(items, "percentage", 150)["discount_amount"] == 100.0
    assert calculate_totals(items, "fixed", 500)["total"] == 0.0


def test_no_items_gives_zero_totals():
    totals = calculate_totals([])
    assert totals["subtotal"] == 0.0
    assert totals["total"] == 0.0


@pytest.mark.parametrize("kwargs", [
    {"discount_value": -1},
    {"additional_fees": -5},
    {"tax_rate": -2},
    {"discount_type": "bogus"},
])
def test_invalid_inputs_rejected(kwargs):
    with pytest.raises(ValidationFailed):
        calculate_totals([{"quantity": 1, "unit_price": 10}], **kwargs)


def test_negative_line_rejected():
    with pytest.raises(ValidationFailed):
        calculate_totals([{"quantity": -1, "unit_price": 10}])
