from decimal import Decimal

import pytest

from pricing import (
    PricingPolicy,
    calculate_delivery_fee,
    calculate_totals,
    format_money,
    parse_price,
    to_minor_units,
)


def test_totals_above_threshold_waive_delivery():
    totals = calculate_totals([(Decimal("450"), 2)])

    assert totals.subtotal == Decimal("900")
    assert totals.delivery_fee == Decimal("0")
    assert totals.tax == Decimal("72.00")
    assert totals.grand_total == Decimal("972.00")


def test_discount_is_subtracted_after_tax():
    totals = calculate_totals([(Decimal("450"), 2)], discount_amount=Decimal("100"))

    assert totals.discount_amount == Decimal("100")
    assert totals.grand_total == Decimal("872.00")
    assert totals.total_before_discount == Decimal("972.00")


def test_total_before_discount_includes_delivery():
    assert calculate_totals([(Decimal("450"), 1)]).total_before_discount == Decimal("536.00")


@pytest.mark.parametrize("subtotal,fee", [
    (Decimal("499.99"), Decimal("50")),
    (Decimal("500"), Decimal("50")),
    (Decimal("500.01"), Decimal("0")),
])
def test_delivery_fee_threshold_is_strict(subtotal, fee):
    assert calculate_delivery_fee(subtotal, PricingPolicy()) == fee


def test_grand_total_never_negative():
    totals = calculate_totals([(Decimal("20"), 1)], discount_amount=Decimal("1000"))

    assert totals.grand_total == Decimal("0")


def test_empty_cart_still_charges_delivery():
    totals = calculate_totals([])

    assert totals.subtotal == Decimal("0")
    assert totals.delivery_fee == Decimal("50")
    assert totals.grand_total == Decimal("50")


def test_policy_overrides():
    policy = PricingPolicy(
        delivery_threshold=Decimal("100"),
        delivery_fee=Decimal("5"),
        tax_rate=Decimal("0.10"),
        currency="USD"
    )
    totals = calculate_totals([(Decimal("40"), 1)], policy=policy)

    assert totals.delivery_fee == Decimal("5")
    assert totals.tax == Decimal("4.00")
    assert totals.grand_total == Decimal("49.00")


@pytest.mark.parametrize("value,expected", [
    ("12.50", Decimal("12.50")),
    (7, Decimal("7")),
    (None, Decimal("0")),
    (True, Decimal("0")),
    ("abc", Decimal("0")),
    ("NaN", Decimal("0")),
    ("Infinity", Decimal("0")),
])
def test_parse_price(value, expected):
    assert parse_price(value) == expected


def test_format_money_rounds_half_up():
    assert format_money(Decimal("972.005")) == "৳972.01"
    assert format_money(Decimal("1234.5"), "USD") == "$1,234.50"
    assert format_money(Decimal("-3"), "BDT") == "-৳3.00"
    assert format_money(Decimal("10"), "CHF") == "CHF 10.00"


def test_totals_keep_full_precision_until_display():
    totals = calculate_totals([(Decimal("0.05"), 1)])

    assert totals.tax == Decimal("0.0040")
    assert totals.formatted()["tax"] == "৳0.00"


def test_minor_units():
    assert to_minor_units(Decimal("972.00"), "BDT") == 97200
    assert to_minor_units(Decimal("0.125"), "USD") == 13
    assert to_minor_units(Decimal("1500"), "JPY") == 1500
