from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import api_error
from discounts import DiscountCode, DiscountKind, DiscountService, evaluate_discount


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def code(**overrides):
    fields = {
        "id": "dc-1",
        "code": "SAVE10",
        "kind": DiscountKind.PERCENTAGE,
        "value": Decimal("10"),
    }
    fields.update(overrides)
    return DiscountCode(**fields)


# ============================================================================
# EVALUATION
# ============================================================================

def test_percentage_discount():
    result = evaluate_discount(code(), Decimal("900"), NOW)

    assert result.valid
    assert result.discount_amount == Decimal("90.00")


def test_percentage_discount_is_capped():
    result = evaluate_discount(code(max_discount_amount=Decimal("50")), Decimal("900"), NOW)

    assert result.discount_amount == Decimal("50.00")


def test_fixed_discount_never_exceeds_order():
    result = evaluate_discount(
        code(kind=DiscountKind.FIXED, value=Decimal("100")), Decimal("60"), NOW
    )

    assert result.discount_amount == Decimal("60.00")


def test_minimum_order_message_uses_currency():
    result = evaluate_discount(code(min_order_amount=Decimal("1000")), Decimal("900"), NOW)

    assert not result.valid
    assert result.message == "Minimum order amount of ৳1,000.00 required."


@pytest.mark.parametrize("overrides,error", [
    ({"is_active": False}, "Invalid discount code"),
    ({"expires_at": NOW - timedelta(days=1)}, "Expired code"),
    ({"starts_at": NOW + timedelta(days=1)}, "Code not started"),
    ({"usage_limit": 5, "usage_count": 5}, "Usage limit reached"),
])
def test_invalid_codes(overrides, error):
    result = evaluate_discount(code(**overrides), Decimal("900"), NOW)

    assert not result.valid
    assert result.error == error


def test_from_row_normalizes_code():
    parsed = DiscountCode.from_row({
        "id": 7,
        "code": " welcome ",
        "discount_type": "fixed",
        "discount_value": "75",
        "expires_at": "2026-12-31T23:59:59Z",
    })

    assert parsed.code == "WELCOME"
    assert parsed.kind == DiscountKind.FIXED
    assert parsed.one_per_customer is True
    assert parsed.expires_at.tzinfo is not None
    assert parsed.describe() == "৳75.00 off"


# ============================================================================
# SERVICE
# ============================================================================

@pytest.fixture
def service(db):
    db.discount_codes["SAVE10"] = {
        "id": "dc-1",
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": "10",
        "is_active": True,
    }
    return DiscountService(db)


async def test_validate_known_code(service):
    result = await service.validate("save10", "user-1", Decimal("900"), NOW)

    assert result.valid
    assert result.discount_amount == Decimal("90.00")


async def test_validate_empty_and_unknown(service):
    empty = await service.validate("  ", None, Decimal("900"), NOW)
    unknown = await service.validate("NOPE", None, Decimal("900"), NOW)

    assert empty.message == "Please enter a discount code."
    assert unknown.error == "Invalid discount code"


async def test_validate_rejects_second_use_by_customer(service, db):
    db.discount_usage.append({"discount_code_id": "dc-1", "user_id": "user-1", "order_id": "o-0"})

    result = await service.validate("SAVE10", "user-1", Decimal("900"), NOW)

    assert not result.valid
    assert result.error == "Already used"


async def test_record_usage_is_idempotent_per_order(service, db):
    discount = code()

    first = await service.record_usage(discount, "order-1", "user-1", Decimal("90"), Decimal("882"))
    second = await service.record_usage(discount, "order-1", "user-1", Decimal("90"), Decimal("882"))

    assert first.success and not first.already_recorded
    assert second.success and second.already_recorded
    assert len(db.discount_usage) == 1


async def test_unique_violation_counts_as_recorded(service, db):
    db.usage_error = api_error("23505", "duplicate key value")

    result = await service.record_usage(code(), "order-1", None, Decimal("90"), Decimal("882"))

    assert result.success
    assert result.already_recorded


async def test_usage_limit_violation(service, db):
    db.usage_error = api_error("23514", 'violates check constraint "usage_count_within_limit"')

    result = await service.record_usage(code(), "order-1", None, Decimal("90"), Decimal("882"))

    assert not result.success
    assert result.error_type == "usage_limit_reached"
