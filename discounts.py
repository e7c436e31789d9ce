"""
Discount Codes
==============
Read-only code validation during checkout, usage recorded once per order.

Validation is not atomic. Races are settled by the store's constraints:
unique (discount_code_id, order_id) on discount_code_usage and the
usage_count <= usage_limit check on discount_codes.
"""

import logging
from typing import Dict, Any, Optional, Set, Tuple
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from postgrest.exceptions import APIError

from pricing import parse_price, format_money, DEFAULT_CURRENCY, ZERO, CENT


logger = logging.getLogger(__name__)


UNIQUE_VIOLATION = "23505"
CHECK_VIOLATION = "23514"


class DiscountKind(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# ============================================================================
# MODELS
# ============================================================================

@dataclass(frozen=True)
class DiscountCode:
    """A discount_codes row."""
    id: str
    code: str
    kind: DiscountKind
    value: Decimal
    min_order_amount: Decimal = ZERO
    max_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    one_per_customer: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DiscountCode":
        max_discount = row.get("max_discount_amount")
        return cls(
            id=str(row["id"]),
            code=str(row.get("code", "")).upper().strip(),
            kind=DiscountKind(row.get("discount_type", "percentage")),
            value=parse_price(row.get("discount_value")),
            min_order_amount=parse_price(row.get("min_order_amount")),
            max_discount_amount=parse_price(max_discount) if max_discount else None,
            usage_limit=row.get("usage_limit") or None,
            usage_count=int(row.get("usage_count") or 0),
            one_per_customer=row.get("one_per_customer", True) is not False,
            starts_at=parse_timestamp(row.get("starts_at")),
            expires_at=parse_timestamp(row.get("expires_at")),
            is_active=bool(row.get("is_active", True)),
            description=row.get("description")
        )

    def describe(self, currency: str = DEFAULT_CURRENCY) -> str:
        """Short display text, e.g. '10% off (max ৳200.00)'."""
        if self.kind == DiscountKind.PERCENTAGE:
            text = f"{self.value.normalize():f}% off"
            if self.max_discount_amount:
                text += f" (max {format_money(self.max_discount_amount, currency)})"
            return text
        return f"{format_money(self.value, currency)} off"


@dataclass(frozen=True)
class DiscountEvaluation:
    """Outcome of checking a code against an order amount."""
    valid: bool
    code: Optional[DiscountCode] = None
    discount_amount: Decimal = ZERO
    error: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class UsageResult:
    success: bool
    already_recorded: bool = False
    error_type: Optional[str] = None
    message: Optional[str] = None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable discount timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# EVALUATION (pure)
# ============================================================================

def evaluate_discount(
    code: DiscountCode,
    order_amount: Decimal,
    now: Optional[datetime] = None,
    currency: str = DEFAULT_CURRENCY
) -> DiscountEvaluation:
    """
    Check a code's time window, minimum and usage limit, then compute the
    discount for order_amount.

    Percentage discounts are capped by max_discount_amount, fixed ones by
    the order amount. The result is rounded to cents.
    """
    now = now or datetime.now(timezone.utc)

    if not code.is_active:
        return DiscountEvaluation(
            valid=False,
            error="Invalid discount code",
            message="This discount code does not exist or is not active."
        )

    if code.expires_at and now > code.expires_at:
        return DiscountEvaluation(
            valid=False,
            error="Expired code",
            message="This discount code has expired."
        )

    if code.starts_at and now < code.starts_at:
        return DiscountEvaluation(
            valid=False,
            error="Code not started",
            message="This discount code is not yet active."
        )

    if code.min_order_amount and order_amount < code.min_order_amount:
        return DiscountEvaluation(
            valid=False,
            error="Minimum order not met",
            message=(
                f"Minimum order amount of "
                f"{format_money(code.min_order_amount, currency)} required."
            )
        )

    if code.usage_limit and code.usage_count >= code.usage_limit:
        return DiscountEvaluation(
            valid=False,
            error="Usage limit reached",
            message="This discount code has reached its usage limit."
        )

    if code.kind == DiscountKind.PERCENTAGE:
        amount = order_amount * code.value / 100
        if code.max_discount_amount and amount > code.max_discount_amount:
            amount = code.max_discount_amount
    else:
        amount = min(code.value, order_amount)

    amount = max(ZERO, amount).quantize(CENT, rounding=ROUND_HALF_UP)

    return DiscountEvaluation(valid=True, code=code, discount_amount=amount)


# ============================================================================
# SERVICE (store-backed)
# ============================================================================

class DiscountService:
    """Fetches codes, checks prior usage and records usage once per order."""

    def __init__(self, db, currency: str = DEFAULT_CURRENCY):
        self.db = db
        self.currency = currency
        self._recorded: Set[Tuple[str, str]] = set()

    async def validate(
        self,
        code_text: str,
        user_id: Optional[str],
        order_amount: Decimal,
        now: Optional[datetime] = None
    ) -> DiscountEvaluation:
        """
        Validate a shopper-entered code.

        Returns:
            DiscountEvaluation; never raises
        """
        code_text = (code_text or "").upper().strip()
        if not code_text:
            return DiscountEvaluation(
                valid=False,
                error="Invalid discount code",
                message="Please enter a discount code."
            )

        try:
            row = await self.db.fetch_discount_code(code_text)
            if not row:
                return DiscountEvaluation(
                    valid=False,
                    error="Invalid discount code",
                    message="This discount code does not exist or is not active."
                )

            code = DiscountCode.from_row(row)
            evaluation = evaluate_discount(code, order_amount, now, self.currency)
            if not evaluation.valid:
                return evaluation

            if code.one_per_customer and user_id:
                if await self.db.has_discount_usage(code.id, user_id):
                    return DiscountEvaluation(
                        valid=False,
                        error="Already used",
                        message="You have already used this discount code."
                    )

            logger.info(
                f"Discount {code.code} valid: {evaluation.discount_amount}",
                extra={"discount_code_id": code.id}
            )
            return evaluation

        except Exception as e:
            logger.error(f"Error validating discount code: {str(e)}", exc_info=True)
            return DiscountEvaluation(
                valid=False,
                error="Validation error",
                message="Failed to validate discount code. Please try again."
            )

    async def record_usage(
        self,
        code: DiscountCode,
        order_id: str,
        user_id: Optional[str],
        discount_amount: Decimal,
        order_total: Decimal
    ) -> UsageResult:
        """
        Record that an order used a code.

        Idempotent per (code, order): a repeat call or a unique violation
        from the store counts as already recorded.
        """
        key = (code.id, order_id)
        if key in self._recorded:
            return UsageResult(success=True, already_recorded=True)

        row = {
            "discount_code_id": code.id,
            "user_id": user_id,
            "order_id": order_id,
            "discount_amount": str(discount_amount),
            "order_total": str(order_total),
        }

        try:
            await self.db.insert_discount_usage(row)

        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.info(f"Discount usage already recorded for order {order_id}")
                self._recorded.add(key)
                return UsageResult(success=True, already_recorded=True)

            if e.code == CHECK_VIOLATION or "usage_count_within_limit" in (e.message or ""):
                logger.warning(f"Discount {code.code} hit its usage limit on order {order_id}")
                return UsageResult(
                    success=False,
                    error_type="usage_limit_reached",
                    message="This discount code has reached its usage limit."
                )

            logger.error(f"Error recording discount code usage: {e.message}")
            return UsageResult(success=False, error_type="store_error", message=e.message)

        except Exception as e:
            logger.error(f"Error recording discount code usage: {str(e)}")
            return UsageResult(success=False, error_type="unavailable", message=str(e))

        self._recorded.add(key)
        return UsageResult(success=True)
