"""
Pricing Module
==============
Pure price and total calculation for the checkout.

Money is Decimal end to end. Nothing here rounds except format_money()
and to_minor_units(), which sit at the display and processor boundaries.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

DEFAULT_CURRENCY = "BDT"
DEFAULT_DELIVERY_THRESHOLD = Decimal("500")
DEFAULT_DELIVERY_FEE = Decimal("50")
DEFAULT_TAX_RATE = Decimal("0.08")

ZERO = Decimal("0")
CENT = Decimal("0.01")

CURRENCY_SYMBOLS = {
    "BDT": "৳",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
}

# Currencies Stripe charges without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "PYG", "UGX"})


# ============================================================================
# POLICY & RESULT
# ============================================================================

@dataclass(frozen=True)
class PricingPolicy:
    """Delivery and tax rules applied to every checkout."""
    delivery_threshold: Decimal = DEFAULT_DELIVERY_THRESHOLD
    delivery_fee: Decimal = DEFAULT_DELIVERY_FEE
    tax_rate: Decimal = DEFAULT_TAX_RATE
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def from_config(cls, checkout_config) -> "PricingPolicy":
        """Build from config.CheckoutConfig."""
        return cls(
            delivery_threshold=checkout_config.delivery_threshold,
            delivery_fee=checkout_config.delivery_fee,
            tax_rate=checkout_config.tax_rate,
            currency=checkout_config.currency_code
        )


@dataclass(frozen=True)
class OrderTotals:
    """
    Derived totals for one cart.

    grand_total is never negative.
    """
    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    discount_amount: Decimal
    grand_total: Decimal

    @property
    def total_before_discount(self) -> Decimal:
        """Amount discount codes are checked and computed against."""
        return self.subtotal + self.delivery_fee + self.tax

    def to_dict(self) -> Dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "delivery_fee": str(self.delivery_fee),
            "tax": str(self.tax),
            "discount_amount": str(self.discount_amount),
            "grand_total": str(self.grand_total),
        }

    def formatted(self, currency: str = DEFAULT_CURRENCY) -> Dict[str, str]:
        """Display strings for every component."""
        return {
            "subtotal": format_money(self.subtotal, currency),
            "delivery_fee": format_money(self.delivery_fee, currency),
            "tax": format_money(self.tax, currency),
            "discount_amount": format_money(self.discount_amount, currency),
            "grand_total": format_money(self.grand_total, currency),
        }


# ============================================================================
# MONEY HELPERS
# ============================================================================

def parse_price(value: Any) -> Decimal:
    """
    Parse a price from a number or numeric string.

    Returns:
        Decimal value, or 0 for None, booleans, garbage and non-finite values
    """
    if value is None or isinstance(value, bool):
        return ZERO

    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return ZERO

    if not parsed.is_finite():
        return ZERO

    return parsed


def format_money(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    """Render an amount with its currency symbol at two decimals (half-up)."""
    code = (currency or DEFAULT_CURRENCY).upper()
    rounded = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    symbol = CURRENCY_SYMBOLS.get(code)

    if symbol is None:
        return f"{code} {rounded:,.2f}"

    if rounded < 0:
        return f"-{symbol}{-rounded:,.2f}"
    return f"{symbol}{rounded:,.2f}"


def to_minor_units(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> int:
    """Convert to the processor's integer minor units (paisa, cents)."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================================
# CALCULATIONS
# ============================================================================

def calculate_subtotal(priced_lines: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """Sum of unit price × quantity."""
    subtotal = ZERO
    for price, quantity in priced_lines:
        subtotal += parse_price(price) * quantity
    return subtotal


def calculate_delivery_fee(subtotal: Decimal, policy: PricingPolicy) -> Decimal:
    """Flat fee, waived only when the subtotal strictly exceeds the threshold."""
    if subtotal > policy.delivery_threshold:
        return ZERO
    return policy.delivery_fee


def calculate_tax(subtotal: Decimal, policy: PricingPolicy) -> Decimal:
    """Flat percentage of the subtotal (delivery is not taxed)."""
    return subtotal * policy.tax_rate


def calculate_totals(
    priced_lines: Iterable[Tuple[Decimal, int]],
    policy: Optional[PricingPolicy] = None,
    discount_amount: Decimal = ZERO
) -> OrderTotals:
    """
    Derive order totals.

    Args:
        priced_lines: (unit price, quantity) pairs
        policy: Delivery/tax policy (defaults apply when None)
        discount_amount: Code discount, subtracted after delivery and tax

    Returns:
        OrderTotals with grand_total floored at zero
    """
    policy = policy or PricingPolicy()

    subtotal = calculate_subtotal(priced_lines)
    delivery_fee = calculate_delivery_fee(subtotal, policy)
    tax = calculate_tax(subtotal, policy)
    discount = max(ZERO, parse_price(discount_amount))

    grand_total = max(ZERO, subtotal + delivery_fee + tax - discount)

    return OrderTotals(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        tax=tax,
        discount_amount=discount,
        grand_total=grand_total
    )
