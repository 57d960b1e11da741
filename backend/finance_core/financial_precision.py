"""
MONEY ENGINE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2 decimal places, half-up)
2. Money value type with currency enforcement
3. Discount and tax primitives
4. Decimal128 conversion for MongoDB storage

Everything here is pure: no I/O, no shared state. Errors are raised to the
caller and never swallowed.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Tuple, Union

from bson import Decimal128

from .errors import CurrencyMismatch, ValidationError

# Precision configuration
DECIMAL_PLACES = 2
ZERO = Decimal("0")
ONE = Decimal("1")

Numeric = Union[int, float, str, Decimal]


def to_decimal(value: Union[Numeric, Decimal128]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert boolean {value!r} to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, Decimal128):
        result = value.to_decimal()
    elif isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Not a decimal number: {value!r}")
    else:
        raise ValidationError(f"Cannot convert {type(value).__name__} to Decimal")

    if not result.is_finite():
        raise ValidationError(f"Monetary values must be finite: {value!r}")
    return result


def _quantum(scale: int) -> Decimal:
    return ONE.scaleb(-scale)


def round_financial(value: Numeric, scale: int = DECIMAL_PLACES) -> Decimal:
    """
    Round half-up (0.5 goes away from zero) to ``scale`` places.
    Call at every boundary where a value is persisted or displayed.
    """
    return to_decimal(value).quantize(_quantum(scale), rounding=ROUND_HALF_UP)


def to_decimal128(value: Numeric) -> Decimal128:
    """Convert to Decimal128 for MongoDB storage (rounded first)."""
    return Decimal128(round_financial(value))


def from_decimal128(value) -> Decimal:
    """Read a stored amount back; missing values read as zero."""
    if value is None:
        return round_financial(ZERO)
    return round_financial(value)


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        raise ValidationError(f"'{field_name}' cannot be negative: {value}")
    return decimal_value


def validate_positive(value: Numeric, field_name: str) -> Decimal:
    decimal_value = to_decimal(value)
    if decimal_value <= ZERO:
        raise ValidationError(f"'{field_name}' must be positive: {value}")
    return decimal_value


def validate_rate(rate: Numeric, field_name: str = "rate") -> Decimal:
    """Rates and percentage discounts are fractions in [0, 1]."""
    decimal_rate = to_decimal(rate)
    if decimal_rate < ZERO or decimal_rate > ONE:
        raise ValidationError(f"'{field_name}' must be between 0 and 1: {rate}")
    return decimal_rate


def validate_currency(currency: str) -> str:
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"Invalid ISO currency code: {currency!r}")
    return currency.upper()


# =============================================================================
# MONEY VALUE TYPE
# =============================================================================

@dataclass(frozen=True)
class Money:
    """
    A decimal amount tagged with a currency code, rounded to scale 2.

    Unit prices are the one exception: ``Money.exact`` keeps the full
    precision so a line is rounded once, after quantity * price.
    """

    amount: Decimal
    currency: str

    def __post_init__(self):
        object.__setattr__(self, "amount", round_financial(self.amount))
        object.__setattr__(self, "currency", validate_currency(self.currency))

    @classmethod
    def exact(cls, amount: Numeric, currency: str) -> "Money":
        money = cls(ZERO, currency)
        object.__setattr__(money, "amount", to_decimal(amount))
        return money

    def _check_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise CurrencyMismatch(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount


# =============================================================================
# DISCOUNTS
# =============================================================================

def apply_percentage_discount(amount: Numeric, pct: Numeric) -> Decimal:
    """
    Discount amount for a fractional percentage: round(amount * pct).
    pct must be in [0, 1].
    """
    rate = validate_rate(pct, "percentage discount")
    return round_financial(to_decimal(amount) * rate)


def apply_fixed_discount(amount: Numeric, fixed: Numeric) -> Decimal:
    """
    Discounted amount: round(amount - fixed).
    The result may go negative (a credit line).
    """
    fixed_value = validate_non_negative(fixed, "fixed discount")
    return round_financial(to_decimal(amount) - fixed_value)


def apply_per_unit_discount(quantity: Numeric, per_unit: Numeric) -> Decimal:
    """Discount amount for a per-unit reduction: round(quantity * per_unit)."""
    per_unit_value = validate_non_negative(per_unit, "per-unit discount")
    return round_financial(to_decimal(quantity) * per_unit_value)


# =============================================================================
# TAX
# =============================================================================

def compute_tax(base: Numeric, rate: Numeric) -> Decimal:
    """
    Tax on a taxable base: round(base * rate).
    A zero or negative base (credit line) carries no tax.
    """
    decimal_rate = validate_rate(rate, "tax rate")
    decimal_base = to_decimal(base)
    if decimal_base <= ZERO:
        return round_financial(ZERO)
    return round_financial(decimal_base * decimal_rate)


def add_tax(base: Numeric, rate: Numeric) -> Decimal:
    """Tax-exclusive base plus its tax."""
    return round_financial(round_financial(base) + compute_tax(base, rate))


def extract_inclusive_tax(gross: Numeric, rate: Numeric) -> Tuple[Decimal, Decimal]:
    """
    Split a tax-inclusive amount into (net, tax).

    net = round(gross / (1 + rate)), tax = gross - net, so net + tax == gross
    exactly. Non-positive gross amounts are tax-exempt.
    """
    decimal_rate = validate_rate(rate, "tax rate")
    decimal_gross = round_financial(gross)
    if decimal_gross <= ZERO:
        return decimal_gross, round_financial(ZERO)
    net = round_financial(decimal_gross / (ONE + decimal_rate))
    return net, round_financial(decimal_gross - net)
