"""
LINE & TOTALS CALCULATOR

Composes the money engine over an ordered list of line items.

LOCKED FORMULAS (per line, each value rounded on its own):
- line_subtotal       = round(quantity * unit_price)
- discounted_subtotal = line_subtotal - line discount
- line_tax            = compute_tax(discounted_subtotal, tax_rate)
- line_total          = discounted_subtotal + line_tax

LOCKED FORMULAS (document level):
- subtotal       = SUM(discounted_subtotal)
- final_subtotal = subtotal - document discount
- tax_amount     = SUM(line_tax), or compute_tax(final_subtotal, default rate)
                   when a document-level discount was applied
- grand_total    = final_subtotal + tax_amount

Discount precedence is fixed: line discount, then document discount.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Sequence, Tuple
import logging

from .domain import Discount, DiscountType, LineCalculation, LineItem, Quote
from .errors import CalculationError, ValidationError
from .financial_precision import (
    ZERO,
    add_tax,
    apply_fixed_discount,
    apply_per_unit_discount,
    apply_percentage_discount,
    compute_tax,
    extract_inclusive_tax,
    round_financial,
    to_decimal,
    validate_currency,
    validate_rate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalculationDraft:
    """Everything the calculator needs from a quote or an invoice draft."""

    currency: str
    tax_rate: Decimal
    line_items: Sequence[LineItem]
    discount: Discount = field(default_factory=Discount.none)

    @classmethod
    def from_quote(cls, quote: Quote) -> "CalculationDraft":
        return cls(
            currency=quote.currency,
            tax_rate=quote.tax_rate,
            line_items=tuple(quote.line_items),
            discount=quote.discount,
        )


@dataclass(frozen=True)
class TotalsResult:
    currency: str
    lines: Tuple[LineCalculation, ...]
    subtotal: Decimal
    line_discount_total: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    grand_total: Decimal
    document_discount_applied: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "lines": [line.to_dict() for line in self.lines],
            "subtotal": str(self.subtotal),
            "line_discount_total": str(self.line_discount_total),
            "discount_amount": str(self.discount_amount),
            "taxable_amount": str(self.taxable_amount),
            "tax_amount": str(self.tax_amount),
            "grand_total": str(self.grand_total),
        }


def _fail(message: str, **details) -> CalculationError:
    logger.error(f"[CALCULATION] {message} {details if details else ''}".rstrip())
    return CalculationError(message, details)


def _apply_line_discount(item: LineItem, subtotal: Decimal) -> Tuple[Decimal, Decimal]:
    """Returns (discount_amount, discounted_subtotal)."""
    discount = item.discount
    if discount.type is DiscountType.NONE:
        return round_financial(ZERO), subtotal
    if discount.type is DiscountType.PERCENTAGE:
        amount = apply_percentage_discount(subtotal, discount.value)
        return amount, round_financial(subtotal - amount)
    if discount.type is DiscountType.FIXED:
        discounted = apply_fixed_discount(subtotal, discount.value)
        return round_financial(discount.value), discounted
    if discount.type is DiscountType.PER_UNIT:
        amount = apply_per_unit_discount(item.quantity, discount.value)
        return amount, apply_fixed_discount(subtotal, amount)
    raise _fail(f"Unsupported discount type: {discount.type}", line_number=item.line_number)


def calculate_line(item: LineItem, currency: str) -> LineCalculation:
    """Price one line independently of every other line."""
    if item.quantity <= ZERO:
        raise _fail(
            f"Quantity must be positive on line {item.line_number}: {item.quantity}",
            line_number=item.line_number,
        )
    if item.unit_price.currency != currency:
        raise _fail(
            f"Line {item.line_number} is priced in {item.unit_price.currency}, "
            f"document currency is {currency}",
            line_number=item.line_number,
        )

    subtotal = round_financial(item.quantity * item.unit_price.amount)
    discount_amount, discounted = _apply_line_discount(item, subtotal)

    if item.tax_inclusive:
        net, tax = extract_inclusive_tax(discounted, item.tax_rate)
        return LineCalculation(
            line_number=item.line_number,
            subtotal=subtotal,
            discount_amount=discount_amount,
            discounted_subtotal=net,
            tax_amount=tax,
            total=discounted,
        )

    tax = compute_tax(discounted, item.tax_rate)
    return LineCalculation(
        line_number=item.line_number,
        subtotal=subtotal,
        discount_amount=discount_amount,
        discounted_subtotal=discounted,
        tax_amount=tax,
        total=add_tax(discounted, item.tax_rate),
    )


def _validate_line_numbers(line_items: Sequence[LineItem]) -> None:
    seen = set()
    for item in line_items:
        if item.line_number < 1:
            raise _fail(f"Line numbers start at 1: {item.line_number}", line_number=item.line_number)
        if item.line_number in seen:
            raise _fail(f"Duplicate line number: {item.line_number}", line_number=item.line_number)
        seen.add(item.line_number)


def _apply_document_discount(discount: Discount, subtotal: Decimal) -> Tuple[Decimal, Decimal]:
    """Returns (discount_amount, final_subtotal)."""
    if discount.type is DiscountType.PERCENTAGE:
        amount = apply_percentage_discount(subtotal, discount.value)
        return amount, round_financial(subtotal - amount)
    if discount.type is DiscountType.FIXED:
        return round_financial(discount.value), apply_fixed_discount(subtotal, discount.value)
    if discount.type is DiscountType.PER_UNIT:
        raise ValidationError("Per-unit discounts can only be applied to line items")
    return round_financial(ZERO), subtotal


def calculate_totals(draft: CalculationDraft) -> TotalsResult:
    """
    Price a quote or invoice draft. Never mutates its input.

    Raises:
        CalculationError: empty draft, non-positive quantity, currency
            mismatch, bad or duplicate line numbers, broken totals invariant
        ValidationError: out-of-range rate or discount value
    """
    currency = validate_currency(draft.currency)
    default_rate = validate_rate(draft.tax_rate, "tax rate")

    if not draft.line_items:
        raise _fail("At least one line item is required")
    _validate_line_numbers(draft.line_items)

    lines = tuple(calculate_line(item, currency) for item in draft.line_items)

    subtotal = round_financial(sum((line.discounted_subtotal for line in lines), ZERO))
    line_discount_total = round_financial(sum((line.discount_amount for line in lines), ZERO))
    line_tax_total = round_financial(sum((line.tax_amount for line in lines), ZERO))

    discount = draft.discount
    document_discount_applied = not discount.is_none and to_decimal(discount.value) > ZERO

    if document_discount_applied:
        discount_amount, final_subtotal = _apply_document_discount(discount, subtotal)
        # Line-level tax is discarded once a document discount applies
        tax_amount = compute_tax(final_subtotal, default_rate)
    else:
        discount_amount, final_subtotal = round_financial(ZERO), subtotal
        tax_amount = line_tax_total

    grand_total = round_financial(final_subtotal + tax_amount)

    if not document_discount_applied:
        line_total_sum = round_financial(sum((line.total for line in lines), ZERO))
        if line_total_sum != grand_total:
            raise _fail(
                "Line totals do not add up to the grand total",
                line_total_sum=str(line_total_sum),
                grand_total=str(grand_total),
            )

    return TotalsResult(
        currency=currency,
        lines=lines,
        subtotal=subtotal,
        line_discount_total=line_discount_total,
        discount_amount=discount_amount,
        taxable_amount=final_subtotal,
        tax_amount=tax_amount,
        grand_total=grand_total,
        document_discount_applied=document_discount_applied,
    )


def apply_totals(quote: Quote, totals: TotalsResult) -> None:
    """Copy a calculation result onto a quote."""
    quote.line_results = list(totals.lines)
    quote.subtotal = totals.subtotal
    quote.line_discount_total = totals.line_discount_total
    quote.discount_amount = totals.discount_amount
    quote.tax_amount = totals.tax_amount
    quote.total_amount = totals.grand_total
