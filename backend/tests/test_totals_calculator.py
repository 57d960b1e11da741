"""
Line & totals calculator tests
"""
from decimal import Decimal
import logging
import random

import pytest

from finance_core.domain import Discount, DiscountType, LineItem
from finance_core.errors import CalculationError, ValidationError
from finance_core.financial_precision import Money
from finance_core.totals_calculator import CalculationDraft, calculate_line, calculate_totals


def line(number, qty, price, rate="0.15", currency="NZD", discount=None, inclusive=False):
    return LineItem(
        line_number=number,
        quantity=Decimal(qty),
        unit_price=Money.exact(Decimal(price), currency),
        tax_rate=Decimal(rate),
        discount=discount or Discount.none(),
        tax_inclusive=inclusive,
    )


def draft(*lines, discount=None, rate="0.15"):
    return CalculationDraft(
        currency="NZD",
        tax_rate=Decimal(rate),
        line_items=tuple(lines),
        discount=discount or Discount.none(),
    )


class TestScenarios:
    def test_basic_quote(self):
        result = calculate_totals(draft(line(1, "10", "500.00"), line(2, "2", "500.00")))

        assert result.subtotal == Decimal("6000.00")
        assert result.tax_amount == Decimal("900.00")
        assert result.grand_total == Decimal("6900.00")
        assert result.discount_amount == Decimal("0.00")

    def test_line_percentage_discount(self):
        item = line(1, "24", "100.00", discount=Discount(DiscountType.PERCENTAGE, Decimal("0.10")))
        result = calculate_totals(draft(item))

        breakdown = result.lines[0]
        assert breakdown.subtotal == Decimal("2400.00")
        assert breakdown.discount_amount == Decimal("240.00")
        assert result.subtotal == Decimal("2160.00")
        assert result.tax_amount == Decimal("324.00")
        assert result.grand_total == Decimal("2484.00")
        assert result.line_discount_total == Decimal("240.00")

    def test_fixed_line_discount(self):
        item = line(1, "1", "100.00", discount=Discount(DiscountType.FIXED, Decimal("25.00")))
        result = calculate_line(item, "NZD")
        assert result.discounted_subtotal == Decimal("75.00")
        assert result.tax_amount == Decimal("11.25")
        assert result.total == Decimal("86.25")

    def test_per_unit_line_discount(self):
        item = line(1, "4", "10.00", discount=Discount(DiscountType.PER_UNIT, Decimal("1.50")))
        result = calculate_line(item, "NZD")
        assert result.discount_amount == Decimal("6.00")
        assert result.discounted_subtotal == Decimal("34.00")

    def test_credit_line_carries_no_tax(self):
        item = line(1, "1", "50.00", discount=Discount(DiscountType.FIXED, Decimal("80.00")))
        result = calculate_line(item, "NZD")
        assert result.discounted_subtotal == Decimal("-30.00")
        assert result.tax_amount == Decimal("0.00")
        assert result.total == Decimal("-30.00")

    def test_tax_inclusive_line(self):
        result = calculate_line(line(1, "1", "115.00", inclusive=True), "NZD")
        assert result.discounted_subtotal == Decimal("100.00")
        assert result.tax_amount == Decimal("15.00")
        assert result.total == Decimal("115.00")

    def test_document_discount_recomputes_tax_at_default_rate(self):
        # Line is zero-rated, but a document discount taxes the whole
        # discounted subtotal at the document rate
        result = calculate_totals(draft(
            line(1, "10", "100.00", rate="0"),
            discount=Discount(DiscountType.PERCENTAGE, Decimal("0.10")),
        ))
        assert result.subtotal == Decimal("1000.00")
        assert result.discount_amount == Decimal("100.00")
        assert result.taxable_amount == Decimal("900.00")
        assert result.tax_amount == Decimal("135.00")
        assert result.grand_total == Decimal("1035.00")
        assert result.document_discount_applied

    def test_zero_document_discount_is_ignored(self):
        result = calculate_totals(draft(
            line(1, "1", "100.00", rate="0"),
            discount=Discount(DiscountType.FIXED, Decimal("0")),
        ))
        assert result.tax_amount == Decimal("0.00")
        assert not result.document_discount_applied

    def test_fixed_document_discount(self):
        result = calculate_totals(draft(
            line(1, "2", "50.00"),
            discount=Discount(DiscountType.FIXED, Decimal("20.00")),
        ))
        assert result.discount_amount == Decimal("20.00")
        assert result.taxable_amount == Decimal("80.00")
        assert result.grand_total == Decimal("92.00")

    def test_sub_cent_unit_price_is_rounded_once(self):
        result = calculate_line(line(1, "1000", "0.125", rate="0"), "NZD")
        assert result.subtotal == Decimal("125.00")

        result = calculate_line(line(1, "3", "0.3333"), "NZD")
        assert result.subtotal == Decimal("1.00")
        assert result.tax_amount == Decimal("0.15")
        assert result.total == Decimal("1.15")

    def test_input_is_not_mutated(self):
        items = (line(1, "3", "33.33"),)
        calc_draft = draft(*items)
        calculate_totals(calc_draft)
        assert calc_draft.line_items == items
        assert items[0].unit_price.amount == Decimal("33.33")


class TestNoDrift:
    def test_line_totals_add_up_for_a_thousand_random_lines(self):
        rng = random.Random(20240101)
        lines = []
        for n in range(1, 1001):
            discount = Discount.none()
            if n % 3 == 0:
                discount = Discount(DiscountType.PERCENTAGE, Decimal(rng.randint(0, 100)) / 100)
            elif n % 7 == 0:
                discount = Discount(DiscountType.FIXED, Decimal(rng.randint(0, 5000)) / 100)
            lines.append(line(
                n,
                str(Decimal(rng.randint(1, 5000)) / 100),
                str(Decimal(rng.randint(1, 999999)) / 1000),
                rate=rng.choice(["0", "0.15", "0.125", "0.2"]),
                discount=discount,
                inclusive=(n % 11 == 0),
            ))

        result = calculate_totals(draft(*lines))

        assert sum(l.total for l in result.lines) == result.grand_total
        assert result.grand_total == result.subtotal + result.tax_amount
        assert result.grand_total.as_tuple().exponent == -2


class TestErrors:
    def test_empty_draft(self):
        with pytest.raises(CalculationError):
            calculate_totals(draft())

    @pytest.mark.parametrize("qty", ["0", "-1"])
    def test_non_positive_quantity(self, qty):
        with pytest.raises(CalculationError):
            calculate_totals(draft(line(1, qty, "10.00")))

    def test_line_currency_mismatch(self):
        with pytest.raises(CalculationError):
            calculate_totals(draft(line(1, "1", "10.00", currency="AUD")))

    def test_duplicate_line_numbers(self):
        with pytest.raises(CalculationError):
            calculate_totals(draft(line(1, "1", "10.00"), line(1, "2", "10.00")))

    def test_line_numbers_start_at_one(self):
        with pytest.raises(CalculationError):
            calculate_totals(draft(line(0, "1", "10.00")))

    def test_per_unit_document_discount_is_rejected(self):
        with pytest.raises(ValidationError):
            calculate_totals(draft(
                line(1, "1", "10.00"),
                discount=Discount(DiscountType.PER_UNIT, Decimal("1")),
            ))

    def test_out_of_range_percentage(self):
        item = line(1, "1", "10.00", discount=Discount(DiscountType.PERCENTAGE, Decimal("1.5")))
        with pytest.raises(ValidationError):
            calculate_totals(draft(item))

    def test_calculation_errors_are_logged(self, caplog):
        with caplog.at_level(logging.ERROR, logger="finance_core.totals_calculator"):
            with pytest.raises(CalculationError):
                calculate_totals(draft(line(1, "0", "10.00")))
        assert any(r.levelno == logging.ERROR for r in caplog.records)
