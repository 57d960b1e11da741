from pydantic import BaseModel, Field
from typing import Optional, List
from decimal import Decimal

from finance_core.domain import Discount, DiscountType
from finance_core.quote_workflow import LineInput, QuoteInput

# ============================================
# PRICING INPUT
# ============================================
class DiscountIn(BaseModel):
    type: DiscountType = DiscountType.NONE
    value: Decimal = Field(default=Decimal("0"), ge=0)

    def to_discount(self) -> Discount:
        return Discount(type=self.type, value=self.value)


class LineItemIn(BaseModel):
    line_number: Optional[int] = Field(default=None, ge=1)
    description: str = ""
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Optional[Decimal] = None  # Defaults to the quote rate
    currency: Optional[str] = None  # Defaults to the quote currency
    tax_inclusive: bool = False
    discount: Optional[DiscountIn] = None

    def to_input(self) -> LineInput:
        return LineInput(
            line_number=self.line_number,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            tax_rate=self.tax_rate,
            currency=self.currency,
            tax_inclusive=self.tax_inclusive,
            discount=self.discount.to_discount() if self.discount else Discount.none(),
        )


def _lines(items: Optional[List[LineItemIn]]):
    return None if items is None else [item.to_input() for item in items]


class CalculateRequest(BaseModel):
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    discount: Optional[DiscountIn] = None
    line_items: List[LineItemIn]

    def to_input(self) -> QuoteInput:
        return QuoteInput(
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount=self.discount.to_discount() if self.discount else None,
            line_items=_lines(self.line_items),
        )

# ============================================
# QUOTE MODELS
# ============================================
class QuoteCreate(BaseModel):
    customer_id: str
    title: str
    description: Optional[str] = None
    notes: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    discount: Optional[DiscountIn] = None
    line_items: List[LineItemIn] = []

    def to_input(self) -> QuoteInput:
        return QuoteInput(
            customer_id=self.customer_id,
            title=self.title,
            description=self.description,
            notes=self.notes,
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount=self.discount.to_discount() if self.discount else None,
            line_items=_lines(self.line_items),
        )


class QuoteUpdate(BaseModel):
    customer_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    discount: Optional[DiscountIn] = None
    line_items: Optional[List[LineItemIn]] = None
    reason: Optional[str] = None  # Recorded on the version snapshot

    def to_input(self) -> QuoteInput:
        return QuoteInput(
            customer_id=self.customer_id,
            title=self.title,
            description=self.description,
            notes=self.notes,
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount=self.discount.to_discount() if self.discount else None,
            line_items=_lines(self.line_items),
        )


class StatusTransitionRequest(BaseModel):
    status: str
    reason: Optional[str] = None

# ============================================
# PAYMENT MODELS
# ============================================
class PaymentCreate(BaseModel):
    amount: Decimal
    currency: str
    reference: Optional[str] = None
    method: str = "bank_transfer"


class PaymentVoid(BaseModel):
    reason: str
