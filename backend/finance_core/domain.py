"""
Domain types shared by the calculator, workflow and payment services.

Monetary and status fields are explicit typed attributes; the engine never
accepts an open dictionary for them. Version snapshots are stored by value
and hold no reference back to the live quote.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .financial_precision import ZERO, Money, round_financial, to_decimal


# =============================================================================
# ENUMS
# =============================================================================

class QuoteStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PART_PAID = "part_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    VOID = "void"


class DiscountType(str, Enum):
    NONE = "none"
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    PER_UNIT = "per_unit"


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class Discount:
    """Closed tagged union: the type decides how ``value`` is read."""

    type: DiscountType = DiscountType.NONE
    value: Decimal = ZERO

    def __post_init__(self):
        object.__setattr__(self, "type", DiscountType(self.type))
        object.__setattr__(self, "value", to_decimal(self.value))

    @classmethod
    def none(cls) -> "Discount":
        return cls()

    @property
    def is_none(self) -> bool:
        return self.type is DiscountType.NONE

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "value": str(self.value)}


@dataclass(frozen=True)
class LineItem:
    line_number: int
    quantity: Decimal
    unit_price: Money
    tax_rate: Decimal
    description: str = ""
    discount: Discount = field(default_factory=Discount.none)
    tax_inclusive: bool = False

    def __post_init__(self):
        object.__setattr__(self, "quantity", to_decimal(self.quantity))
        object.__setattr__(self, "tax_rate", to_decimal(self.tax_rate))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_number": self.line_number,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price.amount),
            "currency": self.unit_price.currency,
            "tax_rate": str(self.tax_rate),
            "tax_inclusive": self.tax_inclusive,
            "discount": self.discount.to_dict(),
        }


@dataclass(frozen=True)
class LineCalculation:
    """Per-line breakdown; every amount is individually rounded."""

    line_number: int
    subtotal: Decimal
    discount_amount: Decimal
    discounted_subtotal: Decimal
    tax_amount: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_number": self.line_number,
            "subtotal": str(self.subtotal),
            "discount_amount": str(self.discount_amount),
            "discounted_subtotal": str(self.discounted_subtotal),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
        }


@dataclass(frozen=True)
class Caller:
    """Authenticated identity a request runs as."""

    user_id: str
    organization_id: str


# =============================================================================
# ENTITIES
# =============================================================================

@dataclass
class Quote:
    id: str
    organization_id: str
    customer_id: str
    title: str
    currency: str
    tax_rate: Decimal
    created_by: str
    quote_number: Optional[str] = None
    status: QuoteStatus = QuoteStatus.DRAFT
    description: Optional[str] = None
    notes: Optional[str] = None
    discount: Discount = field(default_factory=Discount.none)
    line_items: List[LineItem] = field(default_factory=list)
    line_results: List[LineCalculation] = field(default_factory=list)
    subtotal: Decimal = ZERO
    line_discount_total: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    current_version_id: Optional[str] = None
    version_count: int = 0
    state_history: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def copy(self) -> "Quote":
        return replace(
            self,
            line_items=list(self.line_items),
            line_results=list(self.line_results),
            state_history=[dict(entry) for entry in self.state_history],
        )

    def material_fields(self) -> Tuple[Any, ...]:
        """Values whose change counts as an edit for versioning purposes."""
        return (
            self.customer_id,
            self.title,
            self.description,
            self.notes,
            self.currency,
            self.tax_rate,
            self.discount,
            tuple(self.line_items),
        )

    def snapshot(self) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Plain-value copy of the quote header and its line items."""
        results = {r.line_number: r for r in self.line_results}
        lines = []
        for item in self.line_items:
            line = item.to_dict()
            calc = results.get(item.line_number)
            if calc is not None:
                line.update(calc.to_dict())
            lines.append(line)

        header = {
            "id": self.id,
            "quote_number": self.quote_number,
            "organization_id": self.organization_id,
            "customer_id": self.customer_id,
            "title": self.title,
            "description": self.description,
            "notes": self.notes,
            "status": self.status.value,
            "currency": self.currency,
            "tax_rate": str(self.tax_rate),
            "discount": self.discount.to_dict(),
            "subtotal": str(self.subtotal),
            "line_discount_total": str(self.line_discount_total),
            "discount_amount": str(self.discount_amount),
            "tax_amount": str(self.tax_amount),
            "total_amount": str(self.total_amount),
            "current_version_id": self.current_version_id,
            "version_count": self.version_count,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        return header, lines


@dataclass(frozen=True)
class QuoteVersion:
    id: str
    quote_id: str
    organization_id: str
    version_number: int
    quote_snapshot: Dict[str, Any]
    line_item_snapshots: Tuple[Dict[str, Any], ...]
    reason: str
    created_by: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Invoice:
    id: str
    organization_id: str
    currency: str
    total_amount: Decimal
    paid_amount: Decimal = ZERO
    balance_amount: Optional[Decimal] = None
    status: InvoiceStatus = InvoiceStatus.SENT
    invoice_number: Optional[str] = None
    customer_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.total_amount = round_financial(self.total_amount)
        self.paid_amount = round_financial(self.paid_amount)
        if self.balance_amount is None:
            self.balance_amount = round_financial(self.total_amount - self.paid_amount)
        self.status = InvoiceStatus(self.status)


@dataclass
class Payment:
    id: str
    organization_id: str
    invoice_id: str
    amount: Decimal
    currency: str
    created_by: str
    method: str = "bank_transfer"
    reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    void_reason: Optional[str] = None
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.amount = round_financial(self.amount)
        self.status = PaymentStatus(self.status)

    @property
    def is_void(self) -> bool:
        return self.status is PaymentStatus.VOID
