"""
FINANCE PERSISTENCE - COLLABORATOR CONTRACT & MONGODB ADAPTER

Provides:
1. FinancePersistence protocol (what the workflow and payment services need)
2. MongoFinancePersistence on motor, using multi-document transactions
3. SELECT ... FOR UPDATE style row locks (lock_sequence increment)
4. Atomic per-quote version sequence and per-organization document numbers
5. Decimal128 storage for every monetary value

Every PyMongoError (timeouts and write conflicts included) surfaces as
StorageError, which is safe to retry with the same idempotency key.

Usage:
    async with persistence.transaction() as session:
        quote = await persistence.get_quote_for_update(quote_id, org_id, session=session)
        ...
        await persistence.save_quote(quote, session=session)
"""

from contextlib import asynccontextmanager
from datetime import datetime
from functools import wraps
from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol
import logging

from bson import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .domain import (
    Discount,
    Invoice,
    LineCalculation,
    LineItem,
    Payment,
    Quote,
    QuoteStatus,
    QuoteVersion,
)
from .errors import StorageError
from .financial_precision import Money, from_decimal128, to_decimal, to_decimal128

logger = logging.getLogger(__name__)


def storage_errors(func):
    """Translate driver failures into StorageError."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"[STORAGE] {func.__name__} failed: {str(e)}")
            raise StorageError(f"Storage operation failed: {func.__name__}") from e
    return wrapper


# =============================================================================
# CONTRACT
# =============================================================================

class FinancePersistence(Protocol):
    """
    Everything the engine reads or writes. ``session`` is the handle yielded
    by ``transaction()``; the *_for_update reads must be given one.
    """

    def transaction(self) -> AsyncContextManager[Any]:
        ...

    async def get_quote(self, quote_id: str, organization_id: str, session=None) -> Optional[Quote]:
        ...

    async def get_quote_for_update(self, quote_id: str, organization_id: str, session=None) -> Optional[Quote]:
        ...

    async def insert_quote(self, quote: Quote, session=None) -> None:
        ...

    async def save_quote(self, quote: Quote, session=None) -> None:
        ...

    async def next_quote_version_number(self, quote_id: str, session=None) -> int:
        ...

    async def insert_quote_version(self, version: QuoteVersion, session=None) -> None:
        ...

    async def list_quote_versions(self, quote_id: str, organization_id: str, session=None) -> List[QuoteVersion]:
        ...

    async def get_quote_version(
        self, quote_id: str, organization_id: str, version_number: int, session=None
    ) -> Optional[QuoteVersion]:
        ...

    async def next_document_number(self, organization_id: str, prefix: str, session=None) -> int:
        ...

    async def get_invoice(self, invoice_id: str, organization_id: str, session=None) -> Optional[Invoice]:
        ...

    async def get_invoice_for_update(self, invoice_id: str, organization_id: str, session=None) -> Optional[Invoice]:
        ...

    async def save_invoice(self, invoice: Invoice, session=None) -> None:
        ...

    async def insert_payment(self, payment: Payment, session=None) -> None:
        ...

    async def get_payment(self, payment_id: str, organization_id: str, session=None) -> Optional[Payment]:
        ...

    async def save_payment(self, payment: Payment, session=None) -> None:
        ...

    async def list_payments(self, invoice_id: str, organization_id: str, session=None) -> List[Payment]:
        ...


# =============================================================================
# DOCUMENT MAPPING
# =============================================================================

def _exact(value) -> Decimal128:
    """Rates, quantities and unit prices keep their full precision."""
    return Decimal128(to_decimal(value))


def _discount_to_document(discount: Discount) -> Dict[str, Any]:
    return {"type": discount.type.value, "value": _exact(discount.value)}


def _discount_from_document(doc: Optional[Dict[str, Any]]) -> Discount:
    if not doc:
        return Discount.none()
    return Discount(type=doc["type"], value=to_decimal(doc["value"]))


def _line_to_document(item: LineItem, calc: Optional[LineCalculation]) -> Dict[str, Any]:
    doc = {
        "line_number": item.line_number,
        "description": item.description,
        "quantity": _exact(item.quantity),
        "unit_price": _exact(item.unit_price.amount),
        "currency": item.unit_price.currency,
        "tax_rate": _exact(item.tax_rate),
        "tax_inclusive": item.tax_inclusive,
        "discount": _discount_to_document(item.discount),
    }
    if calc is not None:
        doc.update({
            "subtotal": to_decimal128(calc.subtotal),
            "discount_amount": to_decimal128(calc.discount_amount),
            "discounted_subtotal": to_decimal128(calc.discounted_subtotal),
            "tax_amount": to_decimal128(calc.tax_amount),
            "total": to_decimal128(calc.total),
        })
    return doc


def _line_from_document(doc: Dict[str, Any]) -> LineItem:
    return LineItem(
        line_number=doc["line_number"],
        description=doc.get("description", ""),
        quantity=to_decimal(doc["quantity"]),
        unit_price=Money.exact(to_decimal(doc["unit_price"]), doc["currency"]),
        tax_rate=to_decimal(doc["tax_rate"]),
        tax_inclusive=doc.get("tax_inclusive", False),
        discount=_discount_from_document(doc.get("discount")),
    )


def _calc_from_document(doc: Dict[str, Any]) -> Optional[LineCalculation]:
    if "total" not in doc:
        return None
    return LineCalculation(
        line_number=doc["line_number"],
        subtotal=from_decimal128(doc["subtotal"]),
        discount_amount=from_decimal128(doc["discount_amount"]),
        discounted_subtotal=from_decimal128(doc["discounted_subtotal"]),
        tax_amount=from_decimal128(doc["tax_amount"]),
        total=from_decimal128(doc["total"]),
    )


_QUOTE_TIMESTAMPS = (
    "created_at", "updated_at", "approved_at", "sent_at",
    "accepted_at", "rejected_at", "cancelled_at",
)
_QUOTE_AMOUNTS = ("subtotal", "line_discount_total", "discount_amount", "tax_amount", "total_amount")


def quote_to_document(quote: Quote) -> Dict[str, Any]:
    calcs = {c.line_number: c for c in quote.line_results}
    doc = {
        "_id": quote.id,
        "organization_id": quote.organization_id,
        "quote_number": quote.quote_number,
        "customer_id": quote.customer_id,
        "title": quote.title,
        "description": quote.description,
        "notes": quote.notes,
        "status": quote.status.value,
        "currency": quote.currency,
        "tax_rate": _exact(quote.tax_rate),
        "discount": _discount_to_document(quote.discount),
        "line_items": [_line_to_document(item, calcs.get(item.line_number)) for item in quote.line_items],
        "current_version_id": quote.current_version_id,
        "version_count": quote.version_count,
        "state_history": quote.state_history,
        "created_by": quote.created_by,
        "approved_by": quote.approved_by,
    }
    for name in _QUOTE_AMOUNTS:
        doc[name] = to_decimal128(getattr(quote, name))
    for name in _QUOTE_TIMESTAMPS:
        doc[name] = getattr(quote, name)
    return doc


def quote_from_document(doc: Dict[str, Any]) -> Quote:
    lines = doc.get("line_items", [])
    quote = Quote(
        id=doc["_id"],
        organization_id=doc["organization_id"],
        customer_id=doc["customer_id"],
        title=doc["title"],
        currency=doc["currency"],
        tax_rate=to_decimal(doc["tax_rate"]),
        created_by=doc["created_by"],
        quote_number=doc.get("quote_number"),
        status=QuoteStatus(doc["status"]),
        description=doc.get("description"),
        notes=doc.get("notes"),
        discount=_discount_from_document(doc.get("discount")),
        line_items=[_line_from_document(line) for line in lines],
        line_results=[c for c in (_calc_from_document(line) for line in lines) if c is not None],
        current_version_id=doc.get("current_version_id"),
        version_count=doc.get("version_count", 0),
        state_history=list(doc.get("state_history", [])),
        approved_by=doc.get("approved_by"),
    )
    for name in _QUOTE_AMOUNTS:
        setattr(quote, name, from_decimal128(doc.get(name)))
    for name in _QUOTE_TIMESTAMPS:
        if doc.get(name) is not None:
            setattr(quote, name, doc[name])
    return quote


def version_to_document(version: QuoteVersion) -> Dict[str, Any]:
    return {
        "_id": version.id,
        "quote_id": version.quote_id,
        "organization_id": version.organization_id,
        "version_number": version.version_number,
        "quote_snapshot": version.quote_snapshot,
        "line_item_snapshots": list(version.line_item_snapshots),
        "reason": version.reason,
        "created_by": version.created_by,
        "created_at": version.created_at,
    }


def version_from_document(doc: Dict[str, Any]) -> QuoteVersion:
    return QuoteVersion(
        id=doc["_id"],
        quote_id=doc["quote_id"],
        organization_id=doc["organization_id"],
        version_number=doc["version_number"],
        quote_snapshot=doc["quote_snapshot"],
        line_item_snapshots=tuple(doc.get("line_item_snapshots", [])),
        reason=doc.get("reason", ""),
        created_by=doc["created_by"],
        created_at=doc["created_at"],
    )


def invoice_to_document(invoice: Invoice) -> Dict[str, Any]:
    return {
        "_id": invoice.id,
        "organization_id": invoice.organization_id,
        "invoice_number": invoice.invoice_number,
        "customer_id": invoice.customer_id,
        "currency": invoice.currency,
        "total_amount": to_decimal128(invoice.total_amount),
        "paid_amount": to_decimal128(invoice.paid_amount),
        "balance_amount": to_decimal128(invoice.balance_amount),
        "status": invoice.status.value,
        "paid_at": invoice.paid_at,
        "updated_at": invoice.updated_at,
    }


def invoice_from_document(doc: Dict[str, Any]) -> Invoice:
    return Invoice(
        id=doc["_id"],
        organization_id=doc["organization_id"],
        currency=doc["currency"],
        total_amount=from_decimal128(doc.get("total_amount")),
        paid_amount=from_decimal128(doc.get("paid_amount")),
        balance_amount=from_decimal128(doc["balance_amount"]) if doc.get("balance_amount") is not None else None,
        status=doc["status"],
        invoice_number=doc.get("invoice_number"),
        customer_id=doc.get("customer_id"),
        paid_at=doc.get("paid_at"),
        updated_at=doc.get("updated_at") or datetime.utcnow(),
    )


def payment_to_document(payment: Payment) -> Dict[str, Any]:
    return {
        "_id": payment.id,
        "organization_id": payment.organization_id,
        "invoice_id": payment.invoice_id,
        "amount": to_decimal128(payment.amount),
        "currency": payment.currency,
        "method": payment.method,
        "reference": payment.reference,
        "status": payment.status.value,
        "void_reason": payment.void_reason,
        "voided_at": payment.voided_at,
        "voided_by": payment.voided_by,
        "created_by": payment.created_by,
        "created_at": payment.created_at,
    }


def payment_from_document(doc: Dict[str, Any]) -> Payment:
    return Payment(
        id=doc["_id"],
        organization_id=doc["organization_id"],
        invoice_id=doc["invoice_id"],
        amount=from_decimal128(doc["amount"]),
        currency=doc["currency"],
        created_by=doc["created_by"],
        method=doc.get("method", "bank_transfer"),
        reference=doc.get("reference"),
        status=doc["status"],
        void_reason=doc.get("void_reason"),
        voided_at=doc.get("voided_at"),
        voided_by=doc.get("voided_by"),
        created_at=doc["created_at"],
    )


# =============================================================================
# MONGODB ADAPTER
# =============================================================================

class MongoFinancePersistence:
    """
    motor-backed persistence.

    MongoDB has no SELECT FOR UPDATE, so a row is claimed inside a
    transaction with a find_one_and_update that increments lock_sequence.
    A second transaction touching the same row hits a write conflict and
    fails at once instead of queueing behind the first: the transaction
    aborts and surfaces as StorageError (503). Nothing was written, so the
    caller retries with the same idempotency key. Concurrent writers are
    serialized by that retry, not by waiting on the lock.

    Requires a replica set (transactions).
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session
                logger.debug("[TRANSACTION] Committed")
        except PyMongoError as e:
            logger.error(f"[TRANSACTION] Aborted: {str(e)}")
            raise StorageError("Transaction failed; safe to retry") from e

    async def _lock_row(self, collection, entity_id: str, organization_id: str, session) -> Optional[Dict[str, Any]]:
        return await collection.find_one_and_update(
            {"_id": entity_id, "organization_id": organization_id},
            {
                "$inc": {"lock_sequence": 1},
                "$set": {"locked_at": datetime.utcnow()}
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )

    # =========================================================================
    # QUOTES
    # =========================================================================

    @storage_errors
    async def get_quote(self, quote_id: str, organization_id: str, session=None) -> Optional[Quote]:
        doc = await self.db.quotes.find_one(
            {"_id": quote_id, "organization_id": organization_id}, session=session
        )
        return quote_from_document(doc) if doc else None

    @storage_errors
    async def get_quote_for_update(self, quote_id: str, organization_id: str, session=None) -> Optional[Quote]:
        doc = await self._lock_row(self.db.quotes, quote_id, organization_id, session)
        return quote_from_document(doc) if doc else None

    @storage_errors
    async def insert_quote(self, quote: Quote, session=None) -> None:
        doc = quote_to_document(quote)
        doc["version_sequence"] = 0
        doc["lock_sequence"] = 0
        await self.db.quotes.insert_one(doc, session=session)

    @storage_errors
    async def save_quote(self, quote: Quote, session=None) -> None:
        doc = quote_to_document(quote)
        doc.pop("_id")
        # $set leaves version_sequence and lock_sequence alone
        await self.db.quotes.update_one(
            {"_id": quote.id, "organization_id": quote.organization_id},
            {"$set": doc},
            session=session
        )

    @storage_errors
    async def next_quote_version_number(self, quote_id: str, session=None) -> int:
        result = await self.db.quotes.find_one_and_update(
            {"_id": quote_id},
            {"$inc": {"version_sequence": 1}},
            projection={"version_sequence": 1},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if result is None:
            raise StorageError(f"Quote {quote_id} disappeared while versioning")
        return result["version_sequence"]

    @storage_errors
    async def insert_quote_version(self, version: QuoteVersion, session=None) -> None:
        await self.db.quote_versions.insert_one(version_to_document(version), session=session)

    @storage_errors
    async def list_quote_versions(self, quote_id: str, organization_id: str, session=None) -> List[QuoteVersion]:
        docs = await self.db.quote_versions.find(
            {"quote_id": quote_id, "organization_id": organization_id},
            session=session
        ).sort("version_number", 1).to_list(length=None)
        return [version_from_document(doc) for doc in docs]

    @storage_errors
    async def get_quote_version(
        self, quote_id: str, organization_id: str, version_number: int, session=None
    ) -> Optional[QuoteVersion]:
        doc = await self.db.quote_versions.find_one(
            {"quote_id": quote_id, "organization_id": organization_id, "version_number": version_number},
            session=session
        )
        return version_from_document(doc) if doc else None

    @storage_errors
    async def next_document_number(self, organization_id: str, prefix: str, session=None) -> int:
        """Atomic per-organization sequence; returns the value after increment."""
        result = await self.db.document_sequences.find_one_and_update(
            {"organization_id": organization_id, "prefix": prefix},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )
        return result["current_sequence"]

    # =========================================================================
    # INVOICES & PAYMENTS
    # =========================================================================

    @storage_errors
    async def get_invoice(self, invoice_id: str, organization_id: str, session=None) -> Optional[Invoice]:
        doc = await self.db.invoices.find_one(
            {"_id": invoice_id, "organization_id": organization_id}, session=session
        )
        return invoice_from_document(doc) if doc else None

    @storage_errors
    async def get_invoice_for_update(self, invoice_id: str, organization_id: str, session=None) -> Optional[Invoice]:
        doc = await self._lock_row(self.db.invoices, invoice_id, organization_id, session)
        return invoice_from_document(doc) if doc else None

    @storage_errors
    async def save_invoice(self, invoice: Invoice, session=None) -> None:
        doc = invoice_to_document(invoice)
        doc.pop("_id")
        await self.db.invoices.update_one(
            {"_id": invoice.id, "organization_id": invoice.organization_id},
            {"$set": doc},
            session=session
        )

    @storage_errors
    async def insert_payment(self, payment: Payment, session=None) -> None:
        await self.db.payments.insert_one(payment_to_document(payment), session=session)

    @storage_errors
    async def get_payment(self, payment_id: str, organization_id: str, session=None) -> Optional[Payment]:
        doc = await self.db.payments.find_one(
            {"_id": payment_id, "organization_id": organization_id}, session=session
        )
        return payment_from_document(doc) if doc else None

    @storage_errors
    async def save_payment(self, payment: Payment, session=None) -> None:
        doc = payment_to_document(payment)
        doc.pop("_id")
        await self.db.payments.update_one(
            {"_id": payment.id, "organization_id": payment.organization_id},
            {"$set": doc},
            session=session
        )

    @storage_errors
    async def list_payments(self, invoice_id: str, organization_id: str, session=None) -> List[Payment]:
        docs = await self.db.payments.find(
            {"invoice_id": invoice_id, "organization_id": organization_id},
            session=session
        ).sort("created_at", 1).to_list(length=None)
        return [payment_from_document(doc) for doc in docs]
