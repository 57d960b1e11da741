"""
In-memory collaborators for the finance engine tests.

They honour the same contracts as the MongoDB adapters:
- rows are stored by value (deep copies in and out)
- *_for_update reads hold a per-row lock until the transaction ends
- a transaction that raises undoes every write it made
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import asyncio
import copy
import uuid

import pytest

from finance_core.domain import Caller, Invoice, InvoiceStatus
from finance_core.errors import StorageError
from finance_core.idempotency import IdempotencyGuard
from finance_core.payment_service import PaymentApplicationService
from finance_core.quote_workflow import QuoteWorkflowService


class _Transaction:
    def __init__(self):
        self.locks: List[asyncio.Lock] = []
        self.undo: List[Callable[[], None]] = []


class InMemoryPersistence:
    def __init__(self):
        self.quotes: Dict[str, Any] = {}
        self.versions: Dict[Tuple[str, int], Any] = {}
        self.invoices: Dict[str, Any] = {}
        self.payments: Dict[str, Any] = {}
        self.version_sequences: Dict[str, int] = {}
        self.document_sequences: Dict[Tuple[str, str], int] = {}
        self.fail_on: Set[str] = set()
        self._row_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    # -- helpers -----------------------------------------------------------

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StorageError(f"Storage operation failed: {operation}")

    def _put(self, table: Dict, key, value, session: Optional[_Transaction]) -> None:
        missing = object()
        previous = table.get(key, missing)
        table[key] = copy.deepcopy(value)
        if session is not None:
            if previous is missing:
                session.undo.append(lambda: table.pop(key, None))
            else:
                session.undo.append(lambda: table.__setitem__(key, previous))

    async def _lock(self, kind: str, entity_id: str, session: Optional[_Transaction]) -> None:
        if session is None:
            raise AssertionError("*_for_update reads need a transaction")
        lock = self._row_locks.setdefault((kind, entity_id), asyncio.Lock())
        if lock in session.locks:
            return
        await lock.acquire()
        session.locks.append(lock)

    @staticmethod
    def _scoped(row, organization_id: str):
        if row is None or row.organization_id != organization_id:
            return None
        return copy.deepcopy(row)

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.invoices[invoice.id] = copy.deepcopy(invoice)
        return invoice

    # -- contract ----------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        session = _Transaction()
        try:
            yield session
        except BaseException:
            for undo in reversed(session.undo):
                undo()
            raise
        finally:
            for lock in session.locks:
                lock.release()

    async def get_quote(self, quote_id, organization_id, session=None):
        return self._scoped(self.quotes.get(quote_id), organization_id)

    async def get_quote_for_update(self, quote_id, organization_id, session=None):
        await self._lock("quote", quote_id, session)
        return self._scoped(self.quotes.get(quote_id), organization_id)

    async def insert_quote(self, quote, session=None):
        self._maybe_fail("insert_quote")
        self._put(self.quotes, quote.id, quote, session)
        self.version_sequences.setdefault(quote.id, 0)

    async def save_quote(self, quote, session=None):
        self._maybe_fail("save_quote")
        self._put(self.quotes, quote.id, quote, session)

    async def next_quote_version_number(self, quote_id, session=None):
        value = self.version_sequences.get(quote_id, 0) + 1
        self._put(self.version_sequences, quote_id, value, session)
        return value

    async def insert_quote_version(self, version, session=None):
        self._maybe_fail("insert_quote_version")
        key = (version.quote_id, version.version_number)
        if key in self.versions:
            raise StorageError(f"Duplicate version {key}")
        self._put(self.versions, key, version, session)

    async def list_quote_versions(self, quote_id, organization_id, session=None):
        rows = [v for (qid, _), v in self.versions.items()
                if qid == quote_id and v.organization_id == organization_id]
        return [copy.deepcopy(v) for v in sorted(rows, key=lambda v: v.version_number)]

    async def get_quote_version(self, quote_id, organization_id, version_number, session=None):
        return self._scoped(self.versions.get((quote_id, version_number)), organization_id)

    async def next_document_number(self, organization_id, prefix, session=None):
        key = (organization_id, prefix)
        value = self.document_sequences.get(key, 0) + 1
        self._put(self.document_sequences, key, value, session)
        return value

    async def get_invoice(self, invoice_id, organization_id, session=None):
        return self._scoped(self.invoices.get(invoice_id), organization_id)

    async def get_invoice_for_update(self, invoice_id, organization_id, session=None):
        await self._lock("invoice", invoice_id, session)
        return self._scoped(self.invoices.get(invoice_id), organization_id)

    async def save_invoice(self, invoice, session=None):
        self._maybe_fail("save_invoice")
        self._put(self.invoices, invoice.id, invoice, session)

    async def insert_payment(self, payment, session=None):
        self._maybe_fail("insert_payment")
        self._put(self.payments, payment.id, payment, session)

    async def get_payment(self, payment_id, organization_id, session=None):
        return self._scoped(self.payments.get(payment_id), organization_id)

    async def save_payment(self, payment, session=None):
        self._maybe_fail("save_payment")
        self._put(self.payments, payment.id, payment, session)

    async def list_payments(self, invoice_id, organization_id, session=None):
        rows = [p for p in self.payments.values()
                if p.invoice_id == invoice_id and p.organization_id == organization_id]
        return [copy.deepcopy(p) for p in sorted(rows, key=lambda p: p.created_at)]


class InMemoryKeyValueStore:
    """Same contract as MongoIdempotencyStore; expiry is left to the guard."""

    def __init__(self):
        self.data: Dict[str, Dict[str, Any]] = {}

    async def get(self, key):
        value = self.data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key, value, ttl):
        self.data[key] = {**value, "expires_at": datetime.utcnow() + ttl}

    async def add(self, key, value, ttl):
        if key in self.data:
            return False
        self.data[key] = {**value, "expires_at": datetime.utcnow() + ttl}
        return True

    async def delete(self, key):
        self.data.pop(key, None)


class FakePermissions:
    def __init__(self):
        self.grants: Set[Tuple[str, str, str]] = set()

    def grant(self, caller: Caller, capability: str) -> None:
        self.grants.add((caller.user_id, caller.organization_id, capability))

    async def has_capability(self, user_id, organization_id, capability):
        return (user_id, organization_id, capability) in self.grants


class RecordingAudit:
    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    async def record(self, action, entity_type, entity_id, old_values, new_values, actor_id, organization_id):
        self.entries.append({
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "old_values": old_values,
            "new_values": new_values,
            "actor_id": actor_id,
            "organization_id": organization_id,
        })


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def caller():
    return Caller(user_id="user-1", organization_id="org-1")


@pytest.fixture
def manager():
    return Caller(user_id="manager-1", organization_id="org-1")


@pytest.fixture
def outsider():
    return Caller(user_id="user-9", organization_id="org-2")


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def permissions():
    return FakePermissions()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def guard(kv_store):
    return IdempotencyGuard(kv_store, ttl=timedelta(hours=24))


@pytest.fixture
def quote_service(persistence, permissions, audit):
    return QuoteWorkflowService(
        persistence, permissions, audit=audit,
        default_currency="NZD", default_tax_rate=Decimal("0.15")
    )


@pytest.fixture
def payment_service(persistence, audit):
    return PaymentApplicationService(persistence, audit=audit, allow_overpayment=True)


@pytest.fixture
def make_invoice(persistence):
    def factory(total="5750.00", currency="NZD", organization_id="org-1", status=InvoiceStatus.SENT):
        return persistence.add_invoice(Invoice(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            currency=currency,
            total_amount=Decimal(total),
            status=status,
            invoice_number="INV-0001",
            customer_id="cust-1",
        ))
    return factory
