"""
FINANCE ENGINE API ROUTES

Boundary for the calculation, quote workflow and payment services.

- Write routes honour an optional Idempotency-Key header; a replay returns
  the stored status and body unchanged plus ``Idempotent-Replay: true``
- Engine errors are translated to HTTPException with
  {"error": kind, "message": ...} as the detail
- Reads are never deduplicated
- Two writes racing for the same quote or invoice do not queue: the loser
  gets 503 storage_error with nothing written and should retry with the
  same Idempotency-Key
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
import json
import logging

from auth import get_current_user
from models import (
    CalculateRequest, QuoteCreate, QuoteUpdate, StatusTransitionRequest,
    PaymentCreate, PaymentVoid
)
from finance_core.domain import Caller, Invoice, Payment, Quote, QuoteVersion
from finance_core.errors import FinanceEngineError
from finance_core.idempotency import IdempotencyGuard, scope_key
from finance_core.payment_service import PaymentApplicationService
from finance_core.quote_workflow import QuoteWorkflowService

logger = logging.getLogger(__name__)

finance_router = APIRouter(prefix="/api/v1", tags=["Finance Engine"])


# ============================================
# DEPENDENCIES (wired in server.py)
# ============================================

def get_quote_service(request: Request) -> QuoteWorkflowService:
    return request.app.state.quote_service


def get_payment_service(request: Request) -> PaymentApplicationService:
    return request.app.state.payment_service


def get_idempotency_guard(request: Request) -> IdempotencyGuard:
    return request.app.state.idempotency_guard


# ============================================
# SERIALIZATION
# ============================================

def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default)


def serialize_quote(quote: Quote) -> Dict[str, Any]:
    header, lines = quote.snapshot()
    header["line_items"] = lines
    header["state_history"] = quote.state_history
    for name in ("approved_by", "approved_at", "sent_at", "accepted_at", "rejected_at", "cancelled_at"):
        header[name] = getattr(quote, name)
    return header


def serialize_version(version: QuoteVersion) -> Dict[str, Any]:
    return {
        "id": version.id,
        "quote_id": version.quote_id,
        "version_number": version.version_number,
        "quote_snapshot": version.quote_snapshot,
        "line_item_snapshots": list(version.line_item_snapshots),
        "reason": version.reason,
        "created_by": version.created_by,
        "created_at": version.created_at,
    }


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "customer_id": invoice.customer_id,
        "currency": invoice.currency,
        "total_amount": str(invoice.total_amount),
        "paid_amount": str(invoice.paid_amount),
        "balance_amount": str(invoice.balance_amount),
        "status": invoice.status.value,
        "paid_at": invoice.paid_at,
    }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "amount": str(payment.amount),
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


def _json_response(body: str, status_code: int, replayed: bool = False) -> Response:
    headers = {"Idempotent-Replay": "true"} if replayed else None
    return Response(content=body, status_code=status_code, media_type="application/json", headers=headers)


def _http_error(e: FinanceEngineError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.to_dict())


async def _guarded(
    guard: IdempotencyGuard,
    caller: Caller,
    route: str,
    key: Optional[str],
    body: Dict[str, Any],
    operation: Callable[[], Awaitable[Tuple[int, str]]]
) -> Response:
    try:
        result = await guard.execute(scope_key(caller, route), key, body, operation)
    except FinanceEngineError as e:
        raise _http_error(e)
    return _json_response(result.body, result.status_code, replayed=result.replayed)


# ============================================
# CALCULATION
# ============================================

@finance_router.post("/calculate")
async def calculate(
    request: CalculateRequest,
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service)
):
    """Price a draft without saving it."""
    try:
        totals = quotes.preview_totals(request.to_input())
    except FinanceEngineError as e:
        raise _http_error(e)
    return totals.to_dict()


# ============================================
# QUOTE ENDPOINTS
# ============================================

@finance_router.post("/quotes", status_code=status.HTTP_201_CREATED)
async def create_quote(
    request: QuoteCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard)
):
    """Create a quote in draft status."""
    async def operation():
        quote, _ = await quotes.create_or_update_quote(request.to_input(), current_user)
        return status.HTTP_201_CREATED, dumps(serialize_quote(quote))

    return await _guarded(
        guard, current_user, "POST /quotes", idempotency_key,
        request.model_dump(mode="json"), operation
    )


@finance_router.patch("/quotes/{quote_id}")
async def update_quote(
    quote_id: str,
    request: QuoteUpdate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard)
):
    """
    Edit a quote.

    Locked quotes (approved/accepted) need the quotes.force_edit capability;
    edits to non-draft quotes snapshot a new version first.
    """
    async def operation():
        quote, _ = await quotes.create_or_update_quote(
            request.to_input(), current_user, quote_id=quote_id, reason=request.reason
        )
        return status.HTTP_200_OK, dumps(serialize_quote(quote))

    return await _guarded(
        guard, current_user, f"PATCH /quotes/{quote_id}", idempotency_key,
        request.model_dump(mode="json", exclude_unset=True), operation
    )


@finance_router.get("/quotes/{quote_id}")
async def get_quote(
    quote_id: str,
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service)
):
    try:
        quote = await quotes.get_quote(quote_id, current_user)
        lock = await quotes.check_lock(quote_id, current_user)
    except FinanceEngineError as e:
        raise _http_error(e)

    payload = serialize_quote(quote)
    payload["lock"] = {
        "locked": lock.locked,
        "can_force_edit": lock.can_force_edit,
        "requires_versioning": lock.requires_versioning,
        "reason": lock.reason,
    }
    return _json_response(dumps(payload), status.HTTP_200_OK)


@finance_router.get("/quotes/{quote_id}/versions")
async def list_quote_versions(
    quote_id: str,
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service)
):
    try:
        versions = await quotes.list_versions(quote_id, current_user)
    except FinanceEngineError as e:
        raise _http_error(e)
    return _json_response(dumps({"versions": [serialize_version(v) for v in versions]}), status.HTTP_200_OK)


@finance_router.get("/quotes/{quote_id}/versions/{version_number}")
async def get_quote_version(
    quote_id: str,
    version_number: int,
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service)
):
    try:
        version = await quotes.get_version(quote_id, version_number, current_user)
    except FinanceEngineError as e:
        raise _http_error(e)
    return _json_response(dumps(serialize_version(version)), status.HTTP_200_OK)


@finance_router.post("/quotes/{quote_id}/status")
async def transition_quote_status(
    quote_id: str,
    request: StatusTransitionRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: Caller = Depends(get_current_user),
    quotes: QuoteWorkflowService = Depends(get_quote_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard)
):
    """Move a quote along its lifecycle (409 for an edge that does not exist)."""
    async def operation():
        quote = await quotes.transition_status(
            quote_id, request.status, current_user, reason=request.reason
        )
        return status.HTTP_200_OK, dumps(serialize_quote(quote))

    return await _guarded(
        guard, current_user, f"POST /quotes/{quote_id}/status", idempotency_key,
        request.model_dump(mode="json"), operation
    )


# ============================================
# INVOICE & PAYMENT ENDPOINTS
# ============================================

@finance_router.get("/invoices/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    current_user: Caller = Depends(get_current_user),
    payments: PaymentApplicationService = Depends(get_payment_service)
):
    try:
        invoice, invoice_payments = await payments.get_invoice_with_payments(invoice_id, current_user)
    except FinanceEngineError as e:
        raise _http_error(e)

    payload = serialize_invoice(invoice)
    payload["payments"] = [serialize_payment(p) for p in invoice_payments]
    return _json_response(dumps(payload), status.HTTP_200_OK)


@finance_router.post("/invoices/{invoice_id}/payments", status_code=status.HTTP_201_CREATED)
async def apply_payment(
    invoice_id: str,
    request: PaymentCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: Caller = Depends(get_current_user),
    payments: PaymentApplicationService = Depends(get_payment_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard)
):
    """Apply a payment and re-derive the invoice balance and status."""
    async def operation():
        payment = await payments.apply_payment(
            invoice_id,
            request.amount,
            request.currency,
            current_user,
            reference=request.reference,
            method=request.method
        )
        return status.HTTP_201_CREATED, dumps(serialize_payment(payment))

    return await _guarded(
        guard, current_user, f"POST /invoices/{invoice_id}/payments", idempotency_key,
        request.model_dump(mode="json"), operation
    )


@finance_router.post("/payments/{payment_id}/void")
async def void_payment(
    payment_id: str,
    request: PaymentVoid,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    current_user: Caller = Depends(get_current_user),
    payments: PaymentApplicationService = Depends(get_payment_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard)
):
    """Void a payment (409 if it was already voided)."""
    async def operation():
        payment = await payments.void_payment(payment_id, request.reason, current_user)
        return status.HTTP_200_OK, dumps(serialize_payment(payment))

    return await _guarded(
        guard, current_user, f"POST /payments/{payment_id}/void", idempotency_key,
        request.model_dump(mode="json"), operation
    )


# ============================================
# HEALTH
# ============================================

@finance_router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "1.0.0"
    }
