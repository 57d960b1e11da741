"""
PAYMENT APPLICATION SERVICE

Applies and voids payments against invoices.

RULES:
1. Payment currency must equal the invoice currency
2. Amount must be positive; a fully paid invoice takes no more payments
3. Overpayment (amount > balance) leaves a negative balance, unless disabled
4. Payment insert and invoice update commit together under the invoice lock
5. Void recomputes paid_amount from the remaining completed payments
6. balance_amount == total_amount - paid_amount after every commit
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
import logging
import uuid

from .domain import Caller, Invoice, InvoiceStatus, Payment, PaymentStatus
from .errors import AlreadyVoided, CurrencyMismatch, NotFoundError, ValidationError
from .financial_precision import (
    ZERO,
    Numeric,
    round_financial,
    validate_currency,
    validate_positive,
)
from .persistence import FinancePersistence
from .quote_workflow import AuditSink

logger = logging.getLogger(__name__)


def derive_invoice_status(
    total: Decimal,
    paid: Decimal,
    balance: Decimal,
    current: InvoiceStatus
) -> InvoiceStatus:
    if paid > ZERO and balance <= ZERO:
        return InvoiceStatus.PAID
    if ZERO < paid < total:
        return InvoiceStatus.PART_PAID
    if paid <= ZERO and current in (InvoiceStatus.PAID, InvoiceStatus.PART_PAID):
        # Every payment was voided
        return InvoiceStatus.SENT
    return current


def refresh_invoice(invoice: Invoice, paid_amount: Decimal) -> None:
    """Set paid_amount and re-derive balance, status and paid_at."""
    invoice.paid_amount = round_financial(paid_amount)
    invoice.balance_amount = round_financial(invoice.total_amount - invoice.paid_amount)
    invoice.status = derive_invoice_status(
        invoice.total_amount, invoice.paid_amount, invoice.balance_amount, invoice.status
    )
    if invoice.status is InvoiceStatus.PAID:
        invoice.paid_at = invoice.paid_at or datetime.utcnow()
    else:
        invoice.paid_at = None
    invoice.updated_at = datetime.utcnow()


def _invoice_values(invoice: Invoice):
    return {
        "paid_amount": str(invoice.paid_amount),
        "balance_amount": str(invoice.balance_amount),
        "status": invoice.status.value,
    }


class PaymentApplicationService:
    def __init__(
        self,
        persistence: FinancePersistence,
        audit: Optional[AuditSink] = None,
        allow_overpayment: bool = True,
    ):
        self.persistence = persistence
        self.audit = audit
        self.allow_overpayment = allow_overpayment

    # =========================================================================
    # READS
    # =========================================================================

    async def get_invoice_with_payments(self, invoice_id: str, caller: Caller) -> Tuple[Invoice, List[Payment]]:
        invoice = await self.persistence.get_invoice(invoice_id, caller.organization_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)
        payments = await self.persistence.list_payments(invoice_id, caller.organization_id)
        return invoice, payments

    # =========================================================================
    # WRITES
    # =========================================================================

    async def apply_payment(
        self,
        invoice_id: str,
        amount: Numeric,
        currency: str,
        caller: Caller,
        reference: Optional[str] = None,
        method: str = "bank_transfer",
    ) -> Payment:
        """
        Raises:
            ValidationError: non-positive amount, invoice fully paid or void,
                or overpayment while it is disabled
            CurrencyMismatch: payment currency differs from the invoice's
            NotFoundError: no such invoice in the caller's organization
        """
        payment_amount = round_financial(validate_positive(amount, "amount"))
        if payment_amount <= ZERO:
            raise ValidationError(f"'amount' rounds to zero: {amount}")
        payment_currency = validate_currency(currency)

        async with self.persistence.transaction() as session:
            invoice = await self.persistence.get_invoice_for_update(
                invoice_id, caller.organization_id, session=session
            )
            if invoice is None:
                raise NotFoundError("invoice", invoice_id)

            if invoice.status is InvoiceStatus.VOID:
                raise ValidationError(f"Invoice {invoice_id} is void")
            if payment_currency != invoice.currency:
                raise CurrencyMismatch(invoice.currency, payment_currency)
            if invoice.balance_amount <= ZERO:
                raise ValidationError(f"Invoice {invoice_id} is already fully paid")
            if payment_amount > invoice.balance_amount and not self.allow_overpayment:
                raise ValidationError(
                    f"Payment {payment_amount} exceeds outstanding balance {invoice.balance_amount}"
                )

            before = _invoice_values(invoice)
            payment = Payment(
                id=str(uuid.uuid4()),
                organization_id=caller.organization_id,
                invoice_id=invoice.id,
                amount=payment_amount,
                currency=payment_currency,
                method=method,
                reference=reference,
                created_by=caller.user_id,
            )
            await self.persistence.insert_payment(payment, session=session)

            refresh_invoice(invoice, invoice.paid_amount + payment_amount)
            await self.persistence.save_invoice(invoice, session=session)

        logger.info(
            f"[PAYMENT] Applied {payment_currency} {payment_amount} to invoice {invoice_id}: "
            f"paid={invoice.paid_amount} balance={invoice.balance_amount} status={invoice.status.value}"
        )
        await self._audit("PAYMENT_APPLIED", invoice, before, caller)
        return payment

    async def void_payment(self, payment_id: str, reason: str, caller: Caller) -> Payment:
        """
        Raises:
            ValidationError: blank reason
            NotFoundError: no such payment (or its invoice) in the organization
            AlreadyVoided: the payment was voided before
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to void a payment")

        existing = await self.persistence.get_payment(payment_id, caller.organization_id)
        if existing is None:
            raise NotFoundError("payment", payment_id)
        if existing.is_void:
            raise AlreadyVoided(payment_id)

        async with self.persistence.transaction() as session:
            invoice = await self.persistence.get_invoice_for_update(
                existing.invoice_id, caller.organization_id, session=session
            )
            if invoice is None:
                raise NotFoundError("invoice", existing.invoice_id)

            # Re-read under the invoice lock; a concurrent void may have won
            payment = await self.persistence.get_payment(
                payment_id, caller.organization_id, session=session
            )
            if payment is None:
                raise NotFoundError("payment", payment_id)
            if payment.is_void:
                raise AlreadyVoided(payment_id)

            payment.status = PaymentStatus.VOID
            payment.void_reason = reason.strip()
            payment.voided_at = datetime.utcnow()
            payment.voided_by = caller.user_id
            await self.persistence.save_payment(payment, session=session)

            payments = await self.persistence.list_payments(
                invoice.id, caller.organization_id, session=session
            )
            remaining = sum(
                (p.amount for p in payments if p.id != payment.id and not p.is_void), ZERO
            )

            before = _invoice_values(invoice)
            refresh_invoice(invoice, remaining)
            await self.persistence.save_invoice(invoice, session=session)

        logger.info(
            f"[PAYMENT] Voided {payment_id} on invoice {invoice.id}: "
            f"paid={invoice.paid_amount} balance={invoice.balance_amount} status={invoice.status.value}"
        )
        await self._audit("PAYMENT_VOIDED", invoice, before, caller)
        return payment

    async def _audit(self, action: str, invoice: Invoice, before, caller: Caller) -> None:
        if self.audit is None:
            return
        # Committed already; audit failures are logged, never raised
        try:
            await self.audit.record(
                action=action,
                entity_type="INVOICE",
                entity_id=invoice.id,
                old_values=before,
                new_values=_invoice_values(invoice),
                actor_id=caller.user_id,
                organization_id=caller.organization_id,
            )
        except Exception as e:
            logger.warning(f"[PAYMENT] Audit write failed for {action} on {invoice.id}: {e}")
