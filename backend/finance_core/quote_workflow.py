"""
QUOTE WORKFLOW SERVICE

Every quote mutation runs in this order, inside one transaction that holds
the quote row lock:

1. Lock check (approved/accepted quotes need quotes.force_edit)
2. Recalculate totals on a working copy
3. Snapshot the pre-change quote as a new version (non-draft quotes only)
4. Persist, then write the audit entry after commit

A request that changes nothing writes nothing and creates no version.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
import logging
import uuid

from .domain import Caller, Discount, LineItem, Quote, QuoteStatus, QuoteVersion
from .errors import NotFoundError, ValidationError
from .financial_precision import (
    ZERO,
    Money,
    round_financial,
    to_decimal,
    validate_currency,
    validate_rate,
)
from .persistence import FinancePersistence
from .state_machine import StateMachine, quote_state_machine
from .totals_calculator import CalculationDraft, TotalsResult, apply_totals, calculate_totals
from .version_lock_engine import LockCheck, PermissionLookup, VersionLockEngine

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        old_values: Optional[Dict[str, Any]],
        new_values: Optional[Dict[str, Any]],
        actor_id: str,
        organization_id: str,
    ) -> None:
        ...


# =============================================================================
# INPUT
# =============================================================================

@dataclass(frozen=True)
class LineInput:
    quantity: Decimal
    unit_price: Decimal
    line_number: Optional[int] = None
    description: str = ""
    tax_rate: Optional[Decimal] = None
    currency: Optional[str] = None
    discount: Discount = field(default_factory=Discount.none)
    tax_inclusive: bool = False


@dataclass(frozen=True)
class QuoteInput:
    """
    Fields for create or update. On update, None means "leave unchanged";
    an empty ``line_items`` list removes every line.
    """

    customer_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    discount: Optional[Discount] = None
    line_items: Optional[Sequence[LineInput]] = None


def build_line_items(lines: Sequence[LineInput], currency: str, default_rate: Decimal) -> List[LineItem]:
    """Lines without a number are numbered by position; missing rates use the quote rate."""
    items = []
    for position, line in enumerate(lines, start=1):
        rate = default_rate if line.tax_rate is None else line.tax_rate
        items.append(LineItem(
            line_number=line.line_number if line.line_number is not None else position,
            description=line.description,
            quantity=to_decimal(line.quantity),
            unit_price=Money.exact(line.unit_price, line.currency or currency),
            tax_rate=validate_rate(rate, "tax rate"),
            discount=line.discount,
            tax_inclusive=line.tax_inclusive,
        ))
    return items


# =============================================================================
# SERVICE
# =============================================================================

class QuoteWorkflowService:
    def __init__(
        self,
        persistence: FinancePersistence,
        permissions: PermissionLookup,
        audit: Optional[AuditSink] = None,
        default_currency: str = "NZD",
        default_tax_rate: Decimal = Decimal("0.15"),
        state_machine: StateMachine = quote_state_machine,
    ):
        self.persistence = persistence
        self.audit = audit
        self.locks = VersionLockEngine(persistence, permissions)
        self.state_machine = state_machine
        self.default_currency = validate_currency(default_currency)
        self.default_tax_rate = validate_rate(default_tax_rate, "default tax rate")

    # =========================================================================
    # CALCULATION
    # =========================================================================

    def preview_totals(self, data: QuoteInput) -> TotalsResult:
        """Price a draft without persisting anything."""
        currency = validate_currency(data.currency or self.default_currency)
        rate = validate_rate(
            self.default_tax_rate if data.tax_rate is None else data.tax_rate, "tax rate"
        )
        draft = CalculationDraft(
            currency=currency,
            tax_rate=rate,
            line_items=tuple(build_line_items(data.line_items or (), currency, rate)),
            discount=data.discount or Discount.none(),
        )
        return calculate_totals(draft)

    @staticmethod
    def _recalculate(quote: Quote) -> None:
        if not quote.line_items:
            # A quote may sit in draft with no lines yet
            quote.line_results = []
            quote.subtotal = quote.line_discount_total = round_financial(ZERO)
            quote.discount_amount = quote.tax_amount = round_financial(ZERO)
            quote.total_amount = round_financial(ZERO)
            return
        apply_totals(quote, calculate_totals(CalculationDraft.from_quote(quote)))

    # =========================================================================
    # READS
    # =========================================================================

    async def get_quote(self, quote_id: str, caller: Caller) -> Quote:
        quote = await self.persistence.get_quote(quote_id, caller.organization_id)
        if quote is None:
            raise NotFoundError("quote", quote_id)
        return quote

    async def check_lock(self, quote_id: str, caller: Caller) -> LockCheck:
        quote = await self.get_quote(quote_id, caller)
        return await self.locks.check_lock(quote, caller)

    async def list_versions(self, quote_id: str, caller: Caller) -> List[QuoteVersion]:
        await self.get_quote(quote_id, caller)
        return await self.persistence.list_quote_versions(quote_id, caller.organization_id)

    async def get_version(self, quote_id: str, version_number: int, caller: Caller) -> QuoteVersion:
        version = await self.persistence.get_quote_version(
            quote_id, caller.organization_id, version_number
        )
        if version is None:
            raise NotFoundError("quote_version", f"{quote_id}/v{version_number}")
        return version

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create_quote(self, data: QuoteInput, caller: Caller) -> Quote:
        if not data.customer_id:
            raise ValidationError("'customer_id' is required")
        if not data.title or not data.title.strip():
            raise ValidationError("'title' is required")

        currency = validate_currency(data.currency or self.default_currency)
        tax_rate = validate_rate(
            self.default_tax_rate if data.tax_rate is None else data.tax_rate, "tax rate"
        )
        quote = Quote(
            id=str(uuid.uuid4()),
            organization_id=caller.organization_id,
            customer_id=data.customer_id,
            title=data.title.strip(),
            description=data.description,
            notes=data.notes,
            currency=currency,
            tax_rate=tax_rate,
            discount=data.discount or Discount.none(),
            line_items=build_line_items(data.line_items or (), currency, tax_rate),
            created_by=caller.user_id,
        )
        self._recalculate(quote)

        async with self.persistence.transaction() as session:
            year = quote.created_at.year
            sequence = await self.persistence.next_document_number(
                caller.organization_id, f"Q-{year}", session=session
            )
            quote.quote_number = f"Q-{year}-{sequence:04d}"
            await self.persistence.insert_quote(quote, session=session)

        logger.info(f"[QUOTE] Created {quote.quote_number} ({quote.id}) total={quote.total_amount}")
        await self._audit("CREATE", quote, None, caller)
        return quote

    def _apply_changes(self, quote: Quote, data: QuoteInput) -> Quote:
        updated = quote.copy()
        if data.customer_id is not None:
            updated.customer_id = data.customer_id
        if data.title is not None:
            if not data.title.strip():
                raise ValidationError("'title' cannot be blank")
            updated.title = data.title.strip()
        if data.description is not None:
            updated.description = data.description
        if data.notes is not None:
            updated.notes = data.notes
        if data.currency is not None:
            updated.currency = validate_currency(data.currency)
        if data.tax_rate is not None:
            updated.tax_rate = validate_rate(data.tax_rate, "tax rate")
        if data.discount is not None:
            updated.discount = data.discount
        if data.line_items is not None:
            updated.line_items = build_line_items(data.line_items, updated.currency, updated.tax_rate)
        self._recalculate(updated)
        return updated

    async def update_quote(
        self,
        quote_id: str,
        data: QuoteInput,
        caller: Caller,
        reason: Optional[str] = None,
    ) -> Quote:
        """
        Raises:
            NotFoundError: no such quote in the caller's organization
            LockedResource: quote is locked and caller lacks force-edit
            CalculationError / ValidationError: the edited quote does not price
        """
        async with self.persistence.transaction() as session:
            quote = await self.persistence.get_quote_for_update(
                quote_id, caller.organization_id, session=session
            )
            if quote is None:
                raise NotFoundError("quote", quote_id)

            lock = await self.locks.enforce_lock(quote, caller)
            updated = self._apply_changes(quote, data)

            if updated.material_fields() == quote.material_fields():
                logger.info(f"[QUOTE] No effective change to {quote_id}; nothing written")
                return quote

            if lock.requires_versioning:
                version_reason = reason or (
                    "Force edit of locked quote" if lock.locked else "Quote edited"
                )
                version = await self.locks.create_version_snapshot(
                    quote, version_reason, caller, session=session
                )
                updated.current_version_id = version.id
                updated.version_count = version.version_number

            updated.updated_at = datetime.utcnow()
            await self.persistence.save_quote(updated, session=session)

        logger.info(f"[QUOTE] Updated {quote_id} total={updated.total_amount}")
        await self._audit("UPDATE", updated, quote, caller)
        return updated

    async def create_or_update_quote(
        self,
        data: QuoteInput,
        caller: Caller,
        quote_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Tuple[Quote, bool]:
        """Returns (quote, created)."""
        if quote_id is None:
            return await self.create_quote(data, caller), True
        return await self.update_quote(quote_id, data, caller, reason=reason), False

    async def transition_status(
        self,
        quote_id: str,
        target_status: str,
        caller: Caller,
        reason: Optional[str] = None,
    ) -> Quote:
        """
        Raises:
            ValidationError: unknown status name
            NotFoundError: no such quote
            InvalidTransition: edge not in the lifecycle table, or guard failed
        """
        try:
            target = QuoteStatus(target_status)
        except ValueError:
            raise ValidationError(f"Unknown quote status: {target_status!r}")

        async with self.persistence.transaction() as session:
            quote = await self.persistence.get_quote_for_update(
                quote_id, caller.organization_id, session=session
            )
            if quote is None:
                raise NotFoundError("quote", quote_id)

            updated = quote.copy()
            await self.state_machine.transition(
                updated,
                target,
                user_id=caller.user_id,
                context={"metadata": {"reason": reason}} if reason else None,
            )
            updated.updated_at = datetime.utcnow()
            await self.persistence.save_quote(updated, session=session)

        await self._audit("STATUS_CHANGE", updated, quote, caller)
        return updated

    async def _audit(self, action: str, quote: Quote, previous: Optional[Quote], caller: Caller) -> None:
        if self.audit is None:
            return
        # Committed already; audit failures are logged, never raised
        try:
            await self.audit.record(
                action=action,
                entity_type="QUOTE",
                entity_id=quote.id,
                old_values=previous.snapshot()[0] if previous else None,
                new_values=quote.snapshot()[0],
                actor_id=caller.user_id,
                organization_id=caller.organization_id,
            )
        except Exception as e:
            logger.warning(f"[QUOTE] Audit write failed for {action} on {quote.id}: {e}")
