"""
VERSION & LOCK ENGINE

Provides:
1. Lock evaluation for quotes (approved and accepted quotes are locked)
2. Force-edit capability lookup through the permission service
3. Full by-value snapshot of a quote before modification
4. Gapless version numbers from the per-quote sequence
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
import logging
import uuid

from .domain import Caller, Quote, QuoteStatus, QuoteVersion
from .errors import LockedResource
from .persistence import FinancePersistence

logger = logging.getLogger(__name__)

LOCKED_QUOTE_STATUSES = frozenset({QuoteStatus.APPROVED, QuoteStatus.ACCEPTED})

FORCE_EDIT_CAPABILITY = "quotes.force_edit"


class PermissionLookup(Protocol):
    async def has_capability(self, user_id: str, organization_id: str, capability: str) -> bool:
        ...


@dataclass(frozen=True)
class LockCheck:
    locked: bool
    can_force_edit: bool
    requires_versioning: bool
    reason: str = ""

    @property
    def may_edit(self) -> bool:
        return not self.locked or self.can_force_edit


class VersionLockEngine:
    """
    Lock enforcement and version snapshots for quotes.
    """

    def __init__(self, persistence: FinancePersistence, permissions: PermissionLookup):
        self.persistence = persistence
        self.permissions = permissions

    async def check_lock(self, quote: Quote, caller: Caller) -> LockCheck:
        if quote.status not in LOCKED_QUOTE_STATUSES:
            return LockCheck(
                locked=False,
                can_force_edit=False,
                requires_versioning=quote.status is not QuoteStatus.DRAFT,
            )

        can_force_edit = await self.permissions.has_capability(
            caller.user_id, caller.organization_id, FORCE_EDIT_CAPABILITY
        )
        return LockCheck(
            locked=True,
            can_force_edit=can_force_edit,
            requires_versioning=True,
            reason=f"Quote is {quote.status.value} and locked for editing",
        )

    async def enforce_lock(self, quote: Quote, caller: Caller) -> LockCheck:
        """
        Raises:
            LockedResource: quote is locked and the caller cannot force-edit
        """
        lock = await self.check_lock(quote, caller)
        if not lock.may_edit:
            logger.info(
                f"[VERSION] Blocked edit of locked quote {quote.id} "
                f"({quote.status.value}) by user {caller.user_id}"
            )
            raise LockedResource("quote", quote.id, lock.reason)
        if lock.locked:
            logger.warning(
                f"[VERSION] Force-edit of locked quote {quote.id} by user {caller.user_id}"
            )
        return lock

    async def create_version_snapshot(
        self,
        quote: Quote,
        reason: str,
        caller: Caller,
        session=None
    ) -> QuoteVersion:
        """
        Snapshot ``quote`` as it is now (call before applying a change).

        The version number comes from the sequence on the quote row, so it
        must run in the same transaction that holds the row lock.
        """
        version_number = await self.persistence.next_quote_version_number(quote.id, session=session)
        header, lines = quote.snapshot()

        version = QuoteVersion(
            id=str(uuid.uuid4()),
            quote_id=quote.id,
            organization_id=quote.organization_id,
            version_number=version_number,
            quote_snapshot=header,
            line_item_snapshots=tuple(lines),
            reason=reason,
            created_by=caller.user_id,
            created_at=datetime.utcnow(),
        )
        await self.persistence.insert_quote_version(version, session=session)

        logger.info(f"[VERSION] Created snapshot v{version_number} for quote {quote.id}: {reason}")
        return version
