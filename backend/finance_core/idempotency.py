"""
IDEMPOTENCY GUARD

Deduplicates repeated write requests carrying the same Idempotency-Key.

Features:
- Requests without a key pass straight through
- Same key + same body replays the stored status and body byte for byte
- Same key + different body is rejected (409)
- A first attempt reserves the key, so two concurrent first attempts
  cannot both run the write
- Records expire after a TTL (24h by default); an expired key is new again
- A reservation holds a short lease (60s by default); a reservation whose
  request died without releasing it is reclaimed once the lease runs out

Usage:
    guard = IdempotencyGuard(MongoIdempotencyStore(db))

    response = await guard.execute(
        scope=scope_key(caller, "POST /quotes"),
        key=idempotency_key,
        request_body=body,
        operation=create_quote,
    )
    if response.replayed:
        ...
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple
import hashlib
import json
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from .domain import Caller
from .errors import IdempotencyConflict
from .persistence import storage_errors

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)
DEFAULT_LEASE = timedelta(seconds=60)

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"

# Operation signature: async def operation() -> (status_code, serialized_body)
Operation = Callable[[], Awaitable[Tuple[int, str]]]


# =============================================================================
# KEY / VALUE STORE CONTRACT
# =============================================================================

class IdempotencyStore(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, key: str, value: Dict[str, Any], ttl: timedelta) -> None:
        ...

    async def add(self, key: str, value: Dict[str, Any], ttl: timedelta) -> bool:
        """Set only if absent. Returns False when the key already exists."""
        ...

    async def delete(self, key: str) -> None:
        ...


class MongoIdempotencyStore:
    """
    Idempotency records in MongoDB, one document per key.

    Expiry is enforced by a TTL index on ``expires_at`` (see migrations)
    and re-checked by the guard on read. The TTL monitor only runs once a
    minute, so ``purge_expired`` is there for an immediate sweep.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.idempotency_keys

    @storage_errors
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": key})

    @storage_errors
    async def set(self, key: str, value: Dict[str, Any], ttl: timedelta) -> None:
        doc = {**value, "_id": key, "expires_at": datetime.utcnow() + ttl}
        await self.collection.replace_one({"_id": key}, doc, upsert=True)

    @storage_errors
    async def add(self, key: str, value: Dict[str, Any], ttl: timedelta) -> bool:
        doc = {**value, "_id": key, "expires_at": datetime.utcnow() + ttl}
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True

    @storage_errors
    async def delete(self, key: str) -> None:
        await self.collection.delete_one({"_id": key})

    @storage_errors
    async def purge_expired(self) -> int:
        """Delete every record past its expiry. Returns the number removed."""
        result = await self.collection.delete_many({"expires_at": {"$lte": datetime.utcnow()}})
        if result.deleted_count:
            logger.info(f"[IDEMPOTENT] Purged {result.deleted_count} expired keys")
        return result.deleted_count


# =============================================================================
# GUARD
# =============================================================================

def fingerprint(request_body: Any) -> str:
    """SHA-256 of the canonical JSON form of a request body."""
    canonical = json.dumps(request_body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def scope_key(caller: Caller, route: str) -> str:
    """Keys are only unique per organization, user and route."""
    return f"{caller.organization_id}:{caller.user_id}:{route}"


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    body: str


@dataclass(frozen=True)
class IdempotencyCheck:
    duplicate: bool
    cached_response: Optional[CachedResponse] = None


@dataclass(frozen=True)
class IdempotentResponse:
    status_code: int
    body: str
    replayed: bool = False


class IdempotencyGuard:
    def __init__(
        self,
        store: IdempotencyStore,
        ttl: timedelta = DEFAULT_TTL,
        lease: timedelta = DEFAULT_LEASE,
    ):
        self.records = store
        self.ttl = ttl
        self.lease = lease

    @staticmethod
    def _record_key(scope: str, key: str) -> str:
        return f"{scope}:{key}"

    async def check(self, scope: str, key: Optional[str], request_body: Any) -> IdempotencyCheck:
        """
        Look up a previous attempt.

        Raises:
            IdempotencyConflict: the key was used with a different body, or
                the first attempt with this key has not finished yet
        """
        if not key:
            return IdempotencyCheck(duplicate=False)

        record_key = self._record_key(scope, key)
        record = await self.records.get(record_key)
        if record is None:
            return IdempotencyCheck(duplicate=False)

        expires_at = record.get("expires_at")
        if expires_at is not None and expires_at <= datetime.utcnow():
            logger.debug(f"[IDEMPOTENT] Expired key treated as new: {key}")
            await self.records.delete(record_key)
            return IdempotencyCheck(duplicate=False)

        lease_expires_at = record.get("lease_expires_at")
        if (
            record.get("state") != STATE_COMPLETED
            and lease_expires_at is not None
            and lease_expires_at <= datetime.utcnow()
        ):
            logger.warning(f"[IDEMPOTENT] Reclaimed abandoned reservation: {key} ({scope})")
            await self.records.delete(record_key)
            return IdempotencyCheck(duplicate=False)

        if record.get("request_fingerprint") != fingerprint(request_body):
            logger.warning(f"[IDEMPOTENT] Key reused with a different body: {key} ({scope})")
            raise IdempotencyConflict(
                "Idempotency key was already used with a different request body",
                {"key": key},
            )

        if record.get("state") != STATE_COMPLETED:
            raise IdempotencyConflict(
                "A request with this key is already in progress", {"key": key}
            )

        logger.info(f"[IDEMPOTENT] Duplicate request detected: {key} ({scope})")
        return IdempotencyCheck(
            duplicate=True,
            cached_response=CachedResponse(
                status_code=record["response_status"],
                body=record["response_body"],
            ),
        )

    def _record(self, scope: str, key: str, request_body: Any, state: str) -> Dict[str, Any]:
        return {
            "scope_key": scope,
            "key": key,
            "request_fingerprint": fingerprint(request_body),
            "state": state,
            "created_at": datetime.utcnow(),
        }

    async def store(
        self,
        scope: str,
        key: Optional[str],
        request_body: Any,
        status_code: int,
        body: str,
    ) -> None:
        """Record a successful response so later duplicates can replay it."""
        if not key:
            return
        record = self._record(scope, key, request_body, STATE_COMPLETED)
        record["response_status"] = status_code
        record["response_body"] = body
        await self.records.set(self._record_key(scope, key), record, self.ttl)
        logger.info(f"[IDEMPOTENT] Recorded response for key: {key} ({scope})")

    async def _reserve(self, scope: str, key: str, request_body: Any) -> bool:
        record = self._record(scope, key, request_body, STATE_IN_PROGRESS)
        record["lease_expires_at"] = datetime.utcnow() + self.lease
        return await self.records.add(self._record_key(scope, key), record, self.ttl)

    async def _release(self, scope: str, key: str) -> None:
        try:
            await self.records.delete(self._record_key(scope, key))
        except Exception as e:
            # The lease frees the key later
            logger.warning(f"[IDEMPOTENT] Could not release key {key} ({scope}): {e}")
            return
        logger.info(f"[IDEMPOTENT] Released key after failed request: {key} ({scope})")

    async def execute(
        self,
        scope: str,
        key: Optional[str],
        request_body: Any,
        operation: Operation,
    ) -> IdempotentResponse:
        """
        Run ``operation`` at most once per (scope, key, body).

        The operation returns ``(status_code, serialized_body)``; only
        successful results are recorded. If it raises or is cancelled, the
        reservation is released and the error propagates, so the caller may
        retry with the same key. A reservation that could not be released
        blocks the key until its lease runs out.

        A completed operation whose response could not be recorded still
        returns its response; the reservation then stays in place until the
        lease runs out.
        """
        if not key:
            status_code, body = await operation()
            return IdempotentResponse(status_code, body)

        previous = await self.check(scope, key, request_body)
        if previous.duplicate:
            return IdempotentResponse(
                previous.cached_response.status_code,
                previous.cached_response.body,
                replayed=True,
            )

        if not await self._reserve(scope, key, request_body):
            # Lost the race: the winner finished, is still running, or was reclaimed
            previous = await self.check(scope, key, request_body)
            if previous.duplicate:
                return IdempotentResponse(
                    previous.cached_response.status_code,
                    previous.cached_response.body,
                    replayed=True,
                )
            if not await self._reserve(scope, key, request_body):
                raise IdempotencyConflict(
                    "A request with this key is already in progress", {"key": key}
                )

        try:
            status_code, body = await operation()
        except BaseException:
            await self._release(scope, key)
            raise

        try:
            await self.store(scope, key, request_body, status_code, body)
        except Exception as e:
            logger.error(f"[IDEMPOTENT] Could not record response for key {key} ({scope}): {e}")
        return IdempotentResponse(status_code, body)
