"""
Idempotency guard tests
"""
from datetime import datetime, timedelta
import asyncio
import json

import pytest

from finance_core.domain import Caller
from finance_core.errors import IdempotencyConflict, StorageError, ValidationError
from finance_core.idempotency import IdempotencyGuard, fingerprint, scope_key

SCOPE = "org-1:user-1:POST /quotes"


class Counter:
    def __init__(self, status_code=201):
        self.calls = 0
        self.status_code = status_code

    async def __call__(self):
        self.calls += 1
        return self.status_code, json.dumps({"id": f"quote-{self.calls}", "total": "6900.00"})


class TestFingerprint:
    def test_key_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": "2"}) == fingerprint({"b": "2", "a": 1})

    def test_body_change_changes_fingerprint(self):
        assert fingerprint({"amount": "10.00"}) != fingerprint({"amount": "10.01"})

    def test_scope_key(self):
        assert scope_key(Caller("u", "o"), "POST /quotes") == "o:u:POST /quotes"


class TestCheckAndStore:
    @pytest.mark.asyncio
    async def test_absent_key_is_a_no_op(self, guard, kv_store):
        check = await guard.check(SCOPE, None, {"a": 1})
        assert not check.duplicate
        await guard.store(SCOPE, None, {"a": 1}, 201, "{}")
        assert kv_store.data == {}

    @pytest.mark.asyncio
    async def test_stored_response_is_replayed(self, guard):
        await guard.store(SCOPE, "key-1", {"a": 1}, 201, '{"id": "q-1"}')
        check = await guard.check(SCOPE, "key-1", {"a": 1})
        assert check.duplicate
        assert check.cached_response.status_code == 201
        assert check.cached_response.body == '{"id": "q-1"}'

    @pytest.mark.asyncio
    async def test_different_body_conflicts(self, guard):
        await guard.store(SCOPE, "key-1", {"a": 1}, 201, "{}")
        with pytest.raises(IdempotencyConflict) as exc:
            await guard.check(SCOPE, "key-1", {"a": 2})
        assert exc.value.http_status == 409

    @pytest.mark.asyncio
    async def test_keys_are_scoped(self, guard):
        await guard.store(SCOPE, "key-1", {"a": 1}, 201, "{}")
        check = await guard.check("org-2:user-1:POST /quotes", "key-1", {"a": 2})
        assert not check.duplicate

    @pytest.mark.asyncio
    async def test_expired_record_is_treated_as_new(self, guard, kv_store):
        await guard.store(SCOPE, "key-1", {"a": 1}, 201, "{}")
        record_key = f"{SCOPE}:key-1"
        kv_store.data[record_key]["expires_at"] = datetime.utcnow() - timedelta(seconds=1)

        check = await guard.check(SCOPE, "key-1", {"a": 2})
        assert not check.duplicate
        assert record_key not in kv_store.data


class TestExecute:
    @pytest.mark.asyncio
    async def test_replay_is_byte_identical_and_runs_once(self, guard):
        operation = Counter()
        first = await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        second = await guard.execute(SCOPE, "key-1", {"a": 1}, operation)

        assert operation.calls == 1
        assert not first.replayed
        assert second.replayed
        assert second.body == first.body
        assert second.status_code == 201

    @pytest.mark.asyncio
    async def test_without_key_every_call_runs(self, guard):
        operation = Counter()
        await guard.execute(SCOPE, None, {"a": 1}, operation)
        await guard.execute(SCOPE, None, {"a": 1}, operation)
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_mutated_body_conflicts_without_running(self, guard):
        operation = Counter()
        await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        with pytest.raises(IdempotencyConflict):
            await guard.execute(SCOPE, "key-1", {"a": 2}, operation)
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_failed_operation_releases_the_key(self, guard, kv_store):
        async def failing():
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            await guard.execute(SCOPE, "key-1", {"a": 1}, failing)
        assert kv_store.data == {}

        operation = Counter()
        result = await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        assert operation.calls == 1
        assert not result.replayed

    @pytest.mark.asyncio
    async def test_concurrent_first_attempts_run_once(self, guard):
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            started.set()
            await release.wait()
            return 201, '{"id": "q-1"}'

        first = asyncio.create_task(guard.execute(SCOPE, "key-1", {"a": 1}, slow))
        await started.wait()

        with pytest.raises(IdempotencyConflict):
            await guard.execute(SCOPE, "key-1", {"a": 1}, slow)

        release.set()
        result = await first
        assert result.status_code == 201
        assert len(calls) == 1


class TestAbandonedReservations:
    @staticmethod
    async def fail_with_storage_error(*args, **kwargs):
        raise StorageError("Storage operation failed: delete")

    @pytest.mark.asyncio
    async def test_unreleased_key_is_reclaimed_after_lease(self, kv_store, monkeypatch):
        guard = IdempotencyGuard(kv_store, ttl=timedelta(hours=24), lease=timedelta(seconds=30))

        async def failing():
            monkeypatch.setattr(kv_store, "delete", self.fail_with_storage_error)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            await guard.execute(SCOPE, "key-1", {"a": 1}, failing)
        monkeypatch.undo()

        record_key = f"{SCOPE}:key-1"
        assert kv_store.data[record_key]["state"] == "in_progress"

        operation = Counter()
        with pytest.raises(IdempotencyConflict):
            await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        assert operation.calls == 0

        kv_store.data[record_key]["lease_expires_at"] = datetime.utcnow() - timedelta(seconds=1)
        result = await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        assert operation.calls == 1
        assert not result.replayed
        assert kv_store.data[record_key]["state"] == "completed"

    @pytest.mark.asyncio
    async def test_cancelled_operation_releases_the_key(self, guard, kv_store):
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await guard.execute(SCOPE, "key-1", {"a": 1}, cancelled)
        assert kv_store.data == {}

    @pytest.mark.asyncio
    async def test_unrecorded_response_is_still_returned(self, guard, kv_store, monkeypatch):
        monkeypatch.setattr(kv_store, "set", self.fail_with_storage_error)
        operation = Counter()

        result = await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        assert result.status_code == 201
        assert operation.calls == 1

        # The reservation still blocks the key until its lease runs out
        with pytest.raises(IdempotencyConflict):
            await guard.execute(SCOPE, "key-1", {"a": 1}, operation)
        assert operation.calls == 1
