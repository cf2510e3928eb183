"""Tests for failed-login counting and temporary lockout."""

import asyncio
from datetime import timedelta

import pytest

from tokenguard.service.lockout import ATTEMPTS_KEY_PREFIX, LockoutGuard
from tokenguard.storage.errors import StorageErrorKind
from tokenguard.storage.local_cache import LocalCache

THIRTY_MINUTES = timedelta(minutes=30)


async def _fail(guard, identity, times, source="1.2.3.4"):
    result = None
    for _ in range(times):
        result = await guard.record_failed_attempt(identity, source)
    return result


class TestThreshold:
    """Counting up to the lockout threshold."""

    async def test_four_failures_do_not_lock(self, lockout):
        result = await _fail(lockout, "u1", 4)

        assert result.locked is False
        assert result.attempts_remaining == 1
        status = await lockout.is_account_locked("u1")
        assert status.locked is False
        assert status.lockout_until is None

    async def test_fifth_failure_locks(self, lockout, clock):
        results = [await lockout.record_failed_attempt("u1", "1.2.3.4") for _ in range(5)]

        assert [r.attempts_remaining for r in results] == [4, 3, 2, 1, 0]
        assert results[-1].locked is True
        assert results[-1].locked_until == clock.now() + THIRTY_MINUTES

        status = await lockout.is_account_locked("u1")
        assert status.locked is True
        assert status.lockout_until == clock.now() + THIRTY_MINUTES

    async def test_durable_row_mirrors_counter(self, lockout, memory_store, clock):
        await _fail(lockout, "u1", 3, source="10.0.0.9")

        row = memory_store.lockouts["u1"]
        assert row.failed_attempts == 3
        assert row.locked_until is None
        assert row.last_attempt_source == "10.0.0.9"
        assert row.last_attempt_at == clock.now()

    async def test_identities_are_independent(self, lockout):
        await _fail(lockout, "u1", 5)
        status = await lockout.is_account_locked("u2")
        assert status.locked is False

    async def test_identity_is_normalized(self, lockout):
        await _fail(lockout, "U1@Example.com ", 3)
        result = await lockout.record_failed_attempt("u1@example.com", "src")
        assert result.failed_attempts == 4

    async def test_custom_threshold(self, faulty_store, local_cache, clock):
        guard = LockoutGuard(faulty_store, local_cache, threshold=2, clock=clock.now)
        result = await _fail(guard, "u1", 2)
        assert result.locked is True


class TestLockedState:
    """Behaviour once an identity is locked."""

    async def test_lock_does_not_escalate(self, lockout, memory_store, clock):
        first = await _fail(lockout, "u1", 5)
        clock.advance(minutes=5)

        again = await _fail(lockout, "u1", 10)

        assert again.locked is True
        assert again.locked_until == first.locked_until
        assert memory_store.lockouts["u1"].locked_until == first.locked_until
        assert memory_store.lockouts["u1"].failed_attempts == 5

    async def test_lock_found_only_in_durable_store(
        self, lockout, memory_store, local_cache, faulty_store, clock
    ):
        first = await _fail(lockout, "u1", 5)
        other_process = LockoutGuard(faulty_store, LocalCache(clock=clock.monotonic), clock=clock.now)

        status = await other_process.is_account_locked("u1")
        result = await other_process.record_failed_attempt("u1", "src")

        assert status.locked is True
        assert status.lockout_until == first.locked_until
        assert result.locked is True
        assert result.locked_until == first.locked_until

    async def test_lock_expires(self, lockout, clock):
        await _fail(lockout, "u1", 5)
        clock.advance(minutes=31)

        status = await lockout.is_account_locked("u1")
        assert status.locked is False

        result = await lockout.record_failed_attempt("u1", "src")
        assert result.locked is False
        assert result.failed_attempts == 1

    async def test_clear_resets_to_first_attempt(self, lockout, memory_store, local_cache):
        await _fail(lockout, "u1", 5)

        assert await lockout.clear_failed_attempts("u1") is True
        assert "u1" not in memory_store.lockouts
        assert await local_cache.get(ATTEMPTS_KEY_PREFIX + "u1") is None
        assert (await lockout.is_account_locked("u1")).locked is False

        result = await lockout.record_failed_attempt("u1", "src")
        assert result.failed_attempts == 1
        assert result.locked is False
        assert result.attempts_remaining == 4

    async def test_concurrent_failures_never_bypass(self, lockout):
        await asyncio.gather(
            *(lockout.record_failed_attempt("u1", "src") for _ in range(12))
        )
        status = await lockout.is_account_locked("u1")
        assert status.locked is True


class TestSharedState:
    """Several guards over one durable store and one cache."""

    async def test_lock_cleared_elsewhere_restarts_counting(
        self, faulty_store, local_cache, clock
    ):
        first = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        second = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        assert (await _fail(first, "u1", 5)).locked is True

        assert await second.clear_failed_attempts("u1") is True
        results = [await first.record_failed_attempt("u1", "src") for _ in range(5)]

        assert [r.failed_attempts for r in results] == [1, 2, 3, 4, 5]
        assert [r.locked for r in results] == [False, False, False, False, True]
        assert faulty_store.inner.lockouts["u1"].locked_until == results[-1].locked_until
        for guard in (first, second):
            status = await guard.is_account_locked("u1")
            assert status.locked is True
            assert status.lockout_until == results[-1].locked_until

    async def test_check_drops_lock_cleared_elsewhere(self, faulty_store, local_cache, clock):
        first = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        second = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        await _fail(first, "u1", 5)

        await second.clear_failed_attempts("u1")

        assert (await first.is_account_locked("u1")).locked is False
        assert first.local_locks.expiry("u1") is None

    async def test_memo_still_answers_when_store_goes_down(
        self, faulty_store, local_cache, clock
    ):
        guard = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        locked = await _fail(guard, "u1", 5)
        await local_cache.clear()
        faulty_store.fail_kind("get_lockout", StorageErrorKind.TRANSIENT)

        result = await guard.record_failed_attempt("u1", "src")

        assert result.locked is True
        assert result.locked_until == locked.locked_until


class TestDegradedStorage:
    """Durable store failures fall back to cache and local estimates."""

    async def test_unreachable_store_uses_cache_count(self, lockout, faulty_store, clock):
        faulty_store.fail_kind("get_lockout", StorageErrorKind.TRANSIENT)
        faulty_store.fail_kind("save_lockout", StorageErrorKind.TRANSIENT)
        result = await _fail(lockout, "u1", 5)
        assert result.locked is True

        status = await lockout.is_account_locked("u1")
        assert status.locked is True
        assert status.lockout_until == clock.now() + THIRTY_MINUTES

    async def test_estimate_when_only_cache_knows(
        self, faulty_store, local_cache, clock
    ):
        writer = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        faulty_store.fail_kind("save_lockout", StorageErrorKind.TRANSIENT)
        await _fail(writer, "u1", 5)

        reader = LockoutGuard(faulty_store, local_cache, clock=clock.now)
        faulty_store.fail_kind("get_lockout", StorageErrorKind.TRANSIENT)
        clock.advance(minutes=1)

        status = await reader.is_account_locked("u1")
        assert status.locked is True
        assert status.lockout_until == clock.now() + THIRTY_MINUTES

    async def test_unprovisioned_store_still_counts(self, lockout, faulty_store):
        for method in ("get_lockout", "save_lockout", "delete_lockout"):
            faulty_store.fail_kind(method, StorageErrorKind.NOT_PROVISIONED, "account_lockouts")
        result = await _fail(lockout, "u1", 5)
        assert result.locked is True
        assert await lockout.clear_failed_attempts("u1") is False
        assert (await lockout.is_account_locked("u1")).locked is False

    async def test_resumes_count_after_cache_loss(
        self, lockout, local_cache, memory_store, clock
    ):
        await _fail(lockout, "u1", 3)
        await local_cache.clear()
        clock.advance(minutes=1)

        result = await lockout.record_failed_attempt("u1", "src")

        assert result.failed_attempts == 4
        assert memory_store.lockouts["u1"].failed_attempts == 4

    async def test_unexpected_error_during_check(self, lockout, faulty_store):
        faulty_store.fail("get_lockout", RuntimeError("bug"))
        status = await lockout.is_account_locked("u1")
        assert status.locked is False

    async def test_unexpected_error_while_recording(self, lockout, faulty_store, memory_store):
        faulty_store.fail("get_lockout", RuntimeError("boom"))

        result = await lockout.record_failed_attempt("u1", "src")

        assert result.locked is False
        assert result.failed_attempts == 1
        assert result.attempts_remaining == 4
        assert memory_store.lockouts["u1"].failed_attempts == 1

    async def test_unexpected_errors_still_lock(self, lockout, faulty_store):
        faulty_store.fail("get_lockout", RuntimeError("boom"))
        faulty_store.fail("save_lockout", RuntimeError("disk full"))

        result = await _fail(lockout, "u1", 5)

        assert result.locked is True
        assert (await lockout.is_account_locked("u1")).locked is True


class TestInputValidation:
    @pytest.mark.parametrize("bad", ["", "  ", None])
    async def test_malformed_identity(self, lockout, faulty_store, bad):
        result = await lockout.record_failed_attempt(bad, "src")
        assert result.locked is False
        assert result.attempts_remaining == 5
        assert result.error == "invalid_identity"
        assert (await lockout.is_account_locked(bad)).locked is False
        assert await lockout.clear_failed_attempts(bad) is False
        assert faulty_store.calls == []

    def test_rejects_bad_configuration(self, memory_store):
        with pytest.raises(ValueError):
            LockoutGuard(memory_store, threshold=0)
        with pytest.raises(ValueError):
            LockoutGuard(memory_store, lockout_duration_ms=0)
