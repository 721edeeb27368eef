"""
Tests for the credit gate.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from shared.account_store import InMemoryAccountStore
from shared.credit_gate import CreditGate, to_amount
from shared.errors import (
    InsufficientCreditsError,
    LedgerStateError,
    RetryableError,
    ValidationError,
)


@pytest.fixture
def store():
    """In-memory store with a funded, an empty and an unlimited account."""
    store = InMemoryAccountStore()
    store.add_account("acct-1", balance=20)
    store.add_account("broke", balance=0)
    store.add_account("admin", balance=0, unlimited=True)
    return store


@pytest.fixture
def gate(store):
    return CreditGate(store)


@pytest.mark.asyncio
async def test_reserve_holds_credits(gate):
    """Test that reserve deducts the amount and records a reserved entry."""
    reservation_id = await gate.reserve("acct-1", "render", 5, job_id="job-1")

    assert await gate.balance("acct-1") == Decimal("15")
    entry = gate.get_entry(reservation_id)
    assert entry.state == "reserved"
    assert entry.reserved_amount == Decimal("5")
    assert entry.job_id == "job-1"
    assert entry.stage == "render"


@pytest.mark.asyncio
async def test_commit_finalizes_reservation(gate):
    """Test that commit keeps the deduction and resolves the entry."""
    reservation_id = await gate.reserve("acct-1", "render", 5)
    entry = await gate.commit(reservation_id)

    assert entry.state == "committed"
    assert entry.committed_amount == Decimal("5")
    assert entry.refunded_amount == Decimal("0")
    assert entry.resolved_at is not None
    assert await gate.balance("acct-1") == Decimal("15")


@pytest.mark.asyncio
async def test_refund_restores_balance(gate):
    """Test that refund returns the held amount."""
    reservation_id = await gate.reserve("acct-1", "polish", 10)
    entry = await gate.refund(reservation_id)

    assert entry.state == "refunded"
    assert entry.refunded_amount == Decimal("10")
    assert await gate.balance("acct-1") == Decimal("20")


@pytest.mark.asyncio
async def test_resolved_amounts_add_up(gate):
    """Test committed + refunded == reserved for every resolved entry."""
    first = await gate.reserve("acct-1", "narrate", 3, job_id="job-1")
    second = await gate.reserve("acct-1", "align", 1, job_id="job-1")
    await gate.commit(first)
    await gate.refund(second)

    for entry in gate.entries("job-1"):
        assert entry.is_resolved
        assert entry.committed_amount + entry.refunded_amount == entry.reserved_amount


@pytest.mark.asyncio
async def test_insufficient_credits(gate, store):
    """Test reserve failure reports attempted and available amounts."""
    with pytest.raises(InsufficientCreditsError) as exc_info:
        await gate.reserve("broke", "render", 10, job_id="job-2")

    error = exc_info.value
    assert error.attempted == Decimal("10")
    assert error.available == Decimal("0")
    assert error.account_id == "broke"
    assert error.stage == "render"
    assert error.job_id == "job-2"
    assert not error.retryable
    assert gate.entries("job-2") == []
    assert store.entries == {}


@pytest.mark.asyncio
async def test_unlimited_account_bypasses_gate(gate):
    """Test unlimited accounts reserve zero and still transition state."""
    reservation_id = await gate.reserve("admin", "polish", 10, job_id="job-3")
    entry = gate.get_entry(reservation_id)
    assert entry.unlimited
    assert entry.reserved_amount == Decimal("0")

    refunded = await gate.refund(reservation_id)
    assert refunded.state == "refunded"
    assert refunded.refunded_amount == Decimal("0")
    assert await gate.balance("admin") == Decimal("0")


@pytest.mark.asyncio
async def test_idempotency_key_returns_existing_reservation(gate):
    """Test repeating a reserve with the same key does not hold twice."""
    first = await gate.reserve("acct-1", "render", 5, idempotency_key="job-1:render:1")
    second = await gate.reserve("acct-1", "render", 5, idempotency_key="job-1:render:1")

    assert first == second == "job-1:render:1"
    assert await gate.balance("acct-1") == Decimal("15")
    assert len(gate.entries()) == 1


@pytest.mark.asyncio
async def test_idempotency_key_of_resolved_reservation_is_rejected(gate):
    """Test a committed or refunded key is never handed out as a fresh hold."""
    committed = await gate.reserve("acct-1", "render", 5, idempotency_key="job-1:render:1")
    await gate.commit(committed)
    refunded = await gate.reserve("acct-1", "polish", 5, idempotency_key="job-1:polish:1")
    await gate.refund(refunded)

    with pytest.raises(LedgerStateError, match="committed"):
        await gate.reserve("acct-1", "render", 5, idempotency_key="job-1:render:1")
    with pytest.raises(LedgerStateError, match="refunded"):
        await gate.reserve("acct-1", "polish", 5, idempotency_key="job-1:polish:1")

    assert await gate.balance("acct-1") == Decimal("15")


@pytest.mark.asyncio
async def test_double_resolution(gate):
    """Test same-state resolution is a no-op and conflicting resolution raises."""
    reservation_id = await gate.reserve("acct-1", "render", 5)
    await gate.commit(reservation_id)
    await gate.commit(reservation_id)
    assert await gate.balance("acct-1") == Decimal("15")

    with pytest.raises(LedgerStateError):
        await gate.refund(reservation_id)

    other = await gate.reserve("acct-1", "render", 5)
    await gate.refund(other)
    await gate.refund(other)
    assert await gate.balance("acct-1") == Decimal("15")

    with pytest.raises(LedgerStateError):
        await gate.commit(other)


@pytest.mark.asyncio
async def test_unknown_reservation(gate):
    with pytest.raises(LedgerStateError):
        await gate.commit("missing")


@pytest.mark.asyncio
async def test_negative_amount_rejected(gate):
    with pytest.raises(ValidationError):
        await gate.reserve("acct-1", "render", -1)


def test_to_amount():
    """Test amount normalization."""
    assert to_amount(3) == Decimal("3")
    assert to_amount(0.5) == Decimal("0.5")
    assert to_amount("2") == Decimal("2")
    with pytest.raises(ValidationError):
        to_amount("lots")


@pytest.mark.asyncio
async def test_unknown_account(gate):
    with pytest.raises(ValidationError):
        await gate.reserve("nobody", "render", 1)


@pytest.mark.asyncio
async def test_refund_outstanding(gate):
    """Test that only reserved entries of the job are refunded."""
    committed = await gate.reserve("acct-1", "upload", 2, job_id="job-4")
    await gate.commit(committed)
    pending = await gate.reserve("acct-1", "narrate", 3, job_id="job-4")
    other_job = await gate.reserve("acct-1", "narrate", 3, job_id="job-5")

    refunded = await gate.refund_outstanding("job-4")

    assert refunded == [pending]
    assert gate.get_entry(pending).state == "refunded"
    assert gate.get_entry(committed).state == "committed"
    assert gate.get_entry(other_job).state == "reserved"


@pytest.mark.asyncio
async def test_concurrent_reserves_do_not_overspend(gate):
    """Test concurrent reservations on one account never lose an update."""
    results = await asyncio.gather(
        *[gate.reserve("acct-1", "render", 5) for _ in range(6)],
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, str)]
    failed = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 4
    assert len(failed) == 2
    assert await gate.balance("acct-1") == Decimal("0")


@pytest.mark.asyncio
async def test_cas_conflict_rereads_balance(store):
    """Test that a rejected compare-and-set re-reads and retries."""
    original = store.compare_and_set_balance
    calls = {"count": 0}

    async def flaky_cas(account_id, expected, new):
        calls["count"] += 1
        if calls["count"] == 1:
            # Another writer spends 4 credits first
            await original(account_id, expected, expected - 4)
            return False
        return await original(account_id, expected, new)

    store.compare_and_set_balance = flaky_cas
    gate = CreditGate(store)

    await gate.reserve("acct-1", "render", 5)

    assert calls["count"] == 2
    assert await gate.balance("acct-1") == Decimal("11")


@pytest.mark.asyncio
async def test_cas_gives_up(store):
    """Test that a permanently contended balance raises RetryableError."""
    store.compare_and_set_balance = AsyncMock(return_value=False)
    gate = CreditGate(store, max_cas_attempts=3)

    with pytest.raises(RetryableError):
        await gate.reserve("acct-1", "render", 5)

    assert store.compare_and_set_balance.await_count == 3


@pytest.mark.asyncio
async def test_failed_entry_save_releases_hold(store):
    """Test the hold is released when the ledger entry cannot be saved."""
    store.save_entry = AsyncMock(side_effect=RetryableError("ledger unavailable"))
    gate = CreditGate(store)

    with pytest.raises(RetryableError):
        await gate.reserve("acct-1", "render", 5)

    assert await gate.balance("acct-1") == Decimal("20")
    assert gate.entries() == []


@pytest.mark.asyncio
async def test_forget_drops_resolved_entries_only(gate, store):
    done = await gate.reserve("acct-1", "render", 5, job_id="job-1")
    await gate.commit(done)
    pending = await gate.reserve("acct-1", "polish", 5, job_id="job-1")
    other = await gate.reserve("acct-1", "render", 1, job_id="job-2")

    assert gate.forget("job-1") == 1

    assert [e.id for e in gate.entries("job-1")] == [pending]
    assert [e.id for e in gate.entries("job-2")] == [other]
    assert done in store.entries
    with pytest.raises(LedgerStateError):
        gate.get_entry(done)

    await gate.refund_outstanding("job-1")
    assert gate.forget("job-1") == 1
    assert gate.entries("job-1") == []
    assert gate.forget("job-unknown") == 0
