"""
Credit gate.

Reserve, commit and refund credits per stage attempt against a per-account
prepaid balance. Reserved credits are held (deducted) immediately so that
concurrent jobs on the same account cannot overspend; commit finalizes the
hold and refund returns it.
"""

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union
from uuid import uuid4

from shared.account_store import AccountStore
from shared.errors import (
    InsufficientCreditsError,
    LedgerStateError,
    RetryableError,
    ValidationError,
)
from shared.logging import get_logger
from shared.models.credits import Account, CreditLedgerEntry
from shared.models.job import utcnow

logger = get_logger("credit_gate")

Amount = Union[Decimal, int, float, str]


def to_amount(value: Amount) -> Decimal:
    """Convert a cost estimate to Decimal, rejecting negatives and garbage."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid credit amount: {value!r}") from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Credit amount cannot be negative: {value}")
    return amount


class CreditGate:
    """Credit reservations with per-account serialization."""

    def __init__(self, store: AccountStore, max_cas_attempts: int = 5):
        """
        Initialize credit gate.

        Args:
            store: Account store holding balances and persisting ledger entries
            max_cas_attempts: Compare-and-set attempts before giving up on a contended balance
        """
        self.store = store
        self.max_cas_attempts = max_cas_attempts
        # Locks per account_id for concurrent-safe balance mutation
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_manager = asyncio.Lock()  # Lock for managing the locks dict
        self._entries: Dict[str, CreditLedgerEntry] = {}
        # Reservation ids per job, in creation order
        self._job_entries: Dict[str, List[str]] = {}

    async def _get_lock(self, account_id: str) -> asyncio.Lock:
        """Get or create lock for an account_id."""
        async with self._lock_manager:
            if account_id not in self._locks:
                self._locks[account_id] = asyncio.Lock()
            return self._locks[account_id]

    async def _apply_delta(
        self,
        account_id: str,
        delta: Decimal,
        account: Optional[Account] = None,
    ) -> Decimal:
        """
        Add delta to the balance with a compare-and-set loop.

        Must be called with the account lock held. Other processes may still
        write the same balance, which the compare-and-set detects.
        """
        for _ in range(self.max_cas_attempts):
            if account is None:
                account = await self.store.get_account(account_id)
            new_balance = account.balance + delta
            if new_balance < 0:
                raise InsufficientCreditsError(
                    f"Insufficient credits: {-delta} required, {account.balance} available",
                    attempted=-delta,
                    available=account.balance,
                    account_id=account_id,
                )
            if await self.store.compare_and_set_balance(account_id, account.balance, new_balance):
                return new_balance
            account = None
        raise RetryableError(
            f"Balance for account {account_id} kept changing, gave up after {self.max_cas_attempts} attempts"
        )

    def _require(self, reservation_id: str) -> CreditLedgerEntry:
        entry = self._entries.get(reservation_id)
        if entry is None:
            raise LedgerStateError(f"Unknown reservation {reservation_id}")
        return entry

    async def reserve(
        self,
        account_id: str,
        stage: str,
        amount: Amount,
        job_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Hold credits for one stage attempt.

        Args:
            account_id: Account to charge
            stage: Stage name recorded on the ledger entry
            amount: Estimated cost in credits
            job_id: Job the reservation belongs to
            idempotency_key: Repeating a reserve with the same key returns the
                existing reservation instead of holding credits twice

        Returns:
            Reservation id

        Raises:
            InsufficientCreditsError: If the balance cannot cover the amount
            ValidationError: If the amount is negative or the account is unknown
            LedgerStateError: If idempotency_key names an already resolved reservation
        """
        amount = to_amount(amount)
        lock = await self._get_lock(account_id)

        async with lock:
            if idempotency_key and idempotency_key in self._entries:
                existing = self._entries[idempotency_key]
                if existing.state != "reserved":
                    # A resolved hold covers nothing
                    raise LedgerStateError(
                        f"Reservation {idempotency_key} was already {existing.state}",
                        job_id=job_id,
                    )
                logger.info(
                    "Reservation already exists for idempotency key",
                    extra={"reservation_id": idempotency_key, "stage": stage}
                )
                return idempotency_key

            account = await self.store.get_account(account_id)
            reservation_id = idempotency_key or uuid4().hex

            if account.unlimited:
                # Gate is bypassed for administrative accounts, the entry still exists for audit
                entry = CreditLedgerEntry(
                    id=reservation_id,
                    account_id=account_id,
                    stage=stage,
                    job_id=job_id,
                    reserved_amount=Decimal("0"),
                    unlimited=True,
                )
            else:
                try:
                    await self._apply_delta(account_id, -amount, account=account)
                except InsufficientCreditsError as e:
                    e.job_id = job_id
                    e.stage = stage
                    logger.warning(
                        f"Insufficient credits for stage {stage}",
                        extra={
                            "account_id": account_id,
                            "stage": stage,
                            "attempted": str(e.attempted),
                            "available": str(e.available),
                        }
                    )
                    raise
                entry = CreditLedgerEntry(
                    id=reservation_id,
                    account_id=account_id,
                    stage=stage,
                    job_id=job_id,
                    reserved_amount=amount,
                )

            try:
                await self.store.save_entry(entry)
            except Exception:
                if not entry.unlimited and amount > 0:
                    await self._apply_delta(account_id, amount)
                raise

            self._entries[reservation_id] = entry
            if job_id is not None:
                self._job_entries.setdefault(job_id, []).append(reservation_id)
            logger.info(
                f"Reserved {entry.reserved_amount} credits for stage {stage}",
                extra={
                    "account_id": account_id,
                    "stage": stage,
                    "reservation_id": reservation_id,
                    "amount": str(entry.reserved_amount),
                    "unlimited": entry.unlimited,
                }
            )
            return reservation_id

    async def commit(self, reservation_id: str) -> CreditLedgerEntry:
        """
        Finalize a reservation. Committing twice is a no-op.

        Raises:
            LedgerStateError: If the reservation is unknown or already refunded
        """
        entry = self._require(reservation_id)
        lock = await self._get_lock(entry.account_id)

        async with lock:
            if entry.state == "committed":
                return entry.model_copy()
            if entry.state == "refunded":
                raise LedgerStateError(f"Reservation {reservation_id} was already refunded")

            entry.committed_amount = entry.reserved_amount
            entry.state = "committed"
            entry.resolved_at = utcnow()
            await self.store.save_entry(entry)

            logger.info(
                f"Committed {entry.committed_amount} credits for stage {entry.stage}",
                extra={"reservation_id": reservation_id, "stage": entry.stage, "amount": str(entry.committed_amount)}
            )
            return entry.model_copy()

    async def refund(self, reservation_id: str) -> CreditLedgerEntry:
        """
        Return a reservation's credits to the balance. Refunding twice is a no-op.

        Raises:
            LedgerStateError: If the reservation is unknown or already committed
        """
        entry = self._require(reservation_id)
        lock = await self._get_lock(entry.account_id)

        async with lock:
            if entry.state == "refunded":
                return entry.model_copy()
            if entry.state == "committed":
                raise LedgerStateError(f"Reservation {reservation_id} was already committed")

            if not entry.unlimited and entry.reserved_amount > 0:
                await self._apply_delta(entry.account_id, entry.reserved_amount)

            entry.refunded_amount = entry.reserved_amount
            entry.state = "refunded"
            entry.resolved_at = utcnow()
            await self.store.save_entry(entry)

            logger.info(
                f"Refunded {entry.refunded_amount} credits for stage {entry.stage}",
                extra={"reservation_id": reservation_id, "stage": entry.stage, "amount": str(entry.refunded_amount)}
            )
            return entry.model_copy()

    async def refund_outstanding(self, job_id: str) -> List[str]:
        """Refund every reservation of a job still in the reserved state."""
        refunded = []
        for reservation_id in list(self._job_entries.get(job_id, [])):
            if self._entries[reservation_id].state == "reserved":
                await self.refund(reservation_id)
                refunded.append(reservation_id)
        if refunded:
            logger.warning(
                f"Refunded {len(refunded)} outstanding reservation(s)",
                extra={"job_id": job_id, "reservations": ",".join(refunded)}
            )
        return refunded

    def forget(self, job_id: str) -> int:
        """
        Drop a finished job's resolved entries from memory.

        The store keeps the persisted ledger. Entries still reserved are kept
        so they can be resolved later.

        Returns:
            Number of entries dropped
        """
        remaining = []
        dropped = 0
        for reservation_id in self._job_entries.pop(job_id, []):
            if self._entries[reservation_id].state == "reserved":
                remaining.append(reservation_id)
            else:
                del self._entries[reservation_id]
                dropped += 1
        if remaining:
            self._job_entries[job_id] = remaining
        return dropped

    def get_entry(self, reservation_id: str) -> CreditLedgerEntry:
        return self._require(reservation_id).model_copy()

    def entries(self, job_id: Optional[str] = None) -> List[CreditLedgerEntry]:
        """Ledger entries in creation order, optionally filtered by job."""
        if job_id is not None:
            return [self._entries[reservation_id].model_copy() for reservation_id in self._job_entries.get(job_id, [])]
        return [entry.model_copy() for entry in self._entries.values()]

    async def balance(self, account_id: str) -> Decimal:
        account = await self.store.get_account(account_id)
        return account.balance
