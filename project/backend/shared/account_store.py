"""
Account stores backing the credit gate.

The store is the source of truth for balances. Balance writes go through
compare_and_set_balance so concurrent writers never lose an update.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from shared.database import DatabaseClient, get_db
from shared.errors import ValidationError
from shared.logging import get_logger
from shared.models.credits import Account, CreditLedgerEntry
from shared.retry import retry_with_backoff

logger = get_logger("account_store")


def column_amount(value: Decimal):
    """Balance as sent to the users table: int when whole, exact string otherwise."""
    if value == value.to_integral_value():
        return int(value)
    return str(value)


class AccountStore(Protocol):
    """Persistence contract used by CreditGate."""

    async def get_account(self, account_id: str) -> Account:
        ...

    async def compare_and_set_balance(self, account_id: str, expected: Decimal, new: Decimal) -> bool:
        ...

    async def save_entry(self, entry: CreditLedgerEntry) -> None:
        ...


class InMemoryAccountStore:
    """Process-local store, used for embedding and tests."""

    def __init__(self, accounts: Optional[List[Account]] = None):
        self._accounts: Dict[str, Account] = {a.id: a.model_copy() for a in accounts or []}
        self.entries: Dict[str, CreditLedgerEntry] = {}

    def add_account(self, account_id: str, balance=0, unlimited: bool = False) -> Account:
        account = Account(id=account_id, balance=Decimal(str(balance)), unlimited=unlimited)
        self._accounts[account_id] = account
        return account

    async def get_account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise ValidationError(f"Account {account_id} not found")
        return account.model_copy()

    async def compare_and_set_balance(self, account_id: str, expected: Decimal, new: Decimal) -> bool:
        account = self._accounts.get(account_id)
        if account is None or account.balance != expected:
            return False
        account.balance = new
        return True

    async def save_entry(self, entry: CreditLedgerEntry) -> None:
        self.entries[entry.id] = entry.model_copy()


class DatabaseAccountStore:
    """
    Supabase-backed store.

    Balances live in users.free_credits, the unlimited flag in users.is_admin,
    and ledger entries in the credit_ledger table keyed by reservation id.
    """

    def __init__(
        self,
        db: Optional[DatabaseClient] = None,
        users_table: str = "users",
        ledger_table: str = "credit_ledger",
    ):
        self._db = db
        self.users_table = users_table
        self.ledger_table = ledger_table

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    @retry_with_backoff()
    async def get_account(self, account_id: str) -> Account:
        result = await self.db.table(self.users_table).select(
            "id, free_credits, is_admin"
        ).eq("id", account_id).limit(1).execute(max_attempts=1)

        if not result.data:
            raise ValidationError(f"Account {account_id} not found")

        row = result.data[0]
        return Account(
            id=account_id,
            balance=Decimal(str(row.get("free_credits") or 0)),
            unlimited=bool(row.get("is_admin", False)),
        )

    async def compare_and_set_balance(self, account_id: str, expected: Decimal, new: Decimal) -> bool:
        # Conditional update: matches no row if another writer changed the balance first.
        # Not retried here; a lost response must be resolved by re-reading the balance.
        result = await self.db.table(self.users_table).update({
            "free_credits": column_amount(new)
        }).eq("id", account_id).eq("free_credits", column_amount(expected)).execute(max_attempts=1)

        updated = bool(result.data)
        if not updated:
            logger.info(
                "Balance changed concurrently, compare-and-set rejected",
                extra={"account_id": account_id, "expected": str(expected)}
            )
        return updated

    @retry_with_backoff()
    async def save_entry(self, entry: CreditLedgerEntry) -> None:
        await self.db.table(self.ledger_table).upsert(
            entry.model_dump(mode="json")
        ).execute(max_attempts=1)
