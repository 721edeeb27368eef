"""
Credit ledger data models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_serializer

from shared.models.job import utcnow


LedgerState = Literal["reserved", "committed", "refunded"]


class Account(BaseModel):
    """Prepaid credit account."""

    id: str
    balance: Decimal = Field(default=Decimal("0"))
    unlimited: bool = Field(default=False, description="Administrative accounts bypass credit checks")

    @field_serializer("balance")
    def serialize_decimal(self, value: Decimal) -> str:
        """Serialize Decimal to string."""
        return str(value)


class CreditLedgerEntry(BaseModel):
    """One reservation of credits for one stage attempt."""

    id: str
    account_id: str
    stage: str
    job_id: Optional[str] = None
    reserved_amount: Decimal
    committed_amount: Decimal = Field(default=Decimal("0"))
    refunded_amount: Decimal = Field(default=Decimal("0"))
    state: LedgerState = "reserved"
    unlimited: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.state != "reserved"

    @field_serializer("reserved_amount", "committed_amount", "refunded_amount")
    def serialize_decimal(self, value: Decimal) -> str:
        """Serialize Decimal to string."""
        return str(value)

    @field_serializer("created_at", "resolved_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None
