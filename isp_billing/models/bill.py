"""
Bill model: one ledger entry per customer billing period.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from ..core.constants import BillStatus
from ..utils.dates import utcnow


class Bill(SQLModel, table=True):
    """
    Bill for one billing period.

    total_amount is amount + late_fee. paid_amount, status and completed_at
    are only written by LedgerService.recompute (cancellation aside).
    """

    __tablename__ = "bills"

    id: Optional[int] = Field(default=None, primary_key=True)
    bill_number: str = Field(nullable=False, unique=True, index=True)
    isp_id: int = Field(foreign_key="isps.id", nullable=False, index=True)
    customer_id: int = Field(foreign_key="customers.id", nullable=False, index=True)
    package_id: Optional[int] = Field(default=None, foreign_key="packages.id")
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    late_fee: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    total_amount: Decimal = Field(max_digits=12, decimal_places=2)
    paid_amount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    status: str = Field(default=BillStatus.PENDING.value, nullable=False, index=True)
    billing_period_start: datetime = Field(nullable=False)
    billing_period_end: datetime = Field(nullable=False)
    due_date: datetime = Field(nullable=False, index=True)
    notes: Optional[str] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    reminder_sent_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
