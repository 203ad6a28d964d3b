from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from ..core.constants import RecoveryStatus
from ..utils.dates import utcnow


class RecoveryAssignment(SQLModel, table=True):
    """Field-collection visit scheduled against an unpaid bill."""

    __tablename__ = "recoveries"

    id: Optional[int] = Field(default=None, primary_key=True)
    isp_id: int = Field(foreign_key="isps.id", nullable=False, index=True)
    customer_id: int = Field(foreign_key="customers.id", nullable=False, index=True)
    bill_id: int = Field(foreign_key="bills.id", nullable=False, index=True)
    officer_name: str = Field(nullable=False)
    status: str = Field(default=RecoveryStatus.ASSIGNED.value, nullable=False, index=True)
    amount_collected: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    visit_date: Optional[datetime] = Field(default=None)
    next_visit_date: Optional[datetime] = Field(default=None)
    remarks: Optional[str] = Field(default=None)
    # Plain reference: payments are removed before recoveries on tenant deletion
    last_payment_id: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
