from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from ..utils.dates import utcnow


class SubscriptionInvoice(SQLModel, table=True):
    """Invoice the platform issues to an ISP for its SaaS subscription."""

    __tablename__ = "subscription_invoices"
    # One initial and one final invoice per subscription window
    __table_args__ = (UniqueConstraint("isp_id", "kind", "period_start", "period_end"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    isp_id: int = Field(foreign_key="isps.id", nullable=False, index=True)
    saas_package_id: Optional[int] = Field(default=None, foreign_key="saas_packages.id")
    invoice_number: str = Field(nullable=False, unique=True)
    kind: str = Field(nullable=False)
    amount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    period_start: datetime = Field(nullable=False)
    period_end: datetime = Field(nullable=False)
    issued_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
