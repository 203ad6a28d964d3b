from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from ..utils.dates import utcnow


class SaaSPackage(SQLModel, table=True):
    """Platform plan an ISP subscribes to."""

    __tablename__ = "saas_packages"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, unique=True)
    description: Optional[str] = Field(default=None)
    price: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    duration_days: int = Field(default=30)
    max_customers: Optional[int] = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
