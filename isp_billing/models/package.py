from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from ..utils.dates import utcnow


class Package(SQLModel, table=True):
    __tablename__ = "packages"

    id: Optional[int] = Field(default=None, primary_key=True)
    isp_id: int = Field(foreign_key="isps.id", nullable=False, index=True)
    name: str = Field(nullable=False)
    price: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    speed_mbps: Optional[int] = Field(default=None)
    data_limit_gb: Optional[int] = Field(default=None)
    description: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
