from datetime import datetime

from sqlmodel import Field, SQLModel

from ..utils.dates import utcnow


class Setting(SQLModel, table=True):
    """
    Platform-wide business knob (late fee percentage, grace period, due days,
    billing run hour). Values are stored as text and parsed by SettingsService.
    """

    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str = Field(nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
