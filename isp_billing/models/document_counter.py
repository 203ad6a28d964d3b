from sqlmodel import Field, SQLModel


class DocumentCounter(SQLModel, table=True):
    """
    Last issued sequence value per (scope, kind, year).
    scope_id is the tenant id, or 0 for platform-wide documents.
    """

    __tablename__ = "document_counters"

    scope_id: int = Field(primary_key=True)
    kind: str = Field(primary_key=True)
    year: int = Field(primary_key=True)
    last_value: int = Field(default=0, nullable=False)
