"""
Sequential document numbers: bills, receipts, subscription invoices and
business codes.

Numbers look like ``<PREFIX>-<YEAR>-<SEQ>``. The sequence comes from a
counter row per (scope, kind, year) that is incremented with a single
UPDATE, so two writers can never read the same value. The unique constraint
on the document's number column stays the final arbiter: if a number is
already taken (legacy rows, manual inserts) the next value is reserved.
"""
import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..core.config import get_settings
from ..core.constants import DocumentKind
from ..core.errors import Conflict
from ..db.transaction import run_atomic
from ..models.document_counter import DocumentCounter
from ..utils.dates import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

PLATFORM_SCOPE = 0

SEQUENCE_WIDTH = {
    DocumentKind.BILL: 6,
    DocumentKind.RECEIPT: 6,
    DocumentKind.INVOICE: 4,
    DocumentKind.BUSINESS: 4,
}


def document_prefix(kind: DocumentKind, tenant_id: Optional[int], business_code: Optional[str] = None) -> str:
    if kind == DocumentKind.BILL:
        return f"ISP{tenant_id}" if tenant_id else "BILL"
    if kind == DocumentKind.RECEIPT:
        return f"RCP{tenant_id}" if tenant_id else "RCP"
    if kind == DocumentKind.INVOICE:
        return f"INV-{business_code}" if business_code else f"INV-ISP{tenant_id}"
    return "BIZ"


def format_document_number(
    kind: DocumentKind,
    tenant_id: Optional[int],
    year: int,
    sequence: int,
    business_code: Optional[str] = None,
) -> str:
    width = SEQUENCE_WIDTH[kind]
    return f"{document_prefix(kind, tenant_id, business_code)}-{year}-{sequence:0{width}d}"


class DocumentNumberService:
    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _scope_id(kind: DocumentKind, tenant_id: Optional[int]) -> int:
        if kind == DocumentKind.BUSINESS or not tenant_id:
            return PLATFORM_SCOPE
        return tenant_id

    def _counter_filter(self, statement, scope_id: int, kind: DocumentKind, year: int):
        return statement.where(
            DocumentCounter.scope_id == scope_id,
            DocumentCounter.kind == kind.value,
            DocumentCounter.year == year,
        )

    def reserve(self, kind: DocumentKind, tenant_id: Optional[int], year: int) -> int:
        """Increment and return the counter. Runs inside the caller's transaction."""
        scope_id = self._scope_id(kind, tenant_id)
        increment = self._counter_filter(update(DocumentCounter), scope_id, kind, year).values(
            last_value=DocumentCounter.last_value + 1
        )

        if self.session.execute(increment).rowcount == 0:
            try:
                with self.session.begin_nested():
                    self.session.add(DocumentCounter(scope_id=scope_id, kind=kind.value, year=year, last_value=1))
                return 1
            except IntegrityError:
                # Another writer created the row first
                self.session.execute(increment)

        statement = self._counter_filter(select(DocumentCounter.last_value), scope_id, kind, year)
        return self.session.exec(statement).one()

    def issue(
        self,
        kind: DocumentKind,
        tenant_id: Optional[int],
        build: Callable[[str], T],
        number_column,
        year: Optional[int] = None,
        business_code: Optional[str] = None,
    ) -> T:
        """
        Reserve a number, build the row with it and flush it.

        Args:
            kind: document family
            tenant_id: owning tenant (None for platform scope)
            build: callable receiving the number and returning an unsaved row
            number_column: the row's unique number column, e.g. Bill.bill_number
        """
        year = year or utcnow().year
        attempts = get_settings().document_number_attempts

        for _ in range(attempts):
            sequence = self.reserve(kind, tenant_id, year)
            number = format_document_number(kind, tenant_id, year, sequence, business_code)
            record = build(number)
            try:
                with self.session.begin_nested():
                    self.session.add(record)
                return record
            except IntegrityError:
                if not self._number_taken(number_column, number):
                    raise
                logger.warning(f"Document number {number} already in use, reserving the next value")

        raise Conflict(f"Could not allocate a unique {kind.value} number after {attempts} attempts")

    def _number_taken(self, number_column, number: str) -> bool:
        return self.session.exec(select(number_column).where(number_column == number)).first() is not None

    def seed_counter(self, kind: DocumentKind, tenant_id: Optional[int], year: int, value: int) -> int:
        """
        Move a counter forward to ``value`` (used when importing legacy
        numbering). Counters never move backwards.
        """
        scope_id = self._scope_id(kind, tenant_id)

        def work() -> int:
            statement = self._counter_filter(select(DocumentCounter), scope_id, kind, year)
            counter = self.session.exec(statement.with_for_update()).first()
            if counter is None:
                counter = DocumentCounter(scope_id=scope_id, kind=kind.value, year=year, last_value=value)
            elif counter.last_value < value:
                counter.last_value = value
            self.session.add(counter)
            self.session.flush()
            return counter.last_value

        return run_atomic(self.session, work, label=f"seed {kind.value} counter")
