"""
Unit-of-work helpers.

``run_atomic`` wraps a block of ledger writes in one transaction and retries
it when the database reports a lock conflict. The block must be safe to run
again from scratch: it re-reads everything it needs.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from ..core.config import get_settings
from ..core.errors import LockTimeout
from ..core.tenant import TenantContext, fetch_scoped
from ..models.bill import Bill

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not obtain lock",
    "lock timeout",
    "deadlock detected",
    "could not serialize",
    "statement timeout",
)


def is_lock_error(error: OperationalError) -> bool:
    message = str(getattr(error, "orig", error)).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def _push_statement_timeout(session: Session, deadline: Optional[float]) -> None:
    if deadline is None:
        return
    if session.get_bind().dialect.name != "postgresql":
        return
    remaining_ms = max(int((deadline - time.monotonic()) * 1000), 1)
    session.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))


def run_atomic(
    session: Session,
    work: Callable[[], T],
    retries: Optional[int] = None,
    timeout: Optional[float] = None,
    label: str = "ledger operation",
) -> T:
    """
    Run ``work()`` and commit. Lock conflicts are retried with linear backoff;
    LockTimeout is raised once retries or the caller's timeout (seconds) run
    out. Any other error rolls back and propagates unchanged.
    """
    settings = get_settings()
    attempts = (settings.lock_retries if retries is None else retries) + 1
    deadline = time.monotonic() + timeout if timeout is not None else None

    for attempt in range(1, attempts + 1):
        if deadline is not None and time.monotonic() >= deadline:
            session.rollback()
            raise LockTimeout(f"{label} timed out waiting for a lock")
        try:
            _push_statement_timeout(session, deadline)
            result = work()
            session.commit()
            return result
        except OperationalError as e:
            session.rollback()
            if not is_lock_error(e):
                raise
            logger.warning(f"{label}: lock conflict on attempt {attempt}/{attempts}: {e.orig}")
            if attempt < attempts:
                time.sleep(settings.lock_retry_backoff * attempt)
        except Exception:
            session.rollback()
            raise

    raise LockTimeout(f"{label} could not acquire a lock after {attempts} attempts")


def lock_bill(session: Session, ctx: TenantContext, bill_id: int) -> Bill:
    """Load a bill under the tenant predicate and hold it for the transaction."""
    return fetch_scoped(session, ctx, Bill, bill_id, "Bill", for_update=True)
