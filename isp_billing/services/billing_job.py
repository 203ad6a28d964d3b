# isp_billing/services/billing_job.py
import logging
from typing import Any, Callable, Optional

from sqlmodel import Session

from ..core.events import BatchSummary, EventPublisher
from ..core.tenant import TenantContext
from ..db.engine_sync import get_engine
from ..utils.dates import utcnow
from .ledger_service import LedgerService
from .overdue_service import OverdueService
from .subscription_service import SubscriptionService
from .suspension_service import SuspensionService

logger = logging.getLogger("BillingJob")


def run_billing_cycle(
    engine=None, now: Any = None, publisher: Optional[EventPublisher] = None
) -> dict[str, Optional[dict[str, int]]]:
    """
    Run ONE full billing pass over every tenant.
    Called daily by APScheduler; safe to run again for the same day.

    Phases: overdue fees, suspensions, new bills, reminders, subscription
    expiry. A failing phase is logged and the next one still runs.
    """
    now = now or utcnow()
    ctx = TenantContext.super_operator()
    results: dict[str, Optional[dict[str, int]]] = {}
    logger.info(f"--- BILLING CYCLE START ({now:%Y-%m-%d %H:%M}) ---")

    with Session(engine or get_engine(), expire_on_commit=False) as session:
        phases: list[tuple[str, Callable[[], BatchSummary]]] = [
            ("overdue", lambda: OverdueService(session, publisher).sweep_overdue(ctx, now)),
            ("suspensions", lambda: SuspensionService(session, publisher).sweep_suspensions(ctx, now)),
            ("bills", lambda: LedgerService(session, publisher).generate_due_bills(ctx, now)),
            ("reminders", lambda: LedgerService(session, publisher).due_reminders(ctx, now)),
            ("subscriptions", lambda: SubscriptionService(session, publisher).check_expiry(ctx, now)),
        ]
        for name, phase in phases:
            try:
                summary = phase()
                results[name] = summary.as_dict()
                logger.info(f"   - {name}: {results[name]}")
                if summary.delivery_failures:
                    logger.warning(f"   - {name}: {len(summary.delivery_failures)} notifications not delivered")
            except Exception as e:
                session.rollback()
                results[name] = None
                logger.critical(f"Billing phase '{name}' aborted: {e}", exc_info=True)

    logger.info(f"--- BILLING CYCLE END. Summary: {results} ---")
    return results
