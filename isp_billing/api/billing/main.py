# isp_billing/api/billing/main.py
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from ...core.events import BatchSummary, EventPublisher
from ...core.tenant import TenantContext
from ...db.engine_sync import get_sync_session
from ...models.bill import Bill as BillModel
from ...services.ledger_service import LedgerService
from ...services.overdue_service import OverdueService
from ...services.payment_service import PaymentService
from ...services.recovery_service import RecoveryService
from ...services.suspension_service import SuspensionService
from ...utils.money import remaining
from ..dependencies import get_publisher, get_tenant_context, outcome_payload
from .models import (
    BatchSummaryResponse,
    Bill,
    BillCreate,
    Customer,
    OutcomeResponse,
    Payment,
    PaymentCreate,
    PaymentRefund,
    Recovery,
    RecoveryCreate,
    RecoveryVisit,
    SweepRequest,
)

router = APIRouter()


# --- Dependency injection ---
def get_ledger_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> LedgerService:
    return LedgerService(session, publisher)


def get_payment_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> PaymentService:
    return PaymentService(session, publisher)


def get_recovery_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> RecoveryService:
    return RecoveryService(session, publisher)


def get_overdue_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> OverdueService:
    return OverdueService(session, publisher)


def get_suspension_service(
    session: Session = Depends(get_sync_session), publisher: EventPublisher = Depends(get_publisher)
) -> SuspensionService:
    return SuspensionService(session, publisher)


def bill_payload(bill: BillModel) -> dict:
    return {**bill.model_dump(), "remaining_amount": remaining(bill.total_amount, bill.paid_amount)}


def summary_payload(summary: BatchSummary) -> dict:
    return {
        **summary.as_dict(),
        "events": [event.model_dump(mode="json") for event in summary.events],
        "errors": summary.errors,
        "delivery_failures": [failure.model_dump() for failure in summary.delivery_failures],
    }


# --- Bills ---

@router.post("/bills", response_model=OutcomeResponse[Bill], status_code=status.HTTP_201_CREATED)
def create_bill(
    bill: BillCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: LedgerService = Depends(get_ledger_service),
):
    outcome = service.create_bill(
        ctx,
        bill.customer_id,
        package_id=bill.package_id,
        amount=bill.amount,
        due_date=bill.due_date,
        period_start=bill.billing_period_start,
        period_end=bill.billing_period_end,
        notes=bill.notes,
    )
    return outcome_payload(outcome, bill_payload(outcome.result))


@router.post("/bills/generate-due", response_model=BatchSummaryResponse)
def generate_due_bills(
    payload: Optional[SweepRequest] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: LedgerService = Depends(get_ledger_service),
):
    return summary_payload(service.generate_due_bills(ctx, payload.now if payload else None))


@router.get("/bills/{bill_id}", response_model=Bill)
def get_bill(
    bill_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    service: LedgerService = Depends(get_ledger_service),
):
    return service.get_bill(ctx, bill_id)


@router.post("/bills/{bill_id}/recompute", response_model=OutcomeResponse[Bill])
def recompute_bill(
    bill_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    service: LedgerService = Depends(get_ledger_service),
):
    outcome = service.recompute(ctx, bill_id)
    return outcome_payload(outcome, bill_payload(outcome.result))


@router.post("/bills/{bill_id}/cancel", response_model=OutcomeResponse[Bill])
def cancel_bill(
    bill_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    service: LedgerService = Depends(get_ledger_service),
):
    outcome = service.cancel_bill(ctx, bill_id)
    return outcome_payload(outcome, bill_payload(outcome.result))


# --- Payments ---

@router.post("/payments", response_model=OutcomeResponse[Payment])
def apply_payment(
    payment: PaymentCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: PaymentService = Depends(get_payment_service),
):
    outcome = service.apply_payment(
        ctx,
        payment.bill_id,
        payment.amount,
        payment.payment_method,
        transaction_id=payment.transaction_id,
        notes=payment.notes,
        payment_date=payment.payment_date,
        timeout=payment.timeout,
    )
    return outcome_payload(outcome, outcome.result.model_dump())


@router.get("/payments/{payment_id}", response_model=Payment)
def get_payment(
    payment_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_payment(ctx, payment_id).model_dump()


@router.post("/payments/{payment_id}/refund", response_model=OutcomeResponse[Payment])
def refund_payment(
    payment_id: int,
    refund: Optional[PaymentRefund] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: PaymentService = Depends(get_payment_service),
):
    outcome = service.refund_payment(ctx, payment_id, reason=refund.reason if refund else None)
    return outcome_payload(outcome, outcome.result.model_dump())


# --- Recoveries ---

@router.post("/recoveries", response_model=OutcomeResponse[Recovery], status_code=status.HTTP_201_CREATED)
def assign_recovery(
    recovery: RecoveryCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    service: RecoveryService = Depends(get_recovery_service),
):
    outcome = service.assign(ctx, recovery.customer_id, recovery.bill_id, recovery.officer_name, recovery.remarks)
    return outcome_payload(outcome, outcome.result.model_dump())


@router.post("/recoveries/{recovery_id}/collect", response_model=OutcomeResponse[Recovery])
def record_recovery_visit(
    recovery_id: int,
    visit: RecoveryVisit,
    ctx: TenantContext = Depends(get_tenant_context),
    service: RecoveryService = Depends(get_recovery_service),
):
    outcome = service.record_visit(
        ctx,
        recovery_id,
        visit.status,
        amount_collected=visit.amount_collected,
        visit_date=visit.visit_date,
        remarks=visit.remarks,
        next_visit_date=visit.next_visit_date,
        transaction_id=visit.transaction_id,
    )
    return outcome_payload(outcome, outcome.result.model_dump())


# --- Automation ---

@router.post("/automation/overdue-sweep", response_model=BatchSummaryResponse)
def sweep_overdue(
    payload: Optional[SweepRequest] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: OverdueService = Depends(get_overdue_service),
):
    return summary_payload(service.sweep_overdue(ctx, payload.now if payload else None))


@router.post("/automation/suspensions", response_model=BatchSummaryResponse)
def sweep_suspensions(
    payload: Optional[SweepRequest] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SuspensionService = Depends(get_suspension_service),
):
    now = payload.now if payload else None
    grace = payload.grace_period_days if payload else None
    return summary_payload(service.sweep_suspensions(ctx, now, grace))


@router.post("/customers/{customer_id}/evaluate-suspension", response_model=OutcomeResponse[Customer])
def evaluate_suspension(
    customer_id: int,
    payload: Optional[SweepRequest] = None,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SuspensionService = Depends(get_suspension_service),
):
    outcome = service.evaluate_suspension(
        ctx,
        customer_id,
        grace_period_days=payload.grace_period_days if payload else None,
        now=payload.now if payload else None,
    )
    return outcome_payload(outcome, outcome.result.model_dump())


@router.post("/customers/{customer_id}/evaluate-reactivation", response_model=OutcomeResponse[Customer])
def evaluate_reactivation(
    customer_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    service: SuspensionService = Depends(get_suspension_service),
):
    outcome = service.evaluate_reactivation(ctx, customer_id)
    return outcome_payload(outcome, outcome.result.model_dump())
