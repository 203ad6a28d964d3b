import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlmodel import Session

from isp_billing.core.constants import BillStatus
from isp_billing.core.tenant import TenantContext
from isp_billing.models import Bill, Customer, Tenant
from isp_billing.services.ledger_service import LedgerService
from isp_billing.services.overdue_service import OverdueService
from isp_billing.services.payment_service import PaymentService
from isp_billing.services.settings_service import SettingsService

from .conftest import NOW


@pytest.fixture
def overdue(session, publisher):
    return OverdueService(session, publisher)


def test_late_fee_applied_once(factory, overdue, ctx, customer, notifier, now):
    bill = factory.bill(customer, amount="1000", due_date=now - timedelta(days=1))

    summary = overdue.sweep_overdue(ctx, now)
    rerun = overdue.sweep_overdue(ctx, now)

    assert summary.as_dict() == {"processed": 1, "skipped": 0, "failed": 0}
    assert bill.late_fee == Decimal("50.00")
    assert bill.total_amount == Decimal("1050.00")
    assert bill.status == BillStatus.OVERDUE.value
    assert summary.events[0].total_amount == Decimal("1050.00")
    assert notifier.templates().count("bill_overdue") == 1
    assert rerun.as_dict() == {"processed": 0, "skipped": 0, "failed": 0}


def test_bills_not_yet_due_or_partially_paid_are_untouched(factory, session, overdue, ctx, customer, now):
    future = factory.bill(customer, due_date=now + timedelta(days=1))
    partial = factory.bill(customer, due_date=now - timedelta(days=3))
    PaymentService(session).apply_payment(ctx, partial.id, 100, "cash", now=now)

    summary = overdue.sweep_overdue(ctx, now)

    assert summary.processed == 0
    assert future.status == BillStatus.PENDING.value
    assert partial.status == BillStatus.PARTIAL.value
    assert partial.late_fee == Decimal("0.00")


def test_late_fee_percentage_comes_from_settings(factory, session, overdue, ctx, customer, now):
    SettingsService(session).update_settings({"late_fee_percentage": "10"})
    bill = factory.bill(customer, amount="999.99", due_date=now - timedelta(days=1))

    overdue.sweep_overdue(ctx, now)

    assert bill.late_fee == Decimal("100.00")
    assert bill.total_amount == Decimal("1099.99")


def test_apply_late_fee_skips_bill_that_already_has_one(factory, overdue, ctx, customer, session, now):
    bill = factory.bill(customer, due_date=now - timedelta(days=1))
    overdue.sweep_overdue(ctx, now)

    assert overdue._apply_late_fee(ctx, bill.id, Decimal("0.05"), now) is None
    session.rollback()
    assert bill.total_amount == Decimal("1050.00")


def test_sweep_is_scoped_to_the_callers_tenant(factory, overdue, ctx, other_tenant, now):
    foreign = factory.bill(factory.customer(other_tenant, name="Foreign"), due_date=now - timedelta(days=1))

    summary = overdue.sweep_overdue(ctx, now)

    assert summary.processed == 0
    assert foreign.status == BillStatus.PENDING.value

    everyone = overdue.sweep_overdue(TenantContext.super_operator(), now)
    assert everyone.processed == 1


def test_one_failing_bill_does_not_stop_the_sweep(factory, overdue, ctx, customer, monkeypatch, now):
    broken = factory.bill(customer, due_date=now - timedelta(days=2))
    healthy = factory.bill(customer, due_date=now - timedelta(days=1))
    original = overdue._apply_late_fee

    def flaky(ctx, bill_id, rate, now):
        if bill_id == broken.id:
            raise RuntimeError("disk full")
        return original(ctx, bill_id, rate, now)

    monkeypatch.setattr(overdue, "_apply_late_fee", flaky)

    summary = overdue.sweep_overdue(ctx, now)

    assert summary.as_dict() == {"processed": 1, "skipped": 0, "failed": 1}
    assert summary.errors == [{"entity": "bill", "id": broken.id, "error": "disk full"}]
    assert healthy.status == BillStatus.OVERDUE.value


def test_overlapping_sweeps_charge_the_late_fee_once(file_engine):
    with Session(file_engine, expire_on_commit=False) as session:
        tenant = Tenant(name="Concurrent ISP", subscription_status="active")
        session.add(tenant)
        session.commit()
        customer = Customer(isp_id=tenant.id, name="Racer")
        session.add(customer)
        session.commit()
        bill = LedgerService(session).create_bill(
            TenantContext.for_tenant(tenant.id),
            customer.id,
            amount="1000",
            period_start=NOW - timedelta(days=40),
            due_date=NOW - timedelta(days=1),
            now=NOW,
        ).result
        bill_id = bill.id

    barrier = threading.Barrier(4)
    errors = []
    processed = []

    def sweep():
        try:
            with Session(file_engine, expire_on_commit=False) as session:
                barrier.wait()
                summary = OverdueService(session).sweep_overdue(TenantContext.super_operator(), NOW)
                processed.append(summary.processed)
        except Exception as e:  # collected and asserted below
            errors.append(e)

    threads = [threading.Thread(target=sweep) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sum(processed) == 1
    with Session(file_engine) as session:
        bill = session.get(Bill, bill_id)
        assert bill.late_fee == Decimal("50.00")
        assert bill.total_amount == Decimal("1050.00")
        assert bill.status == BillStatus.OVERDUE.value
