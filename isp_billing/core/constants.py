"""
Centralized constants for the billing core.
Removes "magic strings" and provides strong typing for ledger states.
"""

from decimal import Decimal
from enum import Enum, unique

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@unique
class BillStatus(str, Enum):
    """Bill (ledger entry) states."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Bills that still carry an outstanding balance
OPEN_BILL_STATUSES = (BillStatus.PENDING.value, BillStatus.PARTIAL.value, BillStatus.OVERDUE.value)


@unique
class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


@unique
class PaymentMethod(str, Enum):
    """Payment methods accepted by the ledger."""

    CASH = "cash"
    CARD = "card"
    ONLINE = "online"
    BANK_TRANSFER = "bank_transfer"
    JAZZCASH = "jazzcash"
    EASYPAISA = "easypaisa"
    STRIPE = "stripe"
    PAYPAL = "paypal"


@unique
class CustomerStatus(str, Enum):
    """Customer service states. inactive/disconnected are administrative."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DISCONNECTED = "disconnected"


SUSPENDABLE_CUSTOMER_STATUSES = (CustomerStatus.ACTIVE.value,)


@unique
class SubscriptionStatus(str, Enum):
    """Tenant (ISP) subscription states."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@unique
class RecoveryStatus(str, Enum):
    """Collection visit outcomes."""

    ASSIGNED = "assigned"
    VISITED = "visited"
    PAID = "paid"
    PARTIAL = "partial"
    NOT_AVAILABLE = "not_available"
    REFUSED = "refused"


OPEN_RECOVERY_STATUSES = (
    RecoveryStatus.ASSIGNED.value,
    RecoveryStatus.VISITED.value,
    RecoveryStatus.PARTIAL.value,
    RecoveryStatus.NOT_AVAILABLE.value,
)


@unique
class DocumentKind(str, Enum):
    """Sequentially numbered document families."""

    BILL = "bill"
    RECEIPT = "receipt"
    INVOICE = "invoice"
    BUSINESS = "business"


@unique
class SubscriptionInvoiceKind(str, Enum):
    INITIAL = "initial"
    FINAL = "final"


# Business knobs stored in the settings table
DEFAULT_SETTINGS = {
    "late_fee_percentage": "5",
    "grace_period_days": "7",
    "bill_due_days": "7",
    "expiry_warning_days": "3",
    "reminder_days_before_due": "7",
    "billing_run_hour": "02:00",
}
