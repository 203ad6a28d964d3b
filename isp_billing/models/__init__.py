from .bill import Bill
from .customer import Customer
from .document_counter import DocumentCounter
from .package import Package
from .payment import Payment
from .recovery import RecoveryAssignment
from .saas_package import SaaSPackage
from .setting import Setting
from .subscription_invoice import SubscriptionInvoice
from .tenant import Tenant
