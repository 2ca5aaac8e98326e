from duka_billing.models.audit_log import AuditLog
from duka_billing.models.notification import Notification
from duka_billing.models.payment import Payment, PaymentProvider, PaymentRefund, PaymentStatus
from duka_billing.models.plan import BillingCycle, SubscriptionPlan
from duka_billing.models.shop import Shop, ShopStatus
from duka_billing.models.subscription import Subscription, SubscriptionStatus
from duka_billing.models.user import User, UserRole
from duka_billing.models.webhook_event import WebhookEvent

__all__ = [
    "AuditLog",
    "BillingCycle",
    "Notification",
    "Payment",
    "PaymentProvider",
    "PaymentRefund",
    "PaymentStatus",
    "Shop",
    "ShopStatus",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "User",
    "UserRole",
    "WebhookEvent",
]
