from duka_billing.repositories.audit_log_repository import AuditLogRepository
from duka_billing.repositories.notification_repository import NotificationRepository
from duka_billing.repositories.payment_repository import PaymentRepository
from duka_billing.repositories.plan_repository import PlanRepository
from duka_billing.repositories.shop_repository import ShopRepository
from duka_billing.repositories.subscription_repository import SubscriptionRepository
from duka_billing.repositories.webhook_event_repository import WebhookEventRepository

__all__ = [
    "AuditLogRepository",
    "NotificationRepository",
    "PaymentRepository",
    "PlanRepository",
    "ShopRepository",
    "SubscriptionRepository",
    "WebhookEventRepository",
]
