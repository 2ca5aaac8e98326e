from duka_billing.schemas.audit_log import AuditLogResponse
from duka_billing.schemas.job import (
    AlertJobData,
    DispatchStats,
    EmailJobData,
    Job,
    JobKind,
    JobOutcome,
    JobPriority,
    MessageJobData,
    NotificationJobData,
    ReportJobData,
    RetryPolicy,
)
from duka_billing.schemas.lifecycle import DunningResult, SweepResult
from duka_billing.schemas.plan import PlanCreate
from duka_billing.schemas.shop import ShopCreate, UserCreate
from duka_billing.schemas.subscription import (
    ConsistencyIssue,
    ConsistencyReport,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionReactivate,
    SubscriptionResponse,
)
from duka_billing.schemas.webhook_event import IngestResult, ReplayResult, WebhookEventResponse

__all__ = [
    "AlertJobData",
    "AuditLogResponse",
    "ConsistencyIssue",
    "ConsistencyReport",
    "DispatchStats",
    "DunningResult",
    "EmailJobData",
    "IngestResult",
    "Job",
    "JobKind",
    "JobOutcome",
    "JobPriority",
    "MessageJobData",
    "NotificationJobData",
    "PlanCreate",
    "ReplayResult",
    "ReportJobData",
    "RetryPolicy",
    "ShopCreate",
    "SubscriptionCancel",
    "SubscriptionCreate",
    "SubscriptionReactivate",
    "SubscriptionResponse",
    "SweepResult",
    "UserCreate",
    "WebhookEventResponse",
]
