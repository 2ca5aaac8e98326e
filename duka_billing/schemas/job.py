"""Typed, serializable units of async work handed to the dispatch layer."""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class JobKind(str, Enum):
    EMAIL = "email"
    NOTIFICATION = "notification"
    MESSAGE = "message"
    ALERT = "alert"
    REPORT = "report"
    PAYMENT_CALLBACK = "payment_callback"


class JobPriority(str, Enum):
    URGENT = "urgent"
    NORMAL = "normal"
    LOW = "low"


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_seconds: float = Field(default=5.0, ge=0)
    backoff: Literal["exponential", "fixed"] = "exponential"

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after ``attempt`` (1-based) failed."""
        if self.backoff == "fixed":
            return self.backoff_seconds
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))


class Job(BaseModel):
    kind: JobKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    dedupe_key: str | None = None
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class EmailJobData(BaseModel):
    to: str
    subject: str
    html: str
    shop_id: str | None = None


class NotificationJobData(BaseModel):
    shop_id: str
    user_id: str | None = None
    category: str = "subscription"
    title: str
    message: str
    data: dict[str, Any] | None = None


class MessageJobData(BaseModel):
    to: str
    text: str
    channel: Literal["sms", "whatsapp"] = "sms"
    shop_id: str | None = None


class AlertJobData(BaseModel):
    shop_id: str
    product_id: str
    product_name: str
    alert_type: Literal["low_stock", "out_of_stock"] = "low_stock"
    current_stock: int = 0
    reorder_level: int = 0


class ReportJobData(BaseModel):
    shop_id: str
    report_type: Literal["billing", "payments"] = "billing"
    start: str
    end: str
    email: str | None = None
    requested_by: str = "system"


class PaymentCallbackJobData(BaseModel):
    """Result of a mobile money (M-Pesa STK push) payment, reported by the gateway."""

    provider: Literal["mpesa", "stripe", "manual"] = "mpesa"
    provider_payment_id: str = Field(..., min_length=1, max_length=255)
    shop_id: str | None = None
    amount_cents: int = Field(default=0, ge=0)
    currency: str = "KES"
    result_code: int = 0
    result_desc: str | None = None
    receipt_number: str | None = None
    paid_at: str | None = None


class JobOutcome(BaseModel):
    success: bool
    error: str | None = None
    message_id: str | None = None


class DispatchStats(BaseModel):
    available: bool
    queues: dict[str, int] = Field(default_factory=dict)
