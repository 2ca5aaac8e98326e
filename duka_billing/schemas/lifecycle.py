"""Result shapes reported by the sweep and dunning batch runs."""

from pydantic import BaseModel, Field


class SweepResult(BaseModel):
    processed: int = 0
    expired: int = 0
    past_due: int = 0
    suspended: int = 0
    emails_sent: int = 0
    errors: list[str] = Field(default_factory=list)


class DunningResult(BaseModel):
    shop_id: str
    shop_name: str = "Unknown"
    action: str
    success: bool
    error: str | None = None
