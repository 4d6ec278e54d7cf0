"""Pydantic schemas for queue payloads and API responses."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobType(str, Enum):
    order_created = "order_created"
    refund_created = "refund_created"


class JobSource(str, Enum):
    webhook = "webhook"
    cron = "cron"


class WebhookJob(BaseModel):
    """Queue entry for one Shopify order or refund event.

    WHAT: Carries the raw Shopify payload plus routing metadata
    WHY: Receiver and reconciliation both feed the same worker, so the
         job records where it came from for logging and auditing

    `payload` is the Shopify order JSON for `order_created` and the refund
    JSON (with `order_id`) for `refund_created`.
    """

    type: JobType
    payload: Dict[str, Any]
    shop_domain: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: JobSource = JobSource.webhook

    @property
    def order_id(self) -> Optional[str]:
        """Shopify order id this job is about."""
        if self.type == JobType.refund_created:
            value = self.payload.get("order_id")
        else:
            value = self.payload.get("id")
        return str(value) if value is not None else None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class HistoricalSyncResponse(BaseModel):
    success: bool
    message: str
    job_id: Optional[str] = None
    brand: Optional[str] = None


class SyncStatusResponse(BaseModel):
    success: bool = True
    job_id: str
    state: str
    result: Optional[Any] = None
    enqueue_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None


class WebhookRegistrationResponse(BaseModel):
    brand: str
    results: Dict[str, Any] = Field(default_factory=dict, description="Per-topic registration result")
