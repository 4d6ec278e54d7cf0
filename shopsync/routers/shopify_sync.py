"""Shopify synchronization endpoints.

WHAT:
    Thin HTTP wrappers for the historical backfill and webhook registration.

WHY:
    - Routers handle auth + request parsing only
    - The backfill itself runs in the ARQ worker (historical_sync_job)

REFERENCES:
    - shopsync/workers/arq_worker.py (historical_sync_job)
    - shopsync/services/webhook_subscription_service.py
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from shopsync.database import get_db
from shopsync.deps import get_brand_for_user, get_current_user
from shopsync.models import Brand, User
from shopsync.schemas import HistoricalSyncResponse, SyncStatusResponse, WebhookRegistrationResponse
from shopsync.services.webhook_subscription_service import register_webhooks
from shopsync.workers.arq_enqueue import enqueue_historical_sync, get_job_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shopify", tags=["Shopify Sync"])

HISTORICAL_PREFIX = "historical-"


# =============================================================================
# Validation helper
# =============================================================================

def _require_shopify(brand: Brand) -> Brand:
    """Raises 400 when the brand has no Shopify domain or token."""
    if not brand.shopify_connected:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Shopify is not connected for brand {brand.name}",
        )
    return brand


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/sync-historical/{brand_id}", response_model=HistoricalSyncResponse)
async def sync_historical(
    brand_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> HistoricalSyncResponse:
    """Queue the two-year order backfill for a brand.

    Job id historical-{brand_id}: a second request while one is queued or
    running is reported as already in progress.
    """
    logger.info("[SHOPIFY_SYNC] Historical sync requested: brand=%s user=%s", brand_id, current_user.email)

    brand = _require_shopify(get_brand_for_user(db, brand_id, current_user))

    result = await enqueue_historical_sync(brand.id)
    if result["status"] != "enqueued":
        return HistoricalSyncResponse(
            success=True,
            message="Historical sync already in progress",
            job_id=f"{HISTORICAL_PREFIX}{brand.id}",
            brand=brand.name,
        )

    return HistoricalSyncResponse(
        success=True,
        message="Historical sync started",
        job_id=result["job_id"],
        brand=brand.name,
    )


@router.get("/sync-status/{job_id}", response_model=SyncStatusResponse)
async def sync_status(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SyncStatusResponse:
    """Report the ARQ state and result of a sync job.

    Historical jobs are visible to members of the brand; other job ids to
    admins only.
    """
    if job_id.startswith(HISTORICAL_PREFIX):
        try:
            brand_id = UUID(job_id[len(HISTORICAL_PREFIX):])
        except ValueError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        get_brand_for_user(db, brand_id, current_user)
    elif not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    job = await get_job_status(job_id)
    if job["status"] == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    return SyncStatusResponse(
        job_id=job_id,
        state=job["status"],
        result=job["result"],
        enqueue_time=job["enqueue_time"],
        finish_time=job["finish_time"],
    )


@router.post("/webhooks/register/{brand_id}", response_model=WebhookRegistrationResponse)
async def register_brand_webhooks(
    brand_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> WebhookRegistrationResponse:
    """(Re)register the order, refund and uninstall webhooks for a brand."""
    brand = _require_shopify(get_brand_for_user(db, brand_id, current_user))

    results = await register_webhooks(brand)
    return WebhookRegistrationResponse(brand=brand.name, results=results)
