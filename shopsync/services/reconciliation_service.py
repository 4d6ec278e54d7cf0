"""Daily order reconciliation against Shopify.

WHAT:
    For every Shopify-connected brand, re-fetch yesterday's orders from the
    Admin API and compare them with the order store:
    - Orders missing locally are enqueued as `order_created` jobs (source=cron)
    - Stored orders with refunds we have not applied get a `refund_created` job
    - A revenue recalculation is enqueued for the day

WHY:
    Webhooks are at-least-once at best; deliveries get dropped during
    deploys and outages. Reconciliation makes the order store converge on
    Shopify's record for each day.

SCHEDULE:
    Daily at RECONCILE_HOUR in RECONCILE_TIMEZONE (02:00 Asia/Kolkata by
    default); see shopsync/workers/arq_scheduler.py.

REFERENCES:
    - shopsync/workers/arq_worker.py (processes the enqueued jobs)
    - shopsync/services/shopify_client.py
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from shopsync.deps import get_settings
from shopsync.models import Brand, ShopifyOrder
from shopsync.schemas import JobSource, JobType, WebhookJob
from shopsync.services.order_service import refund_ids
from shopsync.services.shopify_client import ShopifyClient
from shopsync.telemetry import capture_exception, capture_message
from shopsync.workers.arq_enqueue import enqueue_revenue_calculation, enqueue_webhook_job

logger = logging.getLogger(__name__)


@dataclass
class BrandReconciliationResult:
    """Outcome of reconciling one brand for one day."""
    brand_id: str
    brand_name: str
    date: str
    shopify_order_count: int = 0
    local_order_count: int = 0
    missing_orders_enqueued: int = 0
    refund_jobs_enqueued: int = 0
    revenue_job: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ReconciliationSummary:
    """Outcome of one daily run across all brands."""
    date: str
    brands_processed: int = 0
    brands_failed: int = 0
    results: List[BrandReconciliationResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["missing_orders_enqueued"] = sum(r.missing_orders_enqueued for r in self.results)
        data["refund_jobs_enqueued"] = sum(r.refund_jobs_enqueued for r in self.results)
        return data


def yesterday_in(tz_name: str, now: Optional[datetime] = None) -> date:
    """Calendar day before today in the given timezone."""
    now = now or datetime.now(ZoneInfo(tz_name))
    return now.astimezone(ZoneInfo(tz_name)).date() - timedelta(days=1)


def _connected_brands(db: Session) -> List[Brand]:
    return db.query(Brand).filter(
        Brand.shopify_domain.isnot(None),
        Brand.shopify_access_token_enc.isnot(None),
    ).order_by(Brand.name).all()


def _default_client_factory(brand: Brand) -> ShopifyClient:
    return ShopifyClient.for_brand(brand, api_version=get_settings().SHOPIFY_API_VERSION)


async def reconcile_brand(
    db: Session,
    brand: Brand,
    target_date: date,
    pool,
    client: Optional[ShopifyClient] = None,
) -> BrandReconciliationResult:
    """Reconcile one brand's orders for one day.

    Args:
        db: Database session
        brand: Shopify-connected brand
        target_date: Day to reconcile
        pool: ARQ pool used to enqueue the follow-up jobs
        client: Shopify client (built from the brand's credentials if omitted)

    Returns:
        BrandReconciliationResult

    Raises:
        ShopifyAPIError: If Shopify cannot be queried (the caller isolates it)
    """
    settings = get_settings()
    client = client or _default_client_factory(brand)
    date_str = target_date.isoformat()
    tz_name = brand.timezone or settings.RECONCILE_TIMEZONE

    result = BrandReconciliationResult(brand_id=str(brand.id), brand_name=brand.name, date=date_str)

    shopify_orders = await client.get_orders_for_date_range(target_date, target_date, tz_name)
    result.shopify_order_count = len(shopify_orders)

    by_id = {str(order["id"]): order for order in shopify_orders if order.get("id") is not None}

    stored: Dict[str, ShopifyOrder] = {}
    if by_id:
        rows = db.query(ShopifyOrder).filter(
            ShopifyOrder.brand_id == brand.id,
            ShopifyOrder.shopify_order_id.in_(list(by_id)),
        ).all()
        stored = {row.shopify_order_id: row for row in rows}

    result.local_order_count = db.query(ShopifyOrder).filter(
        ShopifyOrder.brand_id == brand.id,
        ShopifyOrder.order_date == date_str,
    ).count()

    for order_id, order in by_id.items():
        row = stored.get(order_id)

        if row is None:
            job = WebhookJob(
                type=JobType.order_created,
                payload=order,
                shop_domain=brand.shopify_domain,
                source=JobSource.cron,
            )
            enqueued = await enqueue_webhook_job(job, pool=pool)
            if enqueued["status"] == "enqueued":
                result.missing_orders_enqueued += 1
            continue

        unseen = set(refund_ids(order)) - set(row.refunds or [])
        if unseen:
            job = WebhookJob(
                type=JobType.refund_created,
                payload={"order_id": order["id"], "refund_ids": sorted(unseen)},
                shop_domain=brand.shopify_domain,
                source=JobSource.cron,
            )
            enqueued = await enqueue_webhook_job(job, pool=pool)
            if enqueued["status"] == "enqueued":
                result.refund_jobs_enqueued += 1

    result.revenue_job = await enqueue_revenue_calculation(brand.id, date_str, source="cron", pool=pool)

    logger.info(
        "[RECONCILE] brand=%s date=%s shopify=%d local=%d missing=%d refunds=%d revenue=%s",
        brand.name, date_str, result.shopify_order_count, result.local_order_count,
        result.missing_orders_enqueued, result.refund_jobs_enqueued,
        result.revenue_job.get("status"),
    )
    return result


async def run_daily_reconciliation(
    db: Session,
    pool,
    target_date: Optional[date] = None,
    delay_seconds: Optional[float] = None,
    client_factory: Optional[Callable[[Brand], ShopifyClient]] = None,
) -> ReconciliationSummary:
    """Reconcile every Shopify-connected brand, one at a time.

    WHAT:
        Sequential loop with a pause between brands. A failing brand is
        logged, reported to Sentry and skipped; the rest still run.

    Args:
        db: Database session
        pool: ARQ pool
        target_date: Day to reconcile (default: yesterday in RECONCILE_TIMEZONE)
        delay_seconds: Pause between brands (default: RECONCILE_BRAND_DELAY_SECONDS)
        client_factory: Builds the Shopify client for a brand

    Returns:
        ReconciliationSummary
    """
    settings = get_settings()
    target_date = target_date or yesterday_in(settings.RECONCILE_TIMEZONE)
    delay = settings.RECONCILE_BRAND_DELAY_SECONDS if delay_seconds is None else delay_seconds
    client_factory = client_factory or _default_client_factory

    started = datetime.utcnow()
    summary = ReconciliationSummary(date=target_date.isoformat())

    brands = _connected_brands(db)
    logger.info(f"[RECONCILE] Starting daily reconciliation for {target_date}: {len(brands)} brands")

    for index, brand in enumerate(brands):
        try:
            brand_result = await reconcile_brand(db, brand, target_date, pool, client_factory(brand))
            summary.brands_processed += 1
        except Exception as e:
            db.rollback()
            logger.exception(f"[RECONCILE] Brand {brand.name} failed: {e}")
            capture_exception(e, extra={
                "operation": "reconcile_brand",
                "brand_id": str(brand.id),
                "date": target_date.isoformat(),
            })
            brand_result = BrandReconciliationResult(
                brand_id=str(brand.id),
                brand_name=brand.name,
                date=target_date.isoformat(),
                error=str(e),
            )
            summary.brands_failed += 1

        summary.results.append(brand_result)

        if delay and index < len(brands) - 1:
            await asyncio.sleep(delay)

    summary.duration_seconds = (datetime.utcnow() - started).total_seconds()

    missed = sum(r.missing_orders_enqueued for r in summary.results)
    if missed:
        capture_message(
            f"Reconciliation recovered {missed} missed orders for {target_date}",
            level="warning",
            extra={"date": target_date.isoformat(), "missing_orders": missed},
        )

    logger.info(
        "[RECONCILE] Finished %s: processed=%d failed=%d missing=%d in %.1fs",
        target_date, summary.brands_processed, summary.brands_failed, missed, summary.duration_seconds,
    )
    return summary
