"""ARQ async worker - order ingestion and revenue jobs.

WHAT:
    Single async worker for all background jobs:
    - process_shopify_order_job: upsert orders / apply refunds
    - calculate_revenue_job: recompute daily + monthly revenue, notify dashboards
    - historical_sync_job: two-year order backfill for a newly connected brand
    - scheduled_daily_reconciliation: enqueued by the scheduler's cron

WHY:
    - Webhook handlers only enqueue; all database and Shopify work happens here
    - ARQ gives retries with backoff (`Retry`) and job-id deduplication
    - Clean separation: worker handles orchestration, services handle logic

ARCHITECTURE:
    ┌──────────────┐  enqueue   ┌───────────────┐  upsert   ┌──────────────┐
    │ webhooks /   │───────────▶│ arq_worker.py │──────────▶│ ShopifyOrder │
    │ reconcile    │            │ (orchestrator)│           └──────┬───────┘
    └──────────────┘            └──────┬────────┘                  │
                                       │ revenue-{brand}-{date}    ▼
                                       └─────────────────▶ DailyRevenue / MonthlyRevenue
                                                                   │
                                                         Redis PUBLISH (brand-notifications)

USAGE:
    # Start worker
    arq shopsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m shopsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - shopsync/services/order_service.py
    - shopsync/services/revenue_service.py
    - shopsync/workers/arq_scheduler.py
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import UUID

from arq import Retry

from shopsync.database import SessionLocal
from shopsync.deps import get_settings
from shopsync.models import Brand
from shopsync.schemas import JobSource, JobType, WebhookJob
from shopsync.services.notification_bus import METRICS_COMPLETE, METRICS_ERROR, publish_brand_event
from shopsync.services.order_service import apply_refund, find_brand_by_domain, upsert_order
from shopsync.services.reconciliation_service import run_daily_reconciliation, yesterday_in
from shopsync.services.revenue_service import recalculate_revenue
from shopsync.services.shopify_client import ShopifyClient
from shopsync.telemetry import capture_exception, init_observability
from shopsync.workers.arq_enqueue import enqueue_revenue_calculation, get_redis_settings

logger = logging.getLogger(__name__)

MAX_TRIES = 3

# Orders per commit during historical sync
HISTORICAL_CHUNK_SIZE = 100


# =============================================================================
# HELPERS
# =============================================================================

def _retry_or_raise(ctx: Dict, exc: Exception) -> None:
    """Ask ARQ to retry with exponential backoff, or give up on the last try."""
    job_try = ctx.get("job_try", 1)
    if job_try < MAX_TRIES:
        defer = 2 ** job_try
        logger.warning(f"[ARQ] Retrying in {defer}s (try {job_try}/{MAX_TRIES}): {exc}")
        raise Retry(defer=defer) from exc
    raise exc


def _shopify_client(ctx: Dict, brand: Brand) -> ShopifyClient:
    factory: Optional[Callable[[Brand], ShopifyClient]] = ctx.get("shopify_client_factory")
    if factory:
        return factory(brand)
    return ShopifyClient.for_brand(brand, api_version=get_settings().SHOPIFY_API_VERSION)


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return day.replace(year=day.year - years, day=28)


# =============================================================================
# ORDER JOB
# =============================================================================

async def process_shopify_order_job(ctx: Dict, job_data: Dict[str, Any]) -> Dict:
    """Process one order_created / refund_created job.

    WHAT:
        - order_created: upsert the order (replays overwrite, never duplicate)
        - refund_created: fetch the full order from Shopify and recompute its
          refund amount and cancelled flag
        Then enqueue a revenue recalculation for the order's ORIGINAL date.

    WHY:
        Unknown brands and Shopify failures raise so ARQ retries; a store that
        was just installed may deliver webhooks before its brand row commits.

    Args:
        ctx: ARQ context
        job_data: Serialized WebhookJob

    Returns:
        Dict with the processed order and the revenue job status
    """
    settings = get_settings()
    job = WebhookJob.model_validate(job_data)

    logger.info(
        "[ARQ] Processing %s for order %s from %s (source=%s)",
        job.type.value, job.order_id, job.shop_domain, job.source.value,
    )

    db = SessionLocal()
    try:
        brand = find_brand_by_domain(db, job.shop_domain)
        if not brand:
            raise LookupError(f"Brand not found for domain: {job.shop_domain}")

        if job.type == JobType.order_created:
            # Cron and historical payloads come straight from the Admin API
            order, created = upsert_order(
                db, brand, job.payload, authoritative=job.source != JobSource.webhook
            )
            defer = settings.REVENUE_ORDER_DEFER_SECONDS
        elif job.type == JobType.refund_created:
            client = _shopify_client(ctx, brand)
            full_order = await client.get_order(job.order_id)
            order = apply_refund(db, brand, full_order)
            created = False
            defer = settings.REVENUE_REFUND_DEFER_SECONDS
        else:
            raise ValueError(f"Unknown job type: {job.type}")

        revenue_job = await enqueue_revenue_calculation(
            brand.id, order.order_date, defer_seconds=defer, pool=ctx.get("redis"),
        )

        return {
            "status": "success",
            "type": job.type.value,
            "order_id": order.shopify_order_id,
            "order_date": order.order_date,
            "created": created,
            "refund_amount": float(order.refund_amount or 0),
            "is_cancelled": bool(order.is_cancelled),
            "revenue_job": revenue_job,
        }

    except Exception as e:
        db.rollback()
        logger.exception("[ARQ] Order job failed for order %s: %s", job.order_id, e)
        capture_exception(e, extra={
            "operation": "process_shopify_order_job",
            "type": job.type.value,
            "order_id": job.order_id,
            "shop_domain": job.shop_domain,
        })
        _retry_or_raise(ctx, e)
    finally:
        db.close()


# =============================================================================
# REVENUE JOB
# =============================================================================

async def calculate_revenue_job(ctx: Dict, brand_id: str, date_str: str) -> Dict:
    """Recompute revenue for one brand/date and notify dashboards.

    Publishes `metrics-calculation-complete` on success and
    `metrics-calculation-error` on failure, then re-raises so ARQ retries.
    """
    settings = get_settings()
    redis = ctx.get("redis")
    logger.info("[ARQ] Calculating revenue for brand %s on %s", brand_id, date_str)

    db = SessionLocal()
    try:
        result = recalculate_revenue(db, brand_id, date_str)
        payload = result.to_dict()

        if redis is not None:
            await publish_brand_event(
                redis, brand_id, METRICS_COMPLETE, payload, channel=settings.NOTIFICATION_CHANNEL,
            )
        return payload

    except Exception as e:
        db.rollback()
        logger.exception("[ARQ] Revenue calculation failed for brand %s on %s: %s", brand_id, date_str, e)
        capture_exception(e, extra={
            "operation": "calculate_revenue_job",
            "brand_id": brand_id,
            "date": date_str,
        })
        if redis is not None:
            await publish_brand_event(
                redis, brand_id, METRICS_ERROR, {"date": date_str, "error": str(e)},
                channel=settings.NOTIFICATION_CHANNEL,
            )
        _retry_or_raise(ctx, e)
    finally:
        db.close()


# =============================================================================
# HISTORICAL SYNC
# =============================================================================

async def historical_sync_job(ctx: Dict, brand_id: str) -> Dict:
    """Backfill a brand's orders for the last HISTORICAL_SYNC_YEARS years.

    WHAT:
        Fetch all orders up to yesterday, upsert them in chunks of 100 and
        enqueue one revenue recalculation per touched date.

    Returns:
        Dict with success status and counts (stored as the job result and
        surfaced by GET /shopify/sync-status/{job_id})
    """
    settings = get_settings()
    started = datetime.now(timezone.utc)
    logger.info("[ARQ] Starting historical sync for brand %s", brand_id)

    db = SessionLocal()
    try:
        brand = db.query(Brand).filter(Brand.id == UUID(brand_id)).first()
        if not brand:
            return {"success": False, "error": "Brand not found"}
        if not brand.shopify_connected:
            return {"success": False, "error": "Shopify not connected"}

        tz_name = brand.timezone or settings.RECONCILE_TIMEZONE
        end_date = yesterday_in(tz_name)
        start_date = _years_before(end_date, settings.HISTORICAL_SYNC_YEARS)

        client = _shopify_client(ctx, brand)
        orders = await client.get_orders_for_date_range(start_date, end_date, tz_name)
        logger.info(f"[ARQ] Fetched {len(orders)} orders for {brand.name} ({start_date} to {end_date})")

        created_count = 0
        updated_count = 0
        skipped = 0
        dates: Set[str] = set()

        for offset in range(0, len(orders), HISTORICAL_CHUNK_SIZE):
            chunk = orders[offset:offset + HISTORICAL_CHUNK_SIZE]
            for order_data in chunk:
                try:
                    order, created = upsert_order(db, brand, order_data, authoritative=True, commit=False)
                except ValueError as e:
                    skipped += 1
                    logger.warning(f"[ARQ] Skipping malformed order {order_data.get('id')}: {e}")
                    continue
                dates.add(order.order_date)
                if created:
                    created_count += 1
                else:
                    updated_count += 1
            db.commit()
            logger.info(f"[ARQ] Historical sync {brand.name}: {min(offset + len(chunk), len(orders))}/{len(orders)}")

        revenue_jobs: List[Dict[str, Any]] = []
        for day in sorted(dates):
            revenue_jobs.append(
                await enqueue_revenue_calculation(brand.id, day, pool=ctx.get("redis"))
            )

        duration = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info(
            "[ARQ] Historical sync complete for %s: created=%d updated=%d skipped=%d dates=%d in %.1fs",
            brand.name, created_count, updated_count, skipped, len(dates), duration,
        )
        return {
            "success": True,
            "brand": brand.name,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "orders_fetched": len(orders),
            "orders_created": created_count,
            "orders_updated": updated_count,
            "orders_skipped": skipped,
            "dates_enqueued": sum(1 for r in revenue_jobs if r["status"] == "enqueued"),
            "duration_seconds": duration,
        }

    except Exception as e:
        db.rollback()
        logger.exception("[ARQ] Historical sync failed for brand %s: %s", brand_id, e)
        capture_exception(e, extra={"operation": "historical_sync_job", "brand_id": brand_id})
        return {"success": False, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def scheduled_daily_reconciliation(ctx: Dict) -> Dict:
    """Scheduled job: reconcile yesterday's orders for every brand.

    WHEN:
        Daily at RECONCILE_HOUR in RECONCILE_TIMEZONE (see arq_scheduler.py).
    """
    logger.info("[ARQ] Starting scheduled daily reconciliation")

    db = SessionLocal()
    try:
        summary = await run_daily_reconciliation(
            db,
            ctx["redis"],
            client_factory=ctx.get("shopify_client_factory"),
        )
        return summary.to_dict()
    except Exception as e:
        logger.exception("[ARQ] Daily reconciliation failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_daily_reconciliation"})
        return {"error": str(e)}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    settings = get_settings()
    status = init_observability()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (job processor)")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {settings.ARQ_QUEUE_NAME}")
    logger.info(f"[ARQ] Max concurrent jobs: {WorkerSettings.max_jobs}")
    logger.info(f"[ARQ] Sentry: {'enabled' if status['sentry'] else 'disabled'}")
    logger.info("[ARQ] Note: Cron scheduling handled by scheduler service")
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration - processes jobs only.

    WHAT:
        Worker that processes jobs enqueued by webhooks, the sync endpoints
        and the scheduler. Does NOT run cron jobs.

    WHY:
        - Workers can scale independently (multiple workers, one scheduler)
        - Prevents duplicate cron execution

    Production settings:
    - max_jobs=10: Process up to 10 jobs concurrently
    - job_timeout=1800: Historical sync of a large store takes a while
    - keep_result=3600: Results (and their job ids) kept for 1 hour
    - max_tries=3: Retried via Retry with exponential defer
    """

    functions = [
        process_shopify_order_job,
        calculate_revenue_job,
        historical_sync_job,
        scheduled_daily_reconciliation,
    ]

    cron_jobs = []

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 1800
    keep_result = 3600
    retry_jobs = True
    max_tries = MAX_TRIES
    health_check_interval = 30

    queue_name = get_settings().ARQ_QUEUE_NAME
