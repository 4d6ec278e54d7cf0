"""Shopify webhooks for order ingestion and compliance.

WHAT:
    Implements Shopify webhooks for:
    1. Order ingestion (orders/create, refunds/create) - enqueued, never
       processed inline
    2. GDPR/privacy compliance (mandatory for App Store)
    3. App lifecycle (app/uninstalled)

WHY:
    - Shopify expects a 2xx within 5 seconds; the worker does the real work
    - Deterministic job ids turn Shopify's retries into no-ops
    - Compliance webhooks are required for GDPR

WEBHOOKS:
    1. orders/create - New order (job id order-{id})
    2. refunds/create - Refund on an order (job id refund-{order_id}-{refund_id})
    3. customers/data_request - Customer requests their stored data
    4. customers/redact - Store owner requests customer data deletion
    5. shop/redact - Delete all shop data 48h after app uninstall
    6. app/uninstalled - Same cleanup as shop/redact, immediately

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - https://shopify.dev/docs/apps/build/webhooks/mandatory-webhooks
    - shopsync/workers/arq_worker.py (process_shopify_order_job)
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from shopsync.database import get_db
from shopsync.deps import get_settings
from shopsync.schemas import JobSource, JobType, WebhookJob
from shopsync.services.gdpr_service import record_customer_request, redact_shop
from shopsync.telemetry import capture_exception
from shopsync.workers.arq_enqueue import enqueue_webhook_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


# =============================================================================
# HMAC VERIFICATION
# =============================================================================

def verify_shopify_webhook(raw_body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify that webhook request came from Shopify using HMAC.

    WHAT: base64(HMAC-SHA256(secret, raw body)) compared with the header
    WHY: Prevent unauthorized webhook calls from malicious actors

    Args:
        raw_body: Raw request body bytes, exactly as received
        hmac_header: X-Shopify-Hmac-SHA256 header value
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.error("[SHOPIFY_WEBHOOK] SHOPIFY_WEBHOOK_SECRET not configured")
        return False

    if not hmac_header:
        logger.warning("[SHOPIFY_WEBHOOK] Missing HMAC header")
        return False

    computed_hmac = base64.b64encode(
        hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    )

    # Constant-time comparison on bytes (str compare_digest rejects non-ASCII)
    is_valid = hmac.compare_digest(computed_hmac, hmac_header.encode("utf-8"))

    if not is_valid:
        logger.warning("[SHOPIFY_WEBHOOK] Invalid HMAC signature")

    return is_valid


async def get_verified_webhook_body(request: Request) -> dict:
    """Dependency that verifies webhook and returns parsed body.

    Raises:
        HTTPException: 401 if HMAC verification fails, 400 on invalid JSON
    """
    body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-SHA256")

    if not verify_shopify_webhook(body, hmac_header, get_settings().SHOPIFY_WEBHOOK_SECRET):
        logger.warning(f"[SHOPIFY_WEBHOOK] {request.url.path} - Invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        payload = await request.json()
    except ValueError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )
    return payload


def _shop_domain(request: Request, payload: dict) -> Optional[str]:
    return request.headers.get("X-Shopify-Shop-Domain") or payload.get("shop_domain")


async def _enqueue_or_500(job: WebhookJob, job_id: str) -> JSONResponse:
    """Enqueue and acknowledge; a queue failure returns 500 so Shopify retries."""
    try:
        result = await enqueue_webhook_job(job, job_id=job_id)
    except Exception as e:
        logger.exception(f"[SHOPIFY_WEBHOOK] Failed to enqueue {job_id}: {e}")
        capture_exception(e, extra={"operation": "enqueue_webhook_job", "job_id": job_id})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Failed to queue webhook"}
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"message": "Webhook queued", "job_id": job_id, "status": result["status"]}
    )


# =============================================================================
# ORDER WEBHOOKS
# =============================================================================

@router.post("/orders/create")
async def handle_orders_create(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
):
    """Handle orders/create webhook.

    WHAT:
        Enqueues an order_created job and acknowledges immediately.

    WHY:
        Job id order-{id} means a redelivery of the same order while the
        first job is queued or its result is kept is dropped by ARQ.
    """
    order_id = payload.get("id")
    shop_domain = _shop_domain(request, payload)

    if order_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order payload missing id")
    if not shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain")

    logger.info(
        "[SHOPIFY_WEBHOOK] orders/create received",
        extra={"shop_domain": shop_domain, "order_id": order_id},
    )

    job = WebhookJob(
        type=JobType.order_created,
        payload=payload,
        shop_domain=shop_domain,
        source=JobSource.webhook,
    )
    return await _enqueue_or_500(job, f"order-{order_id}")


@router.post("/refunds/create")
async def handle_refunds_create(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
):
    """Handle refunds/create webhook.

    The worker re-fetches the full order, so the payload only needs to
    identify it; partial refunds on the same order get distinct job ids.
    """
    order_id = payload.get("order_id")
    shop_domain = _shop_domain(request, payload)

    if order_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Refund payload missing order_id")
    if not shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain")

    refund_id = payload.get("id")
    suffix = refund_id if refund_id is not None else int(datetime.now(timezone.utc).timestamp() * 1000)

    logger.info(
        "[SHOPIFY_WEBHOOK] refunds/create received",
        extra={"shop_domain": shop_domain, "order_id": order_id, "refund_id": refund_id},
    )

    job = WebhookJob(
        type=JobType.refund_created,
        payload=payload,
        shop_domain=shop_domain,
        source=JobSource.webhook,
    )
    return await _enqueue_or_500(job, f"refund-{order_id}-{suffix}")


# =============================================================================
# COMPLIANCE WEBHOOKS
# =============================================================================

def _record_and_acknowledge(topic: str, shop_domain: Optional[str], payload: dict) -> None:
    """Write the audit record; failures are reported, never returned to Shopify."""
    try:
        record_customer_request(topic, shop_domain, payload)
    except Exception as e:
        logger.exception(f"[SHOPIFY_WEBHOOK] {topic} audit record failed for {shop_domain}: {e}")
        capture_exception(e, extra={"operation": topic, "shop_domain": shop_domain})


@router.post("/customers/data_request")
async def handle_customer_data_request(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
):
    """Handle customer data request webhook.

    WHAT:
        Triggered when a customer requests their stored data (GDPR Article 15).

    RESPONSE:
        200 OK. Orders are stored without customer details, so there is
        nothing to export beyond the audit record.
    """
    _record_and_acknowledge("customers/data_request", _shop_domain(request, payload), payload)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"message": "Data request received"}
    )


@router.post("/customers/redact")
async def handle_customer_redact(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
):
    """Handle customer data redaction webhook (audit record only)."""
    _record_and_acknowledge("customers/redact", _shop_domain(request, payload), payload)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"message": "Customer redaction received"}
    )


def _redact_and_acknowledge(db: Session, topic: str, shop_domain: Optional[str]) -> JSONResponse:
    """Run shop redaction; always acknowledge so Shopify stops retrying."""
    logger.info(f"[SHOPIFY_WEBHOOK] {topic} received for shop_domain={shop_domain}")

    if not shop_domain:
        logger.warning(f"[SHOPIFY_WEBHOOK] {topic} without shop domain, nothing to redact")
    else:
        try:
            redact_shop(db, shop_domain)
        except Exception as e:
            db.rollback()
            logger.exception(f"[SHOPIFY_WEBHOOK] {topic} failed for {shop_domain}: {e}")
            capture_exception(e, extra={"operation": topic, "shop_domain": shop_domain})

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"message": "Shop data redaction processed"}
    )


@router.post("/shop/redact")
async def handle_shop_redact(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
    db: Session = Depends(get_db),
):
    """Handle shop data redaction webhook.

    WHAT:
        Triggered 48 hours after a merchant uninstalls the app.
        Deletes the shop's brands, orders, revenue and Shopify-only users.
    """
    return _redact_and_acknowledge(db, "shop/redact", _shop_domain(request, payload))


@router.post("/app/uninstalled")
async def handle_app_uninstalled(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
    db: Session = Depends(get_db),
):
    """Handle app/uninstalled webhook (same cleanup as shop/redact).

    The payload is the shop object; its `domain` / `myshopify_domain` is the
    fallback when the header is missing.
    """
    shop_domain = (
        request.headers.get("X-Shopify-Shop-Domain")
        or payload.get("myshopify_domain")
        or payload.get("domain")
    )
    return _redact_and_acknowledge(db, "app/uninstalled", shop_domain)
