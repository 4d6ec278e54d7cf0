"""Shopify webhook subscription service.

WHAT: Registers the webhook topics this pipeline consumes for a brand's store
WHY: Webhooks must be registered via the Admin API after the app is installed
REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/2024-10/resources/webhook#post-webhooks
    - shopsync/routers/shopify_webhooks.py (receiving endpoints)
"""

import logging
from typing import Any, Dict, Optional

from shopsync.deps import get_settings
from shopsync.models import Brand
from shopsync.services.shopify_client import ShopifyAPIError, ShopifyClient
from shopsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

# Topic -> receiving path
WEBHOOK_TOPICS = {
    "orders/create": "/webhooks/shopify/orders/create",
    "refunds/create": "/webhooks/shopify/refunds/create",
    "app/uninstalled": "/webhooks/shopify/app/uninstalled",
}


def _callback_base_url() -> Optional[str]:
    backend_url = (get_settings().BACKEND_URL or "").rstrip("/")
    if not backend_url:
        return None

    # Shopify requires HTTPS callbacks
    if backend_url.startswith("http://"):
        backend_url = backend_url.replace("http://", "https://", 1)
        logger.info(f"[WEBHOOK_SUB] Upgraded to HTTPS: {backend_url}")
    return backend_url


async def register_webhooks(brand: Brand, client: Optional[ShopifyClient] = None) -> Dict[str, Any]:
    """Subscribe a brand's store to the order, refund and uninstall topics.

    WHAT: One POST webhooks.json per topic
    WHY: Per-topic failures are recorded in the result and reported to
         Sentry; one bad topic does not stop the others

    Args:
        brand: Shopify-connected brand
        client: Shopify client (built from the brand's credentials if omitted)

    Returns:
        Dict of topic -> result ({"status": ...} or {"error": ...})
    """
    backend_url = _callback_base_url()
    if not backend_url:
        logger.error("[WEBHOOK_SUB] No BACKEND_URL configured")
        return {"error": "No webhook callback URL configured"}

    client = client or ShopifyClient.for_brand(brand, api_version=get_settings().SHOPIFY_API_VERSION)

    results: Dict[str, Any] = {}

    for topic, path in WEBHOOK_TOPICS.items():
        callback_url = f"{backend_url}{path}"
        try:
            webhook = await client.create_webhook(topic, callback_url)
            results[topic] = {
                "status": "created",
                "webhook_id": webhook.get("id"),
                "callback_url": callback_url,
            }
            logger.info(f"[WEBHOOK_SUB] Subscribed {brand.shopify_domain} to {topic}")
        except ShopifyAPIError as e:
            if e.status_code == 422 and "already been taken" in str(e.errors).lower():
                logger.info(f"[WEBHOOK_SUB] Webhook {topic} already registered for {brand.shopify_domain}")
                results[topic] = {"status": "already_registered", "callback_url": callback_url}
                continue

            logger.error(f"[WEBHOOK_SUB] Failed to subscribe to {topic}: {e}", extra={"errors": e.errors})
            capture_exception(e, extra={
                "operation": "register_webhooks",
                "brand_id": str(brand.id),
                "topic": topic,
            })
            results[topic] = {"error": str(e)}

    return results
