"""Test doubles for the ARQ pool and the Shopify Admin API."""

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional

WEBHOOK_SECRET = "test-webhook-secret"
SHOP_DOMAIN = "acme.myshopify.com"


class FakeJob:
    def __init__(self, job_id: str):
        self.job_id = job_id


class FakeArqPool:
    """Records enqueue_job calls; refuses duplicate job ids like ARQ does."""

    def __init__(self):
        self.jobs: List[Dict[str, Any]] = []
        self.published: List[tuple] = []
        self._ids = set()

    async def enqueue_job(self, function, *args, _job_id=None, _defer_by=None, _queue_name=None, **kwargs):
        if _job_id is not None and _job_id in self._ids:
            return None
        job_id = _job_id or f"auto-{len(self.jobs) + 1}"
        self._ids.add(job_id)
        self.jobs.append({
            "function": function,
            "args": args,
            "job_id": _job_id,
            "defer_by": _defer_by,
            "queue_name": _queue_name,
        })
        return FakeJob(job_id)

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    async def close(self):
        pass

    def jobs_for(self, function: str) -> List[Dict[str, Any]]:
        return [job for job in self.jobs if job["function"] == function]


class FakeShopifyClient:
    """In-memory stand-in for ShopifyClient."""

    def __init__(self, orders: Optional[List[dict]] = None, error: Optional[Exception] = None):
        self.orders = {str(order["id"]): order for order in (orders or [])}
        self.error = error
        self.range_calls: List[tuple] = []
        self.webhooks: List[tuple] = []

    async def get_orders_for_date_range(self, start_date, end_date, tz_name="UTC"):
        self.range_calls.append((start_date, end_date, tz_name))
        if self.error:
            raise self.error
        return list(self.orders.values())

    async def get_order(self, order_id):
        if self.error:
            raise self.error
        return self.orders[str(order_id)]

    async def create_webhook(self, topic, address):
        if self.error:
            raise self.error
        self.webhooks.append((topic, address))
        return {"id": len(self.webhooks), "topic": topic, "address": address}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """X-Shopify-Hmac-SHA256 value for a raw body."""
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")
