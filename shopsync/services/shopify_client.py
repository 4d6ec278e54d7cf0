"""Shopify Admin REST API client.

WHAT:
    Wrapper for the Shopify Admin REST API with:
    - Authentication handling
    - Rate limiting (2 requests/second)
    - Cursor-based pagination via the Link header
    - Error handling and retries

WHY:
    Encapsulates all Shopify API interaction for the order worker, the
    daily reconciliation and webhook registration.

REFERENCES:
    - Orders: https://shopify.dev/docs/api/admin-rest/2024-10/resources/order
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-rest
"""

import asyncio
import logging
import re
import time
from datetime import date, datetime, time as dt_time
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx

from shopsync.models import Brand
from shopsync.security import decrypt_secret

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-10"

# Shopify allows 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5

# Maximum page size for the orders endpoint
ORDERS_PAGE_LIMIT = 250

_NEXT_PAGE_RE = re.compile(r'<[^>]*[?&]page_info=([^&>]+)[^>]*>;\s*rel="next"')


class ShopifyAPIError(Exception):
    """Custom exception for Shopify API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the `page_info` cursor of the rel="next" link, if any."""
    if not link_header or 'rel="next"' not in link_header:
        return None
    match = _NEXT_PAGE_RE.search(link_header)
    return match.group(1) if match else None


class ShopifyClient:
    """REST client for the Shopify Admin API.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        order = await client.get_order(450789469)
        orders = await client.get_orders_for_date_range(date(2024, 1, 1), date(2024, 1, 1))
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self._transport = transport

        self._last_request_time: float = 0

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {api_version})")

    @classmethod
    def for_brand(cls, brand: Brand, api_version: str = DEFAULT_API_VERSION) -> "ShopifyClient":
        """Build a client from a brand's stored (encrypted) credentials."""
        if not brand.shopify_connected:
            raise ShopifyAPIError(f"Shopify not connected for brand {brand.name}")

        access_token = decrypt_secret(
            brand.shopify_access_token_enc, context=brand.shopify_domain
        )
        return cls(brand.shopify_domain, access_token, api_version=api_version)

    async def _rate_limit(self) -> None:
        """Wait if needed to respect the 2 req/sec limit."""
        current_time = time.time()
        elapsed = current_time - self._last_request_time

        if elapsed < RATE_LIMIT_DELAY:
            wait_time = RATE_LIMIT_DELAY - elapsed
            logger.debug(f"[SHOPIFY_CLIENT] Rate limiting: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)

        self._last_request_time = time.time()

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> Tuple[Dict[str, Any], httpx.Headers]:
        """Send a REST request with rate limiting and retry logic.

        Args:
            method: HTTP method
            path: Path relative to /admin/api/{version}, e.g. "/orders.json"
            params: Query parameters
            json: JSON body
            retries: Number of attempts for transient errors

        Returns:
            (parsed JSON body, response headers)

        Raises:
            ShopifyAPIError: On 4xx responses other than 429, or after all retries
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None

        for attempt in range(retries):
            await self._rate_limit()
            try:
                async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                    response = await client.request(method, url, params=params, json=json, headers=headers)

                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", 2))
                    logger.warning(
                        f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{retries})"
                    )
                    last_error = ShopifyAPIError("Rate limited", status_code=429)
                    await asyncio.sleep(retry_after)
                    continue

                if 400 <= response.status_code < 500:
                    # Client errors don't get better on retry
                    raise ShopifyAPIError(
                        f"Shopify returned {response.status_code} for {method} {path}",
                        status_code=response.status_code,
                        errors=_safe_errors(response),
                    )

                response.raise_for_status()
                return response.json(), response.headers

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {e.response.status_code} (attempt {attempt + 1}/{retries})"
                )
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error}")

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def get_order(self, order_id: int | str) -> Dict[str, Any]:
        """Fetch a single order, including its refunds."""
        data, _ = await self.request("GET", f"/orders/{order_id}.json")
        order = data.get("order")
        if not order:
            raise ShopifyAPIError(f"Order {order_id} not found in response", status_code=404)
        return order

    async def get_orders_for_date_range(
        self,
        start_date: date,
        end_date: date,
        tz_name: str = "UTC",
    ) -> List[Dict[str, Any]]:
        """Fetch every order created between two dates (inclusive).

        WHAT: Walks all pages of /orders.json with status=any
        WHY: Reconciliation and historical sync need the complete set

        Args:
            start_date: First day (inclusive)
            end_date: Last day (inclusive)
            tz_name: IANA timezone the day boundaries are expressed in

        Returns:
            List of raw Shopify order dicts
        """
        tz = ZoneInfo(tz_name)
        created_at_min = datetime.combine(start_date, dt_time.min, tzinfo=tz)
        created_at_max = datetime.combine(end_date, dt_time(23, 59, 59), tzinfo=tz)

        all_orders: List[Dict[str, Any]] = []
        page_info: Optional[str] = None

        while True:
            if page_info:
                # Shopify rejects filter params alongside page_info
                params: Dict[str, Any] = {"limit": ORDERS_PAGE_LIMIT, "page_info": page_info}
            else:
                params = {
                    "status": "any",
                    "created_at_min": created_at_min.isoformat(),
                    "created_at_max": created_at_max.isoformat(),
                    "limit": ORDERS_PAGE_LIMIT,
                }

            data, headers = await self.request("GET", "/orders.json", params=params)
            orders = data.get("orders") or []
            all_orders.extend(orders)

            page_info = parse_next_page_info(headers.get("link"))
            if not page_info:
                break

        logger.info(
            f"[SHOPIFY_CLIENT] Fetched {len(all_orders)} orders for {self.shop_domain} "
            f"({start_date} to {end_date}, tz={tz_name})"
        )
        return all_orders

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def create_webhook(self, topic: str, address: str) -> Dict[str, Any]:
        """Register a webhook subscription for this shop."""
        data, _ = await self.request(
            "POST",
            "/webhooks.json",
            json={"webhook": {"topic": topic, "address": address, "format": "json"}},
        )
        return data.get("webhook", {})


def _safe_errors(response: httpx.Response) -> Any:
    try:
        return response.json().get("errors")
    except ValueError:
        return response.text[:500]
