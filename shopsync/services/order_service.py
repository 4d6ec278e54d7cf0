"""Order store: normalization, upsert and refund application.

WHAT:
    Maps raw Shopify order JSON onto the minimal `ShopifyOrder` row and
    writes it idempotently, keyed by (brand_id, shopify_order_id).

WHY:
    - Webhooks, reconciliation and historical sync all funnel through the
      same upsert, so a replayed or duplicated job never creates a second row
    - Refunds are folded into the ORIGINAL order's row, so revenue for the
      order date is recomputed rather than booked on the refund date

REFERENCES:
    - shopsync/workers/arq_worker.py (process_shopify_order_job)
    - shopsync/services/revenue_service.py (consumer of stored orders)
    - https://shopify.dev/docs/api/admin-rest/2024-10/resources/refund
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from shopsync.models import Brand, ShopifyOrder

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# =============================================================================
# HELPERS
# =============================================================================

def _to_decimal(value: Any) -> Decimal:
    """Parse Shopify money strings ("12.50") into Decimal, treating junk as 0."""
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"[ORDERS] Could not parse money value {value!r}, using 0")
        return ZERO


def order_date_from_created_at(created_at: Optional[str]) -> str:
    """Date portion of Shopify's `created_at`.

    Shopify renders timestamps in the shop's own offset
    ("2024-03-01T23:10:00+05:30"), so the first ten characters are the
    shop-local calendar day.
    """
    if not created_at or len(created_at) < 10:
        raise ValueError(f"Order has no usable created_at: {created_at!r}")
    return created_at[:10]


def refund_ids(order: Dict[str, Any]) -> List[str]:
    """Shopify refund ids present on an order payload."""
    return [str(refund["id"]) for refund in (order.get("refunds") or []) if refund.get("id") is not None]


def find_brand_by_domain(db: Session, shop_domain: Optional[str]) -> Optional[Brand]:
    if not shop_domain:
        return None
    return db.query(Brand).filter(Brand.shopify_domain == shop_domain).first()


# =============================================================================
# REFUND MATH
# =============================================================================

def calculate_refund_amount(order: Dict[str, Any]) -> Decimal:
    """Total refunded on an order.

    WHAT:
        - Cancelled + voided (e.g. COD cancelled before payment): full total
        - Otherwise: sum of refunded line-item subtotal + tax, minus the
          order adjustment amounts (Shopify reports those as negatives)
        - Never more than the order total

    Args:
        order: Shopify order JSON including its `refunds`

    Returns:
        Refund amount as Decimal
    """
    total_price = _to_decimal(order.get("total_price"))

    if order.get("cancelled_at") and order.get("financial_status") == "voided":
        return total_price

    total_refund = ZERO
    for refund in order.get("refunds") or []:
        for item in refund.get("refund_line_items") or []:
            total_refund += _to_decimal(item.get("subtotal"))
            total_refund += _to_decimal(item.get("total_tax"))

        for adjustment in refund.get("order_adjustments") or []:
            total_refund -= _to_decimal(adjustment.get("amount"))

    return min(total_refund, total_price)


def normalize_shopify_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Map Shopify order JSON to `ShopifyOrder` column values.

    Raises:
        ValueError: If the payload has no id or created_at
    """
    if order.get("id") is None:
        raise ValueError("Order payload has no id")

    total_price = _to_decimal(order.get("total_price"))
    refund_amount = calculate_refund_amount(order)
    is_cancelled = bool(order.get("cancelled_at")) or (total_price > ZERO and refund_amount >= total_price)

    return {
        "shopify_order_id": str(order["id"]),
        "order_date": order_date_from_created_at(order.get("created_at")),
        "total_price": total_price,
        "currency": order.get("currency"),
        "financial_status": order.get("financial_status"),
        "is_cancelled": is_cancelled,
        "refund_amount": refund_amount,
        "refunds": refund_ids(order),
    }


# =============================================================================
# UPSERT
# =============================================================================

def upsert_order(
    db: Session,
    brand: Brand,
    order: Dict[str, Any],
    *,
    authoritative: bool = False,
    commit: bool = True,
) -> Tuple[ShopifyOrder, bool]:
    """Insert or update one order for a brand.

    WHAT: Keyed by (brand_id, shopify_order_id); a replay overwrites the
          existing row instead of inserting a duplicate
    WHY: ARQ retries, Shopify webhook retries and reconciliation can all
         deliver the same order more than once

    Refund state on an existing row only moves forward unless the payload is
    `authoritative` (a freshly fetched full order): an `orders/create`
    payload replayed after a refund carries no refunds and must not wipe them.

    Args:
        db: Database session
        brand: Owning brand
        order: Shopify order JSON
        authoritative: Payload is the current full order from the Admin API
        commit: Commit after writing (historical sync commits per chunk)

    Returns:
        (ShopifyOrder, created)
    """
    values = normalize_shopify_order(order)

    existing = db.query(ShopifyOrder).filter(
        ShopifyOrder.brand_id == brand.id,
        ShopifyOrder.shopify_order_id == values["shopify_order_id"],
    ).first()

    if existing is None:
        row = ShopifyOrder(brand_id=brand.id, **values)
        db.add(row)
        created = True
    else:
        row = existing
        row.order_date = values["order_date"]
        row.total_price = values["total_price"]
        row.currency = values["currency"]
        row.financial_status = values["financial_status"]

        known = set(row.refunds or [])
        if authoritative or not set(values["refunds"]) <= known:
            row.refund_amount = values["refund_amount"]
            row.refunds = values["refunds"]
            row.is_cancelled = values["is_cancelled"]
        else:
            row.is_cancelled = bool(row.is_cancelled) or values["is_cancelled"]

        row.updated_at = datetime.utcnow()
        created = False

    if commit:
        db.commit()
        db.refresh(row)
    else:
        db.flush()

    logger.info(
        "[ORDERS] %s order %s for brand %s (date=%s, total=%s, refund=%s)",
        "Created" if created else "Updated",
        row.shopify_order_id, brand.id, row.order_date, row.total_price, row.refund_amount,
    )
    return row, created


def apply_refund(db: Session, brand: Brand, full_order: Dict[str, Any]) -> ShopifyOrder:
    """Recompute refund state of an order from its full Shopify record.

    WHAT: Creates the order first when it is not stored yet, then overwrites
          refund_amount, refund ids and the cancelled flag
    WHY: A refund webhook only describes one refund; the full order carries
         every refund so the total stays correct across partial refunds
    """
    row, created = upsert_order(db, brand, full_order, authoritative=True)
    if created:
        logger.info(
            f"[ORDERS] Order {row.shopify_order_id} was missing when its refund arrived; created it"
        )
    return row
