"""GDPR and app-lifecycle data handling.

WHAT:
    - `redact_shop`: removes every trace of a shop after `shop/redact` or
      `app/uninstalled`
    - `record_customer_request`: audit log for customer data requests and
      customer redaction (no customer PII is stored by this pipeline)

WHY:
    Shopify requires apps to honour the mandatory compliance webhooks.
    Users created by the Shopify install flow exist only for that shop, so
    they are deleted once they no longer have a brand.

REFERENCES:
    - https://shopify.dev/docs/apps/build/privacy-law-compliance
    - shopsync/routers/shopify_webhooks.py
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from shopsync.models import Brand, DailyRevenue, LoginMethodEnum, MonthlyRevenue, ShopifyOrder, User

logger = logging.getLogger(__name__)


@dataclass
class RedactResult:
    shop_domain: str
    brands_deleted: List[str] = field(default_factory=list)
    users_deleted: int = 0
    users_updated: int = 0
    orders_deleted: int = 0


def redact_shop(db: Session, shop_domain: str) -> RedactResult:
    """Delete a shop's brands and the Shopify-only users attached to them.

    WHAT:
        1. Find all brands with this Shopify domain
        2. For each Shopify-method user linked to any of them, detach those
           brands; a user left with no brand is deleted, otherwise saved
        3. Delete the brands' orders, revenue rows and the brands themselves

    Users who signed up with password or Google keep their account; they
    simply lose the membership when the brand row goes.

    Args:
        db: Database session
        shop_domain: e.g. "mystore.myshopify.com"

    Returns:
        RedactResult with counts
    """
    result = RedactResult(shop_domain=shop_domain)

    brands = db.query(Brand).filter(Brand.shopify_domain == shop_domain).all()
    if not brands:
        logger.info(f"[GDPR] No brands found for {shop_domain}, nothing to redact")
        return result

    brand_ids = [brand.id for brand in brands]

    users = (
        db.query(User)
        .filter(User.method == LoginMethodEnum.shopify)
        .filter(User.brands.any(Brand.id.in_(brand_ids)))
        .all()
    )
    for user in users:
        remaining = [brand for brand in user.brands if brand.id not in brand_ids]
        if not remaining:
            db.delete(user)
            result.users_deleted += 1
        else:
            user.brands = remaining
            result.users_updated += 1
    db.flush()

    # Explicit deletes: SQLite ignores ON DELETE CASCADE without the pragma
    result.orders_deleted = db.query(ShopifyOrder).filter(
        ShopifyOrder.brand_id.in_(brand_ids)
    ).delete(synchronize_session=False)
    db.query(DailyRevenue).filter(DailyRevenue.brand_id.in_(brand_ids)).delete(synchronize_session=False)
    db.query(MonthlyRevenue).filter(MonthlyRevenue.brand_id.in_(brand_ids)).delete(synchronize_session=False)

    for brand in brands:
        result.brands_deleted.append(str(brand.id))
        brand.users = []
        db.delete(brand)

    db.commit()

    logger.info(
        "[GDPR] Redacted %s: brands=%d users_deleted=%d users_updated=%d orders=%d",
        shop_domain, len(result.brands_deleted), result.users_deleted,
        result.users_updated, result.orders_deleted,
    )
    return result


def record_customer_request(request_type: str, shop_domain: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Log a customer data request / redaction as a structured audit record."""
    customer = payload.get("customer")
    if not isinstance(customer, dict):
        customer = {}
    record = {
        "type": request_type,
        "shop": shop_domain or payload.get("shop_domain"),
        "customer_id": customer.get("id"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"[GDPR] {request_type} received", extra={"gdpr_record": record})
    return record
