"""Revenue aggregation from the order store.

WHAT:
    Recomputes one brand's DailyRevenue row for a date from the stored
    orders, then the MonthlyRevenue row for that month from the daily rows.

WHY:
    Totals are always recomputed from source rows and written over the
    previous value. Running the same calculation twice (webhook burst,
    reconciliation, historical sync) therefore never double counts.

REFERENCES:
    - shopsync/services/order_service.py (writes the orders read here)
    - shopsync/workers/arq_worker.py (calculate_revenue_job)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from shopsync.models import DailyRevenue, MonthlyRevenue, ShopifyOrder

logger = logging.getLogger(__name__)


@dataclass
class RevenueResult:
    """Outcome of one daily recalculation."""
    brand_id: str
    date: str
    total_sales: Decimal = field(default_factory=lambda: Decimal("0"))
    refund_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    net_sales: Decimal = field(default_factory=lambda: Decimal("0"))
    order_count: int = 0
    cancelled_order_count: int = 0
    month: str = ""
    month_net_sales: Decimal = field(default_factory=lambda: Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form for job results and notifications."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(value)
        return data


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _money(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def monthly_row_for_update(brand_uuid: UUID, month: str):
    """SELECT ... FOR UPDATE on one brand-month row."""
    return (
        select(MonthlyRevenue)
        .where(MonthlyRevenue.brand_id == brand_uuid, MonthlyRevenue.month == month)
        .with_for_update()
    )


def _lock_monthly_row(db: Session, brand_uuid: UUID, month: str) -> MonthlyRevenue:
    """Create the month row if missing, then lock it for this transaction."""
    insert = postgresql_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = insert(MonthlyRevenue).values(brand_id=brand_uuid, month=month)
    stmt = stmt.on_conflict_do_nothing(index_elements=["brand_id", "month"])
    db.execute(stmt)

    return db.execute(monthly_row_for_update(brand_uuid, month)).scalar_one()


def recalculate_revenue(db: Session, brand_id: UUID | str, date: str) -> RevenueResult:
    """Recompute daily and monthly revenue for a brand.

    Args:
        db: Database session
        brand_id: Brand UUID
        date: Day to recompute (YYYY-MM-DD)

    Returns:
        RevenueResult with the new daily figures and the month's net sales
    """
    brand_uuid = _as_uuid(brand_id)
    month = date[:7]

    orders = db.query(ShopifyOrder).filter(
        ShopifyOrder.brand_id == brand_uuid,
        ShopifyOrder.order_date == date,
    ).all()

    result = RevenueResult(brand_id=str(brand_uuid), date=date, month=month)
    for order in orders:
        result.total_sales += _money(order.total_price)
        result.refund_amount += _money(order.refund_amount)
        result.order_count += 1
        if order.is_cancelled:
            result.cancelled_order_count += 1
    result.net_sales = result.total_sales - result.refund_amount

    now = datetime.utcnow()

    # Daily row: overwrite
    daily = db.query(DailyRevenue).filter(
        DailyRevenue.brand_id == brand_uuid,
        DailyRevenue.date == date,
    ).first()
    if daily is None:
        daily = DailyRevenue(brand_id=brand_uuid, date=date)
        db.add(daily)
    daily.total_sales = result.total_sales
    daily.refund_amount = result.refund_amount
    daily.net_sales = result.net_sales
    daily.order_count = result.order_count
    daily.cancelled_order_count = result.cancelled_order_count
    daily.calculated_at = now
    db.flush()

    # Monthly row: rolled up from the daily rows. The row is locked before
    # summing so jobs for other days of the month serialize here.
    monthly = _lock_monthly_row(db, brand_uuid, month)

    totals = db.query(
        func.coalesce(func.sum(DailyRevenue.total_sales), 0),
        func.coalesce(func.sum(DailyRevenue.refund_amount), 0),
        func.coalesce(func.sum(DailyRevenue.order_count), 0),
    ).filter(
        DailyRevenue.brand_id == brand_uuid,
        DailyRevenue.date.like(f"{month}-%"),
    ).one()

    month_sales, month_refunds, month_orders = _money(totals[0]), _money(totals[1]), int(totals[2])
    monthly.total_sales = month_sales
    monthly.refund_amount = month_refunds
    monthly.net_sales = month_sales - month_refunds
    monthly.order_count = month_orders
    monthly.calculated_at = now

    db.commit()

    result.month_net_sales = month_sales - month_refunds

    logger.info(
        "[REVENUE] brand=%s date=%s gross=%s refunds=%s net=%s orders=%d (month %s net=%s)",
        result.brand_id, date, result.total_sales, result.refund_amount,
        result.net_sales, result.order_count, month, result.month_net_sales,
    )
    return result
