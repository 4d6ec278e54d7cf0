"""Tests for daily reconciliation against Shopify."""

import asyncio
from datetime import date, datetime
from uuid import uuid4
from zoneinfo import ZoneInfo

from shopsync.models import Brand, ShopifyOrder
from shopsync.security import encrypt_secret
from shopsync.services import reconciliation_service
from shopsync.services.order_service import upsert_order
from shopsync.services.reconciliation_service import reconcile_brand, run_daily_reconciliation, yesterday_in
from shopsync.services.shopify_client import ShopifyAPIError
from shopsync.tests.fakes import FakeArqPool, FakeShopifyClient
from shopsync.workers.arq_worker import process_shopify_order_job

TARGET = date(2024, 3, 1)


def _refunded(order_factory, order_id, refund_id, amount):
    return order_factory(
        order_id=order_id,
        refunds=[{"id": refund_id, "refund_line_items": [{"subtotal": amount, "total_tax": "0"}]}],
    )


def test_yesterday_is_computed_in_the_given_timezone():
    # 20:00 UTC on Mar 1 is already Mar 2 in Kolkata
    now = datetime(2024, 3, 1, 20, 0, tzinfo=ZoneInfo("UTC"))

    assert yesterday_in("Asia/Kolkata", now=now) == date(2024, 3, 1)
    assert yesterday_in("UTC", now=now) == date(2024, 2, 29)


def test_missing_orders_are_enqueued_as_cron_jobs(test_db_session, test_brand, order_factory):
    upsert_order(test_db_session, test_brand, order_factory(order_id=1))
    client = FakeShopifyClient(orders=[order_factory(order_id=1), order_factory(order_id=2)])
    pool = FakeArqPool()

    result = asyncio.run(reconcile_brand(test_db_session, test_brand, TARGET, pool, client))

    assert result.shopify_order_count == 2
    assert result.local_order_count == 1
    assert result.missing_orders_enqueued == 1

    order_jobs = pool.jobs_for("process_shopify_order_job")
    assert len(order_jobs) == 1
    job_data = order_jobs[0]["args"][0]
    assert job_data["source"] == "cron"
    assert job_data["payload"]["id"] == 2
    assert client.range_calls == [(TARGET, TARGET, "Asia/Kolkata")]


def test_unapplied_refunds_are_enqueued(test_db_session, test_brand, order_factory):
    upsert_order(test_db_session, test_brand, _refunded(order_factory, 1, 10, "5.00"))
    client = FakeShopifyClient(orders=[order_factory(
        order_id=1,
        refunds=[
            {"id": 10, "refund_line_items": [{"subtotal": "5.00", "total_tax": "0"}]},
            {"id": 11, "refund_line_items": [{"subtotal": "7.00", "total_tax": "0"}]},
        ],
    )])
    pool = FakeArqPool()

    result = asyncio.run(reconcile_brand(test_db_session, test_brand, TARGET, pool, client))

    assert result.missing_orders_enqueued == 0
    assert result.refund_jobs_enqueued == 1
    job_data = pool.jobs_for("process_shopify_order_job")[0]["args"][0]
    assert job_data["type"] == "refund_created"
    assert job_data["payload"] == {"order_id": 1, "refund_ids": ["11"]}


def test_revenue_job_id_is_stable_across_runs(test_db_session, test_brand, order_factory):
    client = FakeShopifyClient(orders=[])
    pool = FakeArqPool()

    first = asyncio.run(reconcile_brand(test_db_session, test_brand, TARGET, pool, client))
    second = asyncio.run(reconcile_brand(test_db_session, test_brand, TARGET, pool, client))

    assert first.revenue_job["status"] == "enqueued"
    assert second.revenue_job["status"] == "skipped_or_duplicate"
    revenue_jobs = pool.jobs_for("calculate_revenue_job")
    assert [job["job_id"] for job in revenue_jobs] == [f"revenue-cron-{test_brand.id}-2024-03-01"]


def test_store_converges_after_processing_reconciled_jobs(
    worker_db, test_db_session, test_brand, order_factory
):
    """WHAT: Reconcile, run the enqueued jobs, reconcile again.
    WHY: The second run must find nothing missing for the same day.
    """
    shopify_orders = [order_factory(order_id=i) for i in (1, 2, 3)]
    upsert_order(test_db_session, test_brand, shopify_orders[0])
    client = FakeShopifyClient(orders=shopify_orders)
    pool = FakeArqPool()

    first = asyncio.run(reconcile_brand(test_db_session, test_brand, TARGET, pool, client))
    for job in pool.jobs_for("process_shopify_order_job"):
        asyncio.run(process_shopify_order_job({"redis": pool, "job_try": 1}, job["args"][0]))

    test_db_session.expire_all()
    second = asyncio.run(reconcile_brand(test_db_session, test_brand, TARGET, FakeArqPool(), client))

    assert first.missing_orders_enqueued == 2
    assert second.missing_orders_enqueued == 0
    assert second.local_order_count == 3
    assert test_db_session.query(ShopifyOrder).count() == 3


def test_failing_brand_does_not_stop_the_run(monkeypatch, test_db_session, test_brand, order_factory):
    """WHAT: One brand's Shopify failure is recorded and reported.
    WHY: The remaining brands still reconcile in the same run.
    """
    broken = Brand(
        id=uuid4(),
        name="Broken Store",
        shopify_domain="broken.myshopify.com",
        shopify_access_token_enc=encrypt_secret("shpat_x", context="broken.myshopify.com"),
    )
    unconnected = Brand(id=uuid4(), name="Offline Store")
    test_db_session.add_all([broken, unconnected])
    test_db_session.commit()

    captured = []
    monkeypatch.setattr(
        reconciliation_service, "capture_exception", lambda exc, extra=None: captured.append(extra)
    )

    clients = {
        "broken.myshopify.com": FakeShopifyClient(error=ShopifyAPIError("boom", status_code=503)),
        test_brand.shopify_domain: FakeShopifyClient(orders=[order_factory(order_id=1)]),
    }
    pool = FakeArqPool()

    summary = asyncio.run(run_daily_reconciliation(
        test_db_session,
        pool,
        target_date=TARGET,
        delay_seconds=0,
        client_factory=lambda brand: clients[brand.shopify_domain],
    ))

    assert summary.brands_processed == 1
    assert summary.brands_failed == 1
    by_name = {result.brand_name: result for result in summary.results}
    assert set(by_name) == {"Acme Store", "Broken Store"}
    assert by_name["Broken Store"].error == "boom"
    assert by_name["Acme Store"].missing_orders_enqueued == 1
    assert captured[0]["operation"] == "reconcile_brand"
    assert summary.to_dict()["missing_orders_enqueued"] == 1


def test_brands_are_throttled_with_no_pause_after_the_last(monkeypatch, test_db_session, test_brand):
    for name in ("Second Store", "Third Store"):
        domain = f"{name.split()[0].lower()}.myshopify.com"
        test_db_session.add(Brand(
            id=uuid4(),
            name=name,
            shopify_domain=domain,
            shopify_access_token_enc=encrypt_secret("shpat_x", context=domain),
        ))
    test_db_session.commit()

    pauses = []

    async def fake_sleep(seconds):
        pauses.append(seconds)

    monkeypatch.setattr(reconciliation_service.asyncio, "sleep", fake_sleep)

    summary = asyncio.run(run_daily_reconciliation(
        test_db_session,
        FakeArqPool(),
        target_date=TARGET,
        delay_seconds=1.0,
        client_factory=lambda brand: FakeShopifyClient(orders=[]),
    ))

    assert summary.brands_processed == 3
    assert pauses == [1.0, 1.0]
