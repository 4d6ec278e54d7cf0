"""Tests for the Shopify webhook receiver.

WHAT: HMAC verification, enqueue-and-acknowledge for orders/refunds,
      and the always-200 compliance endpoints
"""

import json

import pytest

from shopsync.routers import shopify_webhooks
from shopsync.routers.shopify_webhooks import verify_shopify_webhook
from shopsync.tests.fakes import SHOP_DOMAIN, WEBHOOK_SECRET, sign


def _post(client, path, payload, signature=None, shop_domain=SHOP_DOMAIN):
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-SHA256": signature if signature is not None else sign(body),
    }
    if shop_domain:
        headers["X-Shopify-Shop-Domain"] = shop_domain
    return client.post(f"/webhooks/shopify/{path}", content=body, headers=headers)


# =============================================================================
# HMAC
# =============================================================================

def test_verify_accepts_valid_signature():
    body = b'{"id": 1}'
    assert verify_shopify_webhook(body, sign(body), WEBHOOK_SECRET) is True


def test_verify_rejects_tampered_body():
    signature = sign(b'{"id": 1}')
    assert verify_shopify_webhook(b'{"id": 2}', signature, WEBHOOK_SECRET) is False


def test_verify_rejects_missing_header_or_secret():
    body = b'{"id": 1}'
    assert verify_shopify_webhook(body, None, WEBHOOK_SECRET) is False
    assert verify_shopify_webhook(body, sign(body), None) is False


def test_verify_rejects_non_ascii_header():
    body = b'{"id": 1}'
    assert verify_shopify_webhook(body, "abc\xe9", WEBHOOK_SECRET) is False


def test_invalid_signature_returns_401_and_enqueues_nothing(client, fake_pool, order_factory):
    response = _post(client, "orders/create", order_factory(), signature="bm90LXZhbGlk")

    assert response.status_code == 401
    assert fake_pool.jobs == []


def test_non_ascii_signature_header_returns_401(client, fake_pool, order_factory):
    """WHAT: A forged header with latin-1 bytes.
    WHY: It must be rejected as a bad signature, not crash the handler.
    """
    response = _post(client, "orders/create", order_factory(), signature=b"abc\xe9")

    assert response.status_code == 401
    assert fake_pool.jobs == []


def test_signed_non_json_body_returns_400(client, fake_pool):
    body = b"not json"
    response = client.post(
        "/webhooks/shopify/orders/create",
        content=body,
        headers={"X-Shopify-Hmac-SHA256": sign(body), "X-Shopify-Shop-Domain": SHOP_DOMAIN},
    )

    assert response.status_code == 400
    assert fake_pool.jobs == []


# =============================================================================
# orders/create
# =============================================================================

def test_order_webhook_enqueues_job(client, fake_pool, order_factory):
    response = _post(client, "orders/create", order_factory(order_id=5001))

    assert response.status_code == 200
    assert response.json()["job_id"] == "order-5001"
    assert response.json()["status"] == "enqueued"

    jobs = fake_pool.jobs_for("process_shopify_order_job")
    assert len(jobs) == 1
    assert jobs[0]["job_id"] == "order-5001"
    job_data = jobs[0]["args"][0]
    assert job_data["type"] == "order_created"
    assert job_data["source"] == "webhook"
    assert job_data["shop_domain"] == SHOP_DOMAIN
    assert job_data["payload"]["id"] == 5001


def test_redelivered_order_webhook_is_deduplicated(client, fake_pool, order_factory):
    first = _post(client, "orders/create", order_factory(order_id=5002))
    second = _post(client, "orders/create", order_factory(order_id=5002))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "skipped_or_duplicate"
    assert len(fake_pool.jobs) == 1


def test_order_webhook_without_id_returns_400(client, fake_pool):
    response = _post(client, "orders/create", {"created_at": "2024-03-01T10:00:00+05:30"})

    assert response.status_code == 400
    assert fake_pool.jobs == []


def test_order_webhook_without_shop_domain_returns_400(client, fake_pool, order_factory):
    response = _post(client, "orders/create", order_factory(), shop_domain=None)

    assert response.status_code == 400


def test_enqueue_failure_returns_500(client, monkeypatch, order_factory):
    async def broken_enqueue(job, job_id=None, pool=None):
        raise ConnectionError("redis down")

    monkeypatch.setattr(shopify_webhooks, "enqueue_webhook_job", broken_enqueue)

    response = _post(client, "orders/create", order_factory())

    assert response.status_code == 500


# =============================================================================
# refunds/create
# =============================================================================

def test_refund_webhook_uses_order_and_refund_ids(client, fake_pool):
    response = _post(client, "refunds/create", {"id": 77, "order_id": 5001})

    assert response.status_code == 200
    assert response.json()["job_id"] == "refund-5001-77"

    job_data = fake_pool.jobs[0]["args"][0]
    assert job_data["type"] == "refund_created"
    assert job_data["payload"]["order_id"] == 5001


def test_partial_refunds_on_same_order_are_separate_jobs(client, fake_pool):
    _post(client, "refunds/create", {"id": 77, "order_id": 5001})
    _post(client, "refunds/create", {"id": 78, "order_id": 5001})

    assert [job["job_id"] for job in fake_pool.jobs] == ["refund-5001-77", "refund-5001-78"]


def test_refund_webhook_without_order_id_returns_400(client, fake_pool):
    response = _post(client, "refunds/create", {"id": 77})

    assert response.status_code == 400
    assert fake_pool.jobs == []


# =============================================================================
# Compliance
# =============================================================================

@pytest.mark.parametrize("path", ["customers/data_request", "customers/redact"])
def test_customer_compliance_webhooks_return_200(client, path):
    response = _post(client, path, {"shop_domain": SHOP_DOMAIN, "customer": {"id": 42}})

    assert response.status_code == 200


@pytest.mark.parametrize("path", ["customers/data_request", "customers/redact"])
def test_customer_webhooks_accept_malformed_customer(client, path):
    response = _post(client, path, {"shop_domain": SHOP_DOMAIN, "customer": "not-an-object"})

    assert response.status_code == 200


def test_customer_webhook_returns_200_when_audit_record_fails(client, monkeypatch):
    captured = []

    def broken_record(request_type, shop_domain, payload):
        raise RuntimeError("log handler down")

    monkeypatch.setattr(shopify_webhooks, "record_customer_request", broken_record)
    monkeypatch.setattr(
        shopify_webhooks, "capture_exception", lambda exc, extra=None: captured.append(extra)
    )

    response = _post(client, "customers/data_request", {"customer": {"id": 42}})

    assert response.status_code == 200
    assert captured[0]["operation"] == "customers/data_request"


def test_compliance_webhook_requires_signature(client):
    response = _post(client, "customers/redact", {"customer": {"id": 42}}, signature="bad")

    assert response.status_code == 401


def test_shop_redact_returns_200_even_when_redaction_fails(client, monkeypatch):
    def broken_redact(db, shop_domain):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(shopify_webhooks, "redact_shop", broken_redact)

    response = _post(client, "shop/redact", {"shop_domain": SHOP_DOMAIN})

    assert response.status_code == 200


def test_app_uninstalled_deletes_brand(client, test_db_session, test_brand):
    from shopsync.models import Brand

    response = _post(client, "app/uninstalled", {"myshopify_domain": SHOP_DOMAIN}, shop_domain=None)

    assert response.status_code == 200
    test_db_session.expire_all()
    assert test_db_session.query(Brand).count() == 0
