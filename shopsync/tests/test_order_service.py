"""Tests for refund math and the idempotent order upsert."""

from decimal import Decimal

import pytest

from shopsync.models import ShopifyOrder
from shopsync.services.order_service import (
    apply_refund,
    calculate_refund_amount,
    normalize_shopify_order,
    order_date_from_created_at,
    upsert_order,
)


def _refund(refund_id, subtotal="0", tax="0", adjustments=()):
    return {
        "id": refund_id,
        "refund_line_items": [{"subtotal": subtotal, "total_tax": tax}],
        "order_adjustments": [{"amount": amount} for amount in adjustments],
    }


# =============================================================================
# Refund math
# =============================================================================

class TestCalculateRefundAmount:
    def test_no_refunds_is_zero(self, order_factory):
        assert calculate_refund_amount(order_factory()) == Decimal("0")

    def test_cancelled_and_voided_refunds_full_total(self, order_factory):
        order = order_factory(
            total_price="249.00",
            cancelled_at="2024-03-01T12:00:00+05:30",
            financial_status="voided",
        )
        assert calculate_refund_amount(order) == Decimal("249.00")

    def test_line_items_plus_tax_minus_adjustments(self, order_factory):
        order = order_factory(refunds=[_refund(1, subtotal="40.00", tax="7.20", adjustments=["-5.00"])])
        assert calculate_refund_amount(order) == Decimal("52.20")

    def test_multiple_partial_refunds_add_up(self, order_factory):
        order = order_factory(refunds=[_refund(1, subtotal="10.00"), _refund(2, subtotal="15.00", tax="2.00")])
        assert calculate_refund_amount(order) == Decimal("27.00")

    def test_never_exceeds_order_total(self, order_factory):
        order = order_factory(total_price="100.00", refunds=[_refund(1, subtotal="150.00")])
        assert calculate_refund_amount(order) == Decimal("100.00")


class TestNormalize:
    def test_order_date_is_shop_local_day(self):
        assert order_date_from_created_at("2024-03-01T23:50:00+05:30") == "2024-03-01"

    def test_missing_created_at_raises(self, order_factory):
        with pytest.raises(ValueError):
            normalize_shopify_order(order_factory(created_at=None))

    def test_full_refund_marks_cancelled(self, order_factory):
        values = normalize_shopify_order(
            order_factory(total_price="50.00", refunds=[_refund(3, subtotal="50.00")])
        )
        assert values["is_cancelled"] is True
        assert values["refunds"] == ["3"]

    def test_cancelled_at_marks_cancelled(self, order_factory):
        values = normalize_shopify_order(order_factory(cancelled_at="2024-03-01T12:00:00+05:30"))
        assert values["is_cancelled"] is True


# =============================================================================
# Upsert
# =============================================================================

def test_replayed_order_updates_instead_of_duplicating(test_db_session, test_brand, order_factory):
    order = order_factory(order_id=9001, total_price="120.00")

    _, created_first = upsert_order(test_db_session, test_brand, order)
    row, created_second = upsert_order(test_db_session, test_brand, order)

    assert created_first is True
    assert created_second is False
    assert test_db_session.query(ShopifyOrder).count() == 1
    assert row.total_price == Decimal("120.00")
    assert row.order_date == "2024-03-01"


def test_stale_webhook_replay_keeps_applied_refund(test_db_session, test_brand, order_factory):
    """WHAT: orders/create replayed after a refund was applied.
    WHY: The replayed payload has no refunds and must not wipe them.
    """
    original = order_factory(order_id=9002, total_price="100.00")
    refunded = order_factory(order_id=9002, total_price="100.00", refunds=[_refund(11, subtotal="30.00")])

    upsert_order(test_db_session, test_brand, original)
    apply_refund(test_db_session, test_brand, refunded)
    row, _ = upsert_order(test_db_session, test_brand, original)

    assert row.refund_amount == Decimal("30.00")
    assert row.refunds == ["11"]


def test_apply_refund_creates_missing_order(test_db_session, test_brand, order_factory):
    full_order = order_factory(order_id=9003, total_price="80.00", refunds=[_refund(12, subtotal="80.00")])

    row = apply_refund(test_db_session, test_brand, full_order)

    assert row.shopify_order_id == "9003"
    assert row.refund_amount == Decimal("80.00")
    assert row.is_cancelled is True
    assert test_db_session.query(ShopifyOrder).count() == 1


def test_authoritative_payload_overwrites_refunds(test_db_session, test_brand, order_factory):
    upsert_order(
        test_db_session, test_brand,
        order_factory(order_id=9004, refunds=[_refund(13, subtotal="20.00")]),
    )

    row, _ = upsert_order(test_db_session, test_brand, order_factory(order_id=9004), authoritative=True)

    assert row.refund_amount == Decimal("0")
    assert row.refunds == []
