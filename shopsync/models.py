"""SQLAlchemy ORM models and enums.

This module defines the tenant and order-store schema using UUID primary keys
and explicit relationships. Shopify access tokens are stored encrypted
(see `shopsync.security.encrypt_secret`).
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Boolean,
    Table, UniqueConstraint, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class LoginMethodEnum(str, enum.Enum):
    password = "password"
    google = "google"
    shopify = "shopify"  # Users created by the Shopify app install flow


# Association tables ---------------------------------------------

user_brands = Table(
    "user_brands",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("brand_id", UUID(as_uuid=True), ForeignKey("brands.id", ondelete="CASCADE"), primary_key=True),
)


# Core models ----------------------------------------------------

class Brand(Base):
    """Brand represents a tenant store in the dashboard.

    A brand is the top-level container for all ingested data. It holds the
    Shopify connection (domain + encrypted token) and the identifiers of the
    ad-platform accounts consumed by the dashboard.
    """
    __tablename__ = "brands"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)

    # Shopify connection
    shopify_domain = Column(String, nullable=True, index=True)  # e.g., "mystore.myshopify.com"
    shopify_shop_id = Column(String, nullable=True)
    shopify_access_token_enc = Column(String, nullable=True)

    # Ad platform accounts (read by the dashboard, not by this pipeline)
    fb_ad_accounts = Column(JSON, nullable=False, default=list)
    google_ad_accounts = Column(JSON, nullable=False, default=list)  # [{"client_id": ..., "manager_id": ...}]
    ga4_property_id = Column(String, nullable=True)

    # IANA timezone; None falls back to RECONCILE_TIMEZONE
    timezone = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", secondary=user_brands, back_populates="brands")
    orders = relationship("ShopifyOrder", back_populates="brand", passive_deletes=True)

    @property
    def shopify_connected(self) -> bool:
        return bool(self.shopify_domain and self.shopify_access_token_enc)

    def __str__(self):
        return self.name


class User(Base):
    """Dashboard user with access to one or more brands."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    method = Column(Enum(LoginMethodEnum), nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    brands = relationship("Brand", secondary=user_brands, back_populates="users")

    def __str__(self):
        return self.email


class ShopifyOrder(Base):
    """One stored Shopify order per (brand, shopify order id).

    WHAT: Minimal order facts needed for revenue aggregation
    WHY: Orders are the source of truth for daily/monthly revenue; refunds
         are folded into refund_amount against the ORIGINAL order date
    """
    __tablename__ = "shopify_orders"
    __table_args__ = (
        UniqueConstraint("brand_id", "shopify_order_id", name="uq_shopify_order_brand"),
        Index("ix_shopify_orders_brand_date", "brand_id", "order_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id", ondelete="CASCADE"), nullable=False)

    shopify_order_id = Column(String, nullable=False)
    order_date = Column(String(10), nullable=False)  # YYYY-MM-DD in the shop's offset

    total_price = Column(Numeric(18, 4), nullable=False)
    currency = Column(String, nullable=True)
    financial_status = Column(String, nullable=True)

    is_cancelled = Column(Boolean, default=False, nullable=False)
    refund_amount = Column(Numeric(18, 4), default=0, nullable=False)
    refunds = Column(JSON, nullable=False, default=list)  # Shopify refund ids already applied

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    brand = relationship("Brand", back_populates="orders")

    def __str__(self):
        return f"{self.shopify_order_id} ({self.order_date})"


class DailyRevenue(Base):
    """Per-brand daily revenue aggregate, recomputed from stored orders."""
    __tablename__ = "daily_revenue"
    __table_args__ = (
        UniqueConstraint("brand_id", "date", name="uq_daily_revenue_brand_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id", ondelete="CASCADE"), nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD

    total_sales = Column(Numeric(18, 4), default=0, nullable=False)
    refund_amount = Column(Numeric(18, 4), default=0, nullable=False)
    net_sales = Column(Numeric(18, 4), default=0, nullable=False)
    order_count = Column(Integer, default=0, nullable=False)
    cancelled_order_count = Column(Integer, default=0, nullable=False)

    calculated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MonthlyRevenue(Base):
    """Per-brand monthly rollup of DailyRevenue rows."""
    __tablename__ = "monthly_revenue"
    __table_args__ = (
        UniqueConstraint("brand_id", "month", name="uq_monthly_revenue_brand_month"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id", ondelete="CASCADE"), nullable=False)
    month = Column(String(7), nullable=False)  # YYYY-MM

    total_sales = Column(Numeric(18, 4), default=0, nullable=False)
    refund_amount = Column(Numeric(18, 4), default=0, nullable=False)
    net_sales = Column(Numeric(18, 4), default=0, nullable=False)
    order_count = Column(Integer, default=0, nullable=False)

    calculated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
