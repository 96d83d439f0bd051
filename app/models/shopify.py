"""
Shopify Data Models

Stores data pulled from the Shopify Admin API, one set of rows per brand.
Source of truth for orders, refunds, products, and customers.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, BigInteger, ForeignKey, Numeric, UniqueConstraint, Text
from datetime import datetime

from app.models.base import Base


class ShopifyOrder(Base):
    """
    Shopify orders - source of truth for sales

    Synced from Shopify Admin API: GET /admin/api/2024-01/orders.json
    """
    __tablename__ = "shopify_orders"
    __table_args__ = (
        UniqueConstraint("brand_id", "shopify_order_id", name="uq_shopify_orders_brand_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)

    # Shopify IDs
    shopify_order_id = Column(BigInteger, index=True, nullable=False)
    order_number = Column(Integer, index=True)

    # Customer
    customer_id = Column(BigInteger, index=True, nullable=True)
    customer_email = Column(String, nullable=True)

    # Order status
    financial_status = Column(String, index=True)  # paid, pending, refunded, partially_refunded
    fulfillment_status = Column(String, nullable=True)

    # Amounts (all in store currency)
    currency = Column(String, default='USD')
    total_price = Column(Numeric(12, 2))
    subtotal_price = Column(Numeric(12, 2), nullable=True)
    total_tax = Column(Numeric(12, 2), nullable=True)
    total_discounts = Column(Numeric(12, 2), default=0)

    # Line items (stored as JSON for flexibility)
    line_items = Column(JSON)  # [{product_id, variant_id, title, quantity, price}, ...]

    # Shipping location
    shipping_country = Column(String, nullable=True)
    shipping_province = Column(String, nullable=True)

    # Timestamps (UTC, naive)
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ShopifyRefund(Base):
    """Refunds against orders. total_price is the refunded amount."""
    __tablename__ = "shopify_refunds"
    __table_args__ = (
        UniqueConstraint("brand_id", "shopify_refund_id", name="uq_shopify_refunds_brand_refund"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)

    shopify_refund_id = Column(BigInteger, index=True, nullable=False)
    shopify_order_id = Column(BigInteger, index=True, nullable=False)

    total_price = Column(Numeric(12, 2), default=0)
    line_items = Column(JSON)  # [{product_id, variant_id, title, quantity, price}, ...]
    note = Column(Text, nullable=True)

    created_at = Column(DateTime, index=True)
    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ShopifyCustomer(Base):
    """Shopify customers"""
    __tablename__ = "shopify_customers"
    __table_args__ = (
        UniqueConstraint("brand_id", "shopify_customer_id", name="uq_shopify_customers_brand_customer"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)

    shopify_customer_id = Column(BigInteger, index=True, nullable=False)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    orders_count = Column(Integer, default=0)
    total_spent = Column(Numeric(12, 2), default=0)
    state = Column(String, nullable=True)

    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ShopifyProduct(Base):
    """Product catalog with variant inventory snapshot"""
    __tablename__ = "shopify_products"
    __table_args__ = (
        UniqueConstraint("brand_id", "shopify_product_id", name="uq_shopify_products_brand_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)

    shopify_product_id = Column(BigInteger, index=True, nullable=False)
    title = Column(String)
    product_type = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    status = Column(String, nullable=True)

    # [{id, sku, price, inventory_management, inventory_quantity}, ...]
    variants = Column(JSON)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
