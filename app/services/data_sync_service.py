"""
Data Synchronization Service
Persists fetched Shopify and Meta payloads per brand and loads stored
commerce data back in the shape the metrics service consumes.
"""
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models.meta_ads import MetaAdDailyInsight, MetaCampaign, MetaDemographic
from app.models.shopify import ShopifyCustomer, ShopifyOrder, ShopifyProduct, ShopifyRefund
from app.utils.helpers import safe_divide, to_float, to_naive_utc
from app.utils.logger import log


def _money(value: Any) -> Decimal:
    return Decimal(str(round(to_float(value), 2)))


def _day(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = to_naive_utc(value)
    return parsed.date() if parsed else None


def _new_result() -> Dict[str, Any]:
    return {"processed": 0, "created": 0, "updated": 0, "failed": 0, "failed_ids": []}


def rows_written(*results: Dict[str, Any]) -> int:
    """Created plus updated rows across save results"""
    return sum(r.get("created", 0) + r.get("updated", 0) for r in results)


class DataSyncService:
    """Upserts platform data for one brand inside the caller's session"""

    def __init__(self, db: Session):
        self.db = db

    def _upsert(
        self,
        model,
        records: Iterable[Dict[str, Any]],
        key_columns: tuple,
        build,
        label: str,
    ) -> Dict[str, Any]:
        """
        Insert or update one row per record.

        build(record) returns the column values; key_columns name the ones
        identifying the row. Repeated keys in one batch update the same row.
        A record that fails is counted and skipped; the batch is committed
        once at the end.
        """
        result = _new_result()
        batch = {}

        for record in records or []:
            result["processed"] += 1
            try:
                values = build(record)
                key = tuple(values[column] for column in key_columns)
                existing = batch.get(key) or self.db.query(model).filter_by(
                    **{column: values[column] for column in key_columns}
                ).first()
                if existing:
                    for column, value in values.items():
                        setattr(existing, column, value)
                    result["updated"] += 1
                else:
                    existing = model(**values)
                    self.db.add(existing)
                    result["created"] += 1
                batch[key] = existing
            except Exception as e:
                log.warning(f"Failed to save {label} {record.get('id')}: {e}")
                result["failed"] += 1
                result["failed_ids"].append(str(record.get("id")))

        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            log.error(f"Error saving {label} (batch failed): {e}")
            raise

        log.info(f"Saved {result['created']} new, updated {result['updated']} {label}")
        return result

    # ------------------------------------------------------------------
    # Shopify
    # ------------------------------------------------------------------

    def save_shopify_orders(self, brand_id: int, orders: List[Dict]) -> Dict[str, Any]:
        def build(order):
            customer = order.get("customer") or {}
            return {
                "brand_id": brand_id,
                "shopify_order_id": int(order["id"]),
                "order_number": order.get("order_number"),
                "customer_id": customer.get("id") or order.get("customer_id"),
                "customer_email": order.get("email"),
                "financial_status": order.get("financial_status"),
                "fulfillment_status": order.get("fulfillment_status"),
                "currency": order.get("currency") or "USD",
                "total_price": _money(order.get("total_price")),
                "subtotal_price": _money(order.get("subtotal_price")),
                "total_tax": _money(order.get("total_tax")),
                "total_discounts": _money(order.get("total_discounts")),
                "line_items": order.get("line_items") or [],
                "shipping_country": order.get("shipping_country"),
                "shipping_province": order.get("shipping_province"),
                "created_at": to_naive_utc(order.get("created_at")),
                "updated_at": to_naive_utc(order.get("updated_at")),
                "cancelled_at": to_naive_utc(order.get("cancelled_at")),
                "synced_at": datetime.utcnow(),
            }

        return self._upsert(
            ShopifyOrder,
            orders,
            ("brand_id", "shopify_order_id"),
            build,
            "Shopify orders",
        )

    def save_shopify_refunds(self, brand_id: int, refunds: List[Dict]) -> Dict[str, Any]:
        def build(refund):
            return {
                "brand_id": brand_id,
                "shopify_refund_id": int(refund["id"]),
                "shopify_order_id": int(refund["order_id"]),
                "total_price": _money(refund.get("total_price")),
                "line_items": refund.get("line_items") or [],
                "note": refund.get("note"),
                "created_at": to_naive_utc(refund.get("created_at")),
                "synced_at": datetime.utcnow(),
            }

        return self._upsert(
            ShopifyRefund,
            refunds,
            ("brand_id", "shopify_refund_id"),
            build,
            "Shopify refunds",
        )

    def save_shopify_customers(self, brand_id: int, customers: List[Dict]) -> Dict[str, Any]:
        def build(customer):
            return {
                "brand_id": brand_id,
                "shopify_customer_id": int(customer["id"]),
                "email": customer.get("email"),
                "first_name": customer.get("first_name"),
                "last_name": customer.get("last_name"),
                "orders_count": customer.get("orders_count") or 0,
                "total_spent": _money(customer.get("total_spent")),
                "state": customer.get("state"),
                "created_at": to_naive_utc(customer.get("created_at")),
                "updated_at": to_naive_utc(customer.get("updated_at")),
                "synced_at": datetime.utcnow(),
            }

        return self._upsert(
            ShopifyCustomer,
            customers,
            ("brand_id", "shopify_customer_id"),
            build,
            "Shopify customers",
        )

    def save_shopify_products(self, brand_id: int, products: List[Dict]) -> Dict[str, Any]:
        def build(product):
            return {
                "brand_id": brand_id,
                "shopify_product_id": int(product["id"]),
                "title": product.get("title"),
                "product_type": product.get("product_type"),
                "vendor": product.get("vendor"),
                "status": product.get("status"),
                "variants": product.get("variants") or [],
                "created_at": to_naive_utc(product.get("created_at")),
                "updated_at": to_naive_utc(product.get("updated_at")),
                "synced_at": datetime.utcnow(),
            }

        return self._upsert(
            ShopifyProduct,
            products,
            ("brand_id", "shopify_product_id"),
            build,
            "Shopify products",
        )

    def save_shopify_data(self, brand_id: int, data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Save every entity present in a ShopifyConnector payload"""
        savers = {
            "orders": self.save_shopify_orders,
            "refunds": self.save_shopify_refunds,
            "customers": self.save_shopify_customers,
            "products": self.save_shopify_products,
        }
        return {entity: saver(brand_id, data[entity]) for entity, saver in savers.items() if entity in data}

    def remove_orphaned_refunds(self, brand_id: int) -> int:
        """Delete refunds whose order was never stored for the brand"""
        order_ids = select(ShopifyOrder.shopify_order_id).where(ShopifyOrder.brand_id == brand_id)
        removed = self.db.query(ShopifyRefund).filter(
            ShopifyRefund.brand_id == brand_id,
            ~ShopifyRefund.shopify_order_id.in_(order_ids),
        ).delete(synchronize_session=False)
        self.db.commit()
        return removed

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def save_meta_campaigns(self, brand_id: int, account_id: str, campaigns: List[Dict]) -> Dict[str, Any]:
        def build(campaign):
            return {
                "brand_id": brand_id,
                "account_id": account_id,
                "campaign_id": str(campaign["campaign_id"]),
                "name": campaign.get("name"),
                "status": campaign.get("status"),
                "objective": campaign.get("objective"),
                "daily_budget": _money(campaign["daily_budget"]) if campaign.get("daily_budget") is not None else None,
                "lifetime_budget": _money(campaign["lifetime_budget"]) if campaign.get("lifetime_budget") is not None else None,
                "created_time": to_naive_utc(campaign.get("created_time")),
            }

        return self._upsert(
            MetaCampaign,
            campaigns,
            ("brand_id", "campaign_id"),
            build,
            "Meta campaigns",
        )

    def save_meta_insights(self, brand_id: int, account_id: str, insights: List[Dict]) -> Dict[str, Any]:
        def build(row):
            return {
                "brand_id": brand_id,
                "account_id": account_id,
                "campaign_id": str(row["campaign_id"]),
                "campaign_name": row.get("campaign_name"),
                "date": _day(row.get("date")),
                "spend": _money(row.get("spend")),
                "impressions": row.get("impressions") or 0,
                "clicks": row.get("clicks") or 0,
                "reach": row.get("reach") or 0,
                "purchases": to_float(row.get("purchases")),
                "purchase_value": _money(row.get("purchase_value")),
                "ctr": row.get("ctr"),
                "cpc": row.get("cpc"),
                "cpm": row.get("cpm"),
            }

        return self._upsert(
            MetaAdDailyInsight,
            insights,
            ("brand_id", "campaign_id", "date"),
            build,
            "Meta daily insights",
        )

    def save_meta_demographics(self, brand_id: int, account_id: str, rows: List[Dict]) -> Dict[str, Any]:
        def build(row):
            return {
                "brand_id": brand_id,
                "account_id": account_id,
                "date": _day(row.get("date")),
                "age": row.get("age") or "unknown",
                "gender": row.get("gender") or "unknown",
                "spend": _money(row.get("spend")),
                "impressions": row.get("impressions") or 0,
                "clicks": row.get("clicks") or 0,
                "reach": row.get("reach") or 0,
            }

        return self._upsert(
            MetaDemographic,
            rows,
            ("brand_id", "account_id", "date", "age", "gender"),
            build,
            "Meta demographics",
        )

    def save_meta_data(self, brand_id: int, data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Save every entity present in a MetaAdsConnector payload"""
        account_id = data.get("account_id")
        savers = {
            "campaigns": self.save_meta_campaigns,
            "insights": self.save_meta_insights,
            "demographics": self.save_meta_demographics,
        }
        return {
            entity: saver(brand_id, account_id, data[entity])
            for entity, saver in savers.items() if entity in data
        }

    def recalculate_meta_metrics(self, brand_id: int) -> int:
        """Recompute CTR / CPC / CPM from stored totals"""
        rows = self.db.query(MetaAdDailyInsight).filter(MetaAdDailyInsight.brand_id == brand_id).all()
        for row in rows:
            spend = to_float(row.spend)
            row.ctr = round(safe_divide(row.clicks or 0, row.impressions or 0) * 100, 4)
            row.cpc = round(safe_divide(spend, row.clicks or 0), 4)
            row.cpm = round(safe_divide(spend, row.impressions or 0) * 1000, 4)
        self.db.commit()
        return len(rows)

    # ------------------------------------------------------------------
    # Loaders for the metrics service
    # ------------------------------------------------------------------

    def load_orders(self, brand_id: int, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Non-cancelled orders created in [start, end] (naive UTC bounds)"""
        orders = self.db.query(ShopifyOrder).filter(
            ShopifyOrder.brand_id == brand_id,
            ShopifyOrder.created_at >= start,
            ShopifyOrder.created_at <= end,
            ShopifyOrder.cancelled_at.is_(None),
        ).order_by(ShopifyOrder.created_at).all()

        return [
            {
                "id": o.shopify_order_id,
                "created_at": o.created_at,
                "total_price": to_float(o.total_price),
                "customer": {"id": o.customer_id} if o.customer_id else None,
                "financial_status": o.financial_status,
                "line_items": o.line_items or [],
            }
            for o in orders
        ]

    def load_refunds(
        self,
        brand_id: int,
        start: datetime,
        end: datetime,
        order_ids: Optional[Iterable[int]] = None,
    ) -> List[Dict[str, Any]]:
        """Refunds created in [start, end] plus any refund of the given orders"""
        in_window = (ShopifyRefund.created_at >= start) & (ShopifyRefund.created_at <= end)
        order_ids = list(order_ids or [])
        condition = or_(in_window, ShopifyRefund.shopify_order_id.in_(order_ids)) if order_ids else in_window

        refunds = self.db.query(ShopifyRefund).filter(
            ShopifyRefund.brand_id == brand_id,
            condition,
        ).order_by(ShopifyRefund.created_at).all()

        return [
            {
                "id": r.shopify_refund_id,
                "order_id": r.shopify_order_id,
                "created_at": r.created_at,
                "total_price": to_float(r.total_price),
                "line_items": r.line_items or [],
            }
            for r in refunds
        ]

    def load_products(self, brand_id: int) -> List[Dict[str, Any]]:
        products = self.db.query(ShopifyProduct).filter(ShopifyProduct.brand_id == brand_id).all()
        return [
            {"id": p.shopify_product_id, "title": p.title, "variants": p.variants or []}
            for p in products
        ]
