"""
Shopify data connector
Fetches orders (with their refunds), customers and products from the
Shopify Admin REST API for one connected store.
"""
from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime

import pytz
import shopify

from app.connectors.base_connector import BaseConnector
from app.config import get_settings
from app.utils.logger import log
from app.utils.helpers import to_float, to_int
from app.utils.retry import retry_async

settings = get_settings()

PAGE_LIMIT = 250  # Max allowed by Shopify

ENTITIES = ("orders", "customers", "products")


def _iso_utc(value: datetime) -> str:
    """Shopify filter timestamps; naive datetimes are UTC"""
    if value.tzinfo is None:
        value = pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC).isoformat()


def _line_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": item.get("id"),
        "product_id": item.get("product_id"),
        "variant_id": item.get("variant_id"),
        "title": item.get("title"),
        "sku": item.get("sku"),
        "quantity": to_int(item.get("quantity")),
        "price": to_float(item.get("price")),
    }


def extract_refund(order_id: Any, refund: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten a refund object.

    The refunded amount is the sum of successful refund transactions; older
    refunds without transactions fall back to their line item subtotals.
    """
    transactions = [
        t for t in refund.get("transactions") or []
        if t.get("kind") == "refund" and t.get("status", "success") == "success"
    ]
    line_items = []
    for refund_item in refund.get("refund_line_items") or []:
        item = _line_item(refund_item.get("line_item") or {})
        item["quantity"] = to_int(refund_item.get("quantity"))
        item["subtotal"] = to_float(refund_item.get("subtotal"))
        line_items.append(item)

    if transactions:
        total = sum(to_float(t.get("amount")) for t in transactions)
    else:
        total = sum(item["subtotal"] for item in line_items)

    return {
        "id": refund.get("id"),
        "order_id": order_id,
        "created_at": refund.get("created_at"),
        "note": refund.get("note"),
        "total_price": round(total, 2),
        "line_items": line_items,
    }


def extract_order(order: Dict[str, Any]) -> Dict[str, Any]:
    customer = order.get("customer") or {}
    shipping = order.get("shipping_address") or {}
    return {
        "id": order.get("id"),
        "order_number": order.get("order_number"),
        "email": order.get("email"),
        "customer": {"id": customer.get("id")} if customer.get("id") else None,
        "financial_status": order.get("financial_status"),
        "fulfillment_status": order.get("fulfillment_status"),
        "currency": order.get("currency"),
        "total_price": to_float(order.get("total_price")),
        "subtotal_price": to_float(order.get("subtotal_price")),
        "total_tax": to_float(order.get("total_tax")),
        "total_discounts": to_float(order.get("total_discounts")),
        "line_items": [_line_item(item) for item in order.get("line_items") or []],
        "shipping_country": shipping.get("country_code"),
        "shipping_province": shipping.get("province_code"),
        "created_at": order.get("created_at"),
        "updated_at": order.get("updated_at"),
        "cancelled_at": order.get("cancelled_at"),
        "refunds": [extract_refund(order.get("id"), r) for r in order.get("refunds") or []],
    }


def extract_customer(customer: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": customer.get("id"),
        "email": customer.get("email"),
        "first_name": customer.get("first_name"),
        "last_name": customer.get("last_name"),
        "orders_count": to_int(customer.get("orders_count")),
        "total_spent": to_float(customer.get("total_spent")),
        "state": customer.get("state"),
        "created_at": customer.get("created_at"),
        "updated_at": customer.get("updated_at"),
    }


def extract_product(product: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": product.get("id"),
        "title": product.get("title"),
        "product_type": product.get("product_type"),
        "vendor": product.get("vendor"),
        "status": product.get("status"),
        "variants": [
            {
                "id": v.get("id"),
                "sku": v.get("sku"),
                "price": to_float(v.get("price")),
                "inventory_management": v.get("inventory_management"),
                "inventory_quantity": to_int(v.get("inventory_quantity")),
            }
            for v in product.get("variants") or []
        ],
        "created_at": product.get("created_at"),
        "updated_at": product.get("updated_at"),
    }


class ShopifyConnector(BaseConnector):
    """Connector for one Shopify store"""

    def __init__(self, shop_domain: str, access_token: str):
        super().__init__("Shopify")
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.session = None

    async def connect(self) -> bool:
        """Activate a ShopifyAPI session for this store"""
        try:
            self.session = shopify.Session(self.shop_domain, settings.shopify_api_version, self.access_token)
            shopify.ShopifyResource.activate_session(self.session)
            log.info(f"Connected to Shopify: {self.shop_domain}")
            return True
        except Exception as e:
            log.error(f"Failed to connect to Shopify {self.shop_domain}: {e}")
            return False

    async def close(self) -> None:
        if self.session is not None:
            shopify.ShopifyResource.clear_session()
            self.session = None

    async def validate_connection(self) -> bool:
        if not self.session and not await self.connect():
            return False
        return shopify.Shop.current() is not None

    @retry_async(max_attempts=3, base_delay=2.0)
    async def _first_page(self, resource, **params):
        return resource.find(limit=PAGE_LIMIT, **params)

    @retry_async(max_attempts=3, base_delay=2.0)
    async def _next_page(self, page):
        return page.next_page()

    async def _fetch_all(self, resource, label: str, **params) -> List[Dict[str, Any]]:
        """Walk cursor pagination and return raw dicts"""
        rows = []
        page_number = 1
        page = await self._first_page(resource, **params)

        while page:
            log.info(f"Fetching {label} page {page_number}: got {len(page)} {label}")
            rows.extend(record.to_dict() for record in page)
            if not page.has_next_page():
                break
            page = await self._next_page(page)
            page_number += 1

        log.info(f"Fetched {len(rows)} total {label} from {self.shop_domain}")
        return rows

    async def fetch_orders(self, start_date: datetime, end_date: datetime, field: str = "created_at") -> List[Dict]:
        params = {"status": "any", f"{field}_min": _iso_utc(start_date), f"{field}_max": _iso_utc(end_date)}
        return [extract_order(o) for o in await self._fetch_all(shopify.Order, "orders", **params)]

    async def fetch_customers(self, start_date: datetime, end_date: datetime, field: str = "created_at") -> List[Dict]:
        params = {f"{field}_min": _iso_utc(start_date), f"{field}_max": _iso_utc(end_date)}
        return [extract_customer(c) for c in await self._fetch_all(shopify.Customer, "customers", **params)]

    async def fetch_products(self) -> List[Dict]:
        """Whole catalog; inventory is a current snapshot"""
        return [extract_product(p) for p in await self._fetch_all(shopify.Product, "products")]

    async def fetch_data(
        self,
        start_date: datetime,
        end_date: datetime,
        entities: Sequence[str] = ENTITIES,
        field: str = "created_at",
    ) -> Dict[str, Any]:
        """
        Fetch the requested entities.

        Args:
            field: created_at for backfills, updated_at for incremental syncs
        """
        unknown = set(entities) - set(ENTITIES)
        if unknown:
            raise ValueError(f"Unknown Shopify entities: {sorted(unknown)}")
        if not self.session:
            await self.connect()

        log.info(f"Fetching Shopify {', '.join(entities)} for {self.shop_domain} by {field} {start_date} to {end_date}")

        data: Dict[str, Any] = {}
        if "orders" in entities:
            orders = await self.fetch_orders(start_date, end_date, field=field)
            data["orders"] = orders
            data["refunds"] = [refund for order in orders for refund in order["refunds"]]
        if "customers" in entities:
            data["customers"] = await self.fetch_customers(start_date, end_date, field=field)
        if "products" in entities:
            data["products"] = await self.fetch_products()

        return data
