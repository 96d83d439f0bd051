"""
Store Metrics Service

Pure computation over Shopify order / refund / product dicts. Everything is
bucketed in the store's reporting timezone (America/New_York by default):

- A range that covers a single civil day is charted in 24 hourly buckets
  keyed "HH:00".
- A multi-day range is charted in one bucket per civil day keyed
  "YYYY-MM-DD".
- Order totals accumulate into the bucket the order was placed in; refund
  totals are subtracted from the bucket the refund happened in.
- Every rate and average returns 0 instead of dividing by zero.

Order dicts follow the Shopify REST shape:
    {id, created_at, total_price, customer: {id}, line_items: [{product_id,
     variant_id, title, quantity, price}]}
Refund dicts carry {order_id, created_at, total_price, line_items}.
"""
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytz
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from app.config import get_settings
from app.utils.helpers import safe_divide, calculate_percentage_change, to_float, to_int

settings = get_settings()

SHOP_TZ = pytz.timezone(settings.shop_timezone)

HOURLY_KEY_FORMAT = "%H:00"
DAILY_KEY_FORMAT = "%Y-%m-%d"

COMPARISON_TYPES = ("none", "previous_period", "previous_year", "custom")

TOP_PRODUCTS_LIMIT = 5

# Caps the number of daily buckets one request can build
MAX_RANGE_DAYS = 3660


@dataclass(frozen=True)
class DateRange:
    """Inclusive range; start and end are timezone-aware UTC datetimes"""
    start: datetime
    end: datetime

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment <= self.end

    def local_dates(self) -> Tuple[date, date]:
        return self.start.astimezone(SHOP_TZ).date(), self.end.astimezone(SHOP_TZ).date()


# ---------------------------------------------------------------------------
# Time normalisation
# ---------------------------------------------------------------------------

def to_shop_time(value: Any) -> Optional[datetime]:
    """
    Normalise a timestamp into store-local civil time.

    - ISO strings are parsed; naive datetimes are treated as UTC.
    - Plain dates (including date-only ISO strings) are treated as a civil
      date in the store timezone (midnight local), not UTC midnight.
    - Malformed, non-ISO or out-of-range input returns None.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        text = value.strip()
        try:
            value = date_parser.isoparse(text)
        except (ValueError, OverflowError):
            return None
        # "YYYY-MM-DD" (or "YYYYMMDD") is a civil date, not UTC midnight
        if "T" not in text and " " not in text:
            value = value.date()

    try:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = pytz.UTC.localize(value)
            return value.astimezone(SHOP_TZ)

        if isinstance(value, date):
            return SHOP_TZ.localize(datetime.combine(value, time.min))
    except (ValueError, OverflowError):
        return None

    return None


def _local_midnight(day: date) -> datetime:
    return SHOP_TZ.localize(datetime.combine(day, time.min))


def _local_day_end(day: date) -> datetime:
    return SHOP_TZ.localize(datetime.combine(day, time.max))


def ensure_valid_date_range(start: Any, end: Any) -> DateRange:
    """
    Expand a requested range to whole civil days in store time.

    Swaps reversed bounds. Returns UTC-aware bounds covering 00:00:00 of the
    first day through 23:59:59.999999 of the last day.
    """
    zoned_start = to_shop_time(start)
    zoned_end = to_shop_time(end)
    if zoned_start is None or zoned_end is None:
        raise ValueError(f"Invalid date range: {start!r} to {end!r}")

    if zoned_start > zoned_end:
        zoned_start, zoned_end = zoned_end, zoned_start

    first, last = zoned_start.date(), zoned_end.date()
    if (last - first).days + 1 > MAX_RANGE_DAYS:
        raise ValueError(f"Date range longer than {MAX_RANGE_DAYS} days: {start!r} to {end!r}")

    try:
        return DateRange(
            start=_local_midnight(first).astimezone(pytz.UTC),
            end=_local_day_end(last).astimezone(pytz.UTC),
        )
    except OverflowError:
        raise ValueError(f"Date range out of bounds: {start!r} to {end!r}")


def is_single_day(date_range: DateRange) -> bool:
    first, last = date_range.local_dates()
    return first == last


def bucket_key(moment: datetime, single_day: bool) -> str:
    """Chart key for a store-local datetime"""
    return moment.strftime(HOURLY_KEY_FORMAT if single_day else DAILY_KEY_FORMAT)


def bucket_intervals(date_range: DateRange) -> List[datetime]:
    """Store-local start of every bucket in the range, in chart order"""
    first, last = date_range.local_dates()
    if first == last:
        return [SHOP_TZ.localize(datetime.combine(first, time(hour=h))) for h in range(24)]

    days = (last - first).days
    return [_local_midnight(first + timedelta(days=i)) for i in range(days + 1)]


# ---------------------------------------------------------------------------
# Record accessors
# ---------------------------------------------------------------------------

def _customer_id(order: Dict) -> Optional[Any]:
    customer = order.get("customer")
    if isinstance(customer, dict) and customer.get("id"):
        return customer["id"]
    return order.get("customer_id")


def _units(record: Dict) -> int:
    return sum(to_int(item.get("quantity")) for item in (record.get("line_items") or []))


def _in_range(records: Iterable[Dict], date_range: DateRange) -> List[Tuple[Dict, datetime]]:
    """Records whose created_at falls inside the range, paired with their local time"""
    matched = []
    for record in records or []:
        moment = to_shop_time(record.get("created_at"))
        if date_range.contains(moment):
            matched.append((record, moment))
    return matched


def _refunded_total_by_order(refunds: Iterable[Dict]) -> Dict[Any, float]:
    totals: Dict[Any, float] = {}
    for refund in refunds or []:
        order_id = refund.get("order_id")
        if order_id is None:
            continue
        totals[order_id] = totals.get(order_id, 0.0) + to_float(refund.get("total_price"))
    return totals


# ---------------------------------------------------------------------------
# Bucketed series
# ---------------------------------------------------------------------------

def generate_sales_data(orders: List[Dict], refunds: List[Dict], date_range: DateRange) -> List[Dict]:
    """
    Net sales per bucket.

    Orders whose refunds add up to at least the order total are treated as
    fully refunded: they are not counted, and their refunds are not
    subtracted again. All other refunds inside the range reduce the value
    and units of the bucket they happened in.
    """
    single_day = is_single_day(date_range)
    sales: "OrderedDict[str, Dict]" = OrderedDict()
    for interval in bucket_intervals(date_range):
        sales[bucket_key(interval, single_day)] = {"value": 0.0, "orders_placed": 0, "units_sold": 0}

    refunded_by_order = _refunded_total_by_order(refunds)
    excluded_orders = set()

    for order, moment in _in_range(orders, date_range):
        key = bucket_key(moment, single_day)
        if key not in sales:
            continue

        order_total = to_float(order.get("total_price"))
        refunded = refunded_by_order.get(order.get("id"), 0.0)
        if refunded > 0 and refunded >= order_total:
            excluded_orders.add(order.get("id"))
            continue

        sales[key]["value"] += order_total
        sales[key]["orders_placed"] += 1
        sales[key]["units_sold"] += _units(order)

    for refund, moment in _in_range(refunds, date_range):
        if refund.get("order_id") in excluded_orders:
            continue
        key = bucket_key(moment, single_day)
        if key in sales:
            sales[key]["value"] -= to_float(refund.get("total_price"))
            sales[key]["units_sold"] -= _units(refund)

    return [
        {
            "date": key,
            "value": round(bucket["value"], 2),
            "orders_placed": bucket["orders_placed"],
            "units_sold": bucket["units_sold"],
        }
        for key, bucket in sales.items()
    ]


def generate_return_data(orders: List[Dict], refunds: List[Dict], date_range: DateRange) -> List[Dict]:
    """Refund count as a percentage of order count, per bucket"""
    single_day = is_single_day(date_range)
    order_counts = Counter(bucket_key(m, single_day) for _, m in _in_range(orders, date_range))
    refund_counts = Counter(bucket_key(m, single_day) for _, m in _in_range(refunds, date_range))

    return [
        {
            "date": key,
            "value": round(safe_divide(refund_counts[key], order_counts[key]) * 100, 2),
        }
        for key in (bucket_key(i, single_day) for i in bucket_intervals(date_range))
    ]


def generate_retention_data(orders: List[Dict], date_range: DateRange) -> List[Dict]:
    """
    Share of each bucket's customers who placed more than one order in the
    whole range
    """
    single_day = is_single_day(date_range)
    matched = _in_range(orders, date_range)
    orders_per_customer = Counter(
        cid for cid in (_customer_id(order) for order, _ in matched) if cid
    )

    customers_by_bucket: Dict[str, set] = {}
    for order, moment in matched:
        cid = _customer_id(order)
        if cid:
            customers_by_bucket.setdefault(bucket_key(moment, single_day), set()).add(cid)

    series = []
    for interval in bucket_intervals(date_range):
        key = bucket_key(interval, single_day)
        customers = customers_by_bucket.get(key, set())
        returning = [cid for cid in customers if orders_per_customer[cid] > 1]
        series.append({
            "date": key,
            "value": round(safe_divide(len(returning), len(customers)) * 100, 2),
        })
    return series


def generate_inventory_data(
    products: List[Dict],
    orders: List[Dict],
    refunds: List[Dict],
    date_range: DateRange,
) -> List[Dict]:
    """
    Running inventory per bucket.

    The current stock level is the opening balance; units ordered in each
    bucket are removed and refunded units are put back, cumulatively.
    """
    single_day = is_single_day(date_range)
    net_units: Counter = Counter()
    for order, moment in _in_range(orders, date_range):
        net_units[bucket_key(moment, single_day)] += _units(order)
    for refund, moment in _in_range(refunds, date_range):
        net_units[bucket_key(moment, single_day)] -= _units(refund)

    level = calculate_inventory_levels(products)
    series = []
    for interval in bucket_intervals(date_range):
        key = bucket_key(interval, single_day)
        level -= net_units[key]
        series.append({"date": key, "value": level})
    return series


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

def calculate_top_products(orders: List[Dict], refunds: List[Dict], limit: int = TOP_PRODUCTS_LIMIT) -> List[Dict]:
    """Best sellers by net revenue (refunded quantity and revenue removed)"""
    products: Dict[Any, Dict] = {}

    for order in orders or []:
        for item in order.get("line_items") or []:
            product_id = item.get("product_id") or item.get("variant_id")
            if product_id is None:
                continue
            quantity = to_int(item.get("quantity"))
            entry = products.setdefault(
                product_id,
                {"product_id": product_id, "name": item.get("title"), "quantity": 0, "revenue": 0.0},
            )
            entry["quantity"] += quantity
            entry["revenue"] += to_float(item.get("price")) * quantity

    for refund in refunds or []:
        for item in refund.get("line_items") or []:
            product_id = item.get("product_id") or item.get("variant_id")
            if product_id not in products:
                continue
            quantity = to_int(item.get("quantity"))
            products[product_id]["quantity"] -= quantity
            products[product_id]["revenue"] -= to_float(item.get("price")) * quantity

    ranked = [p for p in products.values() if p["quantity"] > 0 and p["revenue"] > 0]
    ranked.sort(key=lambda p: p["revenue"], reverse=True)
    for product in ranked:
        product["revenue"] = round(product["revenue"], 2)
    return ranked[:limit]


def calculate_customer_segments(orders: List[Dict]) -> Dict[str, int]:
    """Customers with exactly one order are new, more than one are returning"""
    per_customer = Counter(cid for cid in (_customer_id(o) for o in orders or []) if cid)
    return {
        "new_customers": sum(1 for count in per_customer.values() if count == 1),
        "returning_customers": sum(1 for count in per_customer.values() if count > 1),
    }


def calculate_customer_retention_rate(orders: List[Dict]) -> float:
    """Returning customers as a percentage of unique customers"""
    segments = calculate_customer_segments(orders)
    unique = segments["new_customers"] + segments["returning_customers"]
    return round(safe_divide(segments["returning_customers"], unique) * 100, 2)


def _weekday_index(moment: datetime) -> int:
    """Sunday = 0 ... Saturday = 6"""
    return (moment.weekday() + 1) % 7


def calculate_revenue_by_day(orders: List[Dict], refunds: List[Dict]) -> List[float]:
    """Net revenue per weekday, Sunday first"""
    totals = [0.0] * 7
    for order in orders or []:
        moment = to_shop_time(order.get("created_at"))
        if moment is not None:
            totals[_weekday_index(moment)] += to_float(order.get("total_price"))
    for refund in refunds or []:
        moment = to_shop_time(refund.get("created_at"))
        if moment is not None:
            totals[_weekday_index(moment)] -= to_float(refund.get("total_price"))
    return [round(v, 2) for v in totals]


def calculate_current_week_revenue(
    orders: List[Dict],
    refunds: List[Dict],
    now: Optional[datetime] = None,
) -> List[float]:
    """
    Net revenue for each day of the current Sunday-start week in store time,
    returned Monday first with Sunday last.
    """
    today = to_shop_time(now or datetime.utcnow()).date()
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    week = DateRange(
        start=_local_midnight(week_start).astimezone(pytz.UTC),
        end=_local_day_end(week_start + timedelta(days=6)).astimezone(pytz.UTC),
    )

    totals = [0.0] * 7
    for order, moment in _in_range(orders, week):
        totals[_weekday_index(moment)] += to_float(order.get("total_price"))
    for refund, moment in _in_range(refunds, week):
        totals[_weekday_index(moment)] -= to_float(refund.get("total_price"))

    totals = [round(v, 2) for v in totals]
    return totals[1:] + totals[:1]


def calculate_inventory_levels(products: List[Dict]) -> int:
    """Units on hand across variants whose inventory Shopify tracks"""
    total = 0
    for product in products or []:
        for variant in product.get("variants") or []:
            if variant.get("inventory_management") == "shopify":
                total += to_int(variant.get("inventory_quantity"))
    return total


def calculate_return_rate(orders: List[Dict], refunds: List[Dict]) -> float:
    return round(safe_divide(len(refunds or []), len(orders or [])) * 100, 2)


# ---------------------------------------------------------------------------
# Dashboard payload
# ---------------------------------------------------------------------------

def default_metrics() -> Dict[str, Any]:
    """Zeroed payload returned when there is nothing to compute"""
    return {
        "total_sales": 0.0,
        "total_refunds": 0.0,
        "sales_growth": 0.0,
        "average_order_value": 0.0,
        "aov_growth": 0.0,
        "orders_placed": 0,
        "previous_orders_placed": 0,
        "units_sold": 0,
        "previous_units_sold": 0,
        "previous_total_sales": 0.0,
        "bucket": "daily",
        "sales_data": [],
        "top_products": [],
        "customer_retention_rate": 0.0,
        "retention_data": [],
        "revenue_by_day": [0.0] * 7,
        "current_week_revenue": [0.0] * 7,
        # Conversion needs storefront session data, which is not ingested
        "conversion_rate": 0.0,
        "conversion_data": [],
        "inventory_levels": 0,
        "inventory_data": [],
        "return_rate": 0.0,
        "return_data": [],
        "customer_segments": {"new_customers": 0, "returning_customers": 0},
        "customer_segment_data": [],
        "range": None,
        "comparison_range": None,
    }


def resolve_comparison_range(
    current: DateRange,
    comparison_type: str,
    comparison_date_range: Optional[Tuple[Any, Any]] = None,
) -> Optional[DateRange]:
    """
    Range to compare against:
      previous_period - the same number of civil days immediately before
      previous_year   - the same civil dates one year earlier
      custom          - the explicit comparison range
    """
    if comparison_type in (None, "none"):
        return None
    if comparison_type not in COMPARISON_TYPES:
        raise ValueError(f"Unknown comparison type: {comparison_type}")

    first, last = current.local_dates()
    try:
        if comparison_type == "previous_period":
            length = (last - first).days + 1
            return ensure_valid_date_range(first - timedelta(days=length), first - timedelta(days=1))
        if comparison_type == "previous_year":
            return ensure_valid_date_range(first - relativedelta(years=1), last - relativedelta(years=1))
    except OverflowError:
        raise ValueError(f"No {comparison_type} comparison before {first.isoformat()}")

    if not comparison_date_range or comparison_date_range[0] is None or comparison_date_range[1] is None:
        return None
    return ensure_valid_date_range(*comparison_date_range)


def _summarize(orders: List[Dict], refunds: List[Dict], date_range: DateRange) -> Dict[str, Any]:
    sales_data = generate_sales_data(orders, refunds, date_range)
    total_sales = round(sum(bucket["value"] for bucket in sales_data), 2)
    orders_placed = sum(bucket["orders_placed"] for bucket in sales_data)
    return {
        "sales_data": sales_data,
        "total_sales": total_sales,
        "orders_placed": orders_placed,
        "units_sold": sum(bucket["units_sold"] for bucket in sales_data),
        "average_order_value": round(safe_divide(total_sales, orders_placed), 2),
    }


def _growth(current: float, previous: float) -> float:
    change = calculate_percentage_change(current, previous)
    return round(change, 2) if change is not None else 0.0


def calculate_metrics(
    orders: List[Dict],
    products: List[Dict],
    refunds: List[Dict],
    date_range: Optional[Tuple[Any, Any]],
    comparison_type: str = "none",
    comparison_date_range: Optional[Tuple[Any, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the full dashboard metrics payload for a date range.

    Returns default_metrics() when there are no orders or the range is
    missing either bound.
    """
    metrics = default_metrics()
    if not orders or not date_range or date_range[0] is None or date_range[1] is None:
        return metrics

    current = ensure_valid_date_range(*date_range)
    single_day = is_single_day(current)

    filtered_orders = [o for o, _ in _in_range(orders, current)]
    filtered_refunds = [r for r, _ in _in_range(refunds, current)]

    summary = _summarize(orders, refunds, current)
    segments = calculate_customer_segments(filtered_orders)
    first_day, _ = current.local_dates()
    inventory_data = generate_inventory_data(products, orders, refunds, current)

    metrics.update({
        "total_sales": summary["total_sales"],
        "total_refunds": round(sum(to_float(r.get("total_price")) for r in filtered_refunds), 2),
        "average_order_value": summary["average_order_value"],
        "orders_placed": summary["orders_placed"],
        "units_sold": summary["units_sold"],
        "bucket": "hourly" if single_day else "daily",
        "sales_data": summary["sales_data"],
        "top_products": calculate_top_products(filtered_orders, filtered_refunds),
        "customer_retention_rate": calculate_customer_retention_rate(filtered_orders),
        "retention_data": generate_retention_data(orders, current),
        "revenue_by_day": calculate_revenue_by_day(filtered_orders, filtered_refunds),
        "current_week_revenue": calculate_current_week_revenue(filtered_orders, filtered_refunds, now=now),
        "inventory_levels": inventory_data[-1]["value"] if inventory_data else calculate_inventory_levels(products),
        "inventory_data": inventory_data,
        "return_rate": calculate_return_rate(filtered_orders, filtered_refunds),
        "return_data": generate_return_data(orders, refunds, current),
        "customer_segments": segments,
        "customer_segment_data": [
            {"date": first_day.isoformat(), "value": segments["new_customers"], "segment": "New Customers"},
            {"date": first_day.isoformat(), "value": segments["returning_customers"], "segment": "Returning Customers"},
        ],
        "range": {"start": current.start.isoformat(), "end": current.end.isoformat()},
    })

    comparison = resolve_comparison_range(current, comparison_type, comparison_date_range)
    if comparison is not None:
        previous = _summarize(orders, refunds, comparison)
        metrics.update({
            "previous_total_sales": previous["total_sales"],
            "previous_orders_placed": previous["orders_placed"],
            "previous_units_sold": previous["units_sold"],
            "sales_growth": _growth(summary["total_sales"], previous["total_sales"]),
            "aov_growth": _growth(summary["average_order_value"], previous["average_order_value"]),
            "comparison_range": {"start": comparison.start.isoformat(), "end": comparison.end.isoformat()},
        })

    return metrics
