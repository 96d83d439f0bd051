"""
Store metrics bucketing and aggregation tests.

Guards against:
1. Dates drifting a day because UTC midnight was used instead of store midnight
2. Single-day ranges not switching to hourly buckets
3. Refunds being double-counted on fully refunded orders
4. Division by zero on empty ranges
5. Weekday series starting on the wrong day

Store timezone is America/New_York (UTC-5 in January).
These are unit tests that do NOT require a database.
"""
from datetime import date, datetime

import pytest
import pytz

from app.services.metrics_service import (
    bucket_intervals,
    calculate_current_week_revenue,
    calculate_customer_retention_rate,
    calculate_customer_segments,
    calculate_inventory_levels,
    calculate_metrics,
    calculate_return_rate,
    calculate_revenue_by_day,
    calculate_top_products,
    default_metrics,
    ensure_valid_date_range,
    generate_inventory_data,
    generate_retention_data,
    generate_return_data,
    generate_sales_data,
    is_single_day,
    resolve_comparison_range,
    to_shop_time,
)


def _order(order_id, created_at, total, customer=None, items=None):
    return {
        "id": order_id,
        "created_at": created_at,
        "total_price": total,
        "customer": {"id": customer} if customer else None,
        "line_items": items or [],
    }


def _item(product_id, quantity, price, title=None):
    return {"product_id": product_id, "title": title or f"Product {product_id}", "quantity": quantity, "price": price}


def _refund(order_id, created_at, total, items=None):
    return {"order_id": order_id, "created_at": created_at, "total_price": total, "line_items": items or []}


# ────────────────────────────────────────────
# TIME NORMALISATION
# ────────────────────────────────────────────


class TestShopTime:

    def test_date_string_is_store_midnight(self):
        moment = to_shop_time("2024-01-15")
        assert (moment.year, moment.month, moment.day, moment.hour) == (2024, 1, 15, 0)
        assert moment.utcoffset().total_seconds() == -5 * 3600

    def test_date_object_is_store_midnight(self):
        moment = to_shop_time(date(2024, 1, 15))
        assert moment.astimezone(pytz.UTC) == datetime(2024, 1, 15, 5, 0, tzinfo=pytz.UTC)

    def test_naive_datetime_is_utc(self):
        moment = to_shop_time(datetime(2024, 1, 15, 3, 0))
        assert moment.date() == date(2024, 1, 14)
        assert moment.hour == 22

    def test_iso_string_with_offset(self):
        moment = to_shop_time("2024-01-15T15:30:00Z")
        assert (moment.day, moment.hour, moment.minute) == (15, 10, 30)

    @pytest.mark.parametrize("value", [None, "", "not a date", "7", "12:30", "banana 3"])
    def test_missing_or_malformed_is_none(self, value):
        assert to_shop_time(value) is None


class TestDateRange:

    def test_expands_to_whole_store_days(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        assert current.start == datetime(2024, 1, 15, 5, 0, tzinfo=pytz.UTC)
        assert current.end == datetime(2024, 1, 17, 4, 59, 59, 999999, tzinfo=pytz.UTC)

    def test_reversed_bounds_are_swapped(self):
        current = ensure_valid_date_range("2024-01-20", "2024-01-15")
        assert current.local_dates() == (date(2024, 1, 15), date(2024, 1, 20))

    def test_invalid_bound_raises(self):
        with pytest.raises(ValueError):
            ensure_valid_date_range("garbage", "2024-01-15")

    def test_range_longer_than_cap_raises(self):
        with pytest.raises(ValueError):
            ensure_valid_date_range("2000-01-01", "2024-01-01")

    def test_out_of_bounds_year_raises(self):
        with pytest.raises(ValueError):
            ensure_valid_date_range("9999-12-30", "9999-12-31")

    def test_single_day_detection(self):
        assert is_single_day(ensure_valid_date_range("2024-01-15", "2024-01-15"))
        assert not is_single_day(ensure_valid_date_range("2024-01-15", "2024-01-16"))

    def test_dst_day_still_has_24_hourly_buckets(self):
        intervals = bucket_intervals(ensure_valid_date_range("2024-03-10", "2024-03-10"))
        keys = [i.strftime("%H:00") for i in intervals]
        assert len(keys) == 24
        assert len(set(keys)) == 24


# ────────────────────────────────────────────
# BUCKETED SERIES
# ────────────────────────────────────────────


class TestSalesData:

    def test_single_day_uses_hourly_buckets(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-15")
        orders = [
            _order(1, "2024-01-15T15:30:00Z", 80.0, items=[_item(1, 2, 40.0)]),
            # 23:00 the previous evening in store time
            _order(2, "2024-01-15T04:00:00Z", 999.0),
        ]

        data = generate_sales_data(orders, [], current)

        assert len(data) == 24
        assert data[0]["date"] == "00:00"
        assert data[-1]["date"] == "23:00"
        ten = next(b for b in data if b["date"] == "10:00")
        assert ten == {"date": "10:00", "value": 80.0, "orders_placed": 1, "units_sold": 2}
        assert sum(b["value"] for b in data) == 80.0

    def test_multi_day_buckets_by_store_date(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        # 22:00 on Jan 15 in New York, already Jan 16 in UTC
        orders = [_order(1, "2024-01-16T03:00:00Z", 50.0)]

        data = generate_sales_data(orders, [], current)

        assert [b["date"] for b in data] == ["2024-01-15", "2024-01-16"]
        assert data[0]["value"] == 50.0
        assert data[1]["value"] == 0.0

    def test_partial_refund_subtracted_in_refund_bucket(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        orders = [_order(1, "2024-01-15T15:00:00Z", 100.0, items=[_item(1, 2, 50.0)])]
        refunds = [_refund(1, "2024-01-16T15:00:00Z", 30.0, items=[_item(1, 1, 30.0)])]

        data = generate_sales_data(orders, refunds, current)

        assert data[0]["value"] == 100.0
        assert data[1]["value"] == -30.0
        assert data[1]["units_sold"] == -1

    def test_fully_refunded_order_excluded_once(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        orders = [
            _order(1, "2024-01-15T15:00:00Z", 50.0, items=[_item(1, 1, 50.0)]),
            _order(2, "2024-01-15T16:00:00Z", 20.0, items=[_item(2, 1, 20.0)]),
        ]
        refunds = [_refund(1, "2024-01-16T15:00:00Z", 50.0, items=[_item(1, 1, 50.0)])]

        data = generate_sales_data(orders, refunds, current)

        assert data[0] == {"date": "2024-01-15", "value": 20.0, "orders_placed": 1, "units_sold": 1}
        assert data[1] == {"date": "2024-01-16", "value": 0.0, "orders_placed": 0, "units_sold": 0}


class TestOtherSeries:

    def test_return_data_guards_empty_buckets(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        orders = [_order(1, "2024-01-15T15:00:00Z", 10.0), _order(2, "2024-01-15T16:00:00Z", 10.0)]
        refunds = [_refund(1, "2024-01-15T17:00:00Z", 5.0)]

        data = generate_return_data(orders, refunds, current)

        assert data == [{"date": "2024-01-15", "value": 50.0}, {"date": "2024-01-16", "value": 0.0}]

    def test_retention_data_marks_repeat_customers(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        orders = [
            _order(1, "2024-01-15T15:00:00Z", 10.0, customer=7),
            _order(2, "2024-01-15T16:00:00Z", 10.0, customer=8),
            _order(3, "2024-01-16T15:00:00Z", 10.0, customer=7),
        ]

        data = generate_retention_data(orders, current)

        assert data == [{"date": "2024-01-15", "value": 50.0}, {"date": "2024-01-16", "value": 100.0}]

    def test_inventory_runs_from_current_stock(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        products = [{"variants": [{"inventory_management": "shopify", "inventory_quantity": 100}]}]
        orders = [_order(1, "2024-01-15T15:00:00Z", 30.0, items=[_item(1, 3, 10.0)])]
        refunds = [_refund(1, "2024-01-16T15:00:00Z", 10.0, items=[_item(1, 1, 10.0)])]

        data = generate_inventory_data(products, orders, refunds, current)

        assert data == [{"date": "2024-01-15", "value": 97}, {"date": "2024-01-16", "value": 98}]


# ────────────────────────────────────────────
# AGGREGATES
# ────────────────────────────────────────────


def test_top_products_net_of_refunds_sorted_by_revenue():
    orders = [
        _order(1, "2024-01-15T15:00:00Z", 100.0, items=[_item(1, 1, 100.0, "Tent")]),
        _order(2, "2024-01-15T16:00:00Z", 90.0, items=[_item(2, 3, 30.0, "Stove")]),
    ]
    refunds = [_refund(2, "2024-01-16T15:00:00Z", 30.0, items=[_item(2, 1, 30.0)])]

    top = calculate_top_products(orders, refunds)

    assert [p["name"] for p in top] == ["Tent", "Stove"]
    assert top[1]["quantity"] == 2
    assert top[1]["revenue"] == 60.0


def test_customer_segments_and_retention_rate():
    orders = [
        _order(1, "2024-01-15T15:00:00Z", 10.0, customer=1),
        _order(2, "2024-01-15T15:00:00Z", 10.0, customer=1),
        _order(3, "2024-01-15T15:00:00Z", 10.0, customer=2),
        _order(4, "2024-01-15T15:00:00Z", 10.0),
    ]
    assert calculate_customer_segments(orders) == {"new_customers": 1, "returning_customers": 1}
    assert calculate_customer_retention_rate(orders) == 50.0


def test_rates_are_zero_without_orders():
    assert calculate_return_rate([], []) == 0.0
    assert calculate_customer_retention_rate([]) == 0.0


def test_revenue_by_day_starts_on_sunday():
    # Jan 14 2024 was a Sunday
    orders = [_order(1, "2024-01-14T17:00:00Z", 40.0), _order(2, "2024-01-20T17:00:00Z", 25.0)]
    refunds = [_refund(1, "2024-01-14T18:00:00Z", 10.0)]

    totals = calculate_revenue_by_day(orders, refunds)

    assert totals == [30.0, 0.0, 0.0, 0.0, 0.0, 0.0, 25.0]


def test_current_week_revenue_is_monday_first():
    now = datetime(2024, 1, 17, 17, 0, tzinfo=pytz.UTC)  # Wednesday
    orders = [
        _order(1, "2024-01-14T17:00:00Z", 40.0),  # Sunday of this week
        _order(2, "2024-01-15T17:00:00Z", 100.0),  # Monday
        _order(3, "2024-01-13T17:00:00Z", 999.0),  # Saturday of last week
    ]

    week = calculate_current_week_revenue(orders, [], now=now)

    assert week == [100.0, 0.0, 0.0, 0.0, 0.0, 0.0, 40.0]


def test_inventory_levels_only_count_managed_variants():
    products = [
        {"variants": [
            {"inventory_management": "shopify", "inventory_quantity": 12},
            {"inventory_management": None, "inventory_quantity": 500},
        ]},
        {"variants": [{"inventory_management": "shopify", "inventory_quantity": "8"}]},
        {"variants": None},
    ]
    assert calculate_inventory_levels(products) == 20


# ────────────────────────────────────────────
# COMPARISON RANGES
# ────────────────────────────────────────────


class TestComparisonRange:

    def test_previous_period_has_same_length(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        previous = resolve_comparison_range(current, "previous_period")
        assert previous.local_dates() == (date(2024, 1, 13), date(2024, 1, 14))

    def test_previous_year(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        previous = resolve_comparison_range(current, "previous_year")
        assert previous.local_dates() == (date(2023, 1, 15), date(2023, 1, 16))

    def test_custom_without_bounds_is_none(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        assert resolve_comparison_range(current, "custom", (None, "2024-01-01")) is None

    def test_unknown_type_raises(self):
        current = ensure_valid_date_range("2024-01-15", "2024-01-16")
        with pytest.raises(ValueError):
            resolve_comparison_range(current, "last_quarter")

    def test_comparison_before_year_one_raises(self):
        current = ensure_valid_date_range("0001-01-02", "0001-01-03")
        with pytest.raises(ValueError):
            resolve_comparison_range(current, "previous_period")


# ────────────────────────────────────────────
# FULL PAYLOAD
# ────────────────────────────────────────────


def test_metrics_default_when_no_orders():
    assert calculate_metrics([], [], [], ("2024-01-15", "2024-01-16")) == default_metrics()


def test_metrics_default_when_range_incomplete():
    orders = [_order(1, "2024-01-15T15:00:00Z", 10.0)]
    assert calculate_metrics(orders, [], [], (None, "2024-01-16")) == default_metrics()


def test_metrics_with_previous_period():
    orders = [
        _order(0, "2024-01-13T15:00:00Z", 95.0, customer=12, items=[_item(1, 1, 95.0, "Tent")]),
        _order(1, "2024-01-15T15:00:00Z", 100.0, customer=10, items=[_item(1, 1, 100.0, "Tent")]),
        _order(2, "2024-01-16T16:00:00Z", 60.0, customer=10, items=[_item(2, 2, 30.0, "Stove")]),
        _order(3, "2024-01-16T18:00:00Z", 30.0, customer=11, items=[_item(2, 1, 30.0, "Stove")]),
    ]
    refunds = [_refund(2, "2024-01-16T20:00:00Z", 30.0, items=[_item(2, 1, 30.0)])]
    products = [{"variants": [{"inventory_management": "shopify", "inventory_quantity": 50}]}]

    metrics = calculate_metrics(
        orders, products, refunds, ("2024-01-15", "2024-01-16"),
        comparison_type="previous_period",
        now=datetime(2024, 1, 17, 17, 0, tzinfo=pytz.UTC),
    )

    assert metrics["bucket"] == "daily"
    assert metrics["total_sales"] == 160.0
    assert metrics["total_refunds"] == 30.0
    assert metrics["orders_placed"] == 3
    assert metrics["units_sold"] == 3
    assert metrics["average_order_value"] == 53.33
    assert metrics["sales_data"] == [
        {"date": "2024-01-15", "value": 100.0, "orders_placed": 1, "units_sold": 1},
        {"date": "2024-01-16", "value": 60.0, "orders_placed": 2, "units_sold": 2},
    ]

    assert metrics["previous_total_sales"] == 95.0
    assert metrics["previous_orders_placed"] == 1
    assert metrics["sales_growth"] == 68.42
    assert metrics["aov_growth"] == -43.86

    assert metrics["customer_segments"] == {"new_customers": 1, "returning_customers": 1}
    assert metrics["customer_retention_rate"] == 50.0
    assert metrics["return_rate"] == 33.33
    assert [p["name"] for p in metrics["top_products"]] == ["Tent", "Stove"]
    assert metrics["current_week_revenue"] == [100.0, 60.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    assert metrics["conversion_rate"] == 0.0
    assert metrics["inventory_levels"] == metrics["inventory_data"][-1]["value"]


def test_metrics_growth_zero_when_previous_empty():
    orders = [_order(1, "2024-01-15T15:00:00Z", 100.0)]

    metrics = calculate_metrics(orders, [], [], ("2024-01-15", "2024-01-15"), comparison_type="previous_year")

    assert metrics["bucket"] == "hourly"
    assert metrics["previous_total_sales"] == 0.0
    assert metrics["sales_growth"] == 0.0
    assert metrics["aov_growth"] == 0.0
    assert metrics["comparison_range"] is not None
