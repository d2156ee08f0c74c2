from __future__ import annotations

from builders import draft_order, make_item, make_request, paid_order
from orderflow.domain.orders.metrics import compute_order_metrics
from orderflow.domain.orders.money import Money


def test_metrics_over_no_orders():
    metrics = compute_order_metrics([], "USD")
    assert metrics.total_orders == 0
    assert metrics.total_revenue == Money(0)
    assert metrics.average_order_value == Money(0)
    assert set(metrics.orders_by_status.values()) == {0}
    assert len(metrics.orders_by_status) == 8


def test_metrics_sum_totals_and_round_average_half_up():
    pending = draft_order()
    paid = paid_order(make_request(items=[make_item(unit_price=2000)], state="TX", promo_code="SAVE1234"))
    metrics = compute_order_metrics([pending, paid], "USD", recent=[paid])

    assert metrics.total_orders == 2
    assert metrics.total_revenue == Money(10875 + 2912)
    assert metrics.average_order_value == Money(6894)
    assert metrics.orders_by_status["pending"] == 1
    assert metrics.orders_by_status["paid"] == 1
    assert metrics.orders_by_status["shipped"] == 0

    data = metrics.to_dict()
    assert data["total_revenue"] == 13787
    assert data["currency"] == "USD"
    assert data["recent_orders"][0]["order_number"] == paid.order_number
    assert data["recent_orders"][0]["total"] == 2912
    assert data["recent_orders"][0]["created_at"].endswith("Z")
