"""
Settlement instrumentation for arbvault.

Provides Prometheus metrics that track order throughput, distributed profit
and the committed-funds arena, with helper functions that are safe to call
from the settlement path.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

orders_created_counter = Counter(
    "arbvault_orders_created_total", "Orders admitted by the settlement engine", ["path"]
)

orders_finalized_counter = Counter(
    "arbvault_orders_finalized_total", "Orders that reached a terminal state", ["state"]
)

profit_distributed_counter = Counter(
    "arbvault_profit_distributed_total",
    "Profit distributed by the settlement engine (token base units)",
    ["token", "recipient"],
)

callbacks_rejected_counter = Counter(
    "arbvault_callbacks_rejected_total",
    "Callbacks or entry-point calls rejected before mutating state",
    ["reason"],
)

committed_principal_gauge = Gauge(
    "arbvault_committed_principal", "Principal committed to open orders", ["token"]
)

solvency_alert_counter = Counter(
    "arbvault_solvency_alerts_total", "Times custody fell below committed funds", ["token"]
)


def record_order_created(path: str) -> None:
    orders_created_counter.labels(path=path).inc()


def record_order_finalized(state: str) -> None:
    orders_finalized_counter.labels(state=state).inc()


def record_profit(token: str, recipient: str, amount: int) -> None:
    """Increment the profit counter; non-positive amounts are ignored."""
    if amount <= 0:
        return
    profit_distributed_counter.labels(token=token, recipient=recipient).inc(amount)


def record_rejection(reason: str) -> None:
    callbacks_rejected_counter.labels(reason=reason).inc()


def update_committed(token: str, amount: int) -> None:
    committed_principal_gauge.labels(token=token).set(amount)


def record_solvency_alert(token: str) -> None:
    solvency_alert_counter.labels(token=token).inc()
