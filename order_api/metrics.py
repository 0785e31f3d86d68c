"""
Prometheus metrics: order operations (API) and advancement continuations (lifecycle).
"""
from prometheus_client import Counter, Gauge, generate_latest

# API
orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
)
orders_confirmed_total = Counter(
    "orders_confirmed_total",
    "Total confirmation requests for existing orders",
)
orders_deleted_total = Counter(
    "orders_deleted_total",
    "Total orders deleted",
)

# Lifecycle: advancement continuations
advancement_ticks_total = Counter(
    "order_advancement_ticks_total",
    "Total status increments persisted by advancement continuations",
)
orders_completed_total = Counter(
    "orders_completed_total",
    "Total orders that reached the terminal status",
)
advancement_aborted_total = Counter(
    "order_advancement_aborted_total",
    "Total advancement continuations that stopped before completion",
    ["reason"],
)
advancement_retries_total = Counter(
    "order_advancement_retries_total",
    "Total store failures retried inside an advancement tick",
)
advancements_active = Gauge(
    "order_advancements_active",
    "Advancement continuations currently registered",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
