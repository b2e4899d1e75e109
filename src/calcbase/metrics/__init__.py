"""Prometheus metrics for CalcBase."""

from prometheus_client import Counter, Histogram

# Outbox task outcomes
# Labels: status (done, retry, failed)
computed_task_counter = Counter(
    "computed_tasks_total",
    "Total number of computed outbox tasks processed",
    ["status"],
)

# Outbox task duration, claim to completion
computed_task_duration_histogram = Histogram(
    "computed_task_duration_seconds",
    "Computed outbox task duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Computed cells evaluated
# Labels: outcome (updated, unchanged, error)
computed_cell_counter = Counter(
    "computed_cells_total",
    "Total number of computed cells evaluated",
    ["outcome"],
)

# Tasks claimed from the outbox
computed_outbox_claimed_counter = Counter(
    "computed_outbox_claimed_total",
    "Total number of outbox tasks claimed by workers",
)

# Dependency graph cache
# Labels: status (hit, miss)
graph_cache_counter = Counter(
    "computed_graph_cache_total",
    "Dependency graph cache lookups",
    ["status"],
)

__all__ = [
    "computed_task_counter",
    "computed_task_duration_histogram",
    "computed_cell_counter",
    "computed_outbox_claimed_counter",
    "graph_cache_counter",
]
