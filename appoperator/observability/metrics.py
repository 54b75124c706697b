"""Prometheus metrics for app-operator."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Reconcile metrics
reconcile_total = Counter(
    "appop_reconcile_total",
    "Total reconcile passes",
    ["outcome"],
)

reconcile_duration_seconds = Histogram(
    "appop_reconcile_duration_seconds",
    "Reconcile pass duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

workload_actions_total = Counter(
    "appop_workload_actions_total",
    "Create/update actions applied to managed workloads",
    ["action", "result"],
)

# Status updater metrics
status_writes_total = Counter(
    "appop_status_writes_total",
    "Status writes attempted, by result",
    ["result"],
)

status_conflicts_total = Counter(
    "appop_status_conflicts_total",
    "Optimistic-concurrency conflicts hit while writing status",
)

status_retry_exhausted_total = Counter(
    "appop_status_retry_exhausted_total",
    "Status writes abandoned after the retry ceiling",
)

# Watch cache metrics
cache_entries = Gauge(
    "appop_cache_entries",
    "Number of AppDeployment records held in the watch cache",
)

cache_state = Gauge(
    "appop_cache_state",
    "Watch cache connection state",
    ["state"],
)

cache_events_total = Counter(
    "appop_cache_events_total",
    "Watch events consumed by the cache",
    ["event_type"],
)

cache_reconnects_total = Counter(
    "appop_cache_reconnects_total",
    "Watch cache stream reconnects",
    ["reason"],
)

cache_lookups_total = Counter(
    "appop_cache_lookups_total",
    "Watch cache lookups, by result",
    ["result"],
)

cache_relist_duration_seconds = Histogram(
    "appop_cache_relist_duration_seconds",
    "Time spent rebuilding the cache from a list call",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Reconcile queue metrics
queue_depth = Gauge(
    "appop_queue_depth",
    "Identities waiting in the reconcile queue",
)

queue_requeues_total = Counter(
    "appop_queue_requeues_total",
    "Identities re-enqueued after a pass",
    ["reason"],
)

# Trigger watcher metrics
watcher_events_total = Counter(
    "appop_watcher_events_total",
    "Watch events received by trigger watchers",
    ["watcher", "event_type"],
)

watcher_reconnects_total = Counter(
    "appop_watcher_reconnects_total",
    "Trigger watcher reconnects",
    ["watcher", "reason"],
)

watcher_backoff_seconds = Histogram(
    "appop_watcher_backoff_seconds",
    "Back-off delays applied by trigger watchers",
    ["watcher"],
    buckets=(1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0),
)
