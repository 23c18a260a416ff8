"""Write each metrics snapshot to JSON and append a flattened row to the summary CSV."""

import json
import logging
import os
import time
from typing import List

import pandas as pd

from search_metrics.collectors import dig, is_unavailable, to_number

logger = logging.getLogger(__name__)

SUMMARY_FILE = "metrics-summary.csv"

LEADING_COLUMNS = [
    "timestamp",
    "cluster_status",
    "active_nodes",
    "pending_tasks",
    "write_rejections",
    "bulk_rejections",
    "search_rejections",
    "jvm_memory_percent",
    "cpu_percent",
    "avg_refresh_time_ms",
    "indexing_rate",
    "critical_issues_count",
    "warnings_count",
    "active_searches",
    "long_running_queries_5s",
    "long_running_queries_10s",
    "long_running_queries_30s",
    "circuit_breaker_trips",
    "search_queue_saturation_pct",
]
TRAILING_COLUMNS = ["query_cache_evictions", "field_data_evictions"]


def segment_column(index: str) -> str:
    return "segment_count_" + index.replace("-", "_").replace(".", "_")


def summary_columns(indices: List[str]) -> List[str]:
    return LEADING_COLUMNS + [segment_column(i) for i in indices] + TRAILING_COLUMNS


SUMMARY_COLUMNS = summary_columns(["pms_green_dot", "pms-user-rooms"])


def _available(group, default):
    if group is None or is_unavailable(group):
        return default
    return group


def _pool_rejections(pools, name):
    return sum(to_number(p.get("rejected")) for p in pools if p.get("name") == name)


def _max_node_value(nodes, path):
    values = [to_number(dig(node, path)) for node in nodes]
    return max(values) if values else 0


def flatten_snapshot(snapshot: dict, indices: List[str]) -> dict:
    """Pull the scalar summary fields out of a snapshot. Missing values become 0."""
    health = _available(snapshot.get("cluster_health"), {})
    pools = _available(snapshot.get("thread_pool_stats"), [])
    nodes = _available(snapshot.get("node_stats"), [])
    pending = _available(snapshot.get("pending_tasks"), [])
    summary = snapshot.get("summary") or {}
    caches = _available(snapshot.get("cache_metrics"), {})

    primary_stats = {}
    if indices:
        primary_stats = _available((snapshot.get("index_stats") or {}).get(indices[0]), {})

    row = {
        "timestamp": snapshot.get("timestamp") or "",
        "cluster_status": health.get("status") or "unknown",
        "active_nodes": to_number(health.get("number_of_nodes")),
        "pending_tasks": len(pending),
        "write_rejections": _pool_rejections(pools, "write"),
        "bulk_rejections": _pool_rejections(pools, "bulk"),
        "search_rejections": _pool_rejections(pools, "search"),
        "jvm_memory_percent": _max_node_value(nodes, "jvm.mem.heap_used_percent"),
        "cpu_percent": _max_node_value(nodes, "os.cpu.percent"),
        "avg_refresh_time_ms": to_number(dig(primary_stats, "derived.avg_refresh_time_ms")),
        "indexing_rate": to_number(dig(primary_stats, "derived.indexing_rate")),
        "critical_issues_count": len(summary.get("critical_issues") or []),
        "warnings_count": len(summary.get("warnings") or []),
        "active_searches": to_number(summary.get("active_searches")),
        "long_running_queries_5s": to_number(summary.get("long_running_queries_5s")),
        "long_running_queries_10s": to_number(summary.get("long_running_queries_10s")),
        "long_running_queries_30s": to_number(summary.get("long_running_queries_30s")),
        "circuit_breaker_trips": to_number(summary.get("circuit_breaker_trips")),
        "search_queue_saturation_pct": to_number(summary.get("search_queue_saturation_pct")),
    }
    for index in indices:
        segments = _available((snapshot.get("segment_stats") or {}).get(index), {})
        row[segment_column(index)] = to_number(segments.get("count"))
    row["query_cache_evictions"] = to_number(caches.get("query_cache_evictions"))
    row["field_data_evictions"] = to_number(caches.get("field_data_evictions"))
    return row


def save_snapshot(snapshot: dict, output_dir: str) -> str:
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"opensearch-metrics-{int(time.time() * 1000)}.json")
    with open(path, "w") as f:
        json.dump(snapshot, f, indent=2, default=str)
    logger.info(f"💾 Metrics saved to: {path}")
    return path


def _existing_header(path: str):
    with open(path) as f:
        first_line = f.readline().strip()
    return first_line.split(",") if first_line else None


def append_summary_row(snapshot: dict, output_dir: str, indices: List[str]) -> str:
    """Append one row to the summary CSV, writing the header only when the file is new."""
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, SUMMARY_FILE)
    row = flatten_snapshot(snapshot, indices)

    columns = summary_columns(indices)
    write_header = not os.path.exists(path) or os.path.getsize(path) == 0
    if not write_header:
        header = _existing_header(path)
        if header and header != columns:
            logger.warning(f"⚠️  {SUMMARY_FILE} has a different header, keeping its column order")
            columns = header

    frame = pd.DataFrame([row]).reindex(columns=columns, fill_value=0)
    frame.to_csv(path, mode="a", header=write_header, index=False)
    logger.info(f"📊 Summary appended to: {path}")
    return path
