"""
Fetch diagnostic metric groups from an OpenSearch cluster.

Every group is fetched on its own: a failing sub-API turns only that group
into an "unavailable" marker and the remaining groups are still collected.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

UNAVAILABLE = "unavailable"

THREAD_POOL_COLUMNS = "node_name,name,active,queue,rejected,largest,completed,size,queue_size"
CRITICAL_POOLS = ["write", "bulk", "search", "get", "index", "refresh"]
QUEUE_POOLS = ["write", "bulk", "search", "get"]
REPORTED_BREAKERS = ("parent", "request", "fielddata")

NANOS_PER_SECOND = 1_000_000_000
LONG_RUNNING_SECONDS = (5, 10, 30)
MAX_STORED_TASKS = 20
HOT_THREAD_LINES = 30
HOT_THREAD_SUMMARY_LINES = 15


def unavailable(error) -> dict:
    return {"status": UNAVAILABLE, "error": str(error)}


def is_unavailable(group) -> bool:
    return isinstance(group, dict) and group.get("status") == UNAVAILABLE


def dig(data, path: str, default=None):
    """Follow a dotted path through nested dicts."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def to_number(value, default=0):
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return float(value)
        except (TypeError, ValueError):
            return default


def format_bytes(num_bytes) -> str:
    num_bytes = to_number(num_bytes)
    if num_bytes <= 0:
        return "0 B"
    sizes = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    unit = 0
    while size >= 1024 and unit < len(sizes) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, 2):g} {sizes[unit]}"


def format_ms(ms) -> str:
    ms = to_number(ms)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.2f}s"
    return f"{ms / 60000:.2f}m"


def status_emoji(status: Optional[str]) -> str:
    return {"green": "✅", "yellow": "⚠️", "red": "🔴"}.get(status, "❓")


def queue_saturation(queue, queue_size) -> float:
    size = to_number(queue_size)
    depth = to_number(queue)
    if size <= 0:
        return 0.0
    return round(depth / size * 100, 2)


def _section(title: str, leading_newline: bool = True):
    logger.info(("\n" if leading_newline else "") + "=" * 80)
    logger.info(title)
    logger.info("=" * 80)


def _log_table(rows: List[dict]):
    if rows:
        logger.info("\n" + pd.DataFrame(rows).to_string(index=False))


class MetricsCollector:
    """Read-only diagnostic calls against one cluster."""

    def __init__(self, client, indices: List[str]):
        self.client = client
        self.indices = list(indices)

    def cluster_health(self) -> dict:
        _section("CLUSTER HEALTH", leading_newline=False)
        health = self.client.cluster.health(level="indices")
        status = health.get("status", "unknown")
        logger.info(f"Status: {str(status).upper()} {status_emoji(status)}")
        logger.info(f"Active Nodes: {health.get('number_of_nodes')}")
        logger.info(f"Active Data Nodes: {health.get('number_of_data_nodes')}")
        logger.info(f"Active Shards: {health.get('active_shards')}")
        logger.info(f"Relocating Shards: {health.get('relocating_shards')}")
        logger.info(f"Initializing Shards: {health.get('initializing_shards')}")
        logger.info(f"Unassigned Shards: {health.get('unassigned_shards')}")
        logger.info(f"Delayed Unassigned Shards: {health.get('delayed_unassigned_shards')}")
        logger.info(f"Pending Tasks: {health.get('number_of_pending_tasks')}")
        logger.info(f"In Flight Fetch: {health.get('number_of_in_flight_fetch')}")
        logger.info(f"Task Max Wait Time: {health.get('task_max_waiting_in_queue_millis')}ms")
        return health

    def _cat_thread_pools(self, pools: List[str]) -> List[dict]:
        stats = self.client.cat.thread_pool(format="json", h=THREAD_POOL_COLUMNS)
        return [p for p in stats if p.get("name") in pools]

    def thread_pools(self) -> List[dict]:
        _section("THREAD POOL METRICS (CRITICAL)")
        pool_data = self._cat_thread_pools(CRITICAL_POOLS)

        _log_table([
            {
                "Node": p.get("node_name"),
                "Pool": p.get("name"),
                "Active": p.get("active"),
                "Queue": p.get("queue"),
                "Rejected": f"{p.get('rejected')}{' ⚠️' if to_number(p.get('rejected')) > 0 else ''}",
                "Queue Size": p.get("queue_size"),
                "Completed": p.get("completed"),
                "Largest": p.get("largest"),
            }
            for p in pool_data
        ])

        rejections = [p for p in pool_data if to_number(p.get("rejected")) > 0]
        if rejections:
            logger.warning("⚠️  REJECTIONS DETECTED:")
            for p in rejections:
                logger.warning(f"   - {p.get('name')} ({p.get('node_name')}): {p.get('rejected')} rejected operations")
        return pool_data

    def node_stats(self) -> List[dict]:
        _section("NODE RESOURCE METRICS")
        stats = self.client.nodes.stats(metric="jvm,os,indices,thread_pool")
        nodes = list((stats.get("nodes") or {}).values())

        for node in nodes:
            name = node.get("name")
            logger.info(f"Node: {name}")
            logger.info("-" * 80)

            heap_percent = to_number(dig(node, "jvm.mem.heap_used_percent"))
            heap_marker = " 🔴 CRITICAL" if heap_percent > 85 else " ⚠️ HIGH" if heap_percent > 75 else ""
            logger.info(f"JVM Memory Pressure: {heap_percent}%{heap_marker}")
            logger.info(
                f"  Heap Used: {format_bytes(dig(node, 'jvm.mem.heap_used_in_bytes'))} / "
                f"{format_bytes(dig(node, 'jvm.mem.heap_max_in_bytes'))}"
            )

            young = dig(node, "jvm.gc.collectors.young", {})
            old = dig(node, "jvm.gc.collectors.old", {})
            old_count = to_number(old.get("collection_count"))
            logger.info("Garbage Collection:")
            logger.info(f"  Young GC Count: {young.get('collection_count')} (Time: {young.get('collection_time_in_millis')}ms)")
            logger.info(
                f"  Old GC Count: {old_count} (Time: {old.get('collection_time_in_millis')}ms)"
                f"{' ⚠️' if old_count > 10 else ''}"
            )

            cpu_percent = to_number(dig(node, "os.cpu.percent"))
            cpu_marker = " 🔴 CRITICAL" if cpu_percent > 90 else " ⚠️ HIGH" if cpu_percent > 80 else ""
            logger.info(f"CPU Utilization: {cpu_percent}%{cpu_marker}")
            load_average = dig(node, "os.cpu.load_average.1m")
            logger.info(f"  Load Average: {load_average:.2f}" if load_average is not None else "  Load Average: N/A")

            logger.info("Thread Pool Rejections:")
            rejected_pools = {
                pool_name: pool.get("rejected")
                for pool_name, pool in (node.get("thread_pool") or {}).items()
                if to_number(pool.get("rejected")) > 0
            }
            for pool_name, rejected in rejected_pools.items():
                logger.info(f"  {pool_name}: {rejected} rejected ⚠️")
            if not rejected_pools:
                logger.info("  ✓ No rejections")
        return nodes

    def index_stats(self, index: str) -> dict:
        _section(f"INDEX PERFORMANCE METRICS - {index}")
        stats = self.client.indices.stats(index=index, metric="indexing,search,refresh,flush,merge,store")
        index_data = (stats.get("indices") or {}).get(index)
        if not index_data:
            raise LookupError(f"Index {index} not found or no data available")

        total = dict(index_data.get("total") or {})
        indexing = total.get("indexing", {})
        refresh = total.get("refresh", {})
        search = total.get("search", {})
        merges = total.get("merges", {})

        index_time_ms = to_number(indexing.get("index_time_in_millis"))
        refresh_total = to_number(refresh.get("total"))
        query_total = to_number(search.get("query_total"))
        derived = {
            "indexing_rate": round(to_number(indexing.get("index_total")) / (index_time_ms / 1000), 2) if index_time_ms else 0,
            "avg_refresh_time_ms": round(to_number(refresh.get("total_time_in_millis")) / refresh_total, 2) if refresh_total else 0,
            "avg_search_time_ms": round(to_number(search.get("query_time_in_millis")) / query_total, 2) if query_total else 0,
        }
        total["derived"] = derived

        logger.info("Indexing Metrics:")
        logger.info(f"  Total Indexed: {to_number(indexing.get('index_total')):,} documents")
        logger.info(f"  Index Time: {format_ms(index_time_ms)}")
        logger.info(f"  Indexing Rate: {derived['indexing_rate']:.2f} docs/sec")
        logger.info(f"  Current Indexing: {indexing.get('index_current')} operations")
        logger.info(f"  Failed: {indexing.get('index_failed', 0)}")

        avg_refresh = derived["avg_refresh_time_ms"]
        logger.info("🔴 Refresh Metrics (CRITICAL):")
        logger.info(f"  Total Refreshes: {refresh_total:,}")
        logger.info(f"  Refresh Time: {format_ms(refresh.get('total_time_in_millis'))}")
        logger.info(f"  Avg Refresh Time: {avg_refresh:.2f}ms{' ⚠️ HIGH LATENCY' if avg_refresh > 100 else ''}")
        if avg_refresh > 0:
            logger.info(f"  Estimated Refresh Capacity: {60000 / avg_refresh:.2f} refreshes/min")

        logger.info("Search Metrics:")
        logger.info(f"  Total Searches: {query_total:,}")
        logger.info(f"  Search Time: {format_ms(search.get('query_time_in_millis'))}")
        logger.info(f"  Avg Search Time: {derived['avg_search_time_ms']:.2f}ms")
        logger.info(f"  Current Searches: {search.get('query_current')}")

        logger.info("Merge Metrics:")
        logger.info(f"  Total Merges: {to_number(merges.get('total')):,}")
        logger.info(f"  Merge Time: {format_ms(merges.get('total_time_in_millis'))}")
        logger.info(f"  Current Merges: {merges.get('current')}")

        size = dig(total, "store.size_in_bytes")
        logger.info(f"Storage: {format_bytes(size) if size else 'N/A'}")
        return total

    def index_settings(self, index: str) -> dict:
        _section(f"INDEX SETTINGS - {index}")
        settings = self.client.indices.get_settings(index=index)
        index_settings = dig(settings.get(index) or {}, "settings.index")
        if not index_settings:
            raise LookupError(f"No settings returned for index {index}")

        logger.info(f"Number of Shards: {index_settings.get('number_of_shards')}")
        logger.info(f"Number of Replicas: {index_settings.get('number_of_replicas')}")
        logger.info(f"Refresh Interval: {index_settings.get('refresh_interval') or 'default (1s)'}")
        logger.info(f"Auto Expand Replicas: {index_settings.get('auto_expand_replicas') or 'false'}")
        if index_settings.get("refresh_interval") == "-1":
            logger.warning("⚠️  Refresh is DISABLED")
        return index_settings

    def cluster_settings(self) -> dict:
        _section("CLUSTER SETTINGS")
        settings = self.client.cluster.get_settings(include_defaults=True, flat_settings=True)
        persistent = settings.get("persistent") or {}
        defaults = settings.get("defaults") or {}

        logger.info("Circuit Breaker Limits:")
        for key in sorted(k for k in defaults if k.startswith("indices.breaker")):
            logger.info(f"  {key}: {persistent.get(key) or defaults[key]}")

        logger.info("Thread Pool Settings:")
        pool_keys = [k for k in defaults if "thread_pool" in k]
        for pool in ("write", "bulk", "search"):
            matching = sorted(k for k in pool_keys if pool in k)
            if matching:
                logger.info(f"  {pool.upper()}:")
                for key in matching:
                    logger.info(f"    {key.split('.')[-1]}: {persistent.get(key) or defaults[key]}")
        return settings

    def pending_tasks(self) -> List[dict]:
        _section("PENDING CLUSTER TASKS")
        tasks = self.client.cluster.pending_tasks().get("tasks") or []
        if not tasks:
            logger.info("✓ No pending tasks")
        else:
            logger.warning(f"⚠️  {len(tasks)} pending tasks")
            _log_table([
                {
                    "Priority": t.get("priority"),
                    "Source": t.get("source"),
                    "Time in Queue": f"{t.get('time_in_queue_millis')}ms",
                }
                for t in tasks
            ])
        return tasks

    def active_tasks(self) -> dict:
        _section("ACTIVE TASKS & LONG-RUNNING QUERIES")
        response = self.client.tasks.list(detailed=True, group_by="parents")
        all_tasks = response.get("tasks") or {}
        task_list = [{"id": task_id, **task} for task_id, task in all_tasks.items()]

        search_tasks = [
            t for t in task_list
            if "search" in (t.get("action") or "") or "query" in (t.get("action") or "")
        ]
        long_running = {
            seconds: [t for t in search_tasks if to_number(t.get("running_time_in_nanos")) > seconds * NANOS_PER_SECOND]
            for seconds in LONG_RUNNING_SECONDS
        }

        logger.info(f"Active Search Tasks: {len(search_tasks)}")
        logger.info(f"  >5s:  {len(long_running[5])} {'⚠️' if long_running[5] else ''}")
        logger.info(f"  >10s: {len(long_running[10])} {'⚠️' if long_running[10] else ''}")
        logger.info(f"  >30s: {len(long_running[30])} {'🔴' if long_running[30] else ''}")

        if long_running[5]:
            logger.warning("🔴 LONG-RUNNING QUERIES DETECTED:")
            for t in long_running[5][:10]:
                seconds = to_number(t.get("running_time_in_nanos")) / NANOS_PER_SECOND
                logger.warning(f"  - {t.get('action')} ({seconds:.2f}s) on node {t.get('node')}")
                if t.get("description"):
                    logger.warning(f"    Description: {t['description'][:100]}")
            if len(long_running[5]) > 10:
                logger.warning(f"  ... and {len(long_running[5]) - 10} more")
        else:
            logger.info("✓ No long-running queries detected")

        return {
            "total": len(task_list),
            "search_tasks": len(search_tasks),
            "long_running_5s": len(long_running[5]),
            "long_running_10s": len(long_running[10]),
            "long_running_30s": len(long_running[30]),
            "tasks": search_tasks[:MAX_STORED_TASKS],
        }

    def circuit_breakers(self) -> dict:
        _section("CIRCUIT BREAKER STATUS (Real-time)")
        stats = self.client.nodes.stats(metric="breaker")
        nodes = list((stats.get("nodes") or {}).values())
        total_trips = 0

        for node in nodes:
            logger.info(f"Node: {node.get('name')}")
            logger.info("-" * 80)
            breakers = node.get("breakers") or {}
            for breaker_name in REPORTED_BREAKERS:
                breaker = breakers.get(breaker_name)
                if not breaker:
                    continue
                limit = to_number(breaker.get("limit_size_in_bytes"))
                estimated = to_number(breaker.get("estimated_size_in_bytes"))
                usage = round(estimated / limit * 100, 2) if limit > 0 else 0.0
                marker = " 🔴 CRITICAL" if usage > 90 else " ⚠️ HIGH" if usage > 80 else ""
                tripped = to_number(breaker.get("tripped"))
                logger.info(f"  {breaker_name.upper()}:")
                logger.info(f"    Usage: {format_bytes(estimated)} / {format_bytes(limit)} ({usage:.2f}%){marker}")
                logger.info(f"    Tripped: {tripped} times")
                total_trips += tripped

        logger.info(f"{'🔴' if total_trips > 0 else '✓'} Total Circuit Breaker Trips: {total_trips}")
        if total_trips > 0:
            logger.warning("   ⚠️  Circuit breakers have tripped - queries were killed due to memory pressure")

        return {
            "nodes": [{"name": n.get("name"), "breakers": n.get("breakers")} for n in nodes],
            "total_trips": total_trips,
        }

    def cache_metrics(self) -> dict:
        _section("CACHE METRICS (Query Cache, Field Data, Request Cache)")
        stats = self.client.nodes.stats(metric="indices")
        nodes = list((stats.get("nodes") or {}).values())
        query_cache_evictions = 0
        field_data_evictions = 0

        for node in nodes:
            logger.info(f"Node: {node.get('name')}")
            logger.info("-" * 80)
            indices = node.get("indices") or {}

            qc = indices.get("query_cache")
            if qc:
                total = to_number(qc.get("total_count"))
                hit_rate = to_number(qc.get("hit_count")) / total * 100 if total > 0 else 0
                evictions = to_number(qc.get("evictions"))
                logger.info("  Query Cache:")
                logger.info(f"    Size: {format_bytes(qc.get('memory_size_in_bytes'))}")
                logger.info(f"    Hit Rate: {hit_rate:.2f}%")
                logger.info(f"    Evictions: {evictions:,}{' ⚠️' if evictions > 1000 else ''}")
                query_cache_evictions += evictions

            fd = indices.get("fielddata")
            if fd:
                evictions = to_number(fd.get("evictions"))
                logger.info("  Field Data Cache:")
                logger.info(f"    Size: {format_bytes(fd.get('memory_size_in_bytes'))}")
                logger.info(f"    Evictions: {evictions:,}{' ⚠️' if evictions > 100 else ''}")
                field_data_evictions += evictions

            rc = indices.get("request_cache")
            if rc:
                lookups = to_number(rc.get("hit_count")) + to_number(rc.get("miss_count"))
                hit_rate = to_number(rc.get("hit_count")) / lookups * 100 if lookups > 0 else 0
                logger.info("  Request Cache:")
                logger.info(f"    Size: {format_bytes(rc.get('memory_size_in_bytes'))}")
                logger.info(f"    Hit Rate: {hit_rate:.2f}%")
                logger.info(f"    Evictions: {to_number(rc.get('evictions')):,}")

        if query_cache_evictions > 5000 or field_data_evictions > 500:
            logger.warning("⚠️  HIGH CACHE EVICTION RATE - Indicates memory pressure")

        return {
            "query_cache_evictions": query_cache_evictions,
            "field_data_evictions": field_data_evictions,
            "nodes": [
                {
                    "name": n.get("name"),
                    "caches": {
                        "query_cache": dig(n, "indices.query_cache"),
                        "field_data": dig(n, "indices.fielddata"),
                        "request_cache": dig(n, "indices.request_cache"),
                    },
                }
                for n in nodes
            ],
        }

    def segment_stats(self, index: str) -> dict:
        _section(f"SEGMENT STATISTICS - {index}")
        stats = self.client.indices.stats(index=index, metric="segments")
        index_data = (stats.get("indices") or {}).get(index)
        if not index_data:
            raise LookupError(f"Index {index} not found")

        segments = dig(index_data, "total.segments", {})
        count = to_number(segments.get("count"))
        memory = to_number(segments.get("memory_in_bytes"))
        logger.info(f"Segment Count: {count}{' ⚠️ HIGH' if count > 500 else ''}")
        logger.info(f"Segment Memory: {format_bytes(memory)}")
        logger.info(f"Fixed Bit Set Memory: {format_bytes(segments.get('fixed_bit_set_memory_in_bytes', 0))}")
        if count > 500:
            logger.warning("⚠️  HIGH SEGMENT COUNT - consider a force merge or a longer refresh interval")

        return {"count": count, "memory_in_bytes": memory, "segments": segments}

    def queue_metrics(self) -> dict:
        _section("THREAD POOL QUEUE SATURATION ANALYSIS")
        pool_data = self._cat_thread_pools(QUEUE_POOLS)

        pools = []
        max_saturation = 0.0
        logger.info("Queue Saturation by Pool:")
        for pool_name in QUEUE_POOLS:
            for p in (entry for entry in pool_data if entry.get("name") == pool_name):
                saturation = queue_saturation(p.get("queue"), p.get("queue_size"))
                max_saturation = max(max_saturation, saturation)
                pools.append({
                    "node_name": p.get("node_name"),
                    "name": pool_name,
                    "queue": to_number(p.get("queue")),
                    "queue_size": to_number(p.get("queue_size")),
                    "saturation_pct": saturation,
                })
                marker = " 🔴 CRITICAL" if saturation > 80 else " ⚠️ HIGH" if saturation > 50 else ""
                if saturation > 10 or pool_name == "search":
                    logger.info(f"  {pool_name.upper()} ({p.get('node_name')}): {saturation:.2f}% full{marker}")

        if max_saturation > 80:
            logger.error("🔴 CRITICAL: Queue saturation >80% - queries are likely timing out")
        elif max_saturation > 50:
            logger.warning("⚠️  WARNING: Queue saturation >50% - performance degradation likely")
        else:
            logger.info("✓ Queue saturation healthy")

        return {"max_saturation": max_saturation, "pools": pools}

    def hot_threads(self) -> dict:
        _section("HOT THREADS ANALYSIS")
        output = self.client.nodes.hot_threads(threads=3, doc_type="cpu")
        if not isinstance(output, str):
            output = str(output)
        lines = output.split("\n")[:HOT_THREAD_LINES]

        logger.info("Top CPU-consuming threads:")
        for line in lines:
            if line.strip():
                logger.info(f"  {line}")
        return {"summary": "\n".join(lines[:HOT_THREAD_SUMMARY_LINES])}

    def _fetch(self, name: str, fetch, *args):
        try:
            return fetch(*args)
        except Exception as e:
            logger.error(f"⚠️  {name} unavailable: {e}")
            return unavailable(e)

    def collect(self) -> Dict[str, Any]:
        """Fetch every metric group once and return the raw snapshot (no summary yet)."""
        timestamp = datetime.now(timezone.utc).isoformat()
        _section(f"OPENSEARCH METRICS CHECK - {timestamp}", leading_newline=False)

        snapshot: Dict[str, Any] = {"timestamp": timestamp}
        snapshot["cluster_health"] = self._fetch("cluster health", self.cluster_health)
        snapshot["thread_pool_stats"] = self._fetch("thread pools", self.thread_pools)
        snapshot["node_stats"] = self._fetch("node stats", self.node_stats)
        snapshot["index_stats"] = {
            index: self._fetch(f"index stats for {index}", self.index_stats, index)
            for index in self.indices
        }
        snapshot["index_settings"] = {
            index: self._fetch(f"index settings for {index}", self.index_settings, index)
            for index in self.indices
        }
        snapshot["cluster_settings"] = self._fetch("cluster settings", self.cluster_settings)
        snapshot["pending_tasks"] = self._fetch("pending tasks", self.pending_tasks)
        snapshot["active_tasks"] = self._fetch("active tasks", self.active_tasks)
        snapshot["circuit_breaker_status"] = self._fetch("circuit breakers", self.circuit_breakers)
        snapshot["cache_metrics"] = self._fetch("cache metrics", self.cache_metrics)
        snapshot["segment_stats"] = {
            index: self._fetch(f"segment stats for {index}", self.segment_stats, index)
            for index in self.indices
        }
        snapshot["queue_metrics"] = self._fetch("queue metrics", self.queue_metrics)
        snapshot["hot_threads"] = self._fetch("hot threads", self.hot_threads)
        return snapshot
