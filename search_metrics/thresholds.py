"""
Classify a metrics snapshot into critical issues and warnings.

The policy lives in RULES: each rule extracts (subject, value) pairs from the
snapshot and is compared against its warning and critical bounds by one
generic routine. Unavailable groups simply yield nothing.
"""

import logging
import operator
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from search_metrics.collectors import dig, is_unavailable, to_number

logger = logging.getLogger(__name__)

CRITICAL = "critical"
WARNING = "warning"

SEVERITY_PREFIX = {CRITICAL: "🔴 ", WARNING: "⚠️  "}
SEVERITY_WORD = {CRITICAL: "Critical", WARNING: "High"}

COMPARISONS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

STATUS_RANK = {"green": 0, "yellow": 1, "red": 2}
STATUS_HINTS = {
    "yellow": "Replica shards not allocated",
    "red": "Data loss or unavailability",
}

QUERY_CACHE_EVICTION_LIMIT = 5000
FIELD_DATA_EVICTION_LIMIT = 500

Sample = Tuple[str, float]


@dataclass(frozen=True)
class ThresholdRule:
    key: str
    label: str
    extract: Callable[[dict], Iterable[Sample]]
    warning: Optional[float] = None
    critical: Optional[float] = None
    comparison: str = ">"
    message: str = "{label} for {subject} is {value}"

    def severity(self, value) -> Optional[str]:
        compare = COMPARISONS[self.comparison]
        if self.critical is not None and compare(value, self.critical):
            return CRITICAL
        if self.warning is not None and compare(value, self.warning):
            return WARNING
        return None

    def render(self, severity: str, subject: str, value) -> str:
        text = self.message.format(
            label=self.label, subject=subject, value=value, severity=SEVERITY_WORD[severity]
        )
        return SEVERITY_PREFIX[severity] + text


def _group(snapshot: dict, key: str):
    group = snapshot.get(key)
    if group is None or is_unavailable(group):
        return None
    return group


def _index_groups(snapshot: dict, key: str):
    for index, group in (snapshot.get(key) or {}).items():
        if group is not None and not is_unavailable(group):
            yield index, group


def cluster_status(snapshot):
    health = _group(snapshot, "cluster_health")
    if health and health.get("status") in STATUS_RANK:
        status = health["status"]
        subject = status.upper()
        if status in STATUS_HINTS:
            subject += f" - {STATUS_HINTS[status]}"
        yield subject, STATUS_RANK[status]


def pool_rejections(snapshot):
    for pool in _group(snapshot, "thread_pool_stats") or []:
        yield f"{str(pool.get('name')).upper()} ({pool.get('node_name')})", to_number(pool.get("rejected"))


def queue_fill(snapshot):
    queues = _group(snapshot, "queue_metrics") or {}
    for pool in queues.get("pools") or []:
        yield f"{str(pool.get('name')).upper()} ({pool.get('node_name')})", to_number(pool.get("saturation_pct"))


def _node_values(path):
    def extract(snapshot):
        for node in _group(snapshot, "node_stats") or []:
            value = dig(node, path)
            if value is not None:
                yield node.get("name"), to_number(value)
    return extract


def refresh_latency(snapshot):
    for index, stats in _index_groups(snapshot, "index_stats"):
        yield index, to_number(dig(stats, "derived.avg_refresh_time_ms"))


def pending_task_count(snapshot):
    tasks = _group(snapshot, "pending_tasks")
    if tasks is not None:
        yield "cluster", len(tasks)


def _active_task_count(field):
    def extract(snapshot):
        tasks = _group(snapshot, "active_tasks")
        if tasks:
            yield "cluster", to_number(tasks.get(field))
    return extract


def breaker_trips(snapshot):
    breakers = _group(snapshot, "circuit_breaker_status")
    if breakers:
        yield "cluster", to_number(breakers.get("total_trips"))


def segment_count(snapshot):
    for index, stats in _index_groups(snapshot, "segment_stats"):
        yield index, to_number(stats.get("count"))


def cache_evictions(snapshot):
    """Each count over its own limit; the larger ratio is the sample, so > 1 means either limit is crossed."""
    caches = _group(snapshot, "cache_metrics")
    if caches:
        query_cache = to_number(caches.get("query_cache_evictions"))
        field_data = to_number(caches.get("field_data_evictions"))
        pressure = max(query_cache / QUERY_CACHE_EVICTION_LIMIT, field_data / FIELD_DATA_EVICTION_LIMIT)
        yield f"query cache {query_cache:,}, field data {field_data:,}", pressure


RULES: List[ThresholdRule] = [
    ThresholdRule("cluster_status", "Cluster status", cluster_status,
                  warning=1, critical=2, comparison=">=",
                  message="Cluster status is {subject}"),
    ThresholdRule("pool_rejections", "Thread pool rejections", pool_rejections,
                  critical=0,
                  message="{subject} thread pool has {value} rejections - System overloaded"),
    ThresholdRule("queue_fill", "Thread pool queue fill", queue_fill,
                  warning=50, critical=80,
                  message="{subject} queue is {value:.0f}% full"),
    ThresholdRule("jvm_heap", "JVM heap used", _node_values("jvm.mem.heap_used_percent"),
                  warning=75, critical=85,
                  message="Node {subject} JVM memory at {value}% - {severity} memory pressure"),
    ThresholdRule("cpu", "CPU", _node_values("os.cpu.percent"),
                  warning=80, critical=90,
                  message="Node {subject} CPU at {value}% - {severity} CPU usage"),
    ThresholdRule("old_gc", "Old generation GC count", _node_values("jvm.gc.collectors.old.collection_count"),
                  warning=10,
                  message="Node {subject} has {value} Old Gen GC collections - Memory pressure"),
    ThresholdRule("refresh_latency", "Average refresh time", refresh_latency,
                  warning=50, critical=100,
                  message="Average refresh time on {subject} is {value:.2f}ms"),
    ThresholdRule("pending_tasks", "Pending cluster tasks", pending_task_count,
                  warning=10,
                  message="{value} pending cluster tasks"),
    ThresholdRule("queries_over_30s", "Queries running >30s", _active_task_count("long_running_30s"),
                  critical=0,
                  message="{value} queries running >30s - LIKELY TIMING OUT NOW"),
    ThresholdRule("queries_over_10s", "Queries running >10s", _active_task_count("long_running_10s"),
                  warning=0,
                  message="{value} queries running >10s - approaching timeout"),
    ThresholdRule("queries_over_5s", "Queries running >5s", _active_task_count("long_running_5s"),
                  warning=5,
                  message="{value} queries running >5s - monitor for timeouts"),
    ThresholdRule("breaker_trips", "Circuit breaker trips", breaker_trips,
                  critical=0,
                  message="Circuit breakers tripped {value} times - queries killed due to memory"),
    ThresholdRule("segment_count", "Segment count", segment_count,
                  warning=500,
                  message="{subject} has {value} segments - slowing searches"),
    ThresholdRule("cache_evictions", "Cache evictions", cache_evictions,
                  warning=1,
                  message="High cache evictions ({subject}) - memory pressure"),
]


def evaluate(snapshot: dict, rules: List[ThresholdRule] = None) -> Tuple[List[str], List[str]]:
    """Return (critical_issues, warnings) in rule order."""
    rules = RULES if rules is None else rules
    issues: List[str] = []
    warnings: List[str] = []
    for rule in rules:
        for subject, value in rule.extract(snapshot):
            severity = rule.severity(value)
            if severity == CRITICAL:
                issues.append(rule.render(severity, subject, value))
            elif severity == WARNING:
                warnings.append(rule.render(severity, subject, value))
    return issues, warnings


def summarize(snapshot: dict, rules: List[ThresholdRule] = None) -> dict:
    issues, warnings = evaluate(snapshot, rules)
    health = _group(snapshot, "cluster_health") or {}
    tasks = _group(snapshot, "active_tasks") or {}
    breakers = _group(snapshot, "circuit_breaker_status") or {}
    queues = _group(snapshot, "queue_metrics") or {}
    return {
        "critical_issues": issues,
        "warnings": warnings,
        "health_status": health.get("status", "unknown"),
        "active_searches": to_number(tasks.get("search_tasks")),
        "long_running_queries_5s": to_number(tasks.get("long_running_5s")),
        "long_running_queries_10s": to_number(tasks.get("long_running_10s")),
        "long_running_queries_30s": to_number(tasks.get("long_running_30s")),
        "circuit_breaker_trips": to_number(breakers.get("total_trips")),
        "search_queue_saturation_pct": to_number(queues.get("max_saturation")),
    }


def print_summary(summary: dict):
    logger.info("\n" + "=" * 80)
    logger.info("CRITICAL ISSUES & RECOMMENDATIONS")
    logger.info("=" * 80)

    issues = summary.get("critical_issues") or []
    warnings = summary.get("warnings") or []

    if issues:
        logger.error("🔴 CRITICAL ISSUES:")
        for issue in issues:
            logger.error(f"   {issue}")

    if warnings:
        logger.warning("⚠️  WARNINGS:")
        for warning in warnings:
            logger.warning(f"   {warning}")

    if not issues and not warnings:
        logger.info("✅ No critical issues or warnings detected")
