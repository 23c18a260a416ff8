"""End-of-run breakpoint analysis for the chat load test."""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import numpy as np

from stress_test.aggregator import RunAggregator
from stress_test.rooms import Room

SEPARATOR = "=" * 40

LATENCY_STATS = ("min", "med", "avg", "p90", "p95", "p99", "max")


def latency_percentiles(durations_ms: List[float]) -> Dict[str, float]:
    """Summary trend stats over request durations, all zero when no samples."""
    if not durations_ms:
        return {stat: 0.0 for stat in LATENCY_STATS}
    values = np.asarray(durations_ms, dtype=float)
    return {
        "min": float(values.min()),
        "med": float(np.median(values)),
        "avg": float(values.mean()),
        "p90": float(np.percentile(values, 90)),
        "p95": float(np.percentile(values, 95)),
        "p99": float(np.percentile(values, 99)),
        "max": float(values.max()),
    }


@dataclass
class BreakpointReport:
    first_timeout_iteration: Optional[int]
    first_error_iteration: Optional[int]
    first_rate_limit_iteration: Optional[int]
    total_requests: int
    total_errors: int
    timeout_errors: int
    rate_limit_errors: int
    storage_errors: int
    successes: int
    success_rate: float
    error_rate: float
    timeout_rate: float
    duration_seconds: float = 0.0
    throughput_rps: float = 0.0
    latency_ms: Dict[str, float] = field(default_factory=dict)
    mode: str = "multi"
    vus: int = 0
    delay_seconds: Optional[float] = None
    room: Optional[Dict[str, str]] = None
    success_threshold: Optional[float] = None

    @property
    def expected_throughput_rps(self) -> Optional[float]:
        if not self.delay_seconds or self.delay_seconds <= 0:
            return None
        return self.vus / self.delay_seconds

    @property
    def threshold_passed(self) -> Optional[bool]:
        if self.success_threshold is None:
            return None
        return self.success_rate > self.success_threshold

    def to_dict(self) -> dict:
        data = asdict(self)
        data["expected_throughput_rps"] = self.expected_throughput_rps
        data["threshold_passed"] = self.threshold_passed
        return data


def build_report(aggregator: RunAggregator, mode: str = "multi", vus: int = 0,
                 delay_seconds: Optional[float] = None, room: Optional[Room] = None,
                 success_threshold: Optional[float] = None) -> BreakpointReport:
    duration = aggregator.elapsed_seconds
    total = aggregator.total_requests.value
    return BreakpointReport(
        first_timeout_iteration=aggregator.timeout_latch.value,
        first_error_iteration=aggregator.error_latch.value,
        first_rate_limit_iteration=aggregator.rate_limit_latch.value,
        total_requests=total,
        total_errors=aggregator.total_errors.value,
        timeout_errors=aggregator.timeout_errors.value,
        rate_limit_errors=aggregator.rate_limit_errors.value,
        storage_errors=aggregator.storage_errors.value,
        successes=aggregator.successes.value,
        success_rate=aggregator.success_rate,
        error_rate=aggregator.error_rate,
        timeout_rate=aggregator.timeout_rate,
        duration_seconds=duration,
        throughput_rps=(total / duration) if duration > 0 else 0.0,
        latency_ms=latency_percentiles(aggregator.durations_ms),
        mode=mode,
        vus=vus,
        delay_seconds=delay_seconds if mode == "single" else None,
        room={"roomId": room.room_id, "userId": room.user_id, "patientId": room.patient_id} if room else None,
        success_threshold=success_threshold,
    )


def format_report(report: BreakpointReport) -> str:
    lines = [""]

    if report.mode == "single" and report.room:
        lines += [SEPARATOR, "🎯 SINGLE ROOM LOAD TEST RESULTS", SEPARATOR, ""]
        lines.append(f"📍 Room ID: {report.room['roomId']}")
        lines.append(f"👤 User ID: {report.room['userId']}")
        lines.append(f"🏥 Patient ID: {report.room['patientId']}")
        if report.delay_seconds is not None:
            lines.append(f"⏱️  Request Delay: {report.delay_seconds * 1000:.0f}ms")
        lines.append("")

    lines += [SEPARATOR, "🎯 BREAKING POINT ANALYSIS", SEPARATOR, ""]

    if report.first_timeout_iteration is not None:
        lines.append(f"⏱️ First Timeout at Iteration: {report.first_timeout_iteration}")
    else:
        lines.append("✅ No timeouts detected")

    if report.first_error_iteration is not None:
        lines.append(f"🔥 First Error at Iteration: {report.first_error_iteration}")
    else:
        lines.append("✅ No errors detected - System held up!")

    if report.first_rate_limit_iteration is not None:
        lines.append(f"🐌 First S3 SlowDown at Iteration: {report.first_rate_limit_iteration}")
    else:
        lines.append("✅ No S3 SlowDown errors")

    lines.append("")
    lines.append(f"📊 Total Requests: {report.total_requests}")
    lines.append(f"❌ Total Errors: {report.total_errors}")
    lines.append(f"⏱️ Timeout Errors: {report.timeout_errors}")
    lines.append(f"🐌 S3 SlowDown Errors: {report.rate_limit_errors}")
    lines.append(f"☁️  Total S3 Errors: {report.storage_errors}")
    lines.append("")
    lines.append(f"📈 Success Rate: {report.success_rate * 100:.2f}%")
    lines.append(f"📈 Error Rate: {report.error_rate * 100:.2f}%")
    lines.append(f"⏱️ Timeout Rate: {report.timeout_rate * 100:.2f}%")

    lines.append("")
    lines.append(f"🚀 Average Throughput: {report.throughput_rps:.2f} requests/sec")
    expected = report.expected_throughput_rps
    if expected is not None:
        lines.append(
            f"⏱️  Expected Throughput: {expected:.2f} requests/sec "
            f"({report.vus} VUs × 1/{report.delay_seconds}s)"
        )

    latency = report.latency_ms or latency_percentiles([])
    lines.append("")
    lines.append(
        "⌛ Request Duration: "
        + " ".join(f"{stat}={latency.get(stat, 0.0):.2f}ms" for stat in LATENCY_STATS)
    )

    passed = report.threshold_passed
    if passed is not None:
        verdict = "✅ PASSED" if passed else "🔴 FAILED"
        lines.append(f"🎚️  Success threshold rate>{report.success_threshold}: {verdict}")

    lines += ["", SEPARATOR, ""]
    return "\n".join(lines)
