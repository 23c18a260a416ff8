"""
Classify completed chat API exchanges and apply their side effects to the
run aggregator (counters, breakpoint latches, console diagnostics).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from stress_test.aggregator import RunAggregator

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = (200, 201)

ERROR_CONNECT_TIMEOUT = "connect_timeout"
ERROR_READ_TIMEOUT = "read_timeout"
ERROR_CONNECTION = "connection_error"
TIMEOUT_ERROR_CODES = {ERROR_CONNECT_TIMEOUT, ERROR_READ_TIMEOUT}

RATE_LIMITED = "rate_limited"
STORAGE_ERROR = "storage_error"

BODY_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class BodyMarker:
    """A substring in a response body that signals a storage-side failure."""
    marker: str
    category: str


# Rate-limit markers are evaluated before generic storage markers.
DEFAULT_BODY_MARKERS = (
    BodyMarker("SlowDown", RATE_LIMITED),
    BodyMarker("S3", STORAGE_ERROR),
    BodyMarker("ServiceUnavailable", STORAGE_ERROR),
    BodyMarker("InternalError", STORAGE_ERROR),
)


@dataclass
class Exchange:
    """One completed HTTP exchange. status 0 means no response was received."""
    status: int
    body: str = ""
    duration_ms: float = -1.0
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Classification:
    is_timeout: bool
    is_success: bool
    is_generic_error: bool
    is_rate_limited: bool
    is_storage_error: bool

    @property
    def outcome(self) -> str:
        if self.is_success:
            return "success"
        if self.is_timeout:
            return "timeout"
        return "error"


@dataclass
class IterationContext:
    iteration: int
    vu_id: int
    room_index: int
    vu_iteration: int = 0


def _match_category(body: str, markers: Sequence[BodyMarker], category: str) -> Optional[BodyMarker]:
    for marker in markers:
        if marker.category == category and marker.marker in body:
            return marker
    return None


def classify(exchange: Exchange, markers: Sequence[BodyMarker] = DEFAULT_BODY_MARKERS) -> Classification:
    is_timeout = exchange.status == 0 or exchange.error_code in TIMEOUT_ERROR_CODES
    is_success = exchange.status in SUCCESS_STATUSES and not is_timeout
    is_generic_error = not is_success and not is_timeout

    body = exchange.body or ""
    is_rate_limited = bool(body) and _match_category(body, markers, RATE_LIMITED) is not None
    is_storage_error = (
        not is_rate_limited
        and bool(body)
        and _match_category(body, markers, STORAGE_ERROR) is not None
    )
    return Classification(
        is_timeout=is_timeout,
        is_success=is_success,
        is_generic_error=is_generic_error,
        is_rate_limited=is_rate_limited,
        is_storage_error=is_storage_error,
    )


def phase_for_iteration(iteration: int) -> str:
    """Tag an iteration with the phase of the run it falls in."""
    if iteration < 100:
        return "warmup"
    if iteration < 500:
        return "rampup"
    if iteration < 1000:
        return "steady"
    return "spike"


def _duration_text(exchange: Exchange) -> str:
    if exchange.duration_ms is None or exchange.duration_ms < 0:
        return "N/A"
    return f"{exchange.duration_ms:.2f}ms"


def record_outcome(aggregator: RunAggregator, classification: Classification,
                   exchange: Exchange, context: IterationContext,
                   progress_every: int = 1000):
    """Update counters and latches for one classified exchange and log it."""
    now = datetime.now().isoformat()
    where = f"VU {context.vu_id}, Room {context.room_index}, Iter {context.iteration}"

    aggregator.total_requests.increment()

    if classification.is_success:
        aggregator.successes.increment()

    if classification.is_timeout:
        aggregator.timeout_errors.increment()
        aggregator.total_errors.increment()
        if aggregator.timeout_latch.try_set(context.iteration):
            logger.error(
                f"⏱️ FIRST TIMEOUT at Iteration: {context.iteration}, VU: {context.vu_id}, "
                f"Room: {context.room_index}, Time: {now}, Error: {exchange.error or 'Request timeout'}"
            )
        else:
            logger.error(f"⏱️ Timeout: {where}, Duration: {_duration_text(exchange)}")

    if classification.is_generic_error:
        aggregator.total_errors.increment()
        if aggregator.error_latch.try_set(context.iteration):
            logger.error(
                f"🔥 FIRST ERROR DETECTED at Iteration: {context.iteration}, VU: {context.vu_id}, "
                f"Room: {context.room_index}, Time: {now}, Status: {exchange.status}"
            )
        else:
            logger.warning(f"🔥 Error: {where}, Status {exchange.status}")

    if classification.is_rate_limited:
        aggregator.rate_limit_errors.increment()
        aggregator.storage_errors.increment()
        if aggregator.rate_limit_latch.try_set(context.iteration):
            logger.error(
                f"🐌 FIRST S3 SlowDown at Iteration: {context.iteration}, VU: {context.vu_id}, "
                f"Room: {context.room_index}, Time: {now}"
            )
        else:
            logger.error(f"🐌 S3 SlowDown: {where}, Status {exchange.status}")
    elif classification.is_storage_error:
        aggregator.storage_errors.increment()
        logger.error(
            f"☁️ S3 Error: {where}, Status {exchange.status}, "
            f"Body: {(exchange.body or '')[:BODY_PREVIEW_CHARS]}"
        )

    if exchange.status >= 400:
        logger.error(
            f"❌ Request failed: {where}, Status {exchange.status}, "
            f"Duration: {_duration_text(exchange)}, Body: {(exchange.body or '')[:BODY_PREVIEW_CHARS]}"
        )

    if classification.is_success and progress_every > 0 and context.iteration % progress_every == 0:
        logger.info(
            f"✅ Progress: Iteration {context.iteration}, VU {context.vu_id}, "
            f"Room {context.room_index}, Duration: {_duration_text(exchange)}"
        )
