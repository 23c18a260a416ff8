#!/usr/bin/env python3
"""
Chat API breaking-point load test.

Virtual users post messages to the addToChat endpoint in a loop, and the run
records the first iteration at which timeouts, errors and S3 SlowDown
throttling appear, along with totals and latency percentiles.
"""

import argparse
import json
import logging
import os
import shutil
import sys
import time
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from datetime import datetime
from typing import List, Optional

import numpy as np
import pandas as pd
import requests
from prometheus_client import CollectorRegistry, Counter as PromCounter, Gauge as PromGauge
from prometheus_client import start_http_server as prom_start_http_server
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectTimeout, ReadTimeout

from stress_test.aggregator import RunAggregator
from stress_test.classifier import (
    DEFAULT_BODY_MARKERS,
    ERROR_CONNECT_TIMEOUT,
    ERROR_CONNECTION,
    ERROR_READ_TIMEOUT,
    Exchange,
    IterationContext,
    classify,
    phase_for_iteration,
    record_outcome,
)
from stress_test.config import load_config
from stress_test.report import build_report, format_report
from stress_test.rooms import Room, RoomDataError, load_rooms, select_room

CONFIG = load_config()

LOG_FILE = "chat_load_test.log"
PROGRESS_INTERVAL_SECONDS = 30

logger = logging.getLogger("chat-load-tester")


def configure_logging(log_file: str = LOG_FILE):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )


def build_payload(room: Room, room_index: int, vu_id: int, iteration: int,
                  mode: str = "multi", config: Optional[dict] = None) -> dict:
    """Build the addToChat request body for one iteration."""
    config = config or CONFIG
    timestamp = int(time.time() * 1000)
    if mode == "single":
        message = f"Single Room Load Test - VU:{vu_id} Iter:{iteration} Time:{timestamp}"
    else:
        message = f"Load Test - Room:{room_index} VU:{vu_id} Iter:{iteration} Time:{timestamp}"
    return {
        "payLoad": {
            "roomId": room.room_id,
            "userId": room.user_id,
            "patientId": room.patient_id,
            "EventName": config["EVENT_NAME"],
            "tenantId": config["TENANT_ID"],
            "senderId": room.user_id,
            "message": message,
            "isAttachment": False,
            "attachmentFileSize": 0,
            "isVoiceNote": False,
            "ContextType": config["CONTEXT_TYPE"],
            "loginUserId": room.user_id,
            "delivered": True,
            "isReply": False,
            "repliedMessage": {},
            "isStar": False,
            "Locale": config["LOCALE"],
        }
    }


class ChatLoadTester:
    """
    Runs a pool of virtual users against the chat endpoint and aggregates
    breaking-point statistics for the whole run.
    """

    def __init__(self, rooms: List[Room], target_url=CONFIG["TARGET_URL"],
                 endpoint=CONFIG["ENDPOINT"], mode=CONFIG["MODE"],
                 vus: int = CONFIG["VUS"], iterations: int = CONFIG["ITERATIONS"],
                 duration: int = CONFIG["DURATION"],
                 request_timeout: float = CONFIG["REQUEST_TIMEOUT"],
                 delay_base: float = CONFIG["DELAY_BASE"],
                 delay_jitter: float = CONFIG["DELAY_JITTER"],
                 single_room_delay: float = CONFIG["SINGLE_ROOM_DELAY"],
                 success_threshold: Optional[float] = CONFIG["SUCCESS_THRESHOLD"],
                 output_dir: str = CONFIG["OUTPUT_DIR"],
                 metrics_enabled: bool = False,
                 save_request_log: bool = CONFIG["SAVE_REQUEST_LOG"],
                 markers=DEFAULT_BODY_MARKERS,
                 payload_config: Optional[dict] = None,
                 session: Optional[requests.Session] = None,
                 sleep=time.sleep):
        """Initialize the load tester."""
        if not rooms:
            raise RoomDataError("At least one room is required")
        self.rooms = rooms
        self.url = f"{target_url.rstrip('/')}{endpoint}"
        self.mode = mode
        self.single_room = mode == "single"
        self.vus = max(1, int(vus))
        self.request_timeout = float(request_timeout)
        self.delay_base = float(delay_base)
        self.delay_jitter = max(0.0, float(delay_jitter))
        self.single_room_delay = float(single_room_delay)
        self.success_threshold = success_threshold if self.single_room else None
        self.save_request_log = save_request_log
        self.markers = markers
        self.payload_config = payload_config or CONFIG
        self.progress_every = 100 if self.single_room else 1000
        self.sleep = sleep

        self.aggregator = RunAggregator(iterations=iterations, duration=duration)
        self.stop_event = self.aggregator.stop_event

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.output_dir = os.path.join(output_dir, f"test_run_{timestamp}")

        # Pooled connections sized to the number of concurrent users
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=self.vus, pool_maxsize=self.vus)
            session.mount('http://', adapter)
            session.mount('https://', adapter)
        self.session = session

        self.metrics_enabled = bool(metrics_enabled)
        self.metrics_registry = None
        if self.metrics_enabled:
            self.metrics_registry = CollectorRegistry()
            self.metrics_requests_total = PromCounter(
                'chat_load_requests_total', 'Requests made by the chat load tester', ['outcome'],
                registry=self.metrics_registry,
            )
            self.metrics_breakpoints = PromGauge(
                'chat_load_breakpoint_iteration', 'First iteration a failure condition was seen', ['condition'],
                registry=self.metrics_registry,
            )

        logger.info(f"Target: {self.url}")
        logger.info(f"Mode: {self.mode} ({len(self.rooms)} rooms loaded, {self.vus} VUs)")

    def sleep_time(self) -> float:
        """Think time between iterations of one virtual user."""
        if self.single_room:
            return self.single_room_delay
        return self.delay_base + float(np.random.uniform(0, self.delay_jitter))

    def send(self, payload: dict) -> Exchange:
        """POST one payload and capture the exchange, never raising on transport errors."""
        headers = {'Content-Type': 'application/json'}
        start_time = time.time()
        try:
            response = self.session.post(self.url, data=json.dumps(payload), headers=headers,
                                         timeout=self.request_timeout)
        except ConnectTimeout as e:
            return Exchange(status=0, duration_ms=(time.time() - start_time) * 1000,
                            error_code=ERROR_CONNECT_TIMEOUT, error=f"connect timeout: {e}")
        except ReadTimeout as e:
            return Exchange(status=0, duration_ms=(time.time() - start_time) * 1000,
                            error_code=ERROR_READ_TIMEOUT, error=f"read timeout: {e}")
        except requests.exceptions.RequestException as e:
            return Exchange(status=0, duration_ms=(time.time() - start_time) * 1000,
                            error_code=ERROR_CONNECTION, error=str(e))
        return Exchange(
            status=response.status_code,
            body=response.text or "",
            duration_ms=(time.time() - start_time) * 1000,
        )

    def _record_result_metric(self, outcome: str):
        if not self.metrics_enabled:
            return
        self.metrics_requests_total.labels(outcome=outcome).inc()
        for latch in self.aggregator.latches:
            if latch.is_set:
                self.metrics_breakpoints.labels(condition=latch.name).set(latch.value)

    def run_virtual_user(self, vu_id: int) -> int:
        """Iterate until the shared budget runs out; returns this user's iteration count."""
        room_index, room = select_room(vu_id, self.rooms, single_room=self.single_room)
        vu_iteration = 0
        while True:
            iteration = self.aggregator.claim_iteration()
            if iteration is None:
                break

            payload = build_payload(room, room_index, vu_id, iteration, self.mode, self.payload_config)
            exchange = self.send(payload)
            classification = classify(exchange, self.markers)
            context = IterationContext(iteration=iteration, vu_id=vu_id,
                                       room_index=room_index, vu_iteration=vu_iteration)
            record_outcome(self.aggregator, classification, exchange, context,
                           progress_every=self.progress_every)
            self._record_result_metric(classification.outcome)

            record = None
            if self.save_request_log:
                record = {
                    "timestamp": datetime.now().isoformat(),
                    "elapsed_seconds": round(self.aggregator.elapsed_seconds, 3),
                    "iteration": iteration,
                    "vu": vu_id,
                    "vu_iteration": vu_iteration,
                    "room_index": room_index,
                    "phase": phase_for_iteration(iteration),
                    "status_code": exchange.status,
                    "response_time_ms": exchange.duration_ms,
                    "outcome": classification.outcome,
                    "rate_limited": classification.is_rate_limited,
                    "storage_error": classification.is_storage_error,
                    "error": exchange.error,
                }
            self.aggregator.add_sample(exchange.duration_ms, record)
            vu_iteration += 1

            self.sleep(self.sleep_time())
        return vu_iteration

    def _log_progress(self):
        agg = self.aggregator
        logger.info(
            f"Progress: {agg.elapsed_seconds:.0f}s elapsed, requests={agg.total_requests.value}, "
            f"errors={agg.total_errors.value}, timeouts={agg.timeout_errors.value}, "
            f"success rate={agg.success_rate * 100:.1f}%"
        )

    def run_test(self):
        """Run all virtual users to completion and return the breakpoint report."""
        budget = []
        if self.aggregator.iterations:
            budget.append(f"{self.aggregator.iterations} iterations")
        if self.aggregator.duration:
            budget.append(f"{self.aggregator.duration}s")
        logger.info(f"Starting chat load test: {self.vus} VUs, budget {' / '.join(budget) or 'unbounded'}")

        self.aggregator.start()
        with ThreadPoolExecutor(max_workers=self.vus, thread_name_prefix="vu") as executor:
            futures = [executor.submit(self.run_virtual_user, vu_id) for vu_id in range(1, self.vus + 1)]
            pending = set(futures)
            try:
                while pending:
                    done, pending = wait(pending, timeout=PROGRESS_INTERVAL_SECONDS, return_when=FIRST_EXCEPTION)
                    for future in done:
                        error = future.exception()
                        if error is not None:
                            logger.error(f"Virtual user crashed: {error}", exc_info=error)
                    if pending:
                        self._log_progress()
            except BaseException:
                # In-flight requests finish on their own timeout; no new iterations start
                self.stop_event.set()
                raise
        self.aggregator.finish()

        logger.info(f"Test finished after {self.aggregator.elapsed_seconds:.1f} seconds")
        return self.build_report()

    def build_report(self):
        return build_report(
            self.aggregator,
            mode=self.mode,
            vus=self.vus,
            delay_seconds=self.single_room_delay,
            room=self.rooms[0] if self.single_room else None,
            success_threshold=self.success_threshold,
        )

    def save_results(self, report=None):
        """Save request records, the JSON summary and the text report to the run directory."""
        report = report or self.build_report()
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            records = self.aggregator.records
            if records:
                pd.DataFrame(records).to_csv(os.path.join(self.output_dir, "results.csv"), index=False)
                logger.info(f"Saved request results to {self.output_dir}/results.csv")

            with open(os.path.join(self.output_dir, "summary.json"), 'w') as f:
                json.dump(report.to_dict(), f, indent=2)
            with open(os.path.join(self.output_dir, "summary.txt"), 'w', encoding="utf-8") as f:
                f.write(format_report(report))
            logger.info(f"Saved breakpoint summary to {self.output_dir}/summary.json")
        except OSError as e:
            logger.error(f"Error saving results: {e}")

        if os.path.exists(LOG_FILE):
            try:
                shutil.copy(LOG_FILE, os.path.join(self.output_dir, LOG_FILE))
            except OSError as e:
                logger.error(f"Could not copy log file: {e}")
        return self.output_dir


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Find the breaking point of the chat addToChat endpoint',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('--target-url', type=str, default=CONFIG["TARGET_URL"],
                        help='Base URL of the chat service')
    parser.add_argument('--endpoint', type=str, default=CONFIG["ENDPOINT"],
                        help='Endpoint path receiving the POST requests')
    parser.add_argument('--mode', choices=['multi', 'single'], default=CONFIG["MODE"],
                        help='multi: VUs spread round-robin over rooms; single: every VU uses the first room')
    parser.add_argument('--vus', type=int, default=CONFIG["VUS"],
                        help='Number of concurrent virtual users')
    parser.add_argument('--iterations', type=int, default=CONFIG["ITERATIONS"],
                        help='Total iterations shared by all VUs (0 = unbounded, use --duration)')
    parser.add_argument('--duration', type=int, default=CONFIG["DURATION"],
                        help='Maximum run time in seconds (0 = bounded by iterations only)')
    parser.add_argument('--rooms-file', type=str, default=CONFIG["ROOMS_FILE"],
                        help='JSON file with a "rooms" array of {roomId, userId, patientId}')
    parser.add_argument('--timeout', type=float, default=CONFIG["REQUEST_TIMEOUT"],
                        help='Per-request timeout in seconds')
    parser.add_argument('--delay-base', type=float, default=CONFIG["DELAY_BASE"],
                        help='Multi-room think time base in seconds')
    parser.add_argument('--delay-jitter', type=float, default=CONFIG["DELAY_JITTER"],
                        help='Multi-room random think time added on top of the base')
    parser.add_argument('--single-room-delay', type=float, default=CONFIG["SINGLE_ROOM_DELAY"],
                        help='Fixed think time in single-room mode')
    parser.add_argument('--success-threshold', type=float, default=CONFIG["SUCCESS_THRESHOLD"],
                        help='Single-room mode fails the run when the success rate is not above this')
    parser.add_argument('--metrics-port', type=int, default=CONFIG["METRICS_PORT"],
                        help='Expose Prometheus metrics on this port (0 disables)')
    parser.add_argument('--output-dir', type=str, default=CONFIG["OUTPUT_DIR"],
                        help='Directory for run results')
    parser.add_argument('--seed', type=int, default=CONFIG["SEED"],
                        help='Random seed for think-time jitter')
    parser.add_argument('--no-request-log', action='store_true',
                        help='Do not keep per-request records (saves memory on long runs)')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    configure_logging()

    logger.info("Starting Chat Breaking Point Load Test")
    logger.info("=====================================")
    logger.info(f"Target: {args.target_url}{args.endpoint}")
    logger.info(f"Mode: {args.mode}")
    logger.info(f"Virtual users: {args.vus}")
    logger.info(f"Iterations: {args.iterations or 'unbounded'}")
    logger.info(f"Duration: {args.duration or 'unbounded'}")
    logger.info(f"Request timeout: {args.timeout} seconds")
    logger.info(f"Rooms file: {args.rooms_file}")
    if args.seed is not None:
        np.random.seed(args.seed)
        logger.info(f"Random seed set to: {args.seed}")
    logger.info("=====================================")

    try:
        rooms = load_rooms(args.rooms_file)
    except RoomDataError as e:
        logger.error(f"❌ Cannot start load test: {e}")
        return 2

    tester = ChatLoadTester(
        rooms=rooms,
        target_url=args.target_url,
        endpoint=args.endpoint,
        mode=args.mode,
        vus=args.vus,
        iterations=args.iterations,
        duration=args.duration,
        request_timeout=args.timeout,
        delay_base=args.delay_base,
        delay_jitter=args.delay_jitter,
        single_room_delay=args.single_room_delay,
        success_threshold=args.success_threshold,
        output_dir=args.output_dir,
        metrics_enabled=args.metrics_port > 0,
        save_request_log=not args.no_request_log,
    )

    if tester.metrics_enabled:
        prom_start_http_server(args.metrics_port, registry=tester.metrics_registry)
        logger.info(f"Client metrics exporter started on port {args.metrics_port}")

    try:
        report = tester.run_test()
    except KeyboardInterrupt:
        logger.warning("⚠️  Test interrupted by user. Saving partial results...")
        tester.aggregator.finish()
        report = tester.build_report()
        logger.info(format_report(report))
        tester.save_results(report)
        return 1
    except Exception as e:
        logger.error(f"❌ Test failed with error: {e}", exc_info=True)
        tester.stop_event.set()
        tester.aggregator.finish()
        tester.save_results()
        return 2

    logger.info(format_report(report))
    output_dir = tester.save_results(report)
    logger.info(f"Results saved to: {output_dir}")

    if report.threshold_passed is False:
        logger.error(f"🔴 Success rate {report.success_rate * 100:.2f}% is below threshold {report.success_threshold * 100:.0f}%")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
