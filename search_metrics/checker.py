#!/usr/bin/env python3
"""
OpenSearch diagnostics for timeout investigations.

Runs one full metrics check (or keeps polling with --continuous), classifies
the snapshot against the threshold table and stores it as JSON plus one row
in the cumulative summary CSV.
"""

import argparse
import logging
import sys
import time

from search_metrics.client import ClientInitializationError, initialize_client
from search_metrics.collectors import MetricsCollector
from search_metrics.config import load_config
from search_metrics.persistence import append_summary_row, save_snapshot
from search_metrics.thresholds import print_summary, summarize

CONFIG = load_config()

LOG_FILE = "opensearch_metrics.log"

logger = logging.getLogger("opensearch-metrics")


def configure_logging(log_file: str = LOG_FILE):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )


class MetricsChecker:
    def __init__(self, config=None, client=None, sleep=time.sleep):
        self.config = dict(CONFIG if config is None else config)
        self.indices = list(self.config["METRICS_INDICES"])
        self.output_dir = self.config["METRICS_OUTPUT_DIR"]
        self.client = client
        self.collector = MetricsCollector(client, self.indices) if client is not None else None
        self._sleep = sleep

    def initialize(self):
        """Resolve the endpoint and build the signed client. Raises ClientInitializationError."""
        logger.info("🔧 Initializing OpenSearch client...")
        self.client = initialize_client(
            self.config["OPENSEARCH_URL_PARAMETER"],
            self.config["AWS_REGION"],
            timeout=self.config["REQUEST_TIMEOUT"],
        )
        self.collector = MetricsCollector(self.client, self.indices)

    def run_full_check(self, save: bool = True) -> dict:
        if self.collector is None:
            self.initialize()

        snapshot = self.collector.collect()
        summary = summarize(snapshot)
        snapshot["summary"] = summary
        print_summary(summary)

        if save:
            save_snapshot(snapshot, self.output_dir)
            append_summary_row(snapshot, self.output_dir, self.indices)

        logger.info("\n" + "=" * 80)
        logger.info("✅ Metrics check complete")
        logger.info("=" * 80)
        return snapshot

    def run_continuous(self, interval: int = 30, save: bool = True, max_cycles: int = None):
        """Poll forever (or max_cycles times); a failing cycle is logged and retried after the same sleep."""
        logger.info(f"🔄 Running continuous monitoring (every {interval}s)")
        logger.info("Press Ctrl+C to stop")
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                self.run_full_check(save=save)
            except Exception as e:
                logger.error(f"❌ Metrics check failed: {e}", exc_info=True)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            logger.info(f"⏳ Waiting {interval}s until next check...")
            self._sleep(interval)
        return cycles


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Collect OpenSearch cluster metrics and flag timeout risks',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('--continuous', action='store_true',
                        help='Keep polling the cluster every --interval seconds')
    parser.add_argument('--interval', type=int, default=CONFIG["CHECK_INTERVAL"],
                        help='Seconds between checks in continuous mode')
    parser.add_argument('--no-save', action='store_true',
                        help='Do not write the JSON snapshot or the summary CSV row')
    parser.add_argument('--output-dir', type=str, default=CONFIG["METRICS_OUTPUT_DIR"],
                        help='Directory for snapshots and metrics-summary.csv')
    parser.add_argument('--indices', type=str, default=",".join(CONFIG["METRICS_INDICES"]),
                        help='Comma-separated indices to inspect')
    parser.add_argument('--region', type=str, default=CONFIG["AWS_REGION"],
                        help='AWS region of the cluster and the parameter')
    parser.add_argument('--parameter', type=str, default=CONFIG["OPENSEARCH_URL_PARAMETER"],
                        help='SSM parameter holding the cluster URL')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    configure_logging()

    indices = [i.strip() for i in args.indices.split(",") if i.strip()]
    if not indices:
        logger.error("❌ At least one index is required")
        return 2

    config = dict(CONFIG)
    config.update({
        "METRICS_INDICES": indices,
        "METRICS_OUTPUT_DIR": args.output_dir,
        "AWS_REGION": args.region,
        "OPENSEARCH_URL_PARAMETER": args.parameter,
    })
    checker = MetricsChecker(config)

    try:
        checker.initialize()
    except ClientInitializationError as e:
        logger.error(f"❌ Failed to initialize OpenSearch client: {e}")
        return 2

    try:
        if args.continuous:
            checker.run_continuous(args.interval, save=not args.no_save)
        else:
            checker.run_full_check(save=not args.no_save)
    except KeyboardInterrupt:
        logger.info("👋 Stopping metrics monitoring")
        return 0
    except Exception as e:
        logger.error(f"❌ Fatal error: {e}", exc_info=True)
        return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
