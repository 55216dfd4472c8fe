#!/usr/bin/env python3
"""
Command-line entry point for KPE

Usage:
    kpe --cluster https://mycluster.westeurope.kusto.windows.net \\
        --database Telemetry --table Events --external-table EventsArchive
    kpe --table Events --external-table EventsArchive --interval-minutes 60 --report run.csv
    kpe --table Events --external-table EventsArchive --dry-run

Exit codes:
    0   every partition exported and verified
    1   at least one partition was not exported
    2   configuration error
    3   the ingestion time range could not be read
    130 interrupted
"""

import argparse
import os
import signal
import sys
import threading
from datetime import timedelta
from typing import List, Optional

from dotenv import load_dotenv

from kpe.config import (
    AuthMethod,
    DEFAULTS,
    FailurePolicy,
    config_summary,
    load_export_config,
    parse_timestamp,
)
from kpe.driver import PartitionedExportDriver, RunSummary
from kpe.enhanced_logger import logger
from kpe.errors import ConfigurationError, KpeError, RangeQueryError
from kpe.report import REPORT_FORMATS, write_report

EXIT_OK = 0
EXIT_PARTITIONS_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_RANGE_QUERY_FAILED = 3
EXIT_INTERRUPTED = 130


def timestamp_arg(raw: str):
    try:
        return parse_timestamp(raw)
    except ConfigurationError as e:
        raise argparse.ArgumentTypeError(str(e))


def report_path_arg(raw: str) -> str:
    suffix = os.path.splitext(raw)[1].lower()
    if suffix not in REPORT_FORMATS:
        raise argparse.ArgumentTypeError(
            f"unsupported report format {suffix or raw!r}, use {', '.join(REPORT_FORMATS)}")
    return raw


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser; every option falls back to its KPE_* variable"""
    parser = argparse.ArgumentParser(
        prog="kpe",
        description="Export a Kusto table to an external table, one ingestion time partition at a time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Exit codes:" + __doc__.split("Exit codes:", 1)[1]
    )

    connection = parser.add_argument_group("Connection")
    connection.add_argument("--cluster", dest="cluster_uri", help="Cluster URI (KPE_CLUSTER_URI)")
    connection.add_argument("--auth", dest="auth_method", choices=[m.value for m in AuthMethod],
                            help=f"AAD authentication flow (KPE_AUTH_METHOD, default: {DEFAULTS['auth_method']})")
    connection.add_argument("--client-id", help="AAD application or managed identity client id (KPE_CLIENT_ID)")
    connection.add_argument("--tenant-id", help="AAD tenant id (KPE_TENANT_ID)")

    export = parser.add_argument_group("Export")
    export.add_argument("--database", help="Database name (KPE_DATABASE)")
    export.add_argument("--table", dest="table_name", help="Source table (KPE_TABLE)")
    export.add_argument("--external-table", dest="external_table_name",
                        help="Target external table, same schema as the source (KPE_EXTERNAL_TABLE)")
    export.add_argument("--interval-minutes", type=float,
                        help=f"Partition width (KPE_INTERVAL_MINUTES, default: {DEFAULTS['interval_minutes']})")
    export.add_argument("--size-limit-bytes", type=int,
                        help="Size limit hint per exported artifact (KPE_SIZE_LIMIT_BYTES, default: 1GB)")
    export.add_argument("--from", dest="range_start", type=timestamp_arg,
                        help="Only export ingestion times at or after this ISO-8601 timestamp (KPE_FROM)")
    export.add_argument("--to", dest="range_end", type=timestamp_arg,
                        help="Only export ingestion times up to this ISO-8601 timestamp (KPE_TO)")

    execution = parser.add_argument_group("Execution")
    execution.add_argument("--wait-timeout-minutes", type=float,
                           help=f"Wait per export (KPE_WAIT_TIMEOUT_MINUTES, default: {DEFAULTS['wait_timeout_minutes']})")
    execution.add_argument("--poll-interval-seconds", type=float,
                           help=f"Status poll interval (KPE_POLL_INTERVAL_SECONDS, default: {DEFAULTS['poll_interval_seconds']})")
    execution.add_argument("--on-failure", dest="failure_policy", choices=[p.value for p in FailurePolicy],
                           help="continue with the next partition or abort the run (KPE_FAILURE_POLICY, default: continue)")
    execution.add_argument("--max-workers", type=int,
                           help="Partitions exported concurrently (KPE_MAX_WORKERS, default: 1)")
    execution.add_argument("--dry-run", action="store_true",
                           help="Print partitions and export commands without submitting anything")

    output = parser.add_argument_group("Output")
    output.add_argument("--report", type=report_path_arg,
                        help="Write a per-partition report (.csv, .parquet or .json)")
    output.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (KPE_LOG_LEVEL, default: INFO)")
    output.add_argument("--log-file", help="Also append logs to this file (KPE_LOG_FILE)")
    output.add_argument("--no-color", action="store_true", help="Disable coloured console output")

    return parser


def build_config(args: argparse.Namespace):
    """Environment configuration with command-line overrides applied"""
    config = load_export_config()

    if config.connection is not None:
        overrides = {
            'cluster_uri': args.cluster_uri,
            'auth_method': AuthMethod(args.auth_method) if args.auth_method else None,
            'client_id': args.client_id,
            'tenant_id': args.tenant_id,
        }
        for key, value in overrides.items():
            if value is not None:
                setattr(config.connection, key, value)

    return config.with_overrides(
        database=args.database,
        table_name=args.table_name,
        external_table_name=args.external_table_name,
        interval=timedelta(minutes=args.interval_minutes) if args.interval_minutes is not None else None,
        size_limit_bytes=args.size_limit_bytes,
        wait_timeout=timedelta(minutes=args.wait_timeout_minutes) if args.wait_timeout_minutes is not None else None,
        poll_interval=timedelta(seconds=args.poll_interval_seconds) if args.poll_interval_seconds is not None else None,
        failure_policy=FailurePolicy(args.failure_policy) if args.failure_policy else None,
        max_workers=args.max_workers,
        range_start=args.range_start,
        range_end=args.range_end,
    )


def create_services(config):
    """Query and admin services for the configured cluster"""
    from kpe.kusto_client import KustoAdminService, KustoQueryService, create_kusto_client

    client = create_kusto_client(config.connection)
    return KustoQueryService(client), KustoAdminService(client)


def dry_run(driver: PartitionedExportDriver) -> int:
    time_range, partitions = driver.plan()
    print(f"Range: {time_range.start.isoformat()} -> {time_range.end.isoformat()} ({len(partitions)} partitions)")
    for partition in partitions:
        print(f"#{partition.index} {partition.label()}")
        print(f"    {driver.build_command(partition).render()}")
    return EXIT_OK


def exit_code_for(summary: RunSummary) -> int:
    if summary.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_OK if summary.succeeded else EXIT_PARTITIONS_FAILED


def install_interrupt_handler(cancel_event: threading.Event):
    """First Ctrl+C cancels the current wait; a second one stops immediately. Returns the previous handler"""
    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received, cancelling the current wait (press Ctrl+C again to quit)")
        cancel_event.set()

    return signal.signal(signal.SIGINT, handler)


def main(argv: Optional[List[str]] = None, services=None) -> int:
    load_dotenv()
    parser = create_parser()
    args = parser.parse_args(argv)

    logger.configure(level=args.log_level or os.environ.get('KPE_LOG_LEVEL', 'INFO'),
                     log_file=args.log_file or os.environ.get('KPE_LOG_FILE'),
                     use_color=False if args.no_color else None)

    try:
        config = build_config(args)
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    logger.info("Starting KPE", **config_summary(config))

    try:
        query_service, admin_service = services or create_services(config)
        driver = PartitionedExportDriver(config, query_service, admin_service)

        if args.dry_run:
            return dry_run(driver)

        cancel_event = threading.Event()
        previous_handler = None
        if threading.current_thread() is threading.main_thread():
            previous_handler = install_interrupt_handler(cancel_event)
        try:
            summary = driver.run(cancel_event)
        finally:
            if previous_handler is not None:
                signal.signal(signal.SIGINT, previous_handler)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except RangeQueryError as e:
        logger.error(f"Could not read the ingestion time range, nothing was exported: {e}")
        return EXIT_RANGE_QUERY_FAILED
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return EXIT_INTERRUPTED
    except KpeError as e:
        logger.error(f"Export run failed: {e}")
        return EXIT_PARTITIONS_FAILED

    if args.report:
        try:
            write_report(summary, args.report)
        except (OSError, ValueError) as e:
            # Exports already ran; the exit code still reports their outcome
            logger.error(f"Could not write run report {args.report}: {e}")

    return exit_code_for(summary)


if __name__ == '__main__':
    sys.exit(main())
