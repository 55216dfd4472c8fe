#!/usr/bin/env python3
"""
Partitioned export driver

Walks a table's ingestion time range partition by partition. Each partition
is exported to the external table with an async .export command, awaited to
a terminal state and, when completed, verified against the operation's
detail records.

A partition that is not exported is never retried: the server side
operation may still be running, and resubmitting it blindly can duplicate
data. Re-running the driver resubmits every partition in range, so runs
are not idempotent.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from kpe.commands import ExportToExternalTableCommand, OperationRecordCountCommand
from kpe.config import CLIENT_REQUEST_ID_PREFIX, ExportConfig, FailurePolicy
from kpe.enhanced_logger import logger
from kpe.errors import OperationWaitError, RecordCountQueryError, ServiceError
from kpe.operations import ExportOperation, OperationState
from kpe.partitioning import (
    IngestionTimeRangeAnalyzer,
    Partition,
    TimeRange,
    calculate_partitions,
    row_value,
)


class PartitionOutcome(Enum):
    EXPORTED = "exported"
    EXPORT_FAILED = "export_failed"
    VERIFICATION_FAILED = "verification_failed"
    SKIPPED = "skipped"


@dataclass
class PartitionResult:
    """What happened to one partition"""
    partition: Partition
    outcome: PartitionOutcome
    operation: Optional[ExportOperation] = None
    client_request_id: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class RunSummary:
    """Per-partition results of one run"""
    run_id: str
    table_name: str
    external_table_name: str
    time_range: Optional[TimeRange] = None
    results: List[PartitionResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    aborted: bool = False
    cancelled: bool = False

    def _count(self, *outcomes: PartitionOutcome) -> int:
        return sum(1 for r in self.results if r.outcome in outcomes)

    @property
    def exported(self) -> int:
        return self._count(PartitionOutcome.EXPORTED)

    @property
    def failed(self) -> int:
        return self._count(PartitionOutcome.EXPORT_FAILED, PartitionOutcome.VERIFICATION_FAILED)

    @property
    def skipped(self) -> int:
        return self._count(PartitionOutcome.SKIPPED)

    @property
    def total_records(self) -> int:
        return sum(r.operation.record_count or 0 for r in self.results
                   if r.operation is not None and r.outcome == PartitionOutcome.EXPORTED)

    @property
    def succeeded(self) -> bool:
        return self.failed == 0 and self.skipped == 0 and not self.cancelled


def new_correlation_id() -> str:
    """Fresh client request id for one export submission"""
    return f"{CLIENT_REQUEST_ID_PREFIX};{uuid.uuid4()}"


class PartitionedExportDriver:
    """
    Exports a table to an external table one ingestion time partition at a time
    """

    def __init__(self, config: ExportConfig, query_service, admin_service,
                 correlation_id_factory: Callable[[], str] = new_correlation_id):
        config.validate()
        self.config = config
        self.query_service = query_service
        self.admin_service = admin_service
        self.correlation_id_factory = correlation_id_factory

    def plan(self) -> Tuple[TimeRange, List[Partition]]:
        """
        Fetch the ingestion time range and split it into partitions

        Raises:
            RangeQueryError: the min/max query failed; nothing has been submitted
        """
        analyzer = IngestionTimeRangeAnalyzer(self.query_service, self.config.database, self.config.table_name)
        time_range = analyzer.get_time_range()
        if self.config.range_start or self.config.range_end:
            time_range = time_range.clip(self.config.range_start, self.config.range_end)
            logger.info("Restricted export window",
                        start=time_range.start.isoformat(), end=time_range.end.isoformat())
        partitions = calculate_partitions(time_range, self.config.interval)
        logger.info(f"Calculated {len(partitions)} partitions for {self.config.table_name}",
                    interval=str(self.config.interval))
        return time_range, partitions

    def build_command(self, partition: Partition) -> ExportToExternalTableCommand:
        return ExportToExternalTableCommand(
            external_table_name=self.config.external_table_name,
            table_name=self.config.table_name,
            row_filter=partition.row_filter(),
            size_limit_bytes=self.config.size_limit_bytes,
            persist_details=True,
            is_async=True
        )

    def fetch_record_count(self, operation_id: str, client_request_id: Optional[str] = None) -> int:
        """Sum NumRecords over the persisted detail records of a completed export"""
        command = OperationRecordCountCommand(operation_id).render()
        try:
            rows = self.admin_service.execute_control_command(
                self.config.database, command, client_request_id=client_request_id)
        except ServiceError as e:
            raise RecordCountQueryError(str(e), operation_id, client_request_id) from e

        rows = list(rows)
        if len(rows) != 1:
            raise RecordCountQueryError(
                f"Record count query returned {len(rows)} rows, expected 1", operation_id, client_request_id)
        value = row_value(rows[0], 'NumRecords', 0)
        if value is None:
            return 0
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise RecordCountQueryError(
                f"Record count {value!r} is not a number", operation_id, client_request_id) from e

    def export_partition(self, partition: Partition,
                         cancel_event: Optional[threading.Event] = None) -> PartitionResult:
        """Submit, await and verify the export of one partition"""
        correlation_id = self.correlation_id_factory()
        logger.partition_started(partition.index, partition.begin.isoformat(),
                                 partition.end.isoformat(), correlation_id)
        start_time = time.time()
        command = self.build_command(partition).render()

        try:
            operation = self.admin_service.execute_async_control_command(
                self.config.database,
                command,
                self.config.wait_timeout,
                self.config.poll_interval,
                client_request_id=correlation_id,
                cancel_event=cancel_event
            )
        except ServiceError as e:
            operation_id = e.operation_id if isinstance(e, OperationWaitError) else None
            operation = ExportOperation(operation_id, OperationState.OTHER, "Unknown", str(e),
                                        client_request_id=correlation_id)
            logger.partition_failed(operation_id, type(e).__name__, str(e))
            return PartitionResult(partition, PartitionOutcome.EXPORT_FAILED, operation, correlation_id,
                                   error=str(e), duration=time.time() - start_time)

        if operation.state != OperationState.COMPLETED:
            if operation.state == OperationState.TIMED_OUT:
                logger.warning(f"Operation {operation.operation_id} may still be running; check "
                               f".show operations {operation.operation_id} before exporting this partition again",
                               client_request_id=correlation_id)
            logger.partition_failed(operation.operation_id, operation.raw_state or operation.state.value,
                                    operation.status_message)
            return PartitionResult(partition, PartitionOutcome.EXPORT_FAILED, operation, correlation_id,
                                   error=operation.status_message, duration=time.time() - start_time)

        try:
            operation.record_count = self.fetch_record_count(operation.operation_id, correlation_id)
        except RecordCountQueryError as e:
            logger.partition_unverified(operation.operation_id, str(e))
            return PartitionResult(partition, PartitionOutcome.VERIFICATION_FAILED, operation, correlation_id,
                                   error=str(e), duration=time.time() - start_time)

        logger.partition_exported(operation.operation_id, operation.raw_state or operation.state.value,
                                  operation.record_count)
        return PartitionResult(partition, PartitionOutcome.EXPORTED, operation, correlation_id,
                               duration=time.time() - start_time)

    def _stop_reason(self, result: PartitionResult, cancel_event: threading.Event) -> Optional[str]:
        if cancel_event.is_set() or (result.operation is not None
                                     and result.operation.state == OperationState.CANCELLED):
            return "cancelled"
        if result.outcome != PartitionOutcome.EXPORTED and self.config.failure_policy == FailurePolicy.ABORT:
            return "aborted"
        return None

    def _run_sequential(self, partitions: List[Partition], cancel_event: threading.Event,
                        stop_reasons: List[str]) -> List[PartitionResult]:
        results = []
        for partition in partitions:
            if stop_reasons or cancel_event.is_set():
                results.append(PartitionResult(partition, PartitionOutcome.SKIPPED))
                continue
            try:
                result = self.export_partition(partition, cancel_event)
            finally:
                logger.clear_partition_context()
            results.append(result)
            reason = self._stop_reason(result, cancel_event)
            if reason:
                stop_reasons.append(reason)
        return results

    def _run_parallel(self, partitions: List[Partition], cancel_event: threading.Event,
                      stop_reasons: List[str]) -> List[PartitionResult]:
        stop_submitting = threading.Event()
        lock = threading.Lock()

        def export_one(partition: Partition) -> PartitionResult:
            if stop_submitting.is_set() or cancel_event.is_set():
                return PartitionResult(partition, PartitionOutcome.SKIPPED)
            try:
                result = self.export_partition(partition, cancel_event)
            finally:
                logger.clear_partition_context()
            reason = self._stop_reason(result, cancel_event)
            if reason:
                with lock:
                    stop_reasons.append(reason)
                stop_submitting.set()
            return result

        results = []
        with ThreadPoolExecutor(max_workers=self.config.max_workers,
                                thread_name_prefix="ExportPartition") as executor:
            futures = [executor.submit(export_one, partition) for partition in partitions]
            for future in as_completed(futures):
                results.append(future.result())

        results.sort(key=lambda r: r.partition.index)
        return results

    def run(self, cancel_event: Optional[threading.Event] = None) -> RunSummary:
        """
        Export every partition of the table's ingestion time range

        Args:
            cancel_event: Setting it ends the current wait and skips the remaining partitions

        Returns:
            RunSummary with one PartitionResult per partition, in time order

        Raises:
            RangeQueryError: the min/max query failed; no partition was submitted
        """
        cancel_event = cancel_event or threading.Event()
        summary = RunSummary(
            run_id=uuid.uuid4().hex[:8],
            table_name=self.config.table_name,
            external_table_name=self.config.external_table_name,
            started_at=datetime.now(timezone.utc)
        )

        time_range, partitions = self.plan()
        summary.time_range = time_range

        logger.run_started(summary.run_id, self.config.table_name, self.config.external_table_name,
                           len(partitions), time_range.start.isoformat(), time_range.end.isoformat())
        run_start = time.time()
        stop_reasons: List[str] = []
        try:
            if self.config.max_workers > 1 and len(partitions) > 1:
                summary.results = self._run_parallel(partitions, cancel_event, stop_reasons)
            else:
                summary.results = self._run_sequential(partitions, cancel_event, stop_reasons)

            summary.cancelled = "cancelled" in stop_reasons or cancel_event.is_set()
            summary.aborted = "aborted" in stop_reasons
            if summary.skipped:
                reason = "cancelled" if summary.cancelled else "aborted after a failed partition"
                logger.warning(f"Run {reason}: {summary.skipped} partitions were not submitted")

            logger.run_completed(time.time() - run_start, summary.exported, summary.failed, summary.skipped)
        finally:
            logger.clear_run_context()
            summary.finished_at = datetime.now(timezone.utc)

        return summary
