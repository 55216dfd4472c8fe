#!/usr/bin/env python3
"""
Export operation model and the bounded, cancellable status poll loop
"""

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional, Tuple

from kpe.enhanced_logger import logger


class OperationState(Enum):
    """Outcome of waiting on one submitted export"""
    COMPLETED = "Completed"
    IN_PROGRESS = "InProgress"
    FAILED = "Failed"
    TIMED_OUT = "TimedOutStillRunning"   # Wait gave up, server operation may still run
    CANCELLED = "WaitCancelled"          # Caller aborted the wait
    OTHER = "Other"

    @property
    def is_terminal(self) -> bool:
        return self != OperationState.IN_PROGRESS


# Service states that mean the operation has not finished yet
RUNNING_SERVICE_STATES = {"inprogress", "scheduled", "throttled", "pending"}


def parse_service_state(raw_state: Optional[str]) -> OperationState:
    """Map a Kusto .show operations State value onto OperationState"""
    normalized = (raw_state or "").strip().lower()
    if normalized == "completed":
        return OperationState.COMPLETED
    if normalized in RUNNING_SERVICE_STATES:
        return OperationState.IN_PROGRESS
    if normalized == "failed":
        return OperationState.FAILED
    return OperationState.OTHER


@dataclass
class ExportOperation:
    """One submitted export and what became of it"""
    operation_id: Optional[str]
    state: OperationState
    raw_state: str = ""
    status_message: str = ""
    record_count: Optional[int] = None
    client_request_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == OperationState.COMPLETED


StatusFetcher = Callable[[str], Tuple[str, str]]


def wait_for_operation(operation_id: str,
                       fetch_status: StatusFetcher,
                       timeout: timedelta,
                       poll_interval: timedelta,
                       cancel_event: Optional[threading.Event] = None,
                       client_request_id: Optional[str] = None,
                       clock: Callable[[], float] = time.monotonic) -> ExportOperation:
    """
    Poll an operation until it reaches a terminal state, the timeout elapses
    or cancel_event is set.

    Args:
        operation_id: Id returned by the async control command
        fetch_status: Callable returning (raw_state, status_message) for the id
        timeout: Overall bound on the wait
        poll_interval: Delay between status checks
        cancel_event: Setting it ends the wait with OperationState.CANCELLED
        client_request_id: Correlation id copied onto the result
        clock: Monotonic clock, injectable for tests

    Returns:
        ExportOperation in a terminal state (TIMED_OUT when the deadline passed first)
    """
    cancel_event = cancel_event or threading.Event()
    deadline = clock() + timeout.total_seconds()
    interval = poll_interval.total_seconds()
    raw_state, status = "", ""
    last_state = None

    while True:
        raw_state, status = fetch_status(operation_id)
        state = parse_service_state(raw_state)

        if raw_state != last_state:
            logger.debug("Operation state changed", operation_id=operation_id, state=raw_state)
            last_state = raw_state

        if state.is_terminal:
            return ExportOperation(operation_id, state, raw_state, status,
                                   client_request_id=client_request_id)

        remaining = deadline - clock()
        if remaining <= 0:
            return ExportOperation(
                operation_id, OperationState.TIMED_OUT, raw_state,
                f"Wait timed out after {timeout} with the operation still {raw_state or 'running'}",
                client_request_id=client_request_id)

        if cancel_event.wait(min(interval, remaining)):
            return ExportOperation(
                operation_id, OperationState.CANCELLED, raw_state,
                f"Wait cancelled with the operation still {raw_state or 'running'}",
                client_request_id=client_request_id)
