#!/usr/bin/env python3
"""
Enhanced structured logging system for KPE (Kusto Partitioned Export)
Provides run/partition context, key=value fields and secret redaction
"""

import logging
import os
import re
import sys
import time
import threading
import psutil
from typing import Optional, Dict, Any
from dataclasses import dataclass


def redact_sensitive_data(text):
    """Redact sensitive information from log messages"""
    if not isinstance(text, str):
        text = str(text)

    # Patterns to redact
    patterns = [
        (r'((?:application\s*key|appkey|client[_\s]*secret|password|pwd|secret|token|api_key|access_key)\s*[:=]\s*)[^\s;,]+',
         r'\1***REDACTED***'),
        (r'://([^:/]+):([^@]+)@', r'://\1:***REDACTED***@'),
    ]

    redacted_text = text
    for pattern, replacement in patterns:
        redacted_text = re.sub(pattern, replacement, redacted_text, flags=re.IGNORECASE)

    return redacted_text


class SensitiveDataFilter(logging.Filter):
    """Logging filter to redact sensitive information"""
    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = redact_sensitive_data(record.msg)
        if record.args:
            record.args = tuple(redact_sensitive_data(arg) if isinstance(arg, str) else arg
                                for arg in record.args)
        return True


class ConsoleFormatter(logging.Formatter):
    """Formatter for the console sink; colours the line by severity when enabled"""

    COLORS = {
        logging.DEBUG: '\033[90m',
        logging.INFO: '\033[36m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[41m',
    }
    SUCCESS_COLOR = '\033[32m'
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, use_color: bool = False):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        line = super().format(record)
        if not self.use_color:
            return line
        fields = getattr(record, 'fields', {}) or {}
        if record.levelno == logging.INFO and fields.get('outcome') == 'exported':
            color = self.SUCCESS_COLOR
        else:
            color = self.COLORS.get(record.levelno, '')
        return f"{color}{line}{self.RESET}" if color else line


@dataclass
class RunContext:
    """Run-level context for structured logging"""
    run_id: str
    start_time: float
    table_name: str = ""
    total_partitions: int = 0
    completed_partitions: int = 0
    failed_partitions: int = 0
    exported_records: int = 0


@dataclass
class PartitionContext:
    """Partition-level context for structured logging"""
    index: int
    begin: str
    end: str
    correlation_id: str
    start_time: float


LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class EnhancedLogger:
    """
    Structured logger with run progress, partition context and key=value fields
    """

    def __init__(self, name: str = "KPE"):
        self.logger = logging.getLogger(name)
        self._setup_logger()

        # Thread-local storage for partition context (one per worker thread)
        self._local = threading.local()

        self._run_context: Optional[RunContext] = None
        self._lock = threading.Lock()

    def _setup_logger(self):
        """Configure structured logging format"""
        if not self.logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(ConsoleFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
            console_handler.addFilter(SensitiveDataFilter())
            self.logger.addHandler(console_handler)
            self.logger.setLevel(logging.INFO)
            self.logger.propagate = False

    def configure(self, level: str = "INFO", log_file: Optional[str] = None,
                  use_color: Optional[bool] = None):
        """Apply runtime settings: level, optional file sink, console colours"""
        self.logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

        if use_color is None:
            use_color = sys.stderr.isatty() and not os.environ.get('NO_COLOR')
        for handler in self.logger.handlers:
            if isinstance(handler.formatter, ConsoleFormatter):
                handler.formatter.use_color = use_color

        # At most one file sink; reconfiguring replaces it
        for handler in list(self.logger.handlers):
            if isinstance(handler, logging.FileHandler):
                self.logger.removeHandler(handler)
                handler.close()

        if log_file:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode='a')
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
            file_handler.addFilter(SensitiveDataFilter())
            self.logger.addHandler(file_handler)

    def set_run_context(self, run_id: str, table_name: str = "", total_partitions: int = 0):
        """Set run-level context shared by all threads"""
        with self._lock:
            self._run_context = RunContext(
                run_id=run_id,
                start_time=time.time(),
                table_name=table_name,
                total_partitions=total_partitions
            )

    def clear_run_context(self):
        with self._lock:
            self._run_context = None

    def set_partition_context(self, index: int, begin: str, end: str, correlation_id: str):
        """Set partition-level context for the current thread"""
        self._local.partition_context = PartitionContext(
            index=index,
            begin=begin,
            end=end,
            correlation_id=correlation_id,
            start_time=time.time()
        )

    def clear_partition_context(self):
        self._local.partition_context = None

    def get_run_context(self) -> Optional[RunContext]:
        return self._run_context

    def get_partition_context(self) -> Optional[PartitionContext]:
        return getattr(self._local, 'partition_context', None)

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable form"""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{seconds/60:.1f}m"
        else:
            return f"{seconds/3600:.1f}h"

    def _format_rows(self, count: int) -> str:
        """Format row count in human-readable form"""
        if count < 1000:
            return str(count)
        elif count < 1000000:
            return f"{count/1000:.1f}K"
        elif count < 1000000000:
            return f"{count/1000000:.1f}M"
        else:
            return f"{count/1000000000:.1f}B"

    def _get_memory_usage(self) -> str:
        """Get current memory usage"""
        try:
            process = psutil.Process()
            memory_mb = process.memory_info().rss / 1024 / 1024
            return f"{memory_mb:.1f}MB"
        except psutil.Error:
            return "Unknown"

    def _build_context_prefix(self) -> str:
        """Build context prefix for log messages"""
        parts = []

        run_ctx = self.get_run_context()
        if run_ctx:
            parts.append(f"RUN:{run_ctx.run_id}")
            if run_ctx.table_name:
                parts.append(f"TABLE:{run_ctx.table_name}")
            if run_ctx.total_partitions > 0:
                done = run_ctx.completed_partitions + run_ctx.failed_partitions
                parts.append(f"PARTITIONS:{done}/{run_ctx.total_partitions}")

        partition_ctx = self.get_partition_context()
        if partition_ctx:
            parts.append(f"PART:{partition_ctx.index}")

        if run_ctx:
            parts.append(f"MEM:{self._get_memory_usage()}")

        return "[" + "] [".join(parts) + "]" if parts else ""

    @staticmethod
    def _format_fields(fields: Dict[str, Any]) -> str:
        rendered = []
        for key, value in fields.items():
            if value is None:
                continue
            text = str(value)
            if not text or any(c.isspace() for c in text) or '"' in text:
                text = '"' + text.replace('"', '\\"') + '"'
            rendered.append(f"{key}={text}")
        return " ".join(rendered)

    def _log(self, level: int, message: str, fields: Dict[str, Any], exc_info=None):
        prefix = self._build_context_prefix()
        full_message = f"{prefix} {message}" if prefix else message
        rendered_fields = self._format_fields(fields)
        if rendered_fields:
            full_message = f"{full_message} {rendered_fields}"
        self.logger.log(level, full_message, exc_info=exc_info, extra={'fields': fields})

    def info(self, message: str, **fields):
        """Log info message with context and structured fields"""
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields):
        """Log warning message with context and structured fields"""
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, exc_info=None, **fields):
        """Log error message with context and structured fields"""
        self._log(logging.ERROR, message, fields, exc_info=exc_info)

    def debug(self, message: str, **fields):
        """Log debug message with context and structured fields"""
        self._log(logging.DEBUG, message, fields)

    # Run-level logging methods
    def run_started(self, run_id: str, table_name: str, external_table: str,
                    total_partitions: int, range_start: str, range_end: str):
        """Log run start"""
        self.set_run_context(run_id, table_name, total_partitions)
        self.info(f"Started partitioned export with {total_partitions} partitions",
                  external_table=external_table, range_start=range_start, range_end=range_end)

    def run_completed(self, duration: float, exported: int, failed: int, skipped: int = 0):
        """Log run completion"""
        run_ctx = self.get_run_context()
        records = run_ctx.exported_records if run_ctx else 0
        self.info(f"Partitioned export finished in {self._format_duration(duration)} - "
                  f"{exported} exported, {failed} failed, {skipped} skipped, "
                  f"{self._format_rows(records)} records")

    # Partition-level logging methods
    def partition_started(self, index: int, begin: str, end: str, correlation_id: str):
        """Log partition submission"""
        self.set_partition_context(index, begin, end, correlation_id)
        self.info("Executing export command", start=begin, end=end, client_request_id=correlation_id)

    def partition_exported(self, operation_id: str, state: str, record_count: int):
        """Log partition success"""
        with self._lock:
            if self._run_context:
                self._run_context.completed_partitions += 1
                self._run_context.exported_records += record_count or 0
        partition_ctx = self.get_partition_context()
        duration = time.time() - partition_ctx.start_time if partition_ctx else 0
        self.info(f"Operation {operation_id} completed with state {state} and exported "
                  f"{record_count} records",
                  operation_id=operation_id, state=state, records=record_count,
                  duration=self._format_duration(duration), outcome='exported')

    def partition_failed(self, operation_id: Optional[str], state: str, status: str):
        """Log partition failure"""
        with self._lock:
            if self._run_context:
                self._run_context.failed_partitions += 1
        self.error(f"Operation {operation_id} completed with state {state}. Status: {status}",
                   operation_id=operation_id, state=state, outcome='failed')

    def partition_unverified(self, operation_id: str, error: str):
        """Log a completed export whose record count could not be read"""
        with self._lock:
            if self._run_context:
                self._run_context.failed_partitions += 1
        self.error(f"Operation {operation_id} completed but its record count could not be verified: {error}",
                   operation_id=operation_id, outcome='unverified')


# Global logger instance
logger = EnhancedLogger("KPE")
