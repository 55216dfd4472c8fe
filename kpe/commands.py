#!/usr/bin/env python3
"""
Typed Kusto control commands and queries
Each request is a small dataclass rendered to KQL text; values are escaped
so table names and interval boundaries cannot alter the command structure
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


INGESTION_TIME = "ingestion_time()"


def quote_name(name: str) -> str:
    """Bracket-quote an entity name: T -> ['T'], escaping quotes and backslashes"""
    if not name or not name.strip():
        raise ValueError("Entity name must be non-empty")
    escaped = name.replace("\\", "\\\\").replace("'", "\\'")
    return f"['{escaped}']"


def datetime_literal(value: datetime) -> str:
    """Render a datetime as a Kusto datetime() literal in UTC"""
    if not isinstance(value, datetime):
        raise TypeError(f"Expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return f"datetime({value.strftime('%Y-%m-%dT%H:%M:%S.%f')}Z)"


def quote_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


# ingestion_time() is kept in 100ns ticks while Python datetimes stop at microseconds
DATETIME_RESOLUTION = timedelta(microseconds=1)


@dataclass(frozen=True)
class IngestionTimeFilter:
    """
    Row filter on ingestion_time(): begin <= t < end.

    With end_inclusive the whole microsecond containing `end` is included, so a
    max ingestion time truncated to microseconds on the way back from the
    service still covers the row it was read from.
    """
    begin: datetime
    end: datetime
    end_inclusive: bool = False

    @property
    def upper_bound(self) -> datetime:
        """Exclusive upper bound written into the query"""
        return self.end + DATETIME_RESOLUTION if self.end_inclusive else self.end

    def render(self) -> str:
        return (f"{INGESTION_TIME} >= {datetime_literal(self.begin)} and "
                f"{INGESTION_TIME} < {datetime_literal(self.upper_bound)}")


@dataclass(frozen=True)
class IngestionTimeRangeQuery:
    """Single-row summary of the table's ingestion time span"""
    table_name: str

    def render(self) -> str:
        return (f"{quote_name(self.table_name)} | summarize "
                f"Min=min({INGESTION_TIME}), Max=max({INGESTION_TIME})")


@dataclass(frozen=True)
class ExportToExternalTableCommand:
    """.export [async] to table ExternalT with (...) <| T | where <filter>"""
    external_table_name: str
    table_name: str
    row_filter: IngestionTimeFilter
    size_limit_bytes: Optional[int] = None
    persist_details: bool = True
    is_async: bool = True

    def query(self) -> str:
        return f"{quote_name(self.table_name)} | where {self.row_filter.render()}"

    def render(self) -> str:
        properties = []
        if self.size_limit_bytes is not None:
            properties.append(f"sizeLimit={int(self.size_limit_bytes)}")
        properties.append(f"persistDetails={'true' if self.persist_details else 'false'}")

        parts = [".export"]
        if self.is_async:
            parts.append("async")
        parts.append(f"to table {quote_name(self.external_table_name)}")
        parts.append(f"with ({', '.join(properties)})")
        parts.append(f"<| {self.query()}")
        return " ".join(parts)


@dataclass(frozen=True)
class ShowOperationCommand:
    """.show operations <id>: current state of one admin operation"""
    operation_id: str

    def render(self) -> str:
        return f".show operations {validate_operation_id(self.operation_id)}"


@dataclass(frozen=True)
class OperationRecordCountCommand:
    """.show operation <id> details piped through a NumRecords sum"""
    operation_id: str

    def render(self) -> str:
        return (f".show operation {validate_operation_id(self.operation_id)} details "
                f"| summarize NumRecords=sum(NumRecords)")


def validate_operation_id(value: str) -> str:
    """Operation ids are GUIDs; anything else is rejected rather than quoted"""
    text = str(value).strip()
    if not text or not all(c in "0123456789abcdefABCDEF-" for c in text):
        raise ValueError(f"Invalid operation id: {value!r}")
    return text
