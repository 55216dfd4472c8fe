#!/usr/bin/env python3
"""
Ingestion-time partitioning for large table exports
Fetches a table's ingestion time span once, then tiles it into fixed-width partitions
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from dateutil.parser import isoparse

from kpe.commands import IngestionTimeFilter, IngestionTimeRangeQuery
from kpe.enhanced_logger import logger
from kpe.errors import RangeQueryError, ServiceError


@dataclass(frozen=True)
class TimeRange:
    """Ingestion time span of a table; empty when start == end"""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after end {self.end}")

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def clip(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> 'TimeRange':
        """Intersect with an optional [start, end] window; disjoint windows give an empty range"""
        new_start = max(self.start, start) if start else self.start
        new_end = min(self.end, end) if end else self.end
        if new_start >= new_end:
            return TimeRange(new_start, new_start)
        return TimeRange(new_start, new_end)


@dataclass(frozen=True)
class Partition:
    """One contiguous slice of the ingestion time range, exported as a unit"""
    index: int
    begin: datetime
    end: datetime
    is_last: bool = False

    def row_filter(self) -> IngestionTimeFilter:
        # The last partition ends at the table's max ingestion time, which is a real row
        return IngestionTimeFilter(self.begin, self.end, end_inclusive=self.is_last)

    def label(self) -> str:
        return f"[{self.begin.isoformat()}, {self.end.isoformat()}{']' if self.is_last else ')'}"


def calculate_partitions(time_range: TimeRange, interval: timedelta) -> List[Partition]:
    """
    Tile a time range into partitions of `interval`, the last one clamped to range end

    Args:
        time_range: Span to cover
        interval: Partition width, must be positive

    Returns:
        Partitions in increasing time order; empty for an empty range
    """
    if interval <= timedelta(0):
        raise ValueError(f"Partition interval must be positive, got {interval}")

    partitions = []
    cursor = time_range.start
    index = 0
    while cursor < time_range.end:
        partition_end = cursor + interval
        is_last = partition_end >= time_range.end
        partitions.append(Partition(
            index=index,
            begin=cursor,
            end=time_range.end if is_last else partition_end,
            is_last=is_last
        ))
        cursor = partition_end
        index += 1

    return partitions


def _to_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = isoparse(value)
    if not isinstance(value, datetime):
        raise RangeQueryError(f"Expected a datetime in the range query result, got {type(value).__name__}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def row_value(row: Any, name: str, position: int) -> Any:
    """Read a result cell by column name, falling back to its position"""
    try:
        return row[name]
    except (KeyError, TypeError, IndexError, ValueError):
        return row[position]


class IngestionTimeRangeAnalyzer:
    """
    Reads the min/max ingestion time of a table through the query service
    """

    def __init__(self, query_service, database: str, table_name: str):
        self.query_service = query_service
        self.database = database
        self.table_name = table_name

    def get_time_range(self) -> TimeRange:
        """
        Query min/max ingestion_time() of the table

        Returns:
            TimeRange; an empty table gives an empty range at the epoch

        Raises:
            RangeQueryError: query failed or did not return exactly one row
        """
        query = IngestionTimeRangeQuery(self.table_name).render()
        try:
            rows: Sequence[Any] = list(self.query_service.execute_query(self.database, query))
        except RangeQueryError:
            raise
        except ServiceError as e:
            raise RangeQueryError(f"Ingestion time range query failed for {self.table_name}: {e}") from e

        if len(rows) != 1:
            raise RangeQueryError(
                f"Ingestion time range query for {self.table_name} returned {len(rows)} rows, expected 1")

        try:
            min_value = row_value(rows[0], 'Min', 0)
            max_value = row_value(rows[0], 'Max', 1)
        except (KeyError, IndexError, TypeError) as e:
            raise RangeQueryError(f"Unexpected range query result for {self.table_name}: {rows[0]!r}") from e

        if min_value is None or max_value is None:
            logger.warning(f"Table {self.table_name} has no rows with an ingestion time, nothing to export")
            epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
            return TimeRange(epoch, epoch)

        try:
            time_range = TimeRange(_to_utc(min_value), _to_utc(max_value))
        except ValueError as e:
            raise RangeQueryError(f"Invalid ingestion time range for {self.table_name}: {e}") from e

        logger.info(f"Ingestion time range for {self.table_name}",
                    min=time_range.start.isoformat(), max=time_range.end.isoformat())
        if time_range.is_empty:
            logger.warning(f"Table {self.table_name} min and max ingestion time are equal, nothing to export")
        return time_range
