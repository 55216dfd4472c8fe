#!/usr/bin/env python3
"""
Run report: one row per partition, written with Polars
"""

from pathlib import Path
from typing import Union

import polars as pl

from kpe.driver import RunSummary
from kpe.enhanced_logger import logger


REPORT_FORMATS = (".csv", ".parquet", ".json")

REPORT_SCHEMA = {
    'run_id': pl.Utf8,
    'partition': pl.Int64,
    'begin': pl.Datetime('us', 'UTC'),
    'end': pl.Datetime('us', 'UTC'),
    'end_inclusive': pl.Boolean,
    'outcome': pl.Utf8,
    'operation_id': pl.Utf8,
    'state': pl.Utf8,
    'status': pl.Utf8,
    'record_count': pl.Int64,
    'client_request_id': pl.Utf8,
    'duration_seconds': pl.Float64,
    'error': pl.Utf8,
}


def summary_to_dataframe(summary: RunSummary) -> pl.DataFrame:
    """Flatten a RunSummary into a DataFrame with REPORT_SCHEMA columns"""
    rows = []
    for result in summary.results:
        operation = result.operation
        rows.append({
            'run_id': summary.run_id,
            'partition': result.partition.index,
            'begin': result.partition.begin,
            'end': result.partition.end,
            'end_inclusive': result.partition.is_last,
            'outcome': result.outcome.value,
            'operation_id': operation.operation_id if operation else None,
            'state': (operation.raw_state or operation.state.value) if operation else None,
            'status': operation.status_message if operation else None,
            'record_count': operation.record_count if operation else None,
            'client_request_id': result.client_request_id,
            'duration_seconds': round(result.duration, 3),
            'error': result.error,
        })
    return pl.DataFrame(rows, schema=REPORT_SCHEMA)


def write_report(summary: RunSummary, path: Union[str, Path]) -> Path:
    """
    Write the run report; format follows the file extension

    Args:
        summary: Result of PartitionedExportDriver.run()
        path: Target file, .csv, .parquet or .json

    Returns:
        Path written
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in REPORT_FORMATS:
        raise ValueError(f"Unsupported report format {suffix!r}, use .csv, .parquet or .json")

    df = summary_to_dataframe(summary)
    path.parent.mkdir(parents=True, exist_ok=True)

    if suffix == '.csv':
        df.write_csv(path)
    elif suffix == '.parquet':
        df.write_parquet(path, compression="snappy")
    else:
        df.write_json(path)

    logger.info(f"Wrote run report with {df.height} partitions", path=str(path))
    return path
