#!/usr/bin/env python3
"""
Configuration for KPE partitioned exports
Settings come from KPE_* environment variables and can be overridden from the CLI
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any

from kpe.errors import ConfigurationError


ONE_GB = 1024 * 1024 * 1024

DEFAULTS = {
    'interval_minutes': 30,
    'size_limit_bytes': ONE_GB,
    'wait_timeout_minutes': 60,
    'poll_interval_seconds': 1.0,
    'max_workers': 1,
    'failure_policy': 'continue',
    'auth_method': 'az_cli',
    'log_level': 'INFO',
}

# Prefix on every client request id, used to find this tool's commands in .show queries
CLIENT_REQUEST_ID_PREFIX = "KPE.ExportPartition"


class AuthMethod(Enum):
    """Supported AAD authentication flows"""
    AZ_CLI = "az_cli"
    APP_KEY = "app_key"
    INTERACTIVE = "interactive"
    MANAGED_IDENTITY = "managed_identity"


class FailurePolicy(Enum):
    """What the driver does after a partition that was not exported"""
    CONTINUE = "continue"   # Log and move on to the next partition
    ABORT = "abort"         # Stop the run, remaining partitions are skipped


@dataclass
class ConnectionConfig:
    """Kusto cluster connection configuration"""
    cluster_uri: str
    auth_method: AuthMethod = AuthMethod.AZ_CLI
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    tenant_id: Optional[str] = None

    def validate(self):
        if not self.cluster_uri or not self.cluster_uri.strip():
            raise ConfigurationError("Cluster URI is required (KPE_CLUSTER_URI)")
        if not self.cluster_uri.startswith("https://"):
            raise ConfigurationError(f"Cluster URI must start with https://: {self.cluster_uri}")
        if self.auth_method == AuthMethod.APP_KEY:
            missing = [name for name, value in (('client id', self.client_id),
                                                ('client secret', self.client_secret),
                                                ('tenant id', self.tenant_id)) if not value]
            if missing:
                raise ConfigurationError(f"app_key authentication requires {', '.join(missing)}")

    def __repr__(self):
        secret = '***REDACTED***' if self.client_secret else None
        return (f"ConnectionConfig(cluster_uri={self.cluster_uri!r}, auth_method={self.auth_method.value!r}, "
                f"client_id={self.client_id!r}, client_secret={secret!r}, tenant_id={self.tenant_id!r})")


@dataclass
class ExportConfig:
    """Everything one partitioned export run needs"""
    database: str
    table_name: str
    external_table_name: str
    interval: timedelta = timedelta(minutes=DEFAULTS['interval_minutes'])
    size_limit_bytes: int = DEFAULTS['size_limit_bytes']
    wait_timeout: timedelta = timedelta(minutes=DEFAULTS['wait_timeout_minutes'])
    poll_interval: timedelta = timedelta(seconds=DEFAULTS['poll_interval_seconds'])
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    max_workers: int = DEFAULTS['max_workers']
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    connection: Optional[ConnectionConfig] = field(default=None, repr=True)

    def validate(self):
        """Raise ConfigurationError for anything the driver cannot run with"""
        for label, value in (('database', self.database),
                             ('table name', self.table_name),
                             ('external table name', self.external_table_name)):
            if not value or not str(value).strip():
                raise ConfigurationError(f"{label} must be a non-empty string")
        if self.interval <= timedelta(0):
            raise ConfigurationError(f"interval must be positive, got {self.interval}")
        if self.size_limit_bytes <= 0:
            raise ConfigurationError(f"size limit must be positive, got {self.size_limit_bytes}")
        if self.poll_interval <= timedelta(0):
            raise ConfigurationError(f"poll interval must be positive, got {self.poll_interval}")
        if self.wait_timeout < self.poll_interval:
            raise ConfigurationError(
                f"wait timeout ({self.wait_timeout}) must not be shorter than the poll interval ({self.poll_interval})")
        if self.max_workers < 1:
            raise ConfigurationError(f"max workers must be at least 1, got {self.max_workers}")
        if self.range_start and self.range_end and self.range_start >= self.range_end:
            raise ConfigurationError("--from must be earlier than --to")
        if self.connection is not None:
            self.connection.validate()

    def with_overrides(self, **overrides) -> 'ExportConfig':
        """Copy with every non-None override applied"""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _env(name: str, default=None, environ: Optional[Dict[str, str]] = None):
    environ = os.environ if environ is None else environ
    value = environ.get(f"KPE_{name}")
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _parse_number(name: str, raw, cast):
    try:
        return cast(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"KPE_{name} must be a number, got {raw!r}")


def _parse_enum(name: str, raw: str, enum_cls):
    try:
        return enum_cls(raw.lower())
    except ValueError:
        choices = ', '.join(member.value for member in enum_cls)
        raise ConfigurationError(f"KPE_{name} must be one of {choices}, got {raw!r}")


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    try:
        value = datetime.fromisoformat(raw.strip().replace('Z', '+00:00'))
    except ValueError:
        raise ConfigurationError(f"Invalid timestamp {raw!r}, expected ISO-8601")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_connection_config(environ: Optional[Dict[str, str]] = None) -> ConnectionConfig:
    """Build the connection configuration from KPE_* environment variables"""
    return ConnectionConfig(
        cluster_uri=_env('CLUSTER_URI', '', environ),
        auth_method=_parse_enum('AUTH_METHOD', _env('AUTH_METHOD', DEFAULTS['auth_method'], environ), AuthMethod),
        client_id=_env('CLIENT_ID', None, environ),
        client_secret=_env('CLIENT_SECRET', None, environ),
        tenant_id=_env('TENANT_ID', None, environ),
    )


def load_export_config(environ: Optional[Dict[str, str]] = None) -> ExportConfig:
    """Build the export configuration from KPE_* environment variables"""
    interval = _parse_number('INTERVAL_MINUTES', _env('INTERVAL_MINUTES', DEFAULTS['interval_minutes'], environ), float)
    size_limit = _parse_number('SIZE_LIMIT_BYTES', _env('SIZE_LIMIT_BYTES', DEFAULTS['size_limit_bytes'], environ), int)
    timeout = _parse_number('WAIT_TIMEOUT_MINUTES', _env('WAIT_TIMEOUT_MINUTES', DEFAULTS['wait_timeout_minutes'], environ), float)
    poll = _parse_number('POLL_INTERVAL_SECONDS', _env('POLL_INTERVAL_SECONDS', DEFAULTS['poll_interval_seconds'], environ), float)
    workers = _parse_number('MAX_WORKERS', _env('MAX_WORKERS', DEFAULTS['max_workers'], environ), int)

    range_start = _env('FROM', None, environ)
    range_end = _env('TO', None, environ)

    return ExportConfig(
        database=_env('DATABASE', '', environ),
        table_name=_env('TABLE', '', environ),
        external_table_name=_env('EXTERNAL_TABLE', '', environ),
        interval=timedelta(minutes=interval),
        size_limit_bytes=size_limit,
        wait_timeout=timedelta(minutes=timeout),
        poll_interval=timedelta(seconds=poll),
        failure_policy=_parse_enum('FAILURE_POLICY', _env('FAILURE_POLICY', DEFAULTS['failure_policy'], environ), FailurePolicy),
        max_workers=workers,
        range_start=parse_timestamp(range_start) if range_start else None,
        range_end=parse_timestamp(range_end) if range_end else None,
        connection=load_connection_config(environ),
    )


def config_summary(config: ExportConfig) -> Dict[str, Any]:
    """Loggable view of the configuration, secrets excluded"""
    summary = {
        'database': config.database,
        'table': config.table_name,
        'external_table': config.external_table_name,
        'interval': str(config.interval),
        'size_limit_bytes': config.size_limit_bytes,
        'wait_timeout': str(config.wait_timeout),
        'poll_interval': str(config.poll_interval),
        'failure_policy': config.failure_policy.value,
        'max_workers': config.max_workers,
    }
    if config.connection is not None:
        summary['cluster'] = config.connection.cluster_uri
        summary['auth'] = config.connection.auth_method.value
    return summary
