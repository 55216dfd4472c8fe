#!/usr/bin/env python3
"""
Kusto query and admin service adapters

Thin wrappers over azure-kusto-data's KustoClient that return plain row
lists, attach the correlation id to every request and translate SDK
exceptions into KPE's error types.
"""

import threading
from datetime import timedelta
from typing import Any, List, Optional, Tuple

from azure.kusto.data import ClientRequestProperties, KustoClient, KustoConnectionStringBuilder
from azure.kusto.data.exceptions import KustoError

from kpe.commands import ShowOperationCommand, validate_operation_id
from kpe.config import AuthMethod, ConnectionConfig
from kpe.enhanced_logger import logger
from kpe.errors import CommandSubmissionError, ConfigurationError, OperationWaitError, ServiceError
from kpe.operations import ExportOperation, wait_for_operation
from kpe.partitioning import row_value

APPLICATION_NAME = "KPE"

# Consecutive failed status polls tolerated before the wait is given up
MAX_CONSECUTIVE_POLL_FAILURES = 3


def build_connection_string(connection: ConnectionConfig) -> KustoConnectionStringBuilder:
    """
    Create the connection string builder for the configured AAD flow

    Args:
        connection: Cluster URI and authentication settings

    Returns:
        KustoConnectionStringBuilder ready for KustoClient
    """
    uri = connection.cluster_uri
    if connection.auth_method == AuthMethod.AZ_CLI:
        return KustoConnectionStringBuilder.with_az_cli_authentication(uri)
    elif connection.auth_method == AuthMethod.APP_KEY:
        return KustoConnectionStringBuilder.with_aad_application_key_authentication(
            uri, connection.client_id, connection.client_secret, connection.tenant_id)
    elif connection.auth_method == AuthMethod.INTERACTIVE:
        return KustoConnectionStringBuilder.with_interactive_login(uri)
    elif connection.auth_method == AuthMethod.MANAGED_IDENTITY:
        return KustoConnectionStringBuilder.with_aad_managed_service_identity_authentication(
            uri, client_id=connection.client_id)
    else:
        raise ConfigurationError(f"Unsupported authentication method: {connection.auth_method}")


def create_kusto_client(connection: ConnectionConfig) -> KustoClient:
    """Create a KustoClient for the cluster; shared by the query and admin services"""
    connection.validate()
    logger.info("Connecting to Kusto cluster",
                cluster=connection.cluster_uri, auth=connection.auth_method.value)
    return KustoClient(build_connection_string(connection))


def request_properties(client_request_id: Optional[str] = None) -> ClientRequestProperties:
    properties = ClientRequestProperties()
    properties.application = APPLICATION_NAME
    if client_request_id:
        properties.client_request_id = client_request_id
    return properties


def _primary_rows(response) -> List[Any]:
    tables = response.primary_results
    if not tables:
        return []
    return list(tables[0])


class KustoQueryService:
    """Executes read queries against a database"""

    def __init__(self, client: KustoClient):
        self.client = client

    def execute_query(self, database: str, query: str,
                      client_request_id: Optional[str] = None) -> List[Any]:
        try:
            response = self.client.execute_query(database, query, request_properties(client_request_id))
        except KustoError as e:
            raise ServiceError(f"Query failed on {database}: {e}", client_request_id) from e
        return _primary_rows(response)


class KustoAdminService:
    """Executes control commands, including async commands awaited to a terminal state"""

    def __init__(self, client: KustoClient):
        self.client = client

    def execute_control_command(self, database: str, command: str,
                                client_request_id: Optional[str] = None) -> List[Any]:
        try:
            response = self.client.execute_mgmt(database, command, request_properties(client_request_id))
        except KustoError as e:
            raise ServiceError(f"Control command failed on {database}: {e}", client_request_id) from e
        return _primary_rows(response)

    def submit_async_control_command(self, database: str, command: str,
                                     client_request_id: Optional[str] = None) -> str:
        """Submit an async control command and return its operation id"""
        try:
            rows = self.execute_control_command(database, command, client_request_id)
        except ServiceError as e:
            raise CommandSubmissionError(str(e), client_request_id) from e
        if len(rows) != 1:
            raise CommandSubmissionError(
                f"Async command returned {len(rows)} rows, expected one OperationId row", client_request_id)
        raw_id = row_value(rows[0], 'OperationId', 0)
        try:
            return validate_operation_id(raw_id)
        except ValueError as e:
            raise CommandSubmissionError(
                f"Async command returned an unusable operation id: {e}", client_request_id) from e

    def get_operation_status(self, database: str, operation_id: str,
                             client_request_id: Optional[str] = None) -> Tuple[str, str]:
        """Return (State, Status) of an operation from .show operations"""
        command = ShowOperationCommand(operation_id).render()
        try:
            rows = self.execute_control_command(database, command, client_request_id)
        except ServiceError as e:
            raise OperationWaitError(str(e), operation_id, client_request_id) from e
        if not rows:
            raise OperationWaitError(f"Operation {operation_id} not found", operation_id, client_request_id)
        row = rows[0]
        return str(row['State'] or ''), str(row['Status'] or '')

    def execute_async_control_command(self, database: str, command: str,
                                      timeout: timedelta, poll_interval: timedelta,
                                      client_request_id: Optional[str] = None,
                                      cancel_event: Optional[threading.Event] = None) -> ExportOperation:
        """
        Submit an async control command and block until it is terminal or the wait ends

        Raises:
            CommandSubmissionError: the command was rejected
            OperationWaitError: status polling kept failing
        """
        operation_id = self.submit_async_control_command(database, command, client_request_id)
        logger.debug("Async command accepted", operation_id=operation_id, client_request_id=client_request_id)

        consecutive_failures = [0]

        def fetch_status(op_id: str) -> Tuple[str, str]:
            try:
                status = self.get_operation_status(database, op_id, client_request_id)
            except OperationWaitError as e:
                consecutive_failures[0] += 1
                if consecutive_failures[0] >= MAX_CONSECUTIVE_POLL_FAILURES:
                    raise
                logger.warning(f"Status poll failed ({consecutive_failures[0]}/{MAX_CONSECUTIVE_POLL_FAILURES}): {e}",
                               operation_id=op_id)
                return "InProgress", ""
            consecutive_failures[0] = 0
            return status

        return wait_for_operation(operation_id, fetch_status, timeout, poll_interval,
                                  cancel_event=cancel_event, client_request_id=client_request_id)
