"""
Error taxonomy for KPE.

RangeQueryError is fatal for a run. Submission, wait and record count
failures are attributed to a single partition and never abort the run on
their own.
"""

from typing import Optional


class KpeError(Exception):
    """Base class for every error raised by KPE"""


class ConfigurationError(KpeError):
    """Configuration is missing or invalid"""


class ServiceError(KpeError):
    """A call to the Kusto query or admin endpoint failed"""

    def __init__(self, message: str, client_request_id: Optional[str] = None):
        super().__init__(message)
        self.client_request_id = client_request_id


class RangeQueryError(ServiceError):
    """The min/max ingestion time query failed or returned an unexpected shape"""


class CommandSubmissionError(ServiceError):
    """The export control command could not be submitted"""


class OperationWaitError(ServiceError):
    """Polling the status of a submitted operation failed"""

    def __init__(self, message: str, operation_id: Optional[str] = None,
                 client_request_id: Optional[str] = None):
        super().__init__(message, client_request_id)
        self.operation_id = operation_id


class RecordCountQueryError(ServiceError):
    """The exported record count could not be read for a completed operation"""

    def __init__(self, message: str, operation_id: Optional[str] = None,
                 client_request_id: Optional[str] = None):
        super().__init__(message, client_request_id)
        self.operation_id = operation_id
