"""
EHR Sync Errors

Run-level errors (authentication, capability, protocol, timeout) escalate to
the caller of a sync run. Record-level errors are counted and never escalate.
"""


class EHRSyncError(Exception):
    """Base class for all sync errors."""


class AuthenticationError(EHRSyncError):
    """Token or endpoint discovery failed. Fatal for the run."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CapabilityDeniedError(EHRSyncError):
    """The EHR refused the operation for this credential or endpoint."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProtocolError(EHRSyncError):
    """Malformed or unexpected response from the EHR."""


class ExportFailedError(ProtocolError):
    """A bulk export job ended in the failed state."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ExportTimeoutError(EHRSyncError, TimeoutError):
    """Export status polling exhausted its attempt limit."""

    def __init__(self, attempts: int):
        super().__init__(f"Bulk export timed out after {attempts} polling attempts")
        self.attempts = attempts


class RecordError(EHRSyncError):
    """A single record failed translation, validation or upsert."""

    def __init__(self, message: str, resource_type: str | None = None, source_id: str | None = None):
        super().__init__(message)
        self.resource_type = resource_type
        self.source_id = source_id


class StoreError(EHRSyncError):
    """The local record store rejected an operation."""


class PersistenceWarning(EHRSyncError):
    """Reading or writing the sync watermark failed."""
