"""Exception taxonomy for CRM synchronization.

Connection-level errors abort a run before or during processing and are
reported as the run's terminal failure. Record-level errors fail a single
record, get written to that record's SyncLogEntry, and the batch continues.

Connection-level:
    AuthenticationError, ConfigurationError (incl. UnsupportedProviderError),
    ProviderUnavailableError, SyncAlreadyRunningError
Record-level:
    ProviderError, RecordValidationError, PersistenceError (incl. EntityLockTimeoutError)
Contained:
    TransformationError never escapes the transformation engine.
"""

from __future__ import annotations


class CrmSyncError(Exception):
    """Base class for all CRM sync errors."""


class AuthenticationError(CrmSyncError):
    """Credentials are missing, invalid or expired."""


class ConfigurationError(CrmSyncError):
    """Connection or mapping configuration is missing or inconsistent."""


class UnsupportedProviderError(ConfigurationError):
    """No provider implementation is registered for the requested type."""

    def __init__(self, provider_type: str) -> None:
        super().__init__(f"CRM provider '{provider_type}' is not supported")
        self.provider_type = provider_type


class TransformationError(CrmSyncError):
    """A value could not be converted. Contained by the transformation engine."""


class ProviderError(CrmSyncError):
    """An external CRM call failed for one record."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderUnavailableError(ProviderError):
    """The external CRM could not be reached at all."""


class PersistenceError(CrmSyncError):
    """A ledger, log or entity store write failed."""


class EntityLockTimeoutError(PersistenceError):
    """Another flow held the per-record lock for too long."""


class RecordValidationError(CrmSyncError):
    """A record is missing a required mapped value."""


class SyncAlreadyRunningError(CrmSyncError):
    """Another run holds the connection's distributed lock."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"A sync is already running for connection {connection_id}")
        self.connection_id = connection_id


CONNECTION_LEVEL_ERRORS: tuple[type[CrmSyncError], ...] = (
    AuthenticationError,
    ConfigurationError,
    ProviderUnavailableError,
    SyncAlreadyRunningError,
)

RECORD_LEVEL_ERRORS: tuple[type[CrmSyncError], ...] = (
    ProviderError,
    RecordValidationError,
    PersistenceError,
)
