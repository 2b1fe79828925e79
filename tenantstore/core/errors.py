from __future__ import annotations


class TenantStoreError(Exception):
    """Base error for tenantstore."""


class ConfigurationError(TenantStoreError):
    """Malformed DataStore spec detected before any connection attempt."""


class ConnectivityError(TenantStoreError):
    """Backend round trip failure tagged with a stable operation verb."""

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"cannot {operation}: {cause}")


class KubeApiError(TenantStoreError):
    """Kubernetes API request failure."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"{status_code}: {message}")


class NotFoundError(KubeApiError):
    """Requested Kubernetes object does not exist."""


class ConflictError(KubeApiError):
    """Concurrent modification of a generated object."""


class ConsistencyViolation(TenantStoreError):
    """Migration requested across driver kinds or to the bound DataStore."""


class MultiTenancyViolation(TenantStoreError):
    """DataStore driver cannot safely host another tenant."""


class MigrationNotSupportedError(TenantStoreError):
    """Driver offers no data migration primitive."""


class MigrationInProgressError(TenantStoreError):
    """Migration Job has not reported completion yet."""
