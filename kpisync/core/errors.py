"""Error taxonomy for the sync orchestration engine."""

from enum import Enum


class KpiSyncError(Exception):
    """Base class for all engine errors."""

    # Message safe to show to a tenant. Subclasses override where the raw
    # message could carry upstream detail.
    public_text: str | None = None


class DuplicateScheduleError(KpiSyncError):
    """A schedule already exists for this (tenant, service) pair."""

    def __init__(self, tenant_id: int, service: str):
        super().__init__(f"Schedule already exists for tenant {tenant_id} and service {service}")
        self.tenant_id = tenant_id
        self.service = service


class ScheduleNotFoundError(KpiSyncError):
    pass


class InvalidCronExpression(KpiSyncError, ValueError):
    """Cron expression is not a valid 5-field expression."""

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Invalid cron expression '{expression}': {reason}")
        self.expression = expression


class InvalidTimezoneError(KpiSyncError, ValueError):
    def __init__(self, timezone: str):
        super().__init__(f"Unknown timezone '{timezone}'")
        self.timezone = timezone


class UnknownServiceError(KpiSyncError, ValueError):
    def __init__(self, service: str):
        super().__init__(f"Unknown service '{service}'")
        self.service = service


class NoConfigurationError(KpiSyncError):
    """Tenant has no enabled credential configured for the service."""

    def __init__(self, tenant_id: int, service: str, reason: str | None = None):
        message = reason or (
            f"No enabled service configuration found for {service}. "
            "Please configure and enable the service in Settings."
        )
        super().__init__(message)
        self.tenant_id = tenant_id
        self.service = service


class CredentialNotFoundError(KpiSyncError):
    def __init__(self, credential_id: int | None, tenant_id: int):
        super().__init__(f"Credential {credential_id} not found for tenant {tenant_id}")
        self.credential_id = credential_id
        self.tenant_id = tenant_id


class DecryptionError(KpiSyncError):
    """Ciphertext failed authentication: tampered, corrupted or wrong tenant."""

    public_text = "Stored credential could not be decrypted. Please re-enter it in Settings."


class EncryptionError(KpiSyncError):
    pass


class EnqueueFailure(KpiSyncError):
    """The queue refused or could not persist a job."""


class PersistenceUnavailable(KpiSyncError):
    """Relational store is unreachable or a required table is missing."""

    public_text = "Storage is temporarily unavailable."


class FailureCategory(str, Enum):
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    GENERIC = "generic"


TOKEN_EXPIRY_SIGNALS = ("token", "401", "unauthorized", "expired")
RATE_LIMIT_SIGNALS = ("rate limit", "rate-limit", "ratelimit", "429", "throttl", "too many requests")


def classify_failure(error: BaseException | str) -> FailureCategory:
    """Classify an executor error by the signals in its type name and message."""
    if isinstance(error, BaseException):
        text = f"{type(error).__name__} {error}".lower()
    else:
        text = error.lower()

    # Rate-limit signals win over token signals ("Exhausted property tokens")
    if any(signal in text for signal in RATE_LIMIT_SIGNALS):
        return FailureCategory.RATE_LIMITED
    if any(signal in text for signal in TOKEN_EXPIRY_SIGNALS):
        return FailureCategory.TOKEN_EXPIRED
    return FailureCategory.GENERIC


class ExecutorFailure(KpiSyncError):
    """Wraps whatever a sync executor raised or reported."""

    def __init__(self, service: str, message: str, category: FailureCategory | None = None):
        super().__init__(message)
        self.service = service
        self.category = category or classify_failure(message)

    @classmethod
    def from_exception(cls, service: str, exc: BaseException) -> "ExecutorFailure":
        return cls(service, str(exc) or type(exc).__name__, classify_failure(exc))


def public_message(exc: BaseException) -> str:
    """Redacted, tenant-visible message for an error."""
    from kpisync.services.audit import redact_text

    if isinstance(exc, KpiSyncError):
        if exc.public_text:
            return exc.public_text
        if isinstance(exc, ExecutorFailure) and exc.category == FailureCategory.TOKEN_EXPIRED:
            return f"Access token for {exc.service} has expired. Please reconnect the account."
        if isinstance(exc, ExecutorFailure) and exc.category == FailureCategory.RATE_LIMITED:
            return f"{exc.service} is rate limiting requests. The sync will be retried automatically."
        return redact_text(str(exc))
    return "Unexpected error. Please check the activity log for details."
