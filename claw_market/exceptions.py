"""Custom exceptions for Claw Market."""

from enum import Enum


class ClawMarketError(Exception):
    """Base exception for Claw Market."""

    pass


class ConfigurationError(ClawMarketError):
    """Configuration-related errors."""

    pass


class ValidationError(ClawMarketError):
    """Validation errors."""

    pass


class CatalogValidationError(ValidationError):
    """Catalog document failed structural validation."""

    pass


class NetworkError(ClawMarketError):
    """Network errors (non-success status, transport failure)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        reason: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class DnsResolutionError(NetworkError):
    """Hostname could not be resolved."""

    def __init__(self, hostname: str, message: str = ""):
        super().__init__(message or f"Unable to resolve hostname: {hostname}")
        self.hostname = hostname


class FetchTimeoutError(NetworkError):
    """Network operation exceeded its deadline."""

    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(f"Request to {url} timed out after {timeout_seconds:g}s")
        self.url = url
        self.timeout_seconds = timeout_seconds


class InstallerError(ClawMarketError):
    """Package manager CLI failed."""

    pass


class SecurityPolicyError(ClawMarketError):
    """Request or input refused by security policy."""

    pass


class BlockedAddressError(SecurityPolicyError):
    """Destination resolves to a forbidden network address."""

    def __init__(self, url: str, reason: str, address: str | None = None):
        super().__init__(f"Blocked request to {url}: {reason}")
        self.url = url
        self.reason = reason
        self.address = address


class UnsafeNameError(SecurityPolicyError):
    """Unit name cannot be used as a path component."""

    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name


class ContentError(ClawMarketError):
    """Downloaded content is not a valid package."""

    pass


class ArchiveError(ContentError):
    """Archive could not be extracted safely."""

    pass


class ExtractionTimeoutError(ArchiveError):
    """Extraction was stopped at its deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Archive extraction timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class NotFoundError(ClawMarketError):
    """Unit not found in catalog or install records."""

    def __init__(self, unit_id: str, message: str = ""):
        super().__init__(message or f'"{unit_id}" not found')
        self.unit_id = unit_id


class ErrorKind(str, Enum):
    """Coarse error category surfaced in results."""

    VALIDATION = "validation"
    NETWORK = "network"
    SECURITY = "security"
    CONTENT = "content"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception onto its error category."""
    if isinstance(exc, SecurityPolicyError):
        return ErrorKind.SECURITY
    if isinstance(exc, ContentError):
        return ErrorKind.CONTENT
    if isinstance(exc, ValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, (NetworkError, InstallerError)):
        return ErrorKind.NETWORK
    if isinstance(exc, NotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, ConfigurationError):
        return ErrorKind.CONFIGURATION
    return ErrorKind.INTERNAL


_HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.SECURITY: 400,
    ErrorKind.CONTENT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NETWORK: 502,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.INTERNAL: 500,
}


def http_status_for(kind: ErrorKind) -> int:
    """HTTP status equivalent for an error category."""
    return _HTTP_STATUS_BY_KIND.get(kind, 500)
