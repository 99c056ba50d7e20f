"""Eduverse-Engine exception hierarchy."""


class EduverseError(Exception):
    """Base exception for all Eduverse errors."""

    def __init__(self, message: str = "", code: str = "EDUVERSE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


# ── Domain rejections (business rules; never retried) ──


class DomainRejection(EduverseError):
    """Raised when a request violates a business rule."""

    def __init__(self, message: str = "Request rejected", code: str = "DOMAIN_REJECTION"):
        super().__init__(message, code=code)


class LicenseAlreadyActiveError(DomainRejection):
    """Raised when purchasing a license the subject already holds."""

    def __init__(self, message: str = "License is already active"):
        super().__init__(message, code="ALREADY_ACTIVE")


class LicenseNotFoundError(DomainRejection):
    """Raised when renewing a license that was never granted."""

    def __init__(self, message: str = "License not found"):
        super().__init__(message, code="NOT_FOUND")


class InvalidDurationError(DomainRejection):
    """Raised when a license duration is outside the allowed range."""

    def __init__(self, message: str = "Invalid license duration"):
        super().__init__(message, code="INVALID_DURATION")


class SectionNotStartedError(DomainRejection):
    """Raised when completing a section that has no start record."""

    def __init__(self, message: str = "Section has not been started"):
        super().__init__(message, code="SECTION_NOT_STARTED")


class UnknownSectionError(DomainRejection):
    """Raised when a section is not part of the course outline."""

    def __init__(self, message: str = "Section does not exist in course"):
        super().__init__(message, code="UNKNOWN_SECTION")


class NotEligibleError(DomainRejection):
    """Raised when one or more courses cannot be added to a credential."""

    def __init__(
        self,
        message: str = "Not eligible for certificate",
        reasons: dict[str, str] | None = None,
    ):
        self.reasons = reasons or {}
        super().__init__(message, code="NOT_ELIGIBLE")


# ── Ledger failures ──


class OperationRejectedError(EduverseError):
    """Raised when the ledger refuses an operation. Terminal."""

    def __init__(self, reason: str = "Operation rejected by ledger"):
        self.reason = reason
        super().__init__(reason, code="REJECTED")


class LedgerTransientError(EduverseError):
    """Raised by transports on network or broadcast failures. Retried internally."""

    def __init__(self, message: str = "Ledger temporarily unavailable"):
        super().__init__(message, code="LEDGER_TRANSIENT")


class OperationFailedError(EduverseError):
    """Raised when transient ledger failures exhaust the retry budget."""

    def __init__(self, message: str = "Operation failed after retries"):
        super().__init__(message, code="OPERATION_FAILED")


# ── Index failures ──


class IndexUnavailableError(EduverseError):
    """Raised by index transports when the index cannot be reached."""

    def __init__(self, message: str = "Index unavailable"):
        super().__init__(message, code="INDEX_UNAVAILABLE")
