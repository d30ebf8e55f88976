"""Exception hierarchy for the compliance core.

Every error raised by this package derives from ComplianceError, which carries:
- error_code: machine-readable code (e.g., "AUTHORIZATION_FAILURE")
- http_status: status the excluded API layer should map the error to
- retryable: whether the caller may retry the same operation
- details: additional context for structured responses

State machines never raise these for domain outcomes; they return a
TransitionResult carrying the error instead. The aggregator raises them.

Usage:
    from zerotrust_compliance.exceptions import (
        ComplianceError,
        VerificationFailure,
        ProofTimeoutError,
    )

    try:
        attestation = await aggregator.comprehensive_check(account_id)
    except ComplianceError as e:
        if e.retryable:
            ...
"""
from __future__ import annotations

from typing import Any, Optional, Type


class ComplianceError(Exception):
    """Base exception for all compliance errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "COMPLIANCE_ERROR"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Input & Domain Errors (4xx)
# =============================================================================

class ComplianceValidationError(ComplianceError):
    """Invalid input to a compliance operation."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class VerificationFailure(ComplianceError):
    """A hash or proof did not match the stored commitment."""

    error_code = "VERIFICATION_FAILURE"
    http_status = 422

    def __init__(
        self,
        domain: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.domain = str(domain)
        self.reason = reason
        details = details or {}
        details["domain"] = self.domain
        details["reason"] = reason
        super().__init__(f"{self.domain} verification failed: {reason}", details=details)


class AuthorizationFailure(ComplianceError):
    """Caller identity does not match the identity allowed to mutate a record."""

    error_code = "AUTHORIZATION_FAILURE"
    http_status = 403

    def __init__(
        self,
        domain: str,
        reason: str = "verifier identity mismatch",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.domain = str(domain)
        self.reason = reason
        details = details or {}
        details["domain"] = self.domain
        super().__init__(f"{self.domain} authorization failed: {reason}", details=details)


class AccountNotFoundError(ComplianceError):
    """No compliance record is registered for the account."""

    error_code = "ACCOUNT_NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        account_id: str,
        domain: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.account_id = account_id
        details = details or {}
        details["account_id"] = account_id
        if domain:
            details["domain"] = str(domain)
        super().__init__(f"Account '{account_id}' not found", details=details)


# =============================================================================
# Deployment Errors
# =============================================================================

class CompilationFailure(ComplianceError):
    """A state machine component failed to compile. Fatal to deployment."""

    error_code = "COMPILATION_FAILURE"
    http_status = 500
    retryable = False

    def __init__(
        self,
        reason: str,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        self.component = component
        details = details or {}
        if component:
            details["component"] = component
        details["reason"] = reason
        prefix = f"Failed to compile {component} component" if component else "Compilation failed"
        super().__init__(f"{prefix}: {reason}", details=details)


class ComplianceConfigurationError(ComplianceError):
    """Service is misconfigured."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


# =============================================================================
# Proof Engine & I/O Errors (5xx)
# =============================================================================

class ProofFailure(ComplianceError):
    """Proof generation or verification failed inside the proof engine."""

    error_code = "PROOF_FAILURE"
    http_status = 502

    def __init__(
        self,
        stage: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.stage = stage
        self.reason = reason
        details = details or {}
        details["stage"] = stage
        details["reason"] = reason
        super().__init__(f"Proof {stage} failed: {reason}", details=details)


class ProofGenerationFailure(ProofFailure):
    """The proof engine could not mint a proof."""

    error_code = "PROOF_GENERATION_FAILURE"

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("generation", reason, details=details)


class ProofVerificationFailure(ProofFailure):
    """The proof engine could not evaluate a proof."""

    error_code = "PROOF_VERIFICATION_FAILURE"

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("verification", reason, details=details)


class ComplianceTimeoutError(ComplianceError):
    """A blocking collaborator call exceeded its timeout."""

    error_code = "TIMEOUT_ERROR"
    http_status = 504
    retryable = True

    def __init__(
        self,
        message: str = "Operation timed out",
        operation: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, details=details)


class ProofTimeoutError(ProofFailure):
    """The proof engine did not answer in time."""

    error_code = "PROOF_TIMEOUT"
    http_status = 504
    retryable = True

    def __init__(
        self,
        stage: str,
        timeout_seconds: float,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["timeout_seconds"] = timeout_seconds
        super().__init__(stage, f"timed out after {timeout_seconds}s", details=details)


class StoreTimeoutError(ComplianceTimeoutError):
    """The attestation store did not answer in time."""

    error_code = "STORE_TIMEOUT"


class InternalError(ComplianceError):
    """Unexpected failure inside the compliance core."""

    error_code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        self.reason = reason
        super().__init__(f"Internal error: {reason}", details=details)


# =============================================================================
# Registry
# =============================================================================

EXCEPTION_REGISTRY: dict[str, Type[ComplianceError]] = {
    cls.error_code: cls
    for cls in (
        ComplianceError,
        ComplianceValidationError,
        VerificationFailure,
        AuthorizationFailure,
        AccountNotFoundError,
        CompilationFailure,
        ComplianceConfigurationError,
        ProofFailure,
        ProofGenerationFailure,
        ProofVerificationFailure,
        ComplianceTimeoutError,
        ProofTimeoutError,
        StoreTimeoutError,
        InternalError,
    )
}


def get_exception_class(error_code: str) -> Type[ComplianceError]:
    """Get the exception class for an error code.

    Returns ComplianceError if the code is unknown.
    """
    return EXCEPTION_REGISTRY.get(error_code, ComplianceError)
