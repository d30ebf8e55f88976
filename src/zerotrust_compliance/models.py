"""Shared compliance types."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .exceptions import ComplianceError

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def short_hash(value: Optional[str]) -> str:
    """Truncate a hex digest for log output."""
    if not value:
        return "-"
    return value[:12]


class ComplianceDomain(str, Enum):
    """Independent compliance checks merged into an attestation."""
    KYC = "kyc"
    AML = "aml"
    SANCTIONS = "sanctions"
    ATTESTATION = "attestation"


class KYCStatus(str, Enum):
    """Identity verification status."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


class AMLRiskLevel(str, Enum):
    """Transaction-derived risk level."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"  # Manual override only


class SanctionsStatus(str, Enum):
    """Sanctions-list screening status."""
    CLEAR = "clear"
    FLAGGED = "flagged"
    BLOCKED = "blocked"

    @property
    def severity(self) -> int:
        return _SANCTIONS_SEVERITY[self]


_SANCTIONS_SEVERITY = {
    SanctionsStatus.CLEAR: 0,
    SanctionsStatus.FLAGGED: 1,
    SanctionsStatus.BLOCKED: 2,
}


class ComplianceLevel(str, Enum):
    """Ordered compliance tiers, least to most strict."""
    BASIC = "basic"
    STANDARD = "standard"
    ENHANCED = "enhanced"
    INSTITUTIONAL_GRADE = "institutional_grade"

    @property
    def rank(self) -> int:
        return list(ComplianceLevel).index(self)


class ScreeningConfidence(str, Enum):
    """Confidence reported by a sanctions screen."""
    HIGH = "high"
    LOW = "low"


# Positional codes used by the fixed storage layout
KYC_STATUS_CODES = {
    KYCStatus.PENDING: 0,
    KYCStatus.VERIFIED: 1,
    KYCStatus.REJECTED: 2,
    KYCStatus.EXPIRED: 3,
}
AML_RISK_CODES = {
    AMLRiskLevel.LOW: 0,
    AMLRiskLevel.MEDIUM: 1,
    AMLRiskLevel.HIGH: 2,
    AMLRiskLevel.CRITICAL: 3,
}
SANCTIONS_STATUS_CODES = {
    SanctionsStatus.CLEAR: 0,
    SanctionsStatus.FLAGGED: 1,
    SanctionsStatus.BLOCKED: 2,
}
COMPLIANCE_LEVEL_CODES = {level: level.rank for level in ComplianceLevel}


def decode(codes: dict, code: int):
    """Reverse lookup for a positional storage code."""
    for member, value in codes.items():
        if value == code:
            return member
    raise ValueError(f"Unknown storage code: {code}")


@dataclass(frozen=True)
class VerifierIdentity:
    """Opaque hash identifying an authorized verifier.

    Compared by equality only. The digest is normally the SHA-256 of the
    verifier's public key.
    """
    digest: str

    @classmethod
    def from_public_key(cls, public_key: bytes) -> "VerifierIdentity":
        return cls(hashlib.sha256(public_key).hexdigest())

    def __str__(self) -> str:
        return short_hash(self.digest)


@dataclass
class TransitionResult:
    """Success/failure signal returned by state machine operations.

    Falsy on failure; `error` carries the typed reason.
    """
    success: bool
    error: Optional[ComplianceError] = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls) -> "TransitionResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: ComplianceError) -> "TransitionResult":
        return cls(success=False, error=error)
