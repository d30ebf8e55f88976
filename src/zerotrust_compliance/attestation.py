"""Compliance attestation record and tier policy."""
from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .models import AMLRiskLevel, ComplianceLevel, KYCStatus, utcnow


def attestation_commitment(
    attestation_id: str,
    account_id: str,
    kyc_status: KYCStatus,
    aml_risk_level: AMLRiskLevel,
    sanctions_cleared: bool,
    created_at: datetime,
    expires_at: datetime,
) -> str:
    """SHA-256 over the canonical attestation fields."""
    data = json.dumps({
        "id": attestation_id,
        "account_id": account_id,
        "kyc_status": kyc_status.value,
        "aml_risk_level": aml_risk_level.value,
        "sanctions_cleared": sanctions_cleared,
        "created_at": created_at.isoformat(),
        "expires_at": expires_at.isoformat(),
    }, sort_keys=True)
    return hashlib.sha256(data.encode()).hexdigest()


@dataclass(frozen=True)
class ComplianceAttestation:
    """
    Time-bounded summary of an account's KYC, AML and sanctions outcome.

    Attestations are immutable. A refresh creates a new attestation that
    supersedes the previous one for the account.
    """
    account_id: str
    kyc_status: KYCStatus
    aml_risk_level: AMLRiskLevel
    sanctions_cleared: bool
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    proof_hash: str = ""

    def __post_init__(self):
        if not self.proof_hash:
            object.__setattr__(self, "proof_hash", self.compute_commitment())

    def compute_commitment(self) -> str:
        return attestation_commitment(
            self.id,
            self.account_id,
            self.kyc_status,
            self.aml_risk_level,
            self.sanctions_cleared,
            self.created_at,
            self.expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage/serialization."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "kyc_status": self.kyc_status.value,
            "aml_risk_level": self.aml_risk_level.value,
            "sanctions_cleared": self.sanctions_cleared,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "proof_hash": self.proof_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComplianceAttestation":
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            kyc_status=KYCStatus(data["kyc_status"]),
            aml_risk_level=AMLRiskLevel(data["aml_risk_level"]),
            sanctions_cleared=bool(data["sanctions_cleared"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            proof_hash=data.get("proof_hash", ""),
        )


def meets_compliance_level(
    attestation: ComplianceAttestation,
    required_level: ComplianceLevel,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check whether an attestation satisfies a compliance tier.

    Tiers are strictly increasing in strictness:
    - BASIC: KYC verified and sanctions cleared
    - STANDARD: BASIC and AML risk LOW or MEDIUM
    - ENHANCED: BASIC and AML risk LOW
    - INSTITUTIONAL_GRADE: ENHANCED and the attestation has not expired
    """
    basic = attestation.kyc_status == KYCStatus.VERIFIED and attestation.sanctions_cleared

    if required_level == ComplianceLevel.BASIC:
        return basic
    if required_level == ComplianceLevel.STANDARD:
        return basic and attestation.aml_risk_level in (AMLRiskLevel.LOW, AMLRiskLevel.MEDIUM)

    enhanced = basic and attestation.aml_risk_level == AMLRiskLevel.LOW
    if required_level == ComplianceLevel.ENHANCED:
        return enhanced
    if required_level == ComplianceLevel.INSTITUTIONAL_GRADE:
        return enhanced and not attestation.is_expired(now)

    raise ValueError(f"Unknown compliance level: {required_level}")


def highest_compliance_level(
    attestation: ComplianceAttestation,
    now: Optional[datetime] = None,
) -> Optional[ComplianceLevel]:
    """Strictest tier the attestation satisfies, or None."""
    met = None
    for level in ComplianceLevel:
        if not meets_compliance_level(attestation, level, now):
            break
        met = level
    return met
