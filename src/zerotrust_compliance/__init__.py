"""
Privacy-preserving compliance core.

KYC, AML and sanctions state machines per account, merged by an aggregator
into expiring attestations that satisfy ordered compliance tiers. Evidence
stays behind commitments; proofs are minted and checked by a pluggable
proof engine.
"""
from __future__ import annotations

from .aggregator import (
    ComplianceAttestationAggregator,
    create_compliance_aggregator,
    create_proof_engine,
)
from .aml import (
    AMLAssessment,
    AMLRecord,
    AMLRiskEngine,
    AMLService,
    AMLStatus,
    SuspiciousFlag,
    TransactionStats,
    TransactionVelocityMonitor,
    risk_level_for_score,
)
from .attestation import (
    ComplianceAttestation,
    highest_compliance_level,
    meets_compliance_level,
)
from .components import (
    AML_COMPONENT,
    DEFAULT_COMPONENTS,
    KYC_COMPONENT,
    SANCTIONS_COMPONENT,
    CompiledComponent,
    ComponentCompiler,
    ComponentSpec,
    LocalComponentCompiler,
    deploy_components,
)
from .config import ComplianceSettings, load_settings
from .exceptions import (
    AccountNotFoundError,
    AuthorizationFailure,
    CompilationFailure,
    ComplianceConfigurationError,
    ComplianceError,
    ComplianceTimeoutError,
    ComplianceValidationError,
    InternalError,
    ProofFailure,
    ProofGenerationFailure,
    ProofTimeoutError,
    ProofVerificationFailure,
    StoreTimeoutError,
    VerificationFailure,
)
from .kyc import KYCRecord, KYCService, KYCSnapshot, KYCStateMachine
from .logging_config import account_context, setup_logging
from .models import (
    AMLRiskLevel,
    ComplianceDomain,
    ComplianceLevel,
    KYCStatus,
    SanctionsStatus,
    ScreeningConfidence,
    TransitionResult,
    VerifierIdentity,
)
from .proofs import (
    CommitmentVerifier,
    HashCommitmentVerifier,
    HMACProofEngine,
    ProofBlob,
    ProofEngine,
    RemoteProofEngine,
)
from .sanctions import (
    SanctionsRecord,
    SanctionsScreeningEngine,
    SanctionsService,
    SanctionsSnapshot,
    ScreeningOutcome,
    ScreeningProof,
    screening_commitment,
)
from .store import AttestationStore, InMemoryAttestationStore

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Aggregation
    "ComplianceAttestationAggregator",
    "create_compliance_aggregator",
    "create_proof_engine",
    "ComplianceAttestation",
    "meets_compliance_level",
    "highest_compliance_level",
    # KYC
    "KYCRecord",
    "KYCService",
    "KYCSnapshot",
    "KYCStateMachine",
    # AML
    "AMLAssessment",
    "AMLRecord",
    "AMLRiskEngine",
    "AMLService",
    "AMLStatus",
    "SuspiciousFlag",
    "TransactionStats",
    "TransactionVelocityMonitor",
    "risk_level_for_score",
    # Sanctions
    "SanctionsRecord",
    "SanctionsScreeningEngine",
    "SanctionsService",
    "SanctionsSnapshot",
    "ScreeningOutcome",
    "ScreeningProof",
    "screening_commitment",
    # Proofs & storage
    "CommitmentVerifier",
    "HashCommitmentVerifier",
    "HMACProofEngine",
    "ProofBlob",
    "ProofEngine",
    "RemoteProofEngine",
    "AttestationStore",
    "InMemoryAttestationStore",
    # Components
    "AML_COMPONENT",
    "DEFAULT_COMPONENTS",
    "KYC_COMPONENT",
    "SANCTIONS_COMPONENT",
    "CompiledComponent",
    "ComponentCompiler",
    "ComponentSpec",
    "LocalComponentCompiler",
    "deploy_components",
    # Types
    "AMLRiskLevel",
    "ComplianceDomain",
    "ComplianceLevel",
    "KYCStatus",
    "SanctionsStatus",
    "ScreeningConfidence",
    "TransitionResult",
    "VerifierIdentity",
    # Config & logging
    "ComplianceSettings",
    "load_settings",
    "account_context",
    "setup_logging",
    # Errors
    "AccountNotFoundError",
    "AuthorizationFailure",
    "CompilationFailure",
    "ComplianceConfigurationError",
    "ComplianceError",
    "ComplianceTimeoutError",
    "ComplianceValidationError",
    "InternalError",
    "ProofFailure",
    "ProofGenerationFailure",
    "ProofTimeoutError",
    "ProofVerificationFailure",
    "StoreTimeoutError",
    "VerificationFailure",
]
