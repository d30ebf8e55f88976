"""
Pytest configuration for zerotrust-compliance tests.
"""
from __future__ import annotations

import hashlib
import os
from datetime import datetime, timedelta, timezone

import pytest

# Set test environment
os.environ.setdefault("ZEROTRUST_ENVIRONMENT", "dev")
os.environ.setdefault("ZEROTRUST_PROOF_ENGINE__SECRET_KEY", "test-proof-secret-for-testing-only")

from zerotrust_compliance import (
    ComplianceLevel,
    ComplianceSettings,
    VerifierIdentity,
    create_compliance_aggregator,
)
from zerotrust_compliance.sanctions import ScreeningProof, screening_commitment

ACCOUNT_ID = "acct_1234567890abcdef"
KYC_DATA_HASH = hashlib.sha256(b"kyc-evidence").hexdigest()
IDENTITY_HASH = hashlib.sha256(b"identity").hexdigest()
SANCTIONS_LIST_HASH = hashlib.sha256(b"sanctions-list-v1").hexdigest()


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier():
    """Identity of the KYC provider that verifies accounts."""
    return VerifierIdentity.from_public_key(b"verifier-one-public-key")


@pytest.fixture
def other_verifier():
    return VerifierIdentity.from_public_key(b"verifier-two-public-key")


@pytest.fixture
def settings():
    return ComplianceSettings(_env_file=None)


@pytest.fixture
def aggregator(settings, clock):
    """Aggregator wired from default settings with the local proof engine."""
    return create_compliance_aggregator(settings=settings, clock=clock)


@pytest.fixture
def compliant_account(aggregator, verifier):
    """Account with verified KYC, fresh AML record and a clear sanctions screen."""
    machine = aggregator.kyc.register(ACCOUNT_ID, KYC_DATA_HASH)
    assert machine.verify(KYC_DATA_HASH, verifier, ComplianceLevel.STANDARD)
    aggregator.aml.register(ACCOUNT_ID)
    screening = aggregator.sanctions.register(ACCOUNT_ID)
    proof = ScreeningProof(screening_commitment(IDENTITY_HASH, SANCTIONS_LIST_HASH), result_code=0)
    assert screening.screen(IDENTITY_HASH, SANCTIONS_LIST_HASH, proof).cleared
    return ACCOUNT_ID
