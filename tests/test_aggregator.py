"""
Tests for ComplianceAttestationAggregator.

Tests cover:
- Attestation construction and persistence
- Expiry derivation
- Fail-fast aggregation with sibling cancellation
- Compliance level checks against the stored attestation
- Proof minting and verification, including timeouts
- Factory wiring
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import ACCOUNT_ID, KYC_DATA_HASH
from zerotrust_compliance.aggregator import (
    ComplianceAttestationAggregator,
    create_compliance_aggregator,
    create_proof_engine,
)
from zerotrust_compliance.components import ComponentCompiler
from zerotrust_compliance.exceptions import (
    AccountNotFoundError,
    CompilationFailure,
    ComplianceConfigurationError,
    ComplianceValidationError,
    InternalError,
    ProofGenerationFailure,
    ProofTimeoutError,
    StoreTimeoutError,
    VerificationFailure,
)
from zerotrust_compliance.models import (
    AMLRiskLevel,
    ComplianceLevel,
    KYCStatus,
    SanctionsStatus,
)
from zerotrust_compliance.proofs import HMACProofEngine, RemoteProofEngine


async def _hang(*args, **kwargs):
    await asyncio.sleep(10)


def _rewire(aggregator, **overrides):
    """Aggregator sharing the fixture's services with some collaborators replaced."""
    kwargs = dict(
        kyc=aggregator.kyc,
        aml=aggregator.aml,
        sanctions=aggregator.sanctions,
        proof_engine=aggregator.proof_engine,
        store=aggregator.store,
        clock=aggregator._clock,
    )
    kwargs.update(overrides)
    return ComplianceAttestationAggregator(**kwargs)


class TestComprehensiveCheck:
    """Tests for comprehensive_check()."""

    @pytest.mark.asyncio
    async def test_compliant_account(self, aggregator, compliant_account, clock):
        attestation = await aggregator.comprehensive_check(compliant_account)

        assert attestation.account_id == compliant_account
        assert attestation.kyc_status == KYCStatus.VERIFIED
        assert attestation.aml_risk_level == AMLRiskLevel.LOW
        assert attestation.sanctions_cleared is True
        assert attestation.created_at == clock.now
        assert attestation.expires_at == clock.now + timedelta(days=90)
        assert await aggregator.store.get(compliant_account) == attestation

    @pytest.mark.asyncio
    async def test_expiry_capped_by_kyc(self, aggregator, compliant_account, clock):
        """expires_at is the sooner of KYC expiry and the validity window."""
        kyc_expires_at = aggregator.kyc.get(compliant_account).status().expires_at
        clock.advance(days=300)

        attestation = await aggregator.comprehensive_check(compliant_account)

        assert attestation.expires_at == kyc_expires_at

    @pytest.mark.asyncio
    async def test_copies_domain_state(self, aggregator, compliant_account):
        aggregator.aml.get(compliant_account).assess(15_000, "wire", 5)
        aggregator.sanctions.get(compliant_account).update_status(SanctionsStatus.FLAGGED, "review")

        attestation = await aggregator.comprehensive_check(compliant_account)

        assert attestation.aml_risk_level == AMLRiskLevel.MEDIUM
        assert attestation.sanctions_cleared is False

    @pytest.mark.asyncio
    async def test_unverified_kyc(self, aggregator):
        aggregator.kyc.register("acct_new", KYC_DATA_HASH)
        aggregator.aml.register("acct_new")
        aggregator.sanctions.register("acct_new")

        attestation = await aggregator.comprehensive_check("acct_new")

        assert attestation.kyc_status == KYCStatus.PENDING
        assert not aggregator.meets_compliance_level(attestation, ComplianceLevel.BASIC)

    @pytest.mark.asyncio
    async def test_unscreened_account_not_cleared(self, aggregator, verifier):
        machine = aggregator.kyc.register("acct_new", KYC_DATA_HASH)
        machine.verify(KYC_DATA_HASH, verifier, ComplianceLevel.STANDARD)
        aggregator.aml.register("acct_new")
        aggregator.sanctions.register("acct_new")

        attestation = await aggregator.comprehensive_check("acct_new")

        assert attestation.sanctions_cleared is False
        assert not aggregator.meets_compliance_level(attestation, ComplianceLevel.BASIC)

    @pytest.mark.asyncio
    async def test_new_attestation_supersedes(self, aggregator, compliant_account, clock):
        first = await aggregator.comprehensive_check(compliant_account)
        clock.advance(hours=1)
        second = await aggregator.update_compliance_status(compliant_account)

        assert second.id != first.id
        assert await aggregator.get_compliance_status(compliant_account) == second
        assert aggregator.store.history(compliant_account) == [first, second]


class TestFailFast:
    """Tests for fail-fast aggregation."""

    @pytest.mark.asyncio
    async def test_sanctions_failure_aborts_without_storing(self, aggregator, compliant_account):
        aggregator.sanctions.screen_account = AsyncMock(side_effect=RuntimeError("list unavailable"))

        with pytest.raises(VerificationFailure) as exc_info:
            await aggregator.comprehensive_check(compliant_account)

        assert exc_info.value.domain == "sanctions"
        assert await aggregator.store.get(compliant_account) is None

    @pytest.mark.asyncio
    async def test_domain_errors_propagate_unchanged(self, aggregator):
        with pytest.raises(AccountNotFoundError):
            await aggregator.comprehensive_check("acct_unknown")
        assert await aggregator.store.get("acct_unknown") is None

    @pytest.mark.asyncio
    async def test_slow_siblings_cancelled(self, aggregator, compliant_account):
        cancelled = asyncio.Event()

        async def slow_assessment(account_id):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        aggregator.aml.assess_account = slow_assessment
        aggregator.sanctions.screen_account = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(VerificationFailure):
            await asyncio.wait_for(aggregator.comprehensive_check(compliant_account), timeout=2)

        assert cancelled.is_set()
        assert await aggregator.store.get(compliant_account) is None

    @pytest.mark.asyncio
    async def test_store_get_failure_wrapped(self, aggregator):
        store = Mock()
        store.get = AsyncMock(side_effect=ConnectionError("store down"))
        broken = _rewire(aggregator, store=store)

        with pytest.raises(InternalError):
            await broken.get_compliance_status(ACCOUNT_ID)

    @pytest.mark.asyncio
    async def test_store_timeout_is_retryable(self, aggregator, compliant_account):
        store = Mock()
        store.put = AsyncMock(side_effect=_hang)
        slow = _rewire(aggregator, store=store, store_timeout=0.05)

        with pytest.raises(StoreTimeoutError) as exc_info:
            await slow.comprehensive_check(compliant_account)

        assert exc_info.value.retryable is True


class TestComplianceLevel:
    """Tests for check_compliance_level()."""

    @pytest.mark.asyncio
    async def test_no_attestation_is_not_compliant(self, aggregator, compliant_account):
        assert await aggregator.check_compliance_level(compliant_account, ComplianceLevel.BASIC) is False

    @pytest.mark.asyncio
    async def test_levels_after_check(self, aggregator, compliant_account):
        await aggregator.comprehensive_check(compliant_account)

        for level in ComplianceLevel:
            assert await aggregator.check_compliance_level(compliant_account, level)

    @pytest.mark.asyncio
    async def test_institutional_lapses_with_time(self, aggregator, compliant_account, clock):
        await aggregator.comprehensive_check(compliant_account)
        clock.advance(days=91)

        assert await aggregator.check_compliance_level(compliant_account, ComplianceLevel.ENHANCED)
        assert not await aggregator.check_compliance_level(
            compliant_account, ComplianceLevel.INSTITUTIONAL_GRADE
        )


class TestProofs:
    """Tests for create_compliance_proof() and verify_compliance_proof()."""

    @pytest.mark.asyncio
    async def test_proof_round_trip(self, aggregator, compliant_account):
        proof = await aggregator.create_compliance_proof(compliant_account)

        assert isinstance(proof, str)
        assert KYC_DATA_HASH not in proof
        assert await aggregator.verify_compliance_proof(proof, compliant_account) is True
        assert await aggregator.verify_compliance_proof(proof, "acct_other") is False

    @pytest.mark.asyncio
    async def test_blocked_account_gets_no_proof(self, aggregator, compliant_account):
        aggregator.sanctions.get(compliant_account).update_status(SanctionsStatus.BLOCKED, "list hit")

        with pytest.raises(ProofGenerationFailure):
            await aggregator.create_compliance_proof(compliant_account)

    @pytest.mark.asyncio
    async def test_proof_checked_against_required_level(self, aggregator, compliant_account):
        aggregator.aml.get(compliant_account).assess(15_000, "wire", 5)
        proof = await aggregator.create_compliance_proof(compliant_account)

        assert await aggregator.verify_compliance_proof(
            proof, compliant_account, ComplianceLevel.STANDARD
        ) is True
        assert await aggregator.verify_compliance_proof(
            proof, compliant_account, ComplianceLevel.ENHANCED
        ) is False

    @pytest.mark.asyncio
    async def test_expired_proof_rejected(self, aggregator, compliant_account, clock):
        proof = await aggregator.create_compliance_proof(compliant_account)
        clock.advance(days=90)
        assert await aggregator.verify_compliance_proof(proof, compliant_account) is False

    @pytest.mark.asyncio
    async def test_verification_does_not_mutate(self, aggregator, compliant_account):
        proof = await aggregator.create_compliance_proof(compliant_account)
        current = await aggregator.get_compliance_status(compliant_account)

        await aggregator.verify_compliance_proof(proof, compliant_account)

        assert aggregator.store.history(compliant_account) == [current]

    @pytest.mark.asyncio
    async def test_empty_proof(self, aggregator):
        assert await aggregator.verify_compliance_proof("", ACCOUNT_ID) is False

    @pytest.mark.asyncio
    async def test_oversized_proof(self, aggregator):
        small = _rewire(aggregator, max_proof_size=16)
        with pytest.raises(ComplianceValidationError):
            await small.verify_compliance_proof("x" * 17, ACCOUNT_ID)

    @pytest.mark.asyncio
    async def test_verification_disabled(self, aggregator):
        disabled = _rewire(aggregator, enable_proof_verification=False)
        with pytest.raises(ComplianceConfigurationError):
            await disabled.verify_compliance_proof("proof", ACCOUNT_ID)

    @pytest.mark.asyncio
    async def test_generation_timeout_is_retryable(self, aggregator, compliant_account):
        engine = Mock()
        engine.generate_proof = AsyncMock(side_effect=_hang)
        slow = _rewire(aggregator, proof_engine=engine, proof_generation_timeout=0.05)

        with pytest.raises(ProofTimeoutError) as exc_info:
            await slow.create_compliance_proof(compliant_account)

        assert exc_info.value.retryable is True
        assert exc_info.value.stage == "generation"

    @pytest.mark.asyncio
    async def test_verification_timeout(self, aggregator):
        engine = Mock()
        engine.verify_proof = AsyncMock(side_effect=_hang)
        slow = _rewire(aggregator, proof_engine=engine, proof_verification_timeout=0.05)

        with pytest.raises(ProofTimeoutError) as exc_info:
            await slow.verify_compliance_proof("proof", ACCOUNT_ID)

        assert exc_info.value.stage == "verification"


class TestFactory:
    """Tests for create_compliance_aggregator()."""

    def test_local_engine_from_settings(self, settings, clock):
        aggregator = create_compliance_aggregator(settings=settings, clock=clock)
        assert isinstance(aggregator.proof_engine, HMACProofEngine)

    def test_remote_engine_timeouts(self, settings):
        settings.proof_engine.mode = "remote"
        settings.proof_engine.remote_endpoint = "https://prover.test"

        engine = create_proof_engine(settings)

        assert isinstance(engine, RemoteProofEngine)
        assert engine._generation_timeout_seconds == settings.attestation.proof_generation_timeout_seconds
        assert engine._timeout_seconds == settings.attestation.proof_verification_timeout_seconds

    def test_kyc_uses_proof_engine_for_commitments(self, aggregator, verifier):
        machine = aggregator.kyc.register(ACCOUNT_ID, KYC_DATA_HASH)
        assert machine.verify_proof(KYC_DATA_HASH) is True

    def test_compilation_failure_halts_wiring(self, settings):
        compiler = Mock(spec=ComponentCompiler)
        compiler.compile.side_effect = CompilationFailure("bad layout", component="kyc")

        with pytest.raises(CompilationFailure):
            create_compliance_aggregator(settings=settings, compiler=compiler)
