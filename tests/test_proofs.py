"""
Tests for proof engines.

Tests cover:
- HMAC proof minting, verification and tamper detection
- Commitment opening
- Remote prover calls over a mocked HTTP transport
- Retry policy for non-idempotent generation and idempotent verification
"""
from __future__ import annotations

import asyncio
import base64
import json
from datetime import timedelta

import httpx
import pytest

from zerotrust_compliance.attestation import ComplianceAttestation
from zerotrust_compliance.exceptions import (
    ProofGenerationFailure,
    ProofTimeoutError,
    ProofVerificationFailure,
)
from zerotrust_compliance.models import AMLRiskLevel, ComplianceLevel, KYCStatus
from zerotrust_compliance.proofs import HashCommitmentVerifier, HMACProofEngine, RemoteProofEngine

SECRET = "unit-test-proof-secret-0123456789abcdef"


@pytest.fixture
def attestation(clock):
    return ComplianceAttestation(
        account_id="acct_1",
        kyc_status=KYCStatus.VERIFIED,
        aml_risk_level=AMLRiskLevel.MEDIUM,
        sanctions_cleared=True,
        created_at=clock.now,
        expires_at=clock.now + timedelta(days=90),
    )


@pytest.fixture
def engine(clock):
    return HMACProofEngine(SECRET, clock=clock)


class TestHashCommitmentVerifier:
    def test_matching(self):
        assert HashCommitmentVerifier().verify_commitment("abc", "abc") is True

    def test_mismatch(self):
        assert HashCommitmentVerifier().verify_commitment("abc", "abd") is False

    def test_empty_never_matches(self):
        assert HashCommitmentVerifier().verify_commitment("", "") is False


class TestHMACProofEngine:
    """Tests for the local proof engine."""

    @pytest.mark.asyncio
    async def test_generate_and_verify(self, engine, attestation):
        proof = await engine.generate_proof(attestation)

        assert await engine.verify_proof(proof, "acct_1") is True

    @pytest.mark.asyncio
    async def test_claims_reveal_no_evidence(self, engine, attestation):
        proof = await engine.generate_proof(attestation)
        claims = engine.decode_claims(proof)

        assert claims["cmt"] == attestation.proof_hash
        assert claims["tier"] == ComplianceLevel.STANDARD.value
        assert "kyc_status" not in claims
        assert "aml_risk_level" not in claims

    @pytest.mark.asyncio
    async def test_wrong_account(self, engine, attestation):
        proof = await engine.generate_proof(attestation)
        assert await engine.verify_proof(proof, "acct_2") is False

    @pytest.mark.asyncio
    async def test_expired(self, engine, attestation, clock):
        proof = await engine.generate_proof(attestation)
        clock.advance(days=90)
        assert await engine.verify_proof(proof, "acct_1") is False

    @pytest.mark.asyncio
    async def test_forged_with_other_key(self, attestation, clock):
        forger = HMACProofEngine("another-secret-entirely-0123456789", clock=clock)
        proof = await forger.generate_proof(attestation)

        engine = HMACProofEngine(SECRET, clock=clock)
        assert await engine.verify_proof(proof, "acct_1") is False

    @pytest.mark.asyncio
    async def test_tampered_claims(self, engine, attestation):
        """Extending the expiry invalidates the MAC."""
        proof = await engine.generate_proof(attestation)
        _, mac = proof.split(".")
        claims = engine.decode_claims(proof)
        claims["exp"] += 86_400 * 365
        payload = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode()
        encoded = base64.urlsafe_b64encode(payload).decode().rstrip("=")

        assert await engine.verify_proof(f"{encoded}.{mac}", "acct_1") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("garbage", ["", "no-dot", "!!!.abc", "e30.00"])
    async def test_malformed(self, engine, garbage):
        assert await engine.verify_proof(garbage, "acct_1") is False

    @pytest.mark.asyncio
    async def test_inconsistent_attestation_rejected(self, engine, clock):
        attestation = ComplianceAttestation(
            account_id="acct_1",
            kyc_status=KYCStatus.VERIFIED,
            aml_risk_level=AMLRiskLevel.LOW,
            sanctions_cleared=True,
            created_at=clock.now,
            expires_at=clock.now + timedelta(days=90),
            proof_hash="0" * 64,
        )
        with pytest.raises(ProofGenerationFailure):
            await engine.generate_proof(attestation)

    @pytest.mark.asyncio
    async def test_attestation_without_tier_not_proven(self, engine, clock):
        blocked = ComplianceAttestation(
            account_id="acct_1",
            kyc_status=KYCStatus.VERIFIED,
            aml_risk_level=AMLRiskLevel.LOW,
            sanctions_cleared=False,
            created_at=clock.now,
            expires_at=clock.now + timedelta(days=90),
        )
        with pytest.raises(ProofGenerationFailure):
            await engine.generate_proof(blocked)

    @pytest.mark.asyncio
    async def test_signed_claims_without_tier_rejected(self, engine, attestation):
        claims = engine.decode_claims(await engine.generate_proof(attestation))
        claims["tier"] = None
        payload = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode()
        encoded = base64.urlsafe_b64encode(payload).decode().rstrip("=")

        assert await engine.verify_proof(f"{encoded}.{engine._sign(payload)}", "acct_1") is False

    @pytest.mark.asyncio
    async def test_signed_claims_without_commitment_rejected(self, engine, attestation):
        claims = engine.decode_claims(await engine.generate_proof(attestation))
        del claims["cmt"]
        payload = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode()
        encoded = base64.urlsafe_b64encode(payload).decode().rstrip("=")

        assert await engine.verify_proof(f"{encoded}.{engine._sign(payload)}", "acct_1") is False

    @pytest.mark.asyncio
    async def test_required_level(self, engine, attestation):
        """MEDIUM AML risk attests STANDARD but not ENHANCED."""
        proof = await engine.generate_proof(attestation)

        assert engine.decode_claims(proof)["tier"] == "standard"
        assert await engine.verify_proof(proof, "acct_1", ComplianceLevel.BASIC) is True
        assert await engine.verify_proof(proof, "acct_1", ComplianceLevel.STANDARD) is True
        assert await engine.verify_proof(proof, "acct_1", ComplianceLevel.ENHANCED) is False

    def test_secret_required(self):
        with pytest.raises(ValueError):
            HMACProofEngine("")


def _remote(handler, **kwargs) -> RemoteProofEngine:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://prover.test",
    )
    return RemoteProofEngine("https://prover.test", http_client=client, **kwargs)


class TestRemoteProofEngine:
    """Tests for the remote prover client."""

    @pytest.mark.asyncio
    async def test_generate(self, attestation):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"proof": "remote-proof"})

        engine = _remote(handler)
        proof = await engine.generate_proof(attestation)

        assert proof == "remote-proof"
        assert seen["path"] == "/v1/proofs"
        assert seen["body"]["attestation"]["proof_hash"] == attestation.proof_hash
        await engine.close()

    @pytest.mark.asyncio
    async def test_verify(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(200, json={"valid": body["account_id"] == "acct_1"})

        engine = _remote(handler)

        assert await engine.verify_proof("p", "acct_1") is True
        assert await engine.verify_proof("p", "acct_2") is False

    @pytest.mark.asyncio
    async def test_verify_forwards_required_level(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"valid": True})

        engine = _remote(handler)
        await engine.verify_proof("p", "acct_1")
        await engine.verify_proof("p", "acct_1", ComplianceLevel.ENHANCED)

        assert "required_level" not in seen[0]
        assert seen[1]["required_level"] == "enhanced"

    @pytest.mark.asyncio
    async def test_generation_never_retried(self, attestation):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        engine = _remote(handler, max_retries=3)

        with pytest.raises(ProofGenerationFailure):
            await engine.generate_proof(attestation)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_verification_not_retried_by_default(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        engine = _remote(handler, max_retries=3)

        with pytest.raises(ProofVerificationFailure):
            await engine.verify_proof("p", "acct_1")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_idempotent_verification_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"valid": True})

        engine = _remote(handler, max_retries=1, idempotent_verification=True)

        assert await engine.verify_proof("p", "acct_1") is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_missing_proof_in_response(self, attestation):
        engine = _remote(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ProofGenerationFailure):
            await engine.generate_proof(attestation)

    @pytest.mark.asyncio
    async def test_missing_verdict_in_response(self):
        engine = _remote(lambda request: httpx.Response(200, json={"valid": "yes"}))
        with pytest.raises(ProofVerificationFailure):
            await engine.verify_proof("p", "acct_1")

    @pytest.mark.asyncio
    async def test_timeout(self, attestation):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={"proof": "late"})

        engine = _remote(handler, timeout_seconds=0.05)

        with pytest.raises(ProofTimeoutError) as exc_info:
            await engine.generate_proof(attestation)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_generation_uses_own_timeout(self, attestation):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.2)
            return httpx.Response(200, json={"proof": "slow-but-fine"})

        engine = _remote(handler, timeout_seconds=0.05, generation_timeout_seconds=5)

        assert await engine.generate_proof(attestation) == "slow-but-fine"
