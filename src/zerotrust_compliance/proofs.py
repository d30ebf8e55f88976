"""
Proof engine boundary.

The compliance core never builds or checks zero-knowledge proofs itself. It
talks to a ProofEngine that:
- mints an opaque proof bound to an attestation
- verifies a proof for an account
- opens commitments for the KYC and sanctions state machines

Two engines are provided:
- HMACProofEngine: local, keyed-MAC proofs for development and tests
- RemoteProofEngine: delegates to a prover service over HTTP
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .attestation import ComplianceAttestation, highest_compliance_level
from .exceptions import (
    ProofGenerationFailure,
    ProofTimeoutError,
    ProofVerificationFailure,
)
from .models import Clock, ComplianceLevel, short_hash, utcnow
from .retry import CircuitBreakerConfig, RetryableClient, RetryConfig

logger = logging.getLogger(__name__)

# Opaque, non-revealing proof artifact
ProofBlob = str

PROOF_VERSION = 1


class CommitmentVerifier(ABC):
    """Opens a commitment without revealing the committed data."""

    @abstractmethod
    def verify_commitment(
        self,
        commitment: str,
        expected: str,
        challenge: Optional[str] = None,
    ) -> bool:
        """Check that `commitment` opens to the stored `expected` hash."""


class HashCommitmentVerifier(CommitmentVerifier):
    """
    Constant-time comparison of a commitment against the stored hash.

    Stand-in for real zero-knowledge opening; the challenge is accepted but
    not bound.
    """

    def verify_commitment(
        self,
        commitment: str,
        expected: str,
        challenge: Optional[str] = None,
    ) -> bool:
        if not commitment or not expected:
            return False
        return hmac.compare_digest(commitment.encode(), expected.encode())


class ProofEngine(CommitmentVerifier):
    """Abstract interface for proof engines."""

    name: str = "proof_engine"

    @abstractmethod
    async def generate_proof(
        self,
        attestation: ComplianceAttestation,
    ) -> ProofBlob:
        """Mint a proof bound to the attestation. Raises ProofGenerationFailure."""

    @abstractmethod
    async def verify_proof(
        self,
        proof: ProofBlob,
        account_id: str,
        required_level: Optional[ComplianceLevel] = None,
    ) -> bool:
        """
        Check a proof for an account. Raises ProofVerificationFailure.

        A proof is only valid if it attests some compliance tier, and at least
        `required_level` when one is given.
        """


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


class HMACProofEngine(HashCommitmentVerifier, ProofEngine):
    """
    Local proof engine backed by HMAC-SHA256.

    A proof is `<claims>.<mac>` where claims carry the attestation commitment,
    the account, the expiry and the strictest tier met at issuance. No KYC,
    AML or sanctions evidence is included. Attestations that meet no tier
    are never proven.
    """

    name = "hmac"

    def __init__(self, secret_key: str, clock: Optional[Clock] = None):
        if not secret_key:
            raise ValueError("HMACProofEngine requires a secret key")
        self._secret = secret_key.encode()
        self._clock = clock or utcnow

    def _sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    async def generate_proof(
        self,
        attestation: ComplianceAttestation,
    ) -> ProofBlob:
        if attestation.proof_hash != attestation.compute_commitment():
            raise ProofGenerationFailure("attestation commitment does not match its fields")

        level = highest_compliance_level(attestation, self._clock())
        if level is None:
            logger.warning(
                "Refusing to prove attestation %s for %s: no compliance tier met",
                attestation.id,
                attestation.account_id,
            )
            raise ProofGenerationFailure("attestation meets no compliance tier")

        claims = {
            "v": PROOF_VERSION,
            "aid": attestation.id,
            "acct": attestation.account_id,
            "cmt": attestation.proof_hash,
            "exp": int(attestation.expires_at.timestamp()),
            "tier": level.value,
        }
        payload = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode()
        proof = f"{_b64encode(payload)}.{self._sign(payload)}"
        logger.info(
            "Generated compliance proof for attestation %s (commitment=%s)",
            attestation.id,
            short_hash(attestation.proof_hash),
        )
        return proof

    def decode_claims(self, proof: ProofBlob) -> Optional[Dict[str, Any]]:
        """Return the signed claims of a well-formed, authentic proof."""
        try:
            encoded, mac = proof.split(".", 1)
            payload = _b64decode(encoded)
        except (ValueError, binascii.Error):
            return None

        if not hmac.compare_digest(mac, self._sign(payload)):
            return None

        try:
            claims = json.loads(payload)
        except ValueError:
            return None
        if not isinstance(claims, dict) or claims.get("v") != PROOF_VERSION:
            return None
        return claims

    async def verify_proof(
        self,
        proof: ProofBlob,
        account_id: str,
        required_level: Optional[ComplianceLevel] = None,
    ) -> bool:
        claims = self.decode_claims(proof)
        if claims is None:
            logger.warning("Rejected malformed or forged proof for account %s", account_id)
            return False

        if claims.get("acct") != account_id:
            logger.warning("Proof account mismatch for account %s", account_id)
            return False

        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        if self._clock() >= expires_at:
            logger.info("Proof for account %s expired at %s", account_id, expires_at.isoformat())
            return False

        if not claims.get("aid") or not claims.get("cmt"):
            logger.warning("Proof for account %s is not bound to an attestation", account_id)
            return False

        try:
            tier = ComplianceLevel(claims.get("tier"))
        except ValueError:
            logger.warning("Proof for account %s attests no compliance tier", account_id)
            return False

        if required_level is not None and tier.rank < required_level.rank:
            logger.info(
                "Proof for account %s attests %s, %s required",
                account_id,
                tier.value,
                required_level.value,
            )
            return False

        return True


class RemoteProofEngine(HashCommitmentVerifier, ProofEngine):
    """
    Proof engine that delegates to a remote prover service.

    Endpoints:
    - POST /v1/proofs          {"attestation": {...}} -> {"proof": "..."}
    - POST /v1/proofs/verify   {"proof": "...", "account_id": "...", "required_level": "..."} -> {"valid": bool}

    Generation is never retried automatically. Verification is retried only
    when the prover documents it as idempotent.
    """

    name = "remote"

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        generation_timeout_seconds: Optional[float] = None,
        idempotent_verification: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize remote proof engine.

        Args:
            endpoint: Base URL of the prover service
            api_key: Bearer token for the prover
            max_retries: Retries for idempotent verification calls
            timeout_seconds: Per-attempt timeout for verification
            generation_timeout_seconds: Timeout for proof generation
                (defaults to timeout_seconds)
            idempotent_verification: Whether verification may be retried
            http_client: Pre-built client (tests inject a MockTransport)
        """
        self._endpoint = endpoint
        self._api_key = api_key
        self._max_retries = max_retries
        self._timeout_seconds = timeout_seconds
        self._generation_timeout_seconds = generation_timeout_seconds or timeout_seconds
        self._idempotent_verification = idempotent_verification
        self._http_client = http_client
        self._retry_client = RetryableClient(
            name="prover",
            retry_config=RetryConfig(max_retries=max_retries, timeout_seconds=timeout_seconds),
            circuit_config=CircuitBreakerConfig(failure_threshold=5, timeout_seconds=120.0),
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._http_client = httpx.AsyncClient(
                base_url=self._endpoint,
                headers=headers,
                timeout=30,
            )
        return self._http_client

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.post(path, json=body)
        response.raise_for_status()
        return response.json()

    async def generate_proof(
        self,
        attestation: ComplianceAttestation,
    ) -> ProofBlob:
        result = await self._retry_client.execute(
            lambda: self._post("/v1/proofs", {"attestation": attestation.to_dict()}),
            max_retries=0,
            timeout_seconds=self._generation_timeout_seconds,
        )
        if result.timed_out:
            raise ProofTimeoutError("generation", self._generation_timeout_seconds)
        if not result.success:
            logger.error("Remote proof generation failed for %s: %s", attestation.id, result.error)
            raise ProofGenerationFailure(str(result.error))

        proof = (result.value or {}).get("proof")
        if not isinstance(proof, str) or not proof:
            raise ProofGenerationFailure("prover response did not contain a proof")
        return proof

    async def verify_proof(
        self,
        proof: ProofBlob,
        account_id: str,
        required_level: Optional[ComplianceLevel] = None,
    ) -> bool:
        body = {"proof": proof, "account_id": account_id}
        if required_level is not None:
            body["required_level"] = required_level.value

        retries = self._max_retries if self._idempotent_verification else 0
        result = await self._retry_client.execute(
            lambda: self._post("/v1/proofs/verify", body),
            max_retries=retries,
        )
        if result.timed_out:
            raise ProofTimeoutError("verification", self._timeout_seconds)
        if not result.success:
            logger.error("Remote proof verification failed for %s: %s", account_id, result.error)
            raise ProofVerificationFailure(str(result.error))

        valid = (result.value or {}).get("valid")
        if not isinstance(valid, bool):
            raise ProofVerificationFailure("prover response did not contain a verdict")
        return valid

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
