"""
Compliance attestation aggregator.

Runs the KYC, AML and sanctions checks for an account concurrently, merges
their snapshots into a ComplianceAttestation and persists it. Proof minting
and verification are delegated to the proof engine.

Failure model:
- The first failed check aborts the composite check; siblings are cancelled
- No partial attestation is ever built or stored
- Proof engine and store timeouts surface as retryable errors
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Dict, Optional, Tuple

from .aml import AMLService, AMLStatus
from .attestation import ComplianceAttestation, meets_compliance_level
from .components import ComponentCompiler, deploy_components
from .config import ComplianceSettings, load_settings
from .exceptions import (
    ComplianceConfigurationError,
    ComplianceError,
    ComplianceValidationError,
    InternalError,
    ProofFailure,
    ProofGenerationFailure,
    ProofTimeoutError,
    ProofVerificationFailure,
    StoreTimeoutError,
    VerificationFailure,
)
from .kyc import KYCService, KYCSnapshot
from .logging_config import account_context, setup_logging
from .models import Clock, ComplianceDomain, ComplianceLevel, VerifierIdentity, utcnow
from .proofs import HMACProofEngine, ProofBlob, ProofEngine, RemoteProofEngine
from .sanctions import SanctionsService, SanctionsSnapshot
from .store import AttestationStore, InMemoryAttestationStore

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_PERIOD = timedelta(days=90)
DEFAULT_MAX_PROOF_SIZE = 1024 * 1024


class ComplianceAttestationAggregator:
    """
    Combines per-domain compliance state into leveled, expiring attestations.

    The aggregator owns attestations only; per-domain records stay with
    their state machines.
    """

    def __init__(
        self,
        kyc: KYCService,
        aml: AMLService,
        sanctions: SanctionsService,
        proof_engine: ProofEngine,
        store: AttestationStore,
        validity_period: timedelta = DEFAULT_VALIDITY_PERIOD,
        proof_generation_timeout: float = 60.0,
        proof_verification_timeout: float = 120.0,
        store_timeout: float = 10.0,
        max_proof_size: int = DEFAULT_MAX_PROOF_SIZE,
        enable_proof_verification: bool = True,
        clock: Optional[Clock] = None,
    ):
        self.kyc = kyc
        self.aml = aml
        self.sanctions = sanctions
        self.proof_engine = proof_engine
        self.store = store
        self._validity_period = validity_period
        self._proof_generation_timeout = proof_generation_timeout
        self._proof_verification_timeout = proof_verification_timeout
        self._store_timeout = store_timeout
        self._max_proof_size = max_proof_size
        self._enable_proof_verification = enable_proof_verification
        self._clock = clock or utcnow

    async def _run_checks(
        self,
        account_id: str,
    ) -> Tuple[KYCSnapshot, AMLStatus, SanctionsSnapshot]:
        checks: Dict[ComplianceDomain, Awaitable[Any]] = {
            ComplianceDomain.KYC: self.kyc.check_account(account_id),
            ComplianceDomain.AML: self.aml.assess_account(account_id),
            ComplianceDomain.SANCTIONS: self.sanctions.screen_account(account_id),
        }
        tasks = {
            domain: asyncio.ensure_future(check)
            for domain, check in checks.items()
        }

        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        failures = [
            (domain, task.exception())
            for domain, task in tasks.items()
            if not task.cancelled() and task.exception() is not None
        ]
        if failures:
            domain, error = failures[0]
            logger.warning("%s check failed for %s: %s", domain.value.upper(), account_id, error)
            if isinstance(error, ComplianceError):
                raise error
            raise VerificationFailure(domain.value, str(error)) from error

        return (
            tasks[ComplianceDomain.KYC].result(),
            tasks[ComplianceDomain.AML].result(),
            tasks[ComplianceDomain.SANCTIONS].result(),
        )

    async def _put(self, attestation: ComplianceAttestation) -> None:
        try:
            await asyncio.wait_for(self.store.put(attestation), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Attestation store put timed out for %s", attestation.account_id)
            raise StoreTimeoutError(
                "Attestation store did not answer in time",
                operation="store.put",
                timeout_seconds=self._store_timeout,
            ) from e
        except ComplianceError:
            raise
        except Exception as e:
            logger.error("Attestation store put failed for %s: %s", attestation.account_id, e)
            raise InternalError(f"attestation store put failed: {e}") from e

    async def comprehensive_check(self, account_id: str) -> ComplianceAttestation:
        """
        Run all three checks and persist a new attestation.

        Raises:
            ComplianceError: The first failed check, or a store failure
        """
        with account_context(account_id):
            kyc, aml, sanctions = await self._run_checks(account_id)

            now = self._clock()
            expires_at = now + self._validity_period
            if kyc.expires_at is not None and kyc.expires_at < expires_at:
                expires_at = kyc.expires_at

            attestation = ComplianceAttestation(
                account_id=account_id,
                kyc_status=kyc.status,
                aml_risk_level=aml.risk_level,
                sanctions_cleared=sanctions.cleared,
                created_at=now,
                expires_at=expires_at,
            )
            await self._put(attestation)

            logger.info(
                "Attestation %s issued for %s (kyc=%s, aml=%s, sanctions_cleared=%s, expires=%s)",
                attestation.id,
                account_id,
                attestation.kyc_status.value,
                attestation.aml_risk_level.value,
                attestation.sanctions_cleared,
                attestation.expires_at.isoformat(),
            )
            return attestation

    def meets_compliance_level(
        self,
        attestation: ComplianceAttestation,
        required_level: ComplianceLevel,
    ) -> bool:
        return meets_compliance_level(attestation, required_level, self._clock())

    async def create_compliance_proof(self, account_id: str) -> ProofBlob:
        """Run a full check and mint a proof bound to the new attestation."""
        attestation = await self.comprehensive_check(account_id)

        with account_context(account_id):
            try:
                return await asyncio.wait_for(
                    self.proof_engine.generate_proof(attestation),
                    timeout=self._proof_generation_timeout,
                )
            except asyncio.TimeoutError as e:
                logger.error("Proof generation timed out for attestation %s", attestation.id)
                raise ProofTimeoutError("generation", self._proof_generation_timeout) from e
            except ProofFailure:
                raise
            except Exception as e:
                logger.error("Proof generation failed for attestation %s: %s", attestation.id, e)
                raise ProofGenerationFailure(str(e)) from e

    async def verify_compliance_proof(
        self,
        proof: ProofBlob,
        account_id: str,
        required_level: Optional[ComplianceLevel] = None,
    ) -> bool:
        """
        Check a previously issued proof. No local state is touched.

        A valid proof attests at least one compliance tier; pass
        `required_level` to demand a specific one.
        """
        if not self._enable_proof_verification:
            raise ComplianceConfigurationError("Proof verification is disabled")
        if not proof:
            return False
        if len(proof.encode()) > self._max_proof_size:
            raise ComplianceValidationError(
                f"Proof exceeds maximum size of {self._max_proof_size} bytes",
                field="proof",
            )

        with account_context(account_id):
            try:
                return await asyncio.wait_for(
                    self.proof_engine.verify_proof(proof, account_id, required_level),
                    timeout=self._proof_verification_timeout,
                )
            except asyncio.TimeoutError as e:
                logger.error("Proof verification timed out for %s", account_id)
                raise ProofTimeoutError("verification", self._proof_verification_timeout) from e
            except ProofFailure:
                raise
            except Exception as e:
                logger.error("Proof verification failed for %s: %s", account_id, e)
                raise ProofVerificationFailure(str(e)) from e

    async def update_compliance_status(self, account_id: str) -> ComplianceAttestation:
        """Re-run the checks; the new attestation supersedes the current one."""
        return await self.comprehensive_check(account_id)

    async def get_compliance_status(self, account_id: str) -> Optional[ComplianceAttestation]:
        """Current attestation on file, or None."""
        try:
            return await asyncio.wait_for(self.store.get(account_id), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Attestation store get timed out for %s", account_id)
            raise StoreTimeoutError(
                "Attestation store did not answer in time",
                operation="store.get",
                timeout_seconds=self._store_timeout,
            ) from e
        except ComplianceError:
            raise
        except Exception as e:
            logger.error("Attestation store get failed for %s: %s", account_id, e)
            raise InternalError(f"attestation store get failed: {e}") from e

    async def check_compliance_level(
        self,
        account_id: str,
        required_level: ComplianceLevel,
    ) -> bool:
        """Whether the current attestation meets `required_level`. No attestation means no."""
        attestation = await self.get_compliance_status(account_id)
        if attestation is None:
            return False
        return self.meets_compliance_level(attestation, required_level)


def create_proof_engine(
    settings: ComplianceSettings,
    clock: Optional[Clock] = None,
) -> ProofEngine:
    """Build the proof engine selected by settings."""
    config = settings.proof_engine
    if config.mode == "remote":
        if not config.remote_endpoint:
            raise ComplianceConfigurationError("Remote proof engine requires an endpoint")
        return RemoteProofEngine(
            endpoint=config.remote_endpoint,
            api_key=config.api_key,
            max_retries=config.max_retries,
            timeout_seconds=settings.attestation.proof_verification_timeout_seconds,
            generation_timeout_seconds=settings.attestation.proof_generation_timeout_seconds,
        )
    return HMACProofEngine(config.secret_key, clock=clock)


def create_compliance_aggregator(
    settings: Optional[ComplianceSettings] = None,
    store: Optional[AttestationStore] = None,
    proof_engine: Optional[ProofEngine] = None,
    compiler: Optional[ComponentCompiler] = None,
    clock: Optional[Clock] = None,
    configure_logging: bool = False,
) -> ComplianceAttestationAggregator:
    """
    Wire a ComplianceAttestationAggregator from settings.

    Components are compiled first; a CompilationFailure aborts wiring.
    """
    settings = settings or load_settings()
    if configure_logging:
        setup_logging(
            level=settings.logging.level,
            json_format=settings.logging.json_format,
            log_file=settings.logging.log_file,
        )

    deploy_components(compiler)

    engine = proof_engine or create_proof_engine(settings, clock=clock)
    override_authority = (
        VerifierIdentity(settings.aml.override_authority)
        if settings.aml.override_authority
        else None
    )
    attestation = settings.attestation

    aggregator = ComplianceAttestationAggregator(
        kyc=KYCService(
            commitment_verifier=engine,
            verification_expiry=timedelta(days=settings.kyc.verification_expiry_days),
            clock=clock,
        ),
        aml=AMLService(
            large_transaction_threshold=settings.aml.large_transaction_threshold,
            structuring_round_unit=settings.aml.structuring_round_unit,
            velocity_window=timedelta(seconds=settings.aml.velocity_window_seconds),
            max_transactions_per_window=settings.aml.max_transactions_per_window,
            enable_pattern_detection=settings.aml.enable_pattern_detection,
            override_authority=override_authority,
            clock=clock,
        ),
        sanctions=SanctionsService(
            commitment_verifier=engine,
            authorized_overriders=settings.sanctions.authorized_overriders,
            clock=clock,
        ),
        proof_engine=engine,
        store=store or InMemoryAttestationStore(),
        validity_period=timedelta(days=attestation.validity_period_days),
        proof_generation_timeout=attestation.proof_generation_timeout_seconds,
        proof_verification_timeout=attestation.proof_verification_timeout_seconds,
        store_timeout=attestation.store_timeout_seconds,
        max_proof_size=attestation.max_proof_size,
        enable_proof_verification=attestation.enable_proof_verification,
        clock=clock,
    )
    logger.info(
        "Compliance aggregator ready (environment=%s, proof_engine=%s)",
        settings.environment,
        engine.name,
    )
    return aggregator
