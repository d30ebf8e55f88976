"""
KYC (Know Your Customer) verification state machine.

Tracks identity-verification status for one account:

    PENDING --verify(matching hash)--> VERIFIED --(time)--> EXPIRED
    PENDING --update_status(verifier)--> REJECTED

EXPIRED is never stored by the clock; it is derived on read from
`expires_at`, so stored and effective state cannot drift.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from .exceptions import (
    AccountNotFoundError,
    AuthorizationFailure,
    ComplianceValidationError,
    VerificationFailure,
)
from .models import (
    COMPLIANCE_LEVEL_CODES,
    KYC_STATUS_CODES,
    Clock,
    ComplianceDomain,
    ComplianceLevel,
    KYCStatus,
    TransitionResult,
    VerifierIdentity,
    decode,
    short_hash,
    utcnow,
)
from .proofs import CommitmentVerifier, HashCommitmentVerifier

logger = logging.getLogger(__name__)

DEFAULT_VERIFICATION_EXPIRY = timedelta(days=365)


def _to_epoch(value: Optional[datetime]) -> int:
    return int(value.timestamp()) if value else 0


def _from_epoch(value: int) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


@dataclass
class KYCRecord:
    """Per-account KYC storage."""
    status: KYCStatus = KYCStatus.PENDING
    data_hash: str = ""  # Commitment to the KYC evidence
    verified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    verifier: Optional[VerifierIdentity] = None
    compliance_level: ComplianceLevel = ComplianceLevel.BASIC

    def to_slots(self) -> Tuple[int, str, int, int, str, int]:
        """Encode into the fixed six-slot layout."""
        return (
            KYC_STATUS_CODES[self.status],
            self.data_hash,
            _to_epoch(self.verified_at),
            _to_epoch(self.expires_at),
            self.verifier.digest if self.verifier else "",
            COMPLIANCE_LEVEL_CODES[self.compliance_level],
        )

    @classmethod
    def from_slots(cls, slots: Tuple[int, str, int, int, str, int]) -> "KYCRecord":
        status, data_hash, verified_at, expires_at, verifier, level = slots
        return cls(
            status=decode(KYC_STATUS_CODES, status),
            data_hash=data_hash,
            verified_at=_from_epoch(verified_at),
            expires_at=_from_epoch(expires_at),
            verifier=VerifierIdentity(verifier) if verifier else None,
            compliance_level=decode(COMPLIANCE_LEVEL_CODES, level),
        )


@dataclass(frozen=True)
class KYCSnapshot:
    """Read-only view returned by `status()`."""
    status: KYCStatus
    verified_at: Optional[datetime]
    expires_at: Optional[datetime]
    compliance_level: ComplianceLevel

    @property
    def is_verified(self) -> bool:
        return self.status == KYCStatus.VERIFIED


class KYCStateMachine:
    """
    KYC state machine for a single account.

    The record is exclusively owned by this machine. Mutations to one
    account are serialized by the execution substrate; the lock only guards
    against accidental sharing within a process.
    """

    EXPORTED_PROCEDURES = (
        "verify",
        "status",
        "update_status",
        "verify_proof",
        "get_compliance_level",
        "update_compliance_level",
    )

    def __init__(
        self,
        account_id: str,
        data_hash: str,
        commitment_verifier: Optional[CommitmentVerifier] = None,
        verification_expiry: timedelta = DEFAULT_VERIFICATION_EXPIRY,
        clock: Optional[Clock] = None,
        record: Optional[KYCRecord] = None,
    ):
        """
        Args:
            account_id: Account this record belongs to
            data_hash: Commitment to the off-chain KYC evidence
            commitment_verifier: Opens proof commitments (proof engine)
            verification_expiry: Validity of a successful verification
            clock: Time source, UTC
            record: Existing record to resume from
        """
        if not data_hash and record is None:
            raise ComplianceValidationError("KYC data hash is required", field="data_hash")
        self.account_id = account_id
        self._record = record or KYCRecord(data_hash=data_hash)
        self._verifier = commitment_verifier or HashCommitmentVerifier()
        self._expiry = verification_expiry
        self._clock = clock or utcnow
        self._lock = threading.Lock()

    @property
    def record(self) -> KYCRecord:
        """Copy of the stored record."""
        with self._lock:
            return replace(self._record)

    def effective_status(self, now: Optional[datetime] = None) -> KYCStatus:
        """Stored status, or EXPIRED once a verification has lapsed."""
        record = self._record
        if (
            record.status == KYCStatus.VERIFIED
            and record.expires_at is not None
            and (now or self._clock()) >= record.expires_at
        ):
            return KYCStatus.EXPIRED
        return record.status

    def verify(
        self,
        provided_hash: str,
        verifier: VerifierIdentity,
        compliance_level: ComplianceLevel,
    ) -> TransitionResult:
        """
        Verify the account's KYC data against the stored commitment.

        Already-verified records succeed without re-checking anything and are
        left untouched. A lapsed verification may be renewed with the matching
        hash.
        """
        with self._lock:
            now = self._clock()
            if self.effective_status(now) == KYCStatus.VERIFIED:
                logger.debug("KYC already verified for %s; verify is a no-op", self.account_id)
                return TransitionResult.ok()

            if provided_hash != self._record.data_hash:
                logger.warning(
                    "KYC hash mismatch for %s (provided=%s)",
                    self.account_id,
                    short_hash(provided_hash),
                )
                return TransitionResult.failed(
                    VerificationFailure(ComplianceDomain.KYC.value, "data hash mismatch")
                )

            self._record.status = KYCStatus.VERIFIED
            self._record.verifier = verifier
            self._record.compliance_level = compliance_level
            self._record.verified_at = now
            self._record.expires_at = now + self._expiry

            logger.info(
                "KYC verified for %s by %s at level %s, expires %s",
                self.account_id,
                verifier,
                compliance_level.value,
                self._record.expires_at.isoformat(),
            )
            return TransitionResult.ok()

    def status(self) -> KYCSnapshot:
        """Pure read of (status, verified_at, expires_at, compliance_level)."""
        with self._lock:
            return KYCSnapshot(
                status=self.effective_status(),
                verified_at=self._record.verified_at,
                expires_at=self._record.expires_at,
                compliance_level=self._record.compliance_level,
            )

    def _authorize(self, verifier: VerifierIdentity) -> Optional[AuthorizationFailure]:
        stored = self._record.verifier
        if stored is None or stored != verifier:
            logger.warning(
                "Rejected KYC mutation for %s: verifier %s is not %s",
                self.account_id,
                verifier,
                stored,
            )
            return AuthorizationFailure(ComplianceDomain.KYC.value)
        return None

    def update_status(
        self,
        new_status: KYCStatus,
        verifier: VerifierIdentity,
    ) -> TransitionResult:
        """Set the stored status. Only the verifier that verified the record may do this."""
        with self._lock:
            error = self._authorize(verifier)
            if error:
                return TransitionResult.failed(error)

            previous = self._record.status
            self._record.status = new_status
            logger.info(
                "KYC status for %s changed %s -> %s by %s",
                self.account_id,
                previous.value,
                new_status.value,
                verifier,
            )
            return TransitionResult.ok()

    def get_compliance_level(self) -> ComplianceLevel:
        with self._lock:
            return self._record.compliance_level

    def update_compliance_level(
        self,
        new_level: ComplianceLevel,
        verifier: VerifierIdentity,
    ) -> TransitionResult:
        """Change the compliance level. Same authorization rule as update_status."""
        with self._lock:
            error = self._authorize(verifier)
            if error:
                return TransitionResult.failed(error)

            self._record.compliance_level = new_level
            logger.info(
                "KYC compliance level for %s set to %s by %s",
                self.account_id,
                new_level.value,
                verifier,
            )
            return TransitionResult.ok()

    def verify_proof(self, commitment: str, challenge: Optional[str] = None) -> bool:
        """Check a proof commitment against the stored KYC hash via the proof engine."""
        with self._lock:
            data_hash = self._record.data_hash
        return self._verifier.verify_commitment(commitment, data_hash, challenge)


class KYCService:
    """
    Registry of per-account KYC state machines.

    Gives the aggregator an async view of each account's KYC status.
    """

    def __init__(
        self,
        commitment_verifier: Optional[CommitmentVerifier] = None,
        verification_expiry: timedelta = DEFAULT_VERIFICATION_EXPIRY,
        clock: Optional[Clock] = None,
    ):
        self._commitment_verifier = commitment_verifier or HashCommitmentVerifier()
        self._verification_expiry = verification_expiry
        self._clock = clock or utcnow
        self._machines: Dict[str, KYCStateMachine] = {}
        self._lock = threading.Lock()

    def register(self, account_id: str, data_hash: str) -> KYCStateMachine:
        """Create the KYC record for an account, or return the existing one."""
        with self._lock:
            machine = self._machines.get(account_id)
            if machine is None:
                machine = KYCStateMachine(
                    account_id,
                    data_hash,
                    commitment_verifier=self._commitment_verifier,
                    verification_expiry=self._verification_expiry,
                    clock=self._clock,
                )
                self._machines[account_id] = machine
                logger.info("Registered KYC record for %s", account_id)
            return machine

    def get(self, account_id: str) -> KYCStateMachine:
        machine = self._machines.get(account_id)
        if machine is None:
            raise AccountNotFoundError(account_id, domain=ComplianceDomain.KYC.value)
        return machine

    async def check_account(self, account_id: str) -> KYCSnapshot:
        """Current KYC status for an account."""
        return self.get(account_id).status()
