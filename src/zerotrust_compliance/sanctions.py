"""
Sanctions screening engine.

Screens an account against restricted-party lists without holding the list
or the identity in clear:
- The screen binds the identity and the list version into a commitment
- The screening proof is opened against that commitment by the proof engine
- An unverifiable screen fails safe to FLAGGED, never CLEAR
- An account that was never screened does not count as cleared

Manual overrides are sticky: automated screens may escalate an overridden
status but never lower it. Only `clear_override` releases one.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from .exceptions import (
    AccountNotFoundError,
    AuthorizationFailure,
    ComplianceValidationError,
)
from .models import (
    SANCTIONS_STATUS_CODES,
    Clock,
    ComplianceDomain,
    SanctionsStatus,
    ScreeningConfidence,
    TransitionResult,
    decode,
    short_hash,
    utcnow,
)
from .proofs import CommitmentVerifier, HashCommitmentVerifier

logger = logging.getLogger(__name__)

# Screening result codes carried by a proof, taken modulo 1000
RESULT_CODE_MODULUS = 1000
RESULT_CODES = {
    0: SanctionsStatus.CLEAR,
    1: SanctionsStatus.FLAGGED,
    2: SanctionsStatus.BLOCKED,
}


def screening_commitment(identity_hash: str, sanctions_list_hash: str) -> str:
    """Commitment binding an identity to the list version it was screened against."""
    return hashlib.sha256(f"{identity_hash}:{sanctions_list_hash}".encode()).hexdigest()


def status_for_result_code(result_code: int) -> SanctionsStatus:
    """Decode a proof's result code. Unknown codes are treated as FLAGGED."""
    return RESULT_CODES.get(result_code % RESULT_CODE_MODULUS, SanctionsStatus.FLAGGED)


@dataclass(frozen=True)
class ScreeningProof:
    """Opaque screening evidence produced off-chain."""
    commitment: str
    result_code: int = 0


@dataclass(frozen=True)
class ScreeningOutcome:
    status: SanctionsStatus
    confidence: ScreeningConfidence

    @property
    def cleared(self) -> bool:
        return self.status == SanctionsStatus.CLEAR


@dataclass
class SanctionsRecord:
    """Per-account sanctions storage."""
    status: SanctionsStatus = SanctionsStatus.CLEAR
    last_screened_at: Optional[datetime] = None
    screening_hash: str = ""
    list_version: int = 0
    false_positive: bool = False
    manual_override: bool = False

    def to_slots(self) -> Tuple[int, int, str, int, int, int]:
        """Encode into the fixed six-slot layout."""
        return (
            SANCTIONS_STATUS_CODES[self.status],
            int(self.last_screened_at.timestamp()) if self.last_screened_at else 0,
            self.screening_hash,
            self.list_version,
            int(self.false_positive),
            int(self.manual_override),
        )

    @classmethod
    def from_slots(cls, slots: Tuple[int, int, str, int, int, int]) -> "SanctionsRecord":
        status, screened, screening_hash, list_version, false_positive, override = slots
        return cls(
            status=decode(SANCTIONS_STATUS_CODES, status),
            last_screened_at=datetime.fromtimestamp(screened, tz=timezone.utc) if screened else None,
            screening_hash=screening_hash,
            list_version=list_version,
            false_positive=bool(false_positive),
            manual_override=bool(override),
        )


@dataclass(frozen=True)
class SanctionsSnapshot:
    """Read-only view returned by `status()`."""
    status: SanctionsStatus
    last_screened_at: Optional[datetime]
    screening_hash: str
    list_version: int = 0
    manual_override: bool = False
    false_positive: bool = False

    @property
    def cleared(self) -> bool:
        """CLEAR and screened at least once. A never-screened record is not cleared."""
        return self.status == SanctionsStatus.CLEAR and self.last_screened_at is not None


class SanctionsScreeningEngine:
    """
    Sanctions screening engine for a single account.

    Override authorization: when `authorized_overriders` is empty any
    non-empty authorization is accepted; otherwise the authorization must be
    one of the listed digests.
    """

    EXPORTED_PROCEDURES = (
        "screen",
        "status",
        "update_status",
        "verify_proof",
        "manual_override",
        "clear_override",
        "mark_false_positive",
    )

    def __init__(
        self,
        account_id: str,
        commitment_verifier: Optional[CommitmentVerifier] = None,
        authorized_overriders: Iterable[str] = (),
        clock: Optional[Clock] = None,
        record: Optional[SanctionsRecord] = None,
    ):
        self.account_id = account_id
        self._record = record or SanctionsRecord()
        self._verifier = commitment_verifier or HashCommitmentVerifier()
        self._overriders: FrozenSet[str] = frozenset(authorized_overriders)
        self._clock = clock or utcnow
        self._lock = threading.RLock()

    @property
    def record(self) -> SanctionsRecord:
        """Copy of the stored record."""
        with self._lock:
            return replace(self._record)

    def screen(
        self,
        identity_hash: str,
        sanctions_list_hash: str,
        screening_proof: ScreeningProof,
        list_version: Optional[int] = None,
    ) -> ScreeningOutcome:
        """
        Screen the account against a sanctions list.

        The screening commitment and timestamp are stored before the proof is
        checked, whatever the outcome.
        """
        if not identity_hash:
            raise ComplianceValidationError("identity hash is required", field="identity_hash")
        if not sanctions_list_hash:
            raise ComplianceValidationError(
                "sanctions list hash is required", field="sanctions_list_hash"
            )

        with self._lock:
            self._record.screening_hash = screening_commitment(identity_hash, sanctions_list_hash)
            self._record.last_screened_at = self._clock()
            if list_version is not None:
                self._record.list_version = list_version

            if not self.verify_proof(screening_proof.commitment):
                logger.warning(
                    "Unverifiable sanctions screen for %s (commitment=%s); flagging",
                    self.account_id,
                    short_hash(screening_proof.commitment),
                )
                # Overrides never shield an account from an unverifiable screen
                self._set_status(SanctionsStatus.FLAGGED)
                return ScreeningOutcome(
                    status=SanctionsStatus.FLAGGED,
                    confidence=ScreeningConfidence.LOW,
                )

            self._apply_screened_status(status_for_result_code(screening_proof.result_code))
            return ScreeningOutcome(
                status=self._record.status,
                confidence=ScreeningConfidence.HIGH,
            )

    def _apply_screened_status(self, screened: SanctionsStatus) -> None:
        previous = self._record.status
        if self._record.manual_override:
            if screened.severity <= previous.severity:
                logger.info(
                    "Sanctions screen for %s returned %s; manual override %s retained",
                    self.account_id,
                    screened.value,
                    previous.value,
                )
                return
            # A confirmed false positive only yields to a hard block
            if self._record.false_positive and screened != SanctionsStatus.BLOCKED:
                return

        self._set_status(screened)

    def _set_status(self, status: SanctionsStatus) -> None:
        previous = self._record.status
        self._record.status = status
        if status != previous:
            logger.info(
                "Sanctions status for %s changed %s -> %s",
                self.account_id,
                previous.value,
                status.value,
            )

    def verify_proof(self, proof: str, challenge: Optional[str] = None) -> bool:
        """Open a screening proof against the stored screening commitment."""
        with self._lock:
            screening_hash = self._record.screening_hash
        return self._verifier.verify_commitment(proof, screening_hash, challenge)

    def update_status(self, new_status: SanctionsStatus, reason: str) -> TransitionResult:
        """Manual status set by a trusted caller. Always marks the record as overridden."""
        with self._lock:
            previous = self._record.status
            self._record.status = new_status
            self._record.manual_override = True
            self._record.last_screened_at = self._clock()
            logger.info(
                "Sanctions status for %s set %s -> %s (reason: %s)",
                self.account_id,
                previous.value,
                new_status.value,
                reason,
            )
            return TransitionResult.ok()

    def _authorize(self, authorization_hash: str) -> Optional[AuthorizationFailure]:
        if not authorization_hash:
            reason = "empty authorization"
        elif self._overriders and authorization_hash not in self._overriders:
            reason = "authorization not recognized"
        else:
            return None
        logger.warning(
            "Rejected sanctions override for %s: %s (%s)",
            self.account_id,
            reason,
            short_hash(authorization_hash),
        )
        return AuthorizationFailure(ComplianceDomain.SANCTIONS.value, reason)

    def manual_override(
        self,
        status: SanctionsStatus,
        authorization_hash: str,
    ) -> TransitionResult:
        with self._lock:
            error = self._authorize(authorization_hash)
            if error:
                return TransitionResult.failed(error)

            self._record.status = status
            self._record.manual_override = True
            logger.info(
                "Sanctions status for %s overridden to %s by %s",
                self.account_id,
                status.value,
                short_hash(authorization_hash),
            )
            return TransitionResult.ok()

    def mark_false_positive(self, authorization_hash: str) -> TransitionResult:
        """Clear a list hit confirmed as a false positive."""
        with self._lock:
            error = self._authorize(authorization_hash)
            if error:
                return TransitionResult.failed(error)

            self._record.status = SanctionsStatus.CLEAR
            self._record.false_positive = True
            self._record.manual_override = True
            logger.info(
                "Sanctions hit for %s marked false positive by %s",
                self.account_id,
                short_hash(authorization_hash),
            )
            return TransitionResult.ok()

    def clear_override(self, authorization_hash: str) -> TransitionResult:
        """Release a manual override so the next screen applies as-is."""
        with self._lock:
            error = self._authorize(authorization_hash)
            if error:
                return TransitionResult.failed(error)

            self._record.manual_override = False
            self._record.false_positive = False
            logger.info("Sanctions override released for %s", self.account_id)
            return TransitionResult.ok()

    def status(self) -> SanctionsSnapshot:
        """Pure read of (status, last_screened_at, screening_hash)."""
        with self._lock:
            record = self._record
            return SanctionsSnapshot(
                status=record.status,
                last_screened_at=record.last_screened_at,
                screening_hash=record.screening_hash,
                list_version=record.list_version,
                manual_override=record.manual_override,
                false_positive=record.false_positive,
            )


class SanctionsService:
    """Registry of per-account sanctions screening engines."""

    def __init__(
        self,
        commitment_verifier: Optional[CommitmentVerifier] = None,
        authorized_overriders: Iterable[str] = (),
        clock: Optional[Clock] = None,
    ):
        self._commitment_verifier = commitment_verifier or HashCommitmentVerifier()
        self._authorized_overriders = tuple(authorized_overriders)
        self._clock = clock
        self._engines: Dict[str, SanctionsScreeningEngine] = {}
        self._lock = threading.Lock()

    def register(self, account_id: str) -> SanctionsScreeningEngine:
        """Create the sanctions record for an account, or return the existing one."""
        with self._lock:
            engine = self._engines.get(account_id)
            if engine is None:
                engine = SanctionsScreeningEngine(
                    account_id,
                    commitment_verifier=self._commitment_verifier,
                    authorized_overriders=self._authorized_overriders,
                    clock=self._clock,
                )
                self._engines[account_id] = engine
                logger.info("Registered sanctions record for %s", account_id)
            return engine

    def get(self, account_id: str) -> SanctionsScreeningEngine:
        engine = self._engines.get(account_id)
        if engine is None:
            raise AccountNotFoundError(account_id, domain=ComplianceDomain.SANCTIONS.value)
        return engine

    async def screen_account(self, account_id: str) -> SanctionsSnapshot:
        """Current sanctions status for an account."""
        return self.get(account_id).status()
