"""
AML (Anti-Money-Laundering) risk engine.

Maintains a running risk score per account from transaction-derived signals:
- Large transaction penalty
- Counterparty risk weighting
- Round-amount structuring heuristic
- Sliding-window transaction velocity

Risk level is a step function of the score. CRITICAL is never assigned by
the engine; it is reachable only through a manual override.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import IntFlag
from typing import Deque, Dict, Optional, Tuple

from .exceptions import (
    AccountNotFoundError,
    AuthorizationFailure,
    ComplianceValidationError,
)
from .models import (
    AML_RISK_CODES,
    AMLRiskLevel,
    Clock,
    ComplianceDomain,
    TransitionResult,
    VerifierIdentity,
    decode,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 1000
HIGH_RISK_SCORE = 300
MEDIUM_RISK_SCORE = 150
LARGE_TRANSACTION_THRESHOLD = 10_000
LARGE_TRANSACTION_PENALTY = 100
COUNTERPARTY_RISK_WEIGHT = 10
STRUCTURING_ROUND_UNIT = 10_000


class SuspiciousFlag(IntFlag):
    """Suspicious activity bits."""
    NONE = 0
    ROUND_AMOUNT = 1  # Potential structuring
    HIGH_VELOCITY = 2


def risk_level_for_score(score: int) -> AMLRiskLevel:
    """Map a risk score to its level. No hysteresis."""
    if score >= HIGH_RISK_SCORE:
        return AMLRiskLevel.HIGH
    if score >= MEDIUM_RISK_SCORE:
        return AMLRiskLevel.MEDIUM
    return AMLRiskLevel.LOW


def clamp_score(score: int) -> int:
    return max(0, min(MAX_RISK_SCORE, score))


def _require_unsigned(value: int, name: str) -> None:
    if value < 0:
        raise ComplianceValidationError(f"{name} must be non-negative", field=name)


@dataclass
class AMLRecord:
    """Per-account AML storage."""
    risk_level: AMLRiskLevel = AMLRiskLevel.LOW
    risk_score: int = 0
    last_assessed_at: Optional[datetime] = None
    transaction_count: int = 0
    total_volume: int = 0
    suspicious_flags: SuspiciousFlag = SuspiciousFlag.NONE

    def to_slots(self) -> Tuple[int, int, int, int, int, int]:
        """Encode into the fixed six-slot layout."""
        return (
            AML_RISK_CODES[self.risk_level],
            self.risk_score,
            int(self.last_assessed_at.timestamp()) if self.last_assessed_at else 0,
            self.transaction_count,
            self.total_volume,
            int(self.suspicious_flags),
        )

    @classmethod
    def from_slots(cls, slots: Tuple[int, int, int, int, int, int]) -> "AMLRecord":
        level, score, assessed, count, volume, flags = slots
        return cls(
            risk_level=decode(AML_RISK_CODES, level),
            risk_score=score,
            last_assessed_at=datetime.fromtimestamp(assessed, tz=timezone.utc) if assessed else None,
            transaction_count=count,
            total_volume=volume,
            suspicious_flags=SuspiciousFlag(flags),
        )


@dataclass(frozen=True)
class AMLAssessment:
    """Result of `assess()`."""
    risk_level: AMLRiskLevel
    risk_score: int


@dataclass(frozen=True)
class AMLStatus:
    """Read-only view returned by `status()`."""
    risk_level: AMLRiskLevel
    risk_score: int
    last_assessed_at: Optional[datetime]
    suspicious_flags: SuspiciousFlag = SuspiciousFlag.NONE


@dataclass(frozen=True)
class TransactionStats:
    transaction_count: int
    total_volume: int


class TransactionVelocityMonitor:
    """
    Sliding-window transaction counter for one account.

    Flags the account when more than `max_transactions` land inside
    `window`.
    """

    def __init__(self, window: timedelta, max_transactions: int):
        self._window = window
        self._max_transactions = max_transactions
        self._timestamps: Deque[datetime] = deque()

    def record(self, timestamp: datetime) -> None:
        self._timestamps.append(timestamp)
        self._evict(timestamp)

    def _evict(self, now: datetime) -> None:
        cutoff = now - self._window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def count(self, now: datetime) -> int:
        self._evict(now)
        return len(self._timestamps)

    def is_exceeded(self, now: datetime) -> bool:
        return self.count(now) > self._max_transactions


class AMLRiskEngine:
    """
    AML risk engine for a single account.

    `update_risk_score` is a manual override. When the engine is built
    without an `override_authority` it trusts its caller; otherwise the
    caller must present a matching identity.
    """

    EXPORTED_PROCEDURES = (
        "assess",
        "status",
        "update_risk_score",
        "record_transaction",
        "stats",
        "suspicious_check",
    )

    def __init__(
        self,
        account_id: str,
        large_transaction_threshold: int = LARGE_TRANSACTION_THRESHOLD,
        structuring_round_unit: int = STRUCTURING_ROUND_UNIT,
        velocity_window: timedelta = timedelta(hours=24),
        max_transactions_per_window: int = 100,
        enable_pattern_detection: bool = True,
        override_authority: Optional[VerifierIdentity] = None,
        clock: Optional[Clock] = None,
        record: Optional[AMLRecord] = None,
    ):
        self.account_id = account_id
        self._record = record or AMLRecord()
        self._large_threshold = large_transaction_threshold
        self._round_unit = structuring_round_unit
        self._enable_pattern_detection = enable_pattern_detection
        self._override_authority = override_authority
        self._clock = clock or utcnow
        self._velocity = TransactionVelocityMonitor(velocity_window, max_transactions_per_window)
        self._lock = threading.RLock()

    @property
    def record(self) -> AMLRecord:
        """Copy of the stored record."""
        with self._lock:
            return replace(self._record)

    def assess(
        self,
        transaction_amount: int,
        transaction_type: str,
        counterparty_risk: int,
    ) -> AMLAssessment:
        """
        Fold one transaction's risk into the running score.

        score = current + (100 if amount >= 10,000) + counterparty_risk * 10,
        clamped to [0, 1000].
        """
        _require_unsigned(transaction_amount, "transaction_amount")
        _require_unsigned(counterparty_risk, "counterparty_risk")

        with self._lock:
            score = self._record.risk_score
            if transaction_amount >= self._large_threshold:
                score += LARGE_TRANSACTION_PENALTY
            score += counterparty_risk * COUNTERPARTY_RISK_WEIGHT
            score = clamp_score(score)
            level = risk_level_for_score(score)

            previous = self._record.risk_level
            self._record.risk_score = score
            self._record.risk_level = level
            self._record.last_assessed_at = self._clock()

            if level != previous:
                logger.info(
                    "AML risk for %s moved %s -> %s (score=%d, type=%s)",
                    self.account_id,
                    previous.value,
                    level.value,
                    score,
                    transaction_type,
                )
            return AMLAssessment(risk_level=level, risk_score=score)

    def status(self) -> AMLStatus:
        """Pure read of (risk_level, risk_score, last_assessed_at)."""
        with self._lock:
            return AMLStatus(
                risk_level=self._record.risk_level,
                risk_score=self._record.risk_score,
                last_assessed_at=self._record.last_assessed_at,
                suspicious_flags=self._record.suspicious_flags,
            )

    def update_risk_score(
        self,
        new_score: int,
        new_level: AMLRiskLevel,
        authorized_by: Optional[VerifierIdentity] = None,
    ) -> TransitionResult:
        """Manual override of score and level. The level is taken as given."""
        with self._lock:
            if self._override_authority is not None and authorized_by != self._override_authority:
                logger.warning(
                    "Rejected AML override for %s by %s",
                    self.account_id,
                    authorized_by,
                )
                return TransitionResult.failed(
                    AuthorizationFailure(ComplianceDomain.AML.value, "override authority mismatch")
                )

            self._record.risk_score = clamp_score(new_score)
            self._record.risk_level = new_level
            self._record.last_assessed_at = self._clock()
            logger.info(
                "AML risk for %s overridden to %s (score=%d)",
                self.account_id,
                new_level.value,
                self._record.risk_score,
            )
            return TransitionResult.ok()

    def record_transaction(
        self,
        amount: int,
        transaction_type: str,
        counterparty_hash: str,
    ) -> TransitionResult:
        """Count a transaction, add its volume and run pattern detection."""
        _require_unsigned(amount, "amount")

        with self._lock:
            now = self._clock()
            self._record.transaction_count += 1
            self._record.total_volume += amount
            self._velocity.record(now)
            self.suspicious_check(amount, transaction_type, counterparty_hash)
            return TransitionResult.ok()

    def suspicious_check(
        self,
        amount: int,
        transaction_type: str,
        counterparty_hash: str,
    ) -> bool:
        """
        Detect suspicious patterns and record them in the flag set.

        - Round amounts (multiples of 10,000) suggest structuring
        - More transactions than allowed inside the velocity window
        """
        if not self._enable_pattern_detection:
            return False

        with self._lock:
            flags = SuspiciousFlag.NONE
            if amount % self._round_unit == 0:
                flags |= SuspiciousFlag.ROUND_AMOUNT
            if self._velocity.is_exceeded(self._clock()):
                flags |= SuspiciousFlag.HIGH_VELOCITY

            if flags:
                self._record.suspicious_flags |= flags
                logger.warning(
                    "Suspicious activity on %s: %s (amount=%d, type=%s)",
                    self.account_id,
                    flags.name if flags.name else int(flags),
                    amount,
                    transaction_type,
                )
            return bool(flags)

    def stats(self) -> TransactionStats:
        """Pure read of (transaction_count, total_volume)."""
        with self._lock:
            return TransactionStats(
                transaction_count=self._record.transaction_count,
                total_volume=self._record.total_volume,
            )


class AMLService:
    """Registry of per-account AML risk engines."""

    def __init__(
        self,
        large_transaction_threshold: int = LARGE_TRANSACTION_THRESHOLD,
        structuring_round_unit: int = STRUCTURING_ROUND_UNIT,
        velocity_window: timedelta = timedelta(hours=24),
        max_transactions_per_window: int = 100,
        enable_pattern_detection: bool = True,
        override_authority: Optional[VerifierIdentity] = None,
        clock: Optional[Clock] = None,
    ):
        self._engine_kwargs = dict(
            large_transaction_threshold=large_transaction_threshold,
            structuring_round_unit=structuring_round_unit,
            velocity_window=velocity_window,
            max_transactions_per_window=max_transactions_per_window,
            enable_pattern_detection=enable_pattern_detection,
            override_authority=override_authority,
            clock=clock,
        )
        self._engines: Dict[str, AMLRiskEngine] = {}
        self._lock = threading.Lock()

    def register(self, account_id: str) -> AMLRiskEngine:
        """Create the AML record for an account, or return the existing one."""
        with self._lock:
            engine = self._engines.get(account_id)
            if engine is None:
                engine = AMLRiskEngine(account_id, **self._engine_kwargs)
                self._engines[account_id] = engine
                logger.info("Registered AML record for %s", account_id)
            return engine

    def get(self, account_id: str) -> AMLRiskEngine:
        engine = self._engines.get(account_id)
        if engine is None:
            raise AccountNotFoundError(account_id, domain=ComplianceDomain.AML.value)
        return engine

    async def assess_account(self, account_id: str) -> AMLStatus:
        """Current AML risk for an account."""
        return self.get(account_id).status()
