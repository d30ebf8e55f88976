"""Attestation persistence boundary."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Optional

from .attestation import ComplianceAttestation
from .config import is_production

logger = logging.getLogger(__name__)


class AttestationStore(ABC):
    """
    Keyed by account_id. The most recently put attestation is the current
    one for the account.
    """

    @abstractmethod
    async def get(self, account_id: str) -> Optional[ComplianceAttestation]:
        """Current attestation for the account, or None."""

    @abstractmethod
    async def put(self, attestation: ComplianceAttestation) -> None:
        """Store an attestation as the account's current one."""


class InMemoryAttestationStore(AttestationStore):
    """
    Thread-safe in-memory attestation store.

    Superseded attestations are kept per account, newest last, up to
    MAX_HISTORY entries. Not durable; use a database-backed store in
    production.
    """

    MAX_HISTORY = 100
    _PRODUCTION_WARNING_SHOWN = False

    def __init__(self):
        if not InMemoryAttestationStore._PRODUCTION_WARNING_SHOWN:
            if is_production():
                logger.warning(
                    "InMemoryAttestationStore is in use in production; "
                    "attestations will not survive a restart"
                )
            InMemoryAttestationStore._PRODUCTION_WARNING_SHOWN = True
        self._history: Dict[str, Deque[ComplianceAttestation]] = {}
        self._lock = threading.Lock()

    async def get(self, account_id: str) -> Optional[ComplianceAttestation]:
        with self._lock:
            entries = self._history.get(account_id)
            return entries[-1] if entries else None

    async def put(self, attestation: ComplianceAttestation) -> None:
        with self._lock:
            entries = self._history.get(attestation.account_id)
            if entries is None:
                entries = deque(maxlen=self.MAX_HISTORY)
                self._history[attestation.account_id] = entries
            entries.append(attestation)
            logger.debug(
                "Stored attestation %s for %s (%d on file)",
                attestation.id,
                attestation.account_id,
                len(entries),
            )

    def history(self, account_id: str) -> List[ComplianceAttestation]:
        """All retained attestations for an account, oldest first."""
        with self._lock:
            return list(self._history.get(account_id, ()))

    def count(self) -> int:
        """Number of accounts with an attestation on file."""
        with self._lock:
            return len(self._history)
