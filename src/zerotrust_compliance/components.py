"""
Component compilation for the execution substrate.

Each domain state machine is deployed as a component with a fixed layout of
six positionally addressed storage slots and a set of exported procedures:

    kyc:        status, data_hash, verified_at, expires_at, verifier, compliance_level
    aml:        risk_level, risk_score, last_assessed_at, transaction_count,
                total_volume, suspicious_flags
    sanctions:  status, last_screened_at, screening_hash, list_version,
                false_positive, manual_override

Compilation failures are fatal to deployment and never retried.
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from .aml import AMLRecord, AMLRiskEngine
from .exceptions import CompilationFailure
from .kyc import KYCRecord, KYCStateMachine
from .sanctions import SanctionsRecord, SanctionsScreeningEngine

logger = logging.getLogger(__name__)

STORAGE_SLOTS = 6


@dataclass(frozen=True)
class ComponentSpec:
    """Storage layout and exported interface of one component."""
    name: str
    slots: Tuple[str, ...]
    procedures: Tuple[str, ...]
    state_machine: type
    record_type: type

    def layout_digest(self) -> str:
        data = json.dumps({
            "name": self.name,
            "slots": list(self.slots),
            "procedures": list(self.procedures),
        }, sort_keys=True)
        return hashlib.sha256(data.encode()).hexdigest()


def _spec_for(name: str, state_machine: type, record_type: type) -> ComponentSpec:
    return ComponentSpec(
        name=name,
        slots=tuple(f.name for f in dataclasses.fields(record_type)),
        procedures=tuple(state_machine.EXPORTED_PROCEDURES),
        state_machine=state_machine,
        record_type=record_type,
    )


KYC_COMPONENT = _spec_for("kyc", KYCStateMachine, KYCRecord)
AML_COMPONENT = _spec_for("aml", AMLRiskEngine, AMLRecord)
SANCTIONS_COMPONENT = _spec_for("sanctions", SanctionsScreeningEngine, SanctionsRecord)

DEFAULT_COMPONENTS = (KYC_COMPONENT, AML_COMPONENT, SANCTIONS_COMPONENT)


@dataclass(frozen=True)
class CompiledComponent:
    """A component accepted by the compiler."""
    spec: ComponentSpec
    digest: str

    @property
    def name(self) -> str:
        return self.spec.name


class ComponentCompiler(ABC):
    """Abstract interface for component compilers."""

    @abstractmethod
    def compile(self, spec: ComponentSpec) -> CompiledComponent:
        """Compile a component. Raises CompilationFailure."""


class LocalComponentCompiler(ComponentCompiler):
    """
    Validates a component against its Python state machine.

    Checks:
    - Exactly six uniquely named slots matching the record's fields, in order
    - Every exported procedure exists on the state machine and is callable
    - The empty record survives a slot encode/decode
    """

    def compile(self, spec: ComponentSpec) -> CompiledComponent:
        self._check_layout(spec)
        self._check_procedures(spec)
        self._check_encoding(spec)

        compiled = CompiledComponent(spec=spec, digest=spec.layout_digest())
        logger.info(
            "Compiled %s component (%d procedures, layout %s)",
            spec.name,
            len(spec.procedures),
            compiled.digest[:12],
        )
        return compiled

    def _check_layout(self, spec: ComponentSpec) -> None:
        if len(spec.slots) != STORAGE_SLOTS:
            raise CompilationFailure(
                f"expected {STORAGE_SLOTS} storage slots, got {len(spec.slots)}",
                component=spec.name,
            )
        if len(set(spec.slots)) != len(spec.slots):
            raise CompilationFailure("duplicate storage slot names", component=spec.name)

        if not dataclasses.is_dataclass(spec.record_type):
            raise CompilationFailure("record type is not a dataclass", component=spec.name)
        fields = tuple(f.name for f in dataclasses.fields(spec.record_type))
        if fields != spec.slots:
            raise CompilationFailure(
                f"slot layout {list(spec.slots)} does not match record fields {list(fields)}",
                component=spec.name,
            )

    def _check_procedures(self, spec: ComponentSpec) -> None:
        if not spec.procedures:
            raise CompilationFailure("component exports no procedures", component=spec.name)
        for procedure in spec.procedures:
            if not callable(getattr(spec.state_machine, procedure, None)):
                raise CompilationFailure(
                    f"exported procedure '{procedure}' is not defined",
                    component=spec.name,
                )

    def _check_encoding(self, spec: ComponentSpec) -> None:
        try:
            record = spec.record_type()
            slots = record.to_slots()
            decoded = spec.record_type.from_slots(slots)
        except (AttributeError, TypeError, ValueError) as e:
            raise CompilationFailure(f"slot encoding failed: {e}", component=spec.name) from e

        if len(slots) != STORAGE_SLOTS:
            raise CompilationFailure(
                f"record encodes to {len(slots)} slots", component=spec.name
            )
        if decoded != record:
            raise CompilationFailure("slot encoding is not reversible", component=spec.name)


def deploy_components(
    compiler: Optional[ComponentCompiler] = None,
    specs: Iterable[ComponentSpec] = DEFAULT_COMPONENTS,
) -> Dict[str, CompiledComponent]:
    """
    Compile every component. Halts on the first failure.

    Returns:
        Compiled components keyed by name
    """
    compiler = compiler or LocalComponentCompiler()
    deployed: Dict[str, CompiledComponent] = {}
    for spec in specs:
        try:
            deployed[spec.name] = compiler.compile(spec)
        except CompilationFailure as e:
            logger.error("Deployment halted: %s", e.message)
            raise
    return deployed
