"""Market domain models: demands, proposals and agreements."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence

from requestor.config.models import DemandConfig
from requestor.core.enums import AgreementState, ProposalState
from requestor.core.errors import InvalidStateTransition
from requestor.core.time_utils import now_utc, parse_api_timestamp
from requestor.core.types import AgreementId, ProposalId, Properties, SubscriptionId

MEM_GIB = "golem.inf.mem.gib"
STORAGE_GIB = "golem.inf.storage.gib"
CPU_THREADS = "golem.inf.cpu.threads"
RUNTIME_NAME = "golem.runtime.name"
EXPIRATION = "golem.srv.comp.expiration"
TASK_PACKAGE = "golem.srv.comp.task_package"
PRICING_COEFFS = "golem.com.pricing.model.linear.coeffs"
USAGE_VECTOR = "golem.com.usage.vector"
USAGE_CPU_SEC = "golem.usage.cpu_sec"
USAGE_DURATION_SEC = "golem.usage.duration_sec"


@dataclass(slots=True, frozen=True)
class DemandSpec:
    """Requestor requirements a demand is built from."""

    runtime: str = "wasmtime"
    task_package: str | None = None
    min_mem_gib: float = 0.5
    min_storage_gib: float = 1.0
    min_cpu_threads: int = 1
    expiration_sec: int = 1800
    properties: Mapping[str, Any] = field(default_factory=dict)
    constraints: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: DemandConfig) -> "DemandSpec":
        return cls(
            runtime=config.runtime,
            task_package=config.task_package,
            min_mem_gib=config.min_mem_gib,
            min_storage_gib=config.min_storage_gib,
            min_cpu_threads=config.min_cpu_threads,
            expiration_sec=config.expiration_sec,
            properties=dict(config.properties),
            constraints=tuple(config.constraints),
        )


@dataclass(slots=True, frozen=True)
class Demand:
    """Flat property map plus LDAP-style constraint expression."""

    properties: Properties
    constraints: str

    def to_payload(self) -> Dict[str, Any]:
        return {"properties": dict(self.properties), "constraints": self.constraints}


@dataclass(slots=True)
class DemandHandle:
    """Published demand and its market subscription."""

    subscription_id: SubscriptionId
    demand: Demand
    published_at: datetime
    agreement: "Agreement | None" = None
    unsubscribed: bool = False

    @property
    def active_agreement(self) -> "Agreement | None":
        """Return the agreement still holding this demand, if any."""

        if self.agreement is not None and self.agreement.is_active:
            return self.agreement
        return None


@dataclass(slots=True, frozen=True)
class Proposal:
    """Provider bid received during negotiation; superseded, never mutated."""

    proposal_id: ProposalId
    issuer_id: str
    state: ProposalState
    properties: Properties
    constraints: str = ""
    prev_proposal_id: ProposalId | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Proposal":
        prev = payload.get("prevProposalId")
        return cls(
            proposal_id=ProposalId(str(payload["proposalId"])),
            issuer_id=str(payload.get("issuerId", "")),
            state=ProposalState(payload.get("state", ProposalState.INITIAL.value)),
            properties=dict(payload.get("properties") or {}),
            constraints=str(payload.get("constraints") or ""),
            prev_proposal_id=ProposalId(str(prev)) if prev else None,
            timestamp=parse_api_timestamp(payload.get("timestamp")),
        )


_AGREEMENT_TRANSITIONS: Mapping[AgreementState, frozenset[AgreementState]] = {
    AgreementState.PROPOSED: frozenset({AgreementState.APPROVED, AgreementState.REJECTED, AgreementState.TERMINATED}),
    AgreementState.APPROVED: frozenset({AgreementState.TERMINATED}),
    AgreementState.REJECTED: frozenset(),
    AgreementState.TERMINATED: frozenset(),
}


@dataclass(slots=True)
class Agreement:
    """Requestor's authoritative local copy of an agreement."""

    agreement_id: AgreementId
    proposal_id: ProposalId
    provider_id: str
    valid_to: datetime
    state: AgreementState = AgreementState.PROPOSED
    properties: Properties = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)
    approved_at: datetime | None = None
    terminated_at: datetime | None = None
    history: List[tuple[AgreementState, datetime]] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.state in (AgreementState.PROPOSED, AgreementState.APPROVED)

    def transition(self, target: AgreementState, *, now: datetime | None = None) -> None:
        if target not in _AGREEMENT_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Agreement {self.agreement_id}: {self.state.value} -> {target.value} is not allowed"
            )
        when = now or now_utc()
        self.state = target
        self.history.append((target, when))
        if target is AgreementState.APPROVED:
            self.approved_at = when
        elif target is AgreementState.TERMINATED:
            self.terminated_at = when


__all__ = [
    "Agreement",
    "Demand",
    "DemandHandle",
    "DemandSpec",
    "Proposal",
]
