"""Per-run state passed explicitly through the orchestrator."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict

from requestor.activity.models import ActivityHandle, ExecutionReport
from requestor.clients.admin import NodeIdentity
from requestor.core.enums import AgreementState, ExitCode, RunStage
from requestor.core.errors import RunTimeout
from requestor.core.time_utils import now_utc
from requestor.market.models import Agreement, DemandHandle


@dataclass(slots=True)
class RequestorContext:
    """Everything a single run has acquired so far.

    Cleanup walks this object in reverse acquisition order, so every resource
    is recorded here the moment the API hands it out.
    """

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=now_utc)
    stage: RunStage = RunStage.KEY_IMPORT
    identity: NodeIdentity | None = None
    demand: DemandHandle | None = None
    agreement: Agreement | None = None
    activity: ActivityHandle | None = None
    report: ExecutionReport | None = None

    @property
    def approved_agreement(self) -> Agreement | None:
        """Agreement that still needs terminating, including one closed mid-negotiation."""

        candidate = self.agreement
        if candidate is None and self.demand is not None:
            candidate = self.demand.agreement
        if candidate is not None and candidate.state is AgreementState.APPROVED:
            return candidate
        return None

    def describe(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "node_id": self.identity.node_id if self.identity else None,
            "subscription_id": self.demand.subscription_id if self.demand else None,
            "agreement_id": self.agreement.agreement_id if self.agreement else None,
            "activity_id": self.activity.activity_id if self.activity else None,
        }


class RunDeadline:
    """Overall time budget of a run on a monotonic clock.

    ``start`` arms the budget, ``disarm`` lifts it so cleanup is never cut
    short. ``guard`` wraps a sleep function so polling loops stop once the
    budget is spent.
    """

    def __init__(self, budget_sec: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_sec = budget_sec
        self._clock = clock
        self._expires_at: float | None = None

    def start(self) -> None:
        self._expires_at = None if self.budget_sec is None else self._clock() + self.budget_sec

    def disarm(self) -> None:
        self._expires_at = None

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - self._clock()

    def check(self) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise RunTimeout(self.budget_sec or 0.0)

    def cap(self, seconds: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return seconds
        return max(0.0, min(seconds, remaining))

    def guard(self, sleep: Callable[[float], None]) -> Callable[[float], None]:
        def guarded(seconds: float) -> None:
            self.check()
            sleep(self.cap(seconds))

        return guarded


@dataclass(slots=True)
class RunOutcome:
    """Result of :meth:`RequestorOrchestrator.run`."""

    exit_code: ExitCode
    report: ExecutionReport | None = None
    failure_kind: str | None = None
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.exit_code is ExitCode.SUCCESS


__all__ = ["RequestorContext", "RunDeadline", "RunOutcome"]
