"""Market negotiation: publish a demand, collect proposals, close an agreement.

Negotiation is a simple loop on top of :class:`MarketApiClient`:

1. ``publish_demand`` subscribes the demand and returns a handle;
2. ``poll_proposals`` long-polls one batch of proposal events (blocking up to
   ``poll_timeout_sec``) and yields the proposals lazily;
3. ``negotiate`` filters each batch through :class:`AcceptanceCriteria`,
   counters ``Initial`` proposals so providers answer with a ``Draft``, and
   hands the first acceptable ``Draft`` (or the best one when a scoring
   function is supplied) to ``accept_agreement``.

A rejected agreement does not end negotiation; only the overall deadline does.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterator

from requestor.clients.market import MarketApiClient
from requestor.config.models import NegotiationConfig
from requestor.core.enums import AgreementState, ProposalState
from requestor.core.errors import AgreementRejected, ApiError, CoreError, MarketError, NegotiationTimeout
from requestor.core.time_utils import expires_in, now_utc, to_api_timestamp
from requestor.core.types import ProposalId

from .constraints import AcceptanceCriteria, ScoringFunction, build_demand
from .models import Agreement, DemandHandle, DemandSpec, Proposal

LOGGER = logging.getLogger(__name__)

PROPOSAL_EVENT = "ProposalEvent"
APPROVED_ANSWERS = {None, "", "Approved"}
REJECTED_ANSWERS = {"Rejected", "Cancelled", "Expired", "Terminated"}
# Proposal or agreement gone on the provider side.
WITHDRAWN_STATUSES = {404, 410}


class MarketClient:
    """Requestor-side negotiation over the market API."""

    def __init__(
        self,
        api: MarketApiClient,
        config: NegotiationConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api = api
        self._config = config
        self._clock = clock
        self._logger = logger or LOGGER

    # ------------------------------------------------------------------
    # Demand lifecycle
    # ------------------------------------------------------------------
    def publish_demand(self, spec: DemandSpec) -> DemandHandle:
        demand = build_demand(spec)
        subscription_id = self._api.subscribe_demand(demand.to_payload())
        self._logger.info("Demand published", extra={"subscription_id": subscription_id})
        return DemandHandle(subscription_id=subscription_id, demand=demand, published_at=now_utc())

    def unsubscribe(self, handle: DemandHandle) -> None:
        """Best-effort removal of the demand subscription."""

        if handle.unsubscribed:
            return
        try:
            self._api.unsubscribe_demand(handle.subscription_id)
        except CoreError as exc:
            self._logger.warning("Failed to unsubscribe demand %s: %s", handle.subscription_id, exc)
        handle.unsubscribed = True

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------
    def poll_proposals(
        self,
        handle: DemandHandle,
        *,
        timeout: float | None = None,
        max_events: int | None = None,
    ) -> Iterator[Proposal]:
        """Yield the proposals of a single long-poll; call again for the next batch."""

        events = self._api.collect_events(
            handle.subscription_id,
            timeout=self._config.poll_timeout_sec if timeout is None else timeout,
            max_events=max_events or self._config.max_events,
        )
        for event in events:
            event_type = event.get("eventType")
            if event_type != PROPOSAL_EVENT or "proposal" not in event:
                self._logger.debug("Skipping market event", extra={"event_type": event_type})
                continue
            yield Proposal.from_api(event["proposal"])

    def counter_proposal(self, handle: DemandHandle, proposal: Proposal) -> ProposalId:
        """Answer ``proposal`` with our demand; the provider replies with a Draft."""

        counter_id = self._api.counter_proposal(
            handle.subscription_id,
            proposal.proposal_id,
            handle.demand.to_payload(),
        )
        self._logger.debug(
            "Countered proposal",
            extra={"proposal_id": proposal.proposal_id, "counter_id": counter_id},
        )
        return counter_id

    # ------------------------------------------------------------------
    # Agreements
    # ------------------------------------------------------------------
    def accept_agreement(self, handle: DemandHandle, proposal: Proposal) -> Agreement:
        """Create, confirm and wait for approval of an agreement on ``proposal``.

        A proposal or agreement that disappears on the provider side (404/410)
        surfaces as :class:`AgreementRejected` so negotiation can move on.
        """

        active = handle.active_agreement
        if active is not None:
            raise MarketError(
                f"Demand {handle.subscription_id} already holds agreement {active.agreement_id}"
            )
        valid_to = expires_in(self._config.agreement_valid_sec)
        try:
            agreement_id = self._api.create_agreement(proposal.proposal_id, to_api_timestamp(valid_to))
        except ApiError as exc:
            if exc.status in WITHDRAWN_STATUSES:
                raise AgreementRejected(proposal.proposal_id, exc.message) from exc
            raise
        agreement = Agreement(
            agreement_id=agreement_id,
            proposal_id=proposal.proposal_id,
            provider_id=proposal.issuer_id,
            valid_to=valid_to,
            properties=proposal.properties,
        )
        handle.agreement = agreement
        try:
            self._api.confirm_agreement(agreement_id)
            self._wait_for_approval(agreement)
        except AgreementRejected:
            agreement.transition(AgreementState.REJECTED)
            raise
        except ApiError as exc:
            if exc.status not in WITHDRAWN_STATUSES:
                raise
            agreement.transition(AgreementState.REJECTED)
            raise AgreementRejected(agreement_id, exc.message) from exc
        agreement.transition(AgreementState.APPROVED)
        self._logger.info(
            "Agreement approved",
            extra={"agreement_id": agreement_id, "provider_id": agreement.provider_id},
        )
        return agreement

    def _wait_for_approval(self, agreement: Agreement) -> None:
        budget = self._config.approval_timeout_sec
        deadline = self._clock() + budget
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise AgreementRejected(agreement.agreement_id, f"not approved within {budget}s")
            try:
                answer = self._api.wait_for_approval(agreement.agreement_id, timeout=remaining)
            except ApiError as exc:
                if exc.status == 408:
                    continue
                raise
            if answer in APPROVED_ANSWERS:
                return
            if answer in REJECTED_ANSWERS:
                raise AgreementRejected(agreement.agreement_id, str(answer))
            self._logger.debug("Agreement %s still pending: %r", agreement.agreement_id, answer)

    def terminate_agreement(self, agreement: Agreement, reason: str) -> None:
        """Best-effort termination; no-op for agreements that are no longer active."""

        if not agreement.is_active:
            return
        try:
            self._api.terminate_agreement(agreement.agreement_id, reason)
        except CoreError as exc:
            self._logger.warning("Failed to terminate agreement %s: %s", agreement.agreement_id, exc)
        agreement.transition(AgreementState.TERMINATED)

    # ------------------------------------------------------------------
    # Negotiation loop
    # ------------------------------------------------------------------
    def negotiate(
        self,
        handle: DemandHandle,
        criteria: AcceptanceCriteria,
        *,
        deadline_sec: float | None = None,
        scorer: ScoringFunction | None = None,
    ) -> Agreement:
        """Poll until an acceptable proposal becomes an approved agreement.

        Raises :class:`NegotiationTimeout` when the deadline passes without an
        agreement, or the last :class:`AgreementRejected` if providers kept
        refusing.
        """

        budget = self._config.deadline_sec if deadline_sec is None else deadline_sec
        deadline = self._clock() + budget
        last_rejection: AgreementRejected | None = None
        countered: set[ProposalId] = set()
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            timeout = min(self._config.poll_timeout_sec, remaining)
            candidates = self._acceptable(handle, self.poll_proposals(handle, timeout=timeout), criteria)
            if scorer is not None:
                candidates.sort(key=lambda proposal: -scorer(proposal))
            for proposal in candidates:
                if proposal.state is ProposalState.INITIAL and self._config.counter_initial_proposals:
                    if proposal.proposal_id not in countered:
                        self._counter_best_effort(handle, proposal)
                        countered.add(proposal.proposal_id)
                    continue
                try:
                    return self.accept_agreement(handle, proposal)
                except AgreementRejected as exc:
                    self._logger.warning("Agreement rejected, continuing negotiation: %s", exc)
                    last_rejection = exc
        if last_rejection is not None:
            raise last_rejection
        raise NegotiationTimeout(f"No acceptable proposal within {budget}s")

    def _acceptable(
        self,
        handle: DemandHandle,
        proposals: Iterator[Proposal],
        criteria: AcceptanceCriteria,
    ) -> list[Proposal]:
        accepted: list[Proposal] = []
        for proposal in proposals:
            if proposal.state not in (ProposalState.INITIAL, ProposalState.DRAFT):
                continue
            violations = criteria.evaluate(proposal)
            if violations:
                self._logger.info(
                    "Proposal violates constraints",
                    extra={"proposal_id": proposal.proposal_id, "violations": violations},
                )
                # Drafts answer our counter, so the provider is told why we walk away.
                if proposal.state is ProposalState.DRAFT:
                    self._reject_best_effort(handle, proposal, "; ".join(violations))
                continue
            accepted.append(proposal)
        return accepted

    def _reject_best_effort(self, handle: DemandHandle, proposal: Proposal, reason: str) -> None:
        try:
            self._api.reject_proposal(handle.subscription_id, proposal.proposal_id, reason)
        except CoreError as exc:
            self._logger.debug("Failed to reject proposal %s: %s", proposal.proposal_id, exc)

    def _counter_best_effort(self, handle: DemandHandle, proposal: Proposal) -> None:
        try:
            self.counter_proposal(handle, proposal)
        except ApiError as exc:
            self._logger.warning("Failed to counter proposal %s: %s", proposal.proposal_id, exc)


__all__ = ["MarketClient"]
