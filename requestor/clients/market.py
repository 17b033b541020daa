"""Market API client (requestor side).

Thin wrapper over the ``market-api/v1`` endpoints used during negotiation:

* ``POST demands`` / ``DELETE demands/{id}`` to (un)subscribe a demand;
* ``GET demands/{id}/events`` to long-poll proposal events;
* ``POST demands/{id}/proposals/{pid}`` to counter a provider proposal;
* ``POST agreements`` + ``confirm`` + ``wait`` to close the deal;
* ``POST agreements/{id}/terminate`` to release it.

Semantics (which proposal to accept, deadlines) live in
:mod:`requestor.market.negotiator`; this module only shapes HTTP calls.
"""
from __future__ import annotations

from typing import Any, Mapping, Sequence

from requestor.core.errors import CoreError
from requestor.core.types import AgreementId, JSONLike, ProposalId, SubscriptionId

from .rest import RestClient, parse_id


class MarketApiClient(RestClient):
    """Synchronous client for ``market-api/v1``."""

    def subscribe_demand(self, demand: Mapping[str, Any]) -> SubscriptionId:
        result = self._request("POST", "demands", json_body=dict(demand))
        return SubscriptionId(parse_id(result, "demandId"))

    def unsubscribe_demand(self, subscription_id: SubscriptionId) -> None:
        self._request("DELETE", f"demands/{subscription_id}")

    def collect_events(
        self,
        subscription_id: SubscriptionId,
        *,
        timeout: float,
        max_events: int,
    ) -> Sequence[JSONLike]:
        """Long-poll negotiation events; the server holds the call up to ``timeout`` seconds."""

        params = {"timeout": timeout, "maxEvents": max_events}
        result = self._request(
            "GET",
            f"demands/{subscription_id}/events",
            params=params,
            timeout=timeout + 5.0,
        )
        if not result:
            return []
        if not isinstance(result, list):
            raise CoreError(f"Unexpected events payload: {result!r}")
        return result

    def counter_proposal(
        self,
        subscription_id: SubscriptionId,
        proposal_id: ProposalId,
        demand: Mapping[str, Any],
    ) -> ProposalId:
        result = self._request(
            "POST",
            f"demands/{subscription_id}/proposals/{proposal_id}",
            json_body=dict(demand),
        )
        return ProposalId(parse_id(result, "proposalId"))

    def reject_proposal(
        self,
        subscription_id: SubscriptionId,
        proposal_id: ProposalId,
        reason: str,
    ) -> None:
        self._request(
            "POST",
            f"demands/{subscription_id}/proposals/{proposal_id}/reject",
            json_body={"message": reason},
        )

    def create_agreement(self, proposal_id: ProposalId, valid_to: str) -> AgreementId:
        result = self._request(
            "POST",
            "agreements",
            json_body={"proposalId": proposal_id, "validTo": valid_to},
        )
        return AgreementId(parse_id(result, "agreementId"))

    def confirm_agreement(self, agreement_id: AgreementId) -> None:
        self._request("POST", f"agreements/{agreement_id}/confirm")

    def wait_for_approval(self, agreement_id: AgreementId, *, timeout: float) -> Any:
        """Return the raw approval answer; 408/410 surface as :class:`ApiError`."""

        return self._request(
            "POST",
            f"agreements/{agreement_id}/wait",
            params={"timeout": timeout},
            timeout=timeout + 5.0,
        )

    def terminate_agreement(self, agreement_id: AgreementId, reason: str) -> None:
        self._request(
            "POST",
            f"agreements/{agreement_id}/terminate",
            json_body={"message": reason},
        )


__all__ = ["MarketApiClient"]
