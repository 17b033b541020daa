from __future__ import annotations

import pytest

from requestor.config.models import AcceptanceConfig, DemandConfig
from requestor.core.enums import AgreementState
from requestor.core.errors import AgreementRejected, ApiError, MarketError, NegotiationTimeout
from requestor.market.constraints import AcceptanceCriteria, LinearPricing
from requestor.market.models import DemandSpec, Proposal
from requestor.market.negotiator import MarketClient

KEY = "ba5508aba59041f7affe232d5d310aa8"


@pytest.fixture
def market(market_api, negotiation_config, fake_clock) -> MarketClient:
    return MarketClient(market_api, negotiation_config, clock=fake_clock)


@pytest.fixture
def criteria(negotiation_config) -> AcceptanceCriteria:
    return AcceptanceCriteria.from_config(negotiation_config.acceptance, DemandConfig())


def test_publish_demand_should_subscribe_and_return_handle(market, daemon) -> None:
    handle = market.publish_demand(DemandSpec())
    assert handle.subscription_id == "sub-1"
    assert daemon.demands["sub-1"]["constraints"] == handle.demand.constraints
    assert daemon.auth_headers == [f"Bearer {KEY}"]


def test_poll_proposals_should_skip_non_proposal_events(market, daemon, proposal_factory, event_factory) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [
        [
            {"eventType": "ProposalRejectedEvent", "proposalId": "p0", "reason": {"message": "no"}},
            event_factory(proposal_factory("p1")),
        ]
    ]
    proposals = list(market.poll_proposals(handle))
    assert [proposal.proposal_id for proposal in proposals] == ["p1"]
    assert list(market.poll_proposals(handle)) == []


def test_negotiate_should_counter_initial_then_accept_draft(
    market, daemon, criteria, proposal_factory, event_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [[event_factory(proposal_factory("p1"))]]
    daemon.drafts = {"p1": proposal_factory("p2", "Draft", prev="p1")}

    agreement = market.negotiate(handle, criteria)

    assert agreement.state is AgreementState.APPROVED
    assert agreement.proposal_id == "p2"
    assert daemon.countered == ["p1"]
    assert daemon.agreements == {"agr-1": "p2"}
    assert daemon.confirmed == ["agr-1"]
    assert handle.agreement is agreement


def test_negotiate_should_accept_initial_when_countering_disabled(
    market_api, negotiation_config, fake_clock, daemon, criteria, proposal_factory, event_factory
) -> None:
    config = negotiation_config.model_copy(update={"counter_initial_proposals": False})
    market = MarketClient(market_api, config, clock=fake_clock)
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [[event_factory(proposal_factory("p1"))]]
    agreement = market.negotiate(handle, criteria)
    assert agreement.proposal_id == "p1"
    assert daemon.countered == []


def test_negotiate_should_time_out_without_proposals(market, daemon, criteria) -> None:
    handle = market.publish_demand(DemandSpec())
    with pytest.raises(NegotiationTimeout):
        market.negotiate(handle, criteria)
    assert daemon.agreements == {}


def test_negotiate_should_never_accept_constraint_violating_proposal(
    market, daemon, criteria, proposal_factory, event_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [
        [event_factory(proposal_factory("p1", "Draft", fixed=5.0))],
        [event_factory(proposal_factory("p2", "Initial", cpu_coeff=1.0))],
    ]
    with pytest.raises(NegotiationTimeout):
        market.negotiate(handle, criteria)
    assert daemon.agreements == {}
    assert daemon.countered == []
    assert daemon.rejected == ["p1"]


def test_negotiate_should_continue_after_rejected_agreement(
    market, daemon, criteria, proposal_factory, event_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [
        [
            event_factory(proposal_factory("p1", "Draft")),
            event_factory(proposal_factory("p2", "Draft", issuer="0x2222222222222222222222222222222222222222")),
        ]
    ]
    daemon.approval_answers = [(410, {"message": "provider rejected"})]

    agreement = market.negotiate(handle, criteria)

    assert agreement.agreement_id == "agr-2"
    assert agreement.provider_id == "0x2222222222222222222222222222222222222222"


def test_negotiate_should_raise_last_rejection_at_deadline(
    market, daemon, criteria, proposal_factory, event_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [[event_factory(proposal_factory("p1", "Draft"))]]
    daemon.approval_answers = [(200, "Rejected")]
    with pytest.raises(AgreementRejected) as excinfo:
        market.negotiate(handle, criteria)
    assert excinfo.value.agreement_id == "agr-1"
    assert handle.agreement.state is AgreementState.REJECTED


def test_negotiate_should_rank_batch_with_scoring_function(
    market, daemon, criteria, proposal_factory, event_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [
        [
            event_factory(proposal_factory("p1", "Draft", fixed=0.05)),
            event_factory(proposal_factory("p2", "Draft", fixed=0.01)),
        ]
    ]

    def cheapest(proposal: Proposal) -> float:
        return -LinearPricing.from_properties(proposal.properties).fixed

    agreement = market.negotiate(handle, criteria, scorer=cheapest)
    assert agreement.proposal_id == "p2"


def test_accept_agreement_should_wait_through_request_timeouts(
    market, daemon, proposal_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.approval_answers = [(408, None), (408, None), (204, None)]
    agreement = market.accept_agreement(handle, Proposal.from_api(proposal_factory("p1", "Draft")))
    assert agreement.state is AgreementState.APPROVED
    assert agreement.approved_at is not None


def test_accept_agreement_should_reject_after_approval_timeout(market, daemon, proposal_factory) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.approval_answers = [(408, None)] * 20
    with pytest.raises(AgreementRejected):
        market.accept_agreement(handle, Proposal.from_api(proposal_factory("p1", "Draft")))
    assert handle.agreement.state is AgreementState.REJECTED


def test_accept_agreement_should_refuse_second_active_agreement(market, daemon, proposal_factory) -> None:
    handle = market.publish_demand(DemandSpec())
    market.accept_agreement(handle, Proposal.from_api(proposal_factory("p1", "Draft")))
    with pytest.raises(MarketError):
        market.accept_agreement(handle, Proposal.from_api(proposal_factory("p2", "Draft")))
    assert list(daemon.agreements) == ["agr-1"]


def test_terminate_and_unsubscribe_should_be_idempotent(market, daemon, proposal_factory) -> None:
    handle = market.publish_demand(DemandSpec())
    agreement = market.accept_agreement(handle, Proposal.from_api(proposal_factory("p1", "Draft")))
    market.terminate_agreement(agreement, "Finished")
    market.terminate_agreement(agreement, "Finished")
    market.unsubscribe(handle)
    market.unsubscribe(handle)
    assert agreement.state is AgreementState.TERMINATED
    assert daemon.terminated == ["agr-1"]
    assert daemon.unsubscribed == ["sub-1"]


def test_unsubscribe_should_swallow_api_errors(market, daemon) -> None:
    handle = market.publish_demand(DemandSpec())
    handle.subscription_id = "missing/extra"
    market.unsubscribe(handle)
    assert handle.unsubscribed


OTHER_PROVIDER = "0x2222222222222222222222222222222222222222"


@pytest.mark.parametrize("withdrawn_at", ["create", "confirm"])
def test_negotiate_should_move_to_next_draft_when_provider_withdraws(
    withdrawn_at, market, daemon, criteria, proposal_factory, event_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.event_batches = [
        [
            event_factory(proposal_factory("p1", "Draft")),
            event_factory(proposal_factory("p2", "Draft", issuer=OTHER_PROVIDER)),
        ]
    ]
    if withdrawn_at == "create":
        daemon.create_failures = [(410, "proposal withdrawn")]
    else:
        daemon.confirm_failures = {"agr-1": 410}

    agreement = market.negotiate(handle, criteria)

    assert agreement.state is AgreementState.APPROVED
    assert agreement.proposal_id == "p2"
    assert agreement.provider_id == OTHER_PROVIDER
    assert handle.agreement is agreement


def test_accept_agreement_should_mark_agreement_rejected_when_confirm_gone(
    market, daemon, proposal_factory
) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.confirm_failures = {"agr-1": 404}
    with pytest.raises(AgreementRejected) as excinfo:
        market.accept_agreement(handle, Proposal.from_api(proposal_factory("p1", "Draft")))
    assert excinfo.value.agreement_id == "agr-1"
    assert handle.agreement.state is AgreementState.REJECTED
    assert handle.active_agreement is None


def test_accept_agreement_should_propagate_other_client_errors(market, daemon, proposal_factory) -> None:
    handle = market.publish_demand(DemandSpec())
    daemon.create_failures = [(400, "bad validTo")]
    with pytest.raises(ApiError) as excinfo:
        market.accept_agreement(handle, Proposal.from_api(proposal_factory("p1", "Draft")))
    assert excinfo.value.status == 400
    assert handle.agreement is None
