"""Market negotiation subsystem package."""

from .constraints import AcceptanceCriteria, LinearPricing, ScoringFunction, build_demand
from .models import Agreement, Demand, DemandHandle, DemandSpec, Proposal
from .negotiator import MarketClient

__all__ = [
    "AcceptanceCriteria",
    "Agreement",
    "Demand",
    "DemandHandle",
    "DemandSpec",
    "LinearPricing",
    "MarketClient",
    "Proposal",
    "ScoringFunction",
    "build_demand",
]
