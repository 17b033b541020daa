"""Shared type aliases for readability and contract enforcement.

Market and activity APIs hand out many opaque string identifiers. Aliases
defined here keep them from being mixed up across subsystems.
"""
from __future__ import annotations

from typing import Any, Mapping, NewType, TypeAlias

NodeId = NewType("NodeId", str)
SubscriptionId = NewType("SubscriptionId", str)
ProposalId = NewType("ProposalId", str)
AgreementId = NewType("AgreementId", str)
ActivityId = NewType("ActivityId", str)
BatchId = NewType("BatchId", str)

JSONLike: TypeAlias = Mapping[str, Any]
Properties: TypeAlias = Mapping[str, Any]
