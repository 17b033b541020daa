"""Demand construction and proposal acceptance rules.

Demands are expressed the way the market matcher expects them: a flat map of
dotted properties and an LDAP-style filter, e.g.::

    (&(golem.runtime.name=wasmtime)
      (golem.inf.mem.gib>=0.5)
      (golem.inf.storage.gib>=1.0))

The market only does weak matching, so every proposal is re-checked locally
against :class:`AcceptanceCriteria` before the requestor commits to it.
Pricing follows the linear model: ``coeffs[i]`` is the price per unit of
``usage_vector[i]`` and the trailing coefficient is the fixed price.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Mapping

from requestor.config.models import AcceptanceConfig, DemandConfig
from requestor.core.time_utils import expires_in, to_epoch_millis

from .models import (
    CPU_THREADS,
    EXPIRATION,
    MEM_GIB,
    PRICING_COEFFS,
    RUNTIME_NAME,
    STORAGE_GIB,
    TASK_PACKAGE,
    USAGE_CPU_SEC,
    USAGE_DURATION_SEC,
    USAGE_VECTOR,
    Demand,
    DemandSpec,
    Proposal,
)

ScoringFunction = Callable[[Proposal], float]

SECONDS_PER_HOUR = 3600.0


def build_demand(spec: DemandSpec, *, now: datetime | None = None) -> Demand:
    """Translate ``spec`` into market properties and a conjunctive constraint."""

    properties: dict[str, Any] = {
        EXPIRATION: to_epoch_millis(expires_in(spec.expiration_sec, now=now)),
    }
    if spec.task_package:
        properties[TASK_PACKAGE] = spec.task_package
    properties.update(spec.properties)

    clauses: list[str] = []
    if spec.runtime:
        clauses.append(f"({RUNTIME_NAME}={spec.runtime})")
    if spec.min_mem_gib:
        clauses.append(f"({MEM_GIB}>={_format_number(spec.min_mem_gib)})")
    if spec.min_storage_gib:
        clauses.append(f"({STORAGE_GIB}>={_format_number(spec.min_storage_gib)})")
    if spec.min_cpu_threads:
        clauses.append(f"({CPU_THREADS}>={spec.min_cpu_threads})")
    for extra in spec.constraints:
        text = extra.strip()
        if text:
            clauses.append(text if text.startswith("(") else f"({text})")
    return Demand(properties=properties, constraints=_conjunction(clauses))


def _conjunction(clauses: List[str]) -> str:
    if not clauses:
        return ""
    if len(clauses) == 1:
        return clauses[0]
    body = "\n  ".join(clauses)
    return f"(&{body})"


def _format_number(value: float) -> str:
    return f"{value:g}"


@dataclass(slots=True, frozen=True)
class AcceptanceCriteria:
    """Hard constraints checked against every proposal.

    ``None`` disables a price limit. Resource minimums mirror the demand so a
    provider that only weakly matched cannot slip through.
    """

    max_fixed_price: float | None = None
    max_price_cpu_hour: float | None = None
    max_price_duration_hour: float | None = None
    min_mem_gib: float = 0.0
    min_storage_gib: float = 0.0
    min_cpu_threads: int = 0
    runtime: str | None = None
    required_properties: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, acceptance: AcceptanceConfig, demand: DemandConfig) -> "AcceptanceCriteria":
        return cls(
            max_fixed_price=acceptance.max_fixed_price,
            max_price_cpu_hour=acceptance.max_price_cpu_hour,
            max_price_duration_hour=acceptance.max_price_duration_hour,
            min_mem_gib=demand.min_mem_gib,
            min_storage_gib=demand.min_storage_gib,
            min_cpu_threads=demand.min_cpu_threads,
            runtime=demand.runtime or None,
            required_properties=dict(acceptance.required_properties),
        )

    @property
    def limits_price(self) -> bool:
        return any(
            limit is not None
            for limit in (self.max_fixed_price, self.max_price_cpu_hour, self.max_price_duration_hour)
        )

    def evaluate(self, proposal: Proposal) -> list[str]:
        """Return human-readable violations; an empty list means acceptable."""

        props = proposal.properties
        violations: list[str] = []
        violations.extend(_check_minimum(props, MEM_GIB, self.min_mem_gib))
        violations.extend(_check_minimum(props, STORAGE_GIB, self.min_storage_gib))
        violations.extend(_check_minimum(props, CPU_THREADS, self.min_cpu_threads))
        if self.runtime and props.get(RUNTIME_NAME) != self.runtime:
            violations.append(f"{RUNTIME_NAME}={props.get(RUNTIME_NAME)!r}, expected {self.runtime!r}")
        for key, expected in self.required_properties.items():
            if props.get(key) != expected:
                violations.append(f"{key}={props.get(key)!r}, expected {expected!r}")
        if self.limits_price:
            violations.extend(self._check_pricing(props))
        return violations

    def accepts(self, proposal: Proposal) -> bool:
        return not self.evaluate(proposal)

    def _check_pricing(self, props: Mapping[str, Any]) -> list[str]:
        try:
            pricing = LinearPricing.from_properties(props)
        except ValueError as exc:
            return [str(exc)]
        violations: list[str] = []
        if self.max_fixed_price is not None and pricing.fixed > self.max_fixed_price:
            violations.append(f"fixed price {pricing.fixed} > {self.max_fixed_price}")
        if self.max_price_cpu_hour is not None:
            per_hour = pricing.per_unit(USAGE_CPU_SEC) * SECONDS_PER_HOUR
            if per_hour > self.max_price_cpu_hour:
                violations.append(f"cpu price {per_hour}/h > {self.max_price_cpu_hour}/h")
        if self.max_price_duration_hour is not None:
            per_hour = pricing.per_unit(USAGE_DURATION_SEC) * SECONDS_PER_HOUR
            if per_hour > self.max_price_duration_hour:
                violations.append(f"duration price {per_hour}/h > {self.max_price_duration_hour}/h")
        return violations


@dataclass(slots=True, frozen=True)
class LinearPricing:
    """Linear pricing model advertised by a provider offer."""

    usage_vector: tuple[str, ...]
    coefficients: tuple[float, ...]

    @classmethod
    def from_properties(cls, props: Mapping[str, Any]) -> "LinearPricing":
        coeffs = props.get(PRICING_COEFFS)
        usage = props.get(USAGE_VECTOR)
        if not isinstance(coeffs, (list, tuple)) or not isinstance(usage, (list, tuple)):
            raise ValueError("proposal does not advertise linear pricing")
        if len(coeffs) != len(usage) + 1:
            raise ValueError(f"pricing has {len(coeffs)} coefficients for {len(usage)} usage counters")
        try:
            values = tuple(float(value) for value in coeffs)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"non-numeric pricing coefficient: {exc}") from exc
        return cls(usage_vector=tuple(str(item) for item in usage), coefficients=values)

    @property
    def fixed(self) -> float:
        return self.coefficients[-1]

    def per_unit(self, counter: str) -> float:
        """Price per unit of ``counter``; counters the offer does not bill are free."""

        if counter not in self.usage_vector:
            return 0.0
        return self.coefficients[self.usage_vector.index(counter)]


def _check_minimum(props: Mapping[str, Any], key: str, minimum: float) -> list[str]:
    if not minimum:
        return []
    value = props.get(key)
    if value is None:
        return [f"{key} missing"]
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return [f"{key}={value!r} is not numeric"]
    if numeric < minimum:
        return [f"{key}={numeric} < {minimum}"]
    return []


__all__ = ["AcceptanceCriteria", "LinearPricing", "ScoringFunction", "build_demand"]
