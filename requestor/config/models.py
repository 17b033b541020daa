"""Typed configuration models for the requestor.

The config subsystem relies on pydantic to validate the YAML file, the
environment and the CLI flags, and to hand strongly-typed objects to the rest
of the runtime.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, field_validator

DEFAULT_DAEMON_URL = "http://127.0.0.1:7465"
NODE_ID_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ApiConfig(BaseModel):
    """Endpoints of the local daemon plus HTTP client tuning."""

    admin_url: str = DEFAULT_DAEMON_URL
    market_url: str = f"{DEFAULT_DAEMON_URL}/market-api/v1/"
    activity_url: str = f"{DEFAULT_DAEMON_URL}/activity-api/v1/"
    request_timeout_sec: PositiveFloat = 30.0
    max_retries: PositiveInt = 3
    backoff_base_sec: float = Field(0.25, ge=0)


class IdentityConfig(BaseModel):
    """Key imported through the admin API and the node it belongs to.

    Mirrors ``--app-key`` / ``YAGNA_APPKEY``. The key doubles as the bearer
    token of market and activity calls.
    """

    app_key: Optional[str] = None
    node_id: Optional[str] = None

    @field_validator("app_key")
    @classmethod
    def _check_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("app_key must be a hex string") from exc
        return value.lower()

    @field_validator("node_id")
    @classmethod
    def _check_node_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not NODE_ID_PATTERN.match(value):
            raise ValueError("node_id must be 0x followed by 40 hex characters")
        return value.lower()

    model_config = ConfigDict(frozen=True)


class DemandConfig(BaseModel):
    """Resource requirements published as the demand.

    Extra ``properties`` and ``constraints`` are merged verbatim so new market
    properties can be targeted without code changes.
    """

    runtime: str = "wasmtime"
    task_package: Optional[str] = None
    min_mem_gib: float = Field(0.5, ge=0)
    min_storage_gib: float = Field(1.0, ge=0)
    min_cpu_threads: int = Field(1, ge=0)
    expiration_sec: PositiveInt = 1800
    properties: Dict[str, Any] = Field(default_factory=dict)
    constraints: List[str] = Field(default_factory=list)


class AcceptanceConfig(BaseModel):
    """Hard constraints a proposal must satisfy before it can be accepted."""

    max_fixed_price: Optional[float] = Field(None, ge=0)
    max_price_cpu_hour: Optional[float] = Field(None, ge=0)
    max_price_duration_hour: Optional[float] = Field(None, ge=0)
    required_properties: Dict[str, Any] = Field(default_factory=dict)


class NegotiationConfig(BaseModel):
    """Proposal polling and agreement settings."""

    deadline_sec: PositiveFloat = 120.0
    poll_timeout_sec: PositiveFloat = 5.0
    max_events: PositiveInt = 10
    counter_initial_proposals: bool = True
    agreement_valid_sec: PositiveInt = 3600
    approval_timeout_sec: PositiveFloat = 15.0
    acceptance: AcceptanceConfig = Field(default_factory=AcceptanceConfig)


class RunCommandConfig(BaseModel):
    """Single ``run`` exe-script command."""

    entry_point: str
    args: List[str] = Field(default_factory=list)


class ActivityConfig(BaseModel):
    """Activity transition retries and the commands executed once running."""

    state_poll_attempts: PositiveInt = 10
    backoff_base_sec: float = Field(0.5, ge=0)
    backoff_max_sec: float = Field(8.0, ge=0)
    exec_poll_timeout_sec: PositiveFloat = 10.0
    exec_poll_attempts: PositiveInt = 30
    commands: List[RunCommandConfig] = Field(default_factory=list)


class TelemetryConfig(BaseModel):
    """Logging and report locations."""

    log_level: str = Field("INFO")
    logs_dir: str = Field("data/logs")
    reports_dir: str = Field("data/reports")

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unknown log level: {value}")
        return level


class RequestorConfig(BaseModel):
    """Runtime config composed of API, identity, demand, negotiation, activity and telemetry.

    ``run_timeout_sec`` bounds the whole run; ``None`` disables the limit.
    """

    run_timeout_sec: Optional[PositiveFloat] = 900.0
    api: ApiConfig = Field(default_factory=ApiConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    demand: DemandConfig = Field(default_factory=DemandConfig)
    negotiation: NegotiationConfig = Field(default_factory=NegotiationConfig)
    activity: ActivityConfig = Field(default_factory=ActivityConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
