"""Configuration loading and validation package."""

from .loader import load_requestor_config, resolve_config_path
from .models import (
    AcceptanceConfig,
    ActivityConfig,
    ApiConfig,
    DemandConfig,
    IdentityConfig,
    NegotiationConfig,
    RequestorConfig,
    RunCommandConfig,
    TelemetryConfig,
)

__all__ = [
    "AcceptanceConfig",
    "ActivityConfig",
    "ApiConfig",
    "DemandConfig",
    "IdentityConfig",
    "NegotiationConfig",
    "RequestorConfig",
    "RunCommandConfig",
    "TelemetryConfig",
    "load_requestor_config",
    "resolve_config_path",
]
