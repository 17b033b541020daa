"""Error hierarchy shared by the requestor subsystems.

Centralizing exception types lets the orchestrator distinguish fatal issues
(rejected key import) from failures that were recoverable up to a deadline
(negotiation) or a retry budget (activity transitions). Submodules should
raise the most specific error available.
"""
from __future__ import annotations

from typing import Any


class CoreError(Exception):
    """Base class for all custom exceptions in the application."""

    kind = "core_error"


class ConfigurationError(CoreError):
    """Raised when configuration files are missing or invalid."""

    kind = "configuration_error"


class ApiUnreachable(CoreError):
    """Raised when an HTTP endpoint cannot be reached at all."""

    kind = "api_unreachable"


class ApiError(CoreError):
    """Raised when an API answers with a non-success HTTP status."""

    kind = "api_error"

    def __init__(self, status: int, message: str, payload: Any = None) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message
        self.payload = payload


class RetryExhausted(CoreError):
    """Raised by bounded polling helpers once all attempts are spent."""

    kind = "retry_exhausted"

    def __init__(self, attempts: int, last_value: Any = None) -> None:
        super().__init__(f"Condition not met after {attempts} attempts")
        self.attempts = attempts
        self.last_value = last_value


class KeyImportError(CoreError):
    """Raised when the identity key cannot be imported."""

    kind = "key_import_error"


class KeyImportUnreachable(KeyImportError):
    """The admin endpoint could not be reached."""

    kind = "key_import_unreachable"


class KeyImportRejected(KeyImportError):
    """The admin endpoint answered with a non-success status."""

    kind = "key_import_rejected"

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"Key import rejected (HTTP {status}): {message}")
        self.status = status


class MarketError(CoreError):
    """Raised for failures while negotiating on the market."""

    kind = "market_error"


class NegotiationTimeout(MarketError):
    """No acceptable proposal arrived before the negotiation deadline."""

    kind = "negotiation_timeout"


class AgreementRejected(MarketError):
    """The provider rejected or withdrew before confirming the agreement."""

    kind = "agreement_rejected"

    def __init__(self, agreement_id: str, reason: str | None = None) -> None:
        super().__init__(f"Agreement {agreement_id} rejected: {reason or 'no reason given'}")
        self.agreement_id = agreement_id
        self.reason = reason


class ActivityError(CoreError):
    """Raised when an activity cannot be created or driven."""

    kind = "activity_error"


class ProviderUnresponsive(ActivityError):
    """The provider did not acknowledge a transition within the retry budget."""

    kind = "provider_unresponsive"


class ExecutionFailed(ActivityError):
    """The remote execution reported an error result."""

    kind = "execution_failed"

    def __init__(self, message: str, report: Any = None) -> None:
        super().__init__(message)
        self.report = report


class RunTimeout(CoreError):
    """The whole run outlived its configured time budget."""

    kind = "run_timeout"

    def __init__(self, budget_sec: float) -> None:
        super().__init__(f"Run exceeded its {budget_sec}s budget")
        self.budget_sec = budget_sec


class InvalidStateTransition(CoreError):
    """Raised when an agreement or activity state would move backwards or stay in place."""

    kind = "invalid_state_transition"


class TelemetryError(CoreError):
    """Raised for telemetry/logging persistence issues."""

    kind = "telemetry_error"
