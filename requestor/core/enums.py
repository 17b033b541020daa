"""Enumerations shared across requestor subsystems.

The enums below define the lifecycle contracts of the market and activity
APIs. They live in the core package so that every other module can import
them without introducing circular dependencies.
"""
from __future__ import annotations

from enum import Enum


class ProposalState(str, Enum):
    """Market-side state of a proposal as reported by the market API."""

    INITIAL = "Initial"
    DRAFT = "Draft"
    REJECTED = "Rejected"
    ACCEPTED = "Accepted"
    EXPIRED = "Expired"


class AgreementState(str, Enum):
    """Requestor-side lifecycle of an agreement."""

    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    TERMINATED = "terminated"


class ActivityState(str, Enum):
    """Activity lifecycle; members are declared in transition order."""

    NEW = "new"
    DEPLOYED = "deployed"
    RUNNING = "running"
    TERMINATED = "terminated"

    @property
    def rank(self) -> int:
        return list(ActivityState).index(self)


class RemoteActivityState(str, Enum):
    """States reported by ``GET activity/{id}/state``."""

    NEW = "New"
    INITIALIZED = "Initialized"
    DEPLOYED = "Deployed"
    READY = "Ready"
    TERMINATED = "Terminated"
    UNRESPONSIVE = "Unresponsive"


class CommandOutcome(str, Enum):
    """Result of a single exe-script command."""

    OK = "Ok"
    ERROR = "Error"


class StartMode(str, Enum):
    """Start mode declared by a deploy result."""

    EMPTY = "empty"
    BLOCKING = "blocking"


class ExitCode(int, Enum):
    """Process exit codes of the requestor entry point."""

    SUCCESS = 0
    UNEXPECTED = 1
    KEY_IMPORT = 2
    MARKET = 3
    ACTIVITY = 4
    TIMEOUT = 124
    INTERRUPTED = 130


class RunStage(str, Enum):
    """Stage of a requestor run; decides the exit code of a failure."""

    KEY_IMPORT = "key_import"
    MARKET = "market"
    ACTIVITY = "activity"
    REPORT = "report"
