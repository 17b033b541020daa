"""Requestor run orchestration."""
from .context import RequestorContext, RunDeadline, RunOutcome
from .orchestrator import RequestorOrchestrator

__all__ = ["RequestorContext", "RequestorOrchestrator", "RunDeadline", "RunOutcome"]
