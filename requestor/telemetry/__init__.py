"""Telemetry and logging subsystem package."""
from .events import RunRecord, TelemetryEvent
from .logging_setup import configure_logging
from .storage import TelemetryStorage

__all__ = [
    "TelemetryEvent",
    "RunRecord",
    "configure_logging",
    "TelemetryStorage",
]
