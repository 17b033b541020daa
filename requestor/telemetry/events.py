"""Structured telemetry models (events and per-run records)."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict


@dataclass(slots=True)
class TelemetryEvent:
    """Generic event used by JSON-line logs under ``logs/events_YYYYMMDD.jsonl``."""

    timestamp: datetime
    event_type: str
    level: str = "INFO"
    payload: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(slots=True)
class RunRecord:
    """One requestor run, appended to ``reports/runs_YYYYMMDD.csv``."""

    run_id: str
    node_id: str | None
    started_at: datetime
    finished_at: datetime
    exit_code: int
    failure_kind: str | None = None
    subscription_id: str | None = None
    agreement_id: str | None = None
    activity_id: str | None = None
    provider_id: str | None = None
    commands: int = 0

    @property
    def duration_sec(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_csv_row(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "datetime_start": self.started_at.isoformat(),
            "datetime_end": self.finished_at.isoformat(),
            "duration_sec": round(self.duration_sec, 3),
            "exit_code": self.exit_code,
            "failure_kind": self.failure_kind or "",
            "node_id": self.node_id or "",
            "subscription_id": self.subscription_id or "",
            "agreement_id": self.agreement_id or "",
            "activity_id": self.activity_id or "",
            "provider_id": self.provider_id or "",
            "commands": self.commands,
        }


__all__ = ["RunRecord", "TelemetryEvent"]
