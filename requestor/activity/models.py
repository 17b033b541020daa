"""Activity-layer models: handles, exe-script commands, results and reports."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence

from requestor.config.models import RunCommandConfig
from requestor.core.enums import ActivityState, CommandOutcome, StartMode
from requestor.core.errors import InvalidStateTransition
from requestor.core.time_utils import now_utc, parse_api_timestamp
from requestor.core.types import ActivityId, AgreementId


def deploy_command() -> Dict[str, Any]:
    return {"deploy": {}}


def start_command(args: Sequence[str] = ()) -> Dict[str, Any]:
    return {"start": {"args": list(args)}}


def run_command(entry_point: str, args: Sequence[str] = ()) -> Dict[str, Any]:
    return {"run": {"entry_point": entry_point, "args": list(args)}}


def run_commands_from_config(commands: Sequence[RunCommandConfig]) -> List[Dict[str, Any]]:
    return [run_command(cmd.entry_point, cmd.args) for cmd in commands]


@dataclass(slots=True)
class ActivityHandle:
    """Execution context bound to an approved agreement.

    ``state`` only ever moves forward through :class:`ActivityState`; skipping
    ahead (``NEW`` straight to ``TERMINATED`` on cleanup) is allowed,
    revisiting is not.
    """

    activity_id: ActivityId
    agreement_id: AgreementId
    provider_id: str
    state: ActivityState = ActivityState.NEW
    created_at: datetime = field(default_factory=now_utc)
    history: List[tuple[ActivityState, datetime]] = field(default_factory=list)
    deploy_result: "DeployResult | None" = None

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, self.created_at))

    @property
    def is_terminated(self) -> bool:
        return self.state is ActivityState.TERMINATED

    def transition(self, target: ActivityState, *, now: datetime | None = None) -> None:
        if target.rank <= self.state.rank:
            raise InvalidStateTransition(
                f"Activity {self.activity_id}: {self.state.value} -> {target.value} is not allowed"
            )
        self.state = target
        self.history.append((target, now or now_utc()))


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Outcome of one exe-script command as reported by the provider."""

    index: int
    result: CommandOutcome
    stdout: str | None = None
    stderr: str | None = None
    message: str | None = None
    is_batch_finished: bool = False
    event_date: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.result is CommandOutcome.OK

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "CommandResult":
        return cls(
            index=int(payload.get("index", 0)),
            result=CommandOutcome(payload.get("result", CommandOutcome.OK.value)),
            stdout=_text(payload.get("stdout")),
            stderr=_text(payload.get("stderr")),
            message=payload.get("message"),
            is_batch_finished=bool(payload.get("isBatchFinished", False)),
            event_date=parse_api_timestamp(payload.get("eventDate")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "result": self.result.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "message": self.message,
            "is_batch_finished": self.is_batch_finished,
            "event_date": self.event_date.isoformat() if self.event_date else None,
        }


def _text(value: Any) -> str | None:
    """Outputs arrive as plain strings or as ``{"str": ...}`` / ``{"bin": ...}`` wrappers."""

    if value is None or isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        if "str" in value:
            return str(value["str"])
        if "bin" in value:
            return bytes(value["bin"]).decode("utf-8", errors="replace")
    return str(value)


@dataclass(slots=True, frozen=True)
class ContainerVolume:
    name: str
    path: str


@dataclass(slots=True, frozen=True)
class DeployResult:
    """Parsed output of the ``deploy`` command.

    ``{"valid": {"Ok": "success"}, "vols": [...], "startMode": "blocking"}``;
    an empty output means a valid deploy with no volumes.
    """

    valid: bool
    message: str = ""
    vols: tuple[ContainerVolume, ...] = ()
    start_mode: StartMode = StartMode.EMPTY

    @classmethod
    def from_text(cls, text: str | None) -> "DeployResult":
        raw = (text or "").strip()
        if not raw:
            return cls(valid=True)
        if not raw.startswith("{"):
            raise ValueError("invalid deploy response")
        payload = json.loads(raw)
        valid_field = payload.get("valid", {})
        if "Ok" in valid_field:
            valid, message = True, str(valid_field["Ok"])
        elif "Err" in valid_field:
            valid, message = False, str(valid_field["Err"])
        else:
            raise ValueError(f"deploy response has no Ok/Err status: {valid_field!r}")
        vols = tuple(ContainerVolume(name=str(vol["name"]), path=str(vol["path"])) for vol in payload.get("vols", []))
        start_mode = StartMode(str(payload.get("startMode", StartMode.EMPTY.value)).lower())
        return cls(valid=valid, message=message, vols=vols, start_mode=start_mode)


@dataclass(slots=True)
class ExecutionReport:
    """Outcome of running the task commands on an activity."""

    activity_id: ActivityId
    agreement_id: AgreementId
    provider_id: str
    success: bool
    results: Sequence[CommandResult]
    started_at: datetime
    finished_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def failed_results(self) -> list[CommandResult]:
        return [result for result in self.results if not result.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "agreement_id": self.agreement_id,
            "provider_id": self.provider_id,
            "success": self.success,
            "results": [result.to_dict() for result in self.results],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_sec": (self.finished_at - self.started_at).total_seconds(),
            "metadata": dict(self.metadata),
        }


__all__ = [
    "ActivityHandle",
    "CommandResult",
    "ContainerVolume",
    "DeployResult",
    "ExecutionReport",
    "deploy_command",
    "run_command",
    "run_commands_from_config",
    "start_command",
]
