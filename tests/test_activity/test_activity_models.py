from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from requestor.config.models import RunCommandConfig
from requestor.core.enums import ActivityState, StartMode
from requestor.core.errors import InvalidStateTransition
from requestor.activity.models import (
    ActivityHandle,
    CommandResult,
    DeployResult,
    ExecutionReport,
    deploy_command,
    run_commands_from_config,
    start_command,
)


def _handle() -> ActivityHandle:
    return ActivityHandle(activity_id="act-1", agreement_id="agr-1", provider_id="0xprov")


def test_activity_handle_should_only_move_forward() -> None:
    handle = _handle()
    handle.transition(ActivityState.DEPLOYED)
    handle.transition(ActivityState.RUNNING)
    with pytest.raises(InvalidStateTransition):
        handle.transition(ActivityState.DEPLOYED)
    with pytest.raises(InvalidStateTransition):
        handle.transition(ActivityState.RUNNING)
    handle.transition(ActivityState.TERMINATED)
    assert [state for state, _ in handle.history] == [
        ActivityState.NEW,
        ActivityState.DEPLOYED,
        ActivityState.RUNNING,
        ActivityState.TERMINATED,
    ]


def test_activity_handle_should_allow_skipping_to_terminated() -> None:
    handle = _handle()
    handle.transition(ActivityState.TERMINATED)
    assert handle.is_terminated
    with pytest.raises(InvalidStateTransition):
        handle.transition(ActivityState.TERMINATED)


def test_command_builders_should_match_exe_script_shape() -> None:
    assert deploy_command() == {"deploy": {}}
    assert start_command(["-v"]) == {"start": {"args": ["-v"]}}
    commands = run_commands_from_config([RunCommandConfig(entry_point="main", args=["a"])])
    assert commands == [{"run": {"entry_point": "main", "args": ["a"]}}]


def test_command_result_should_unwrap_output_variants() -> None:
    result = CommandResult.from_api(
        {
            "index": 2,
            "result": "Error",
            "stdout": {"str": "partial"},
            "stderr": {"bin": list(b"boom")},
            "message": "exit code 1",
            "isBatchFinished": True,
            "eventDate": "2024-01-01T12:00:00Z",
        }
    )
    assert not result.ok
    assert result.stdout == "partial"
    assert result.stderr == "boom"
    assert result.to_dict()["event_date"] == "2024-01-01T12:00:00+00:00"


def test_deploy_result_should_parse_ok_and_err() -> None:
    ok = DeployResult.from_text(
        json.dumps({"valid": {"Ok": "success"}, "vols": [{"name": "out", "path": "/out"}], "startMode": "Blocking"})
    )
    assert ok.valid
    assert ok.vols[0].path == "/out"
    assert ok.start_mode is StartMode.BLOCKING

    err = DeployResult.from_text(json.dumps({"valid": {"Err": "bad image"}}))
    assert not err.valid
    assert err.message == "bad image"


def test_deploy_result_should_treat_empty_output_as_valid() -> None:
    assert DeployResult.from_text("").valid
    assert DeployResult.from_text(None).valid


def test_deploy_result_should_reject_garbage() -> None:
    with pytest.raises(ValueError):
        DeployResult.from_text("deployed!")
    with pytest.raises(ValueError):
        DeployResult.from_text("{}")


def test_execution_report_should_serialize_duration() -> None:
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)
    report = ExecutionReport(
        activity_id="act-1",
        agreement_id="agr-1",
        provider_id="0xprov",
        success=True,
        results=[CommandResult.from_api({"index": 0, "result": "Ok", "stdout": "hi"})],
        started_at=started,
        finished_at=started + timedelta(seconds=3),
    )
    payload = report.to_dict()
    assert payload["duration_sec"] == 3.0
    assert payload["results"][0]["stdout"] == "hi"
    assert report.failed_results == []
