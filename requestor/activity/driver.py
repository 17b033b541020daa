"""ActivityDriver moving an activity through New -> Deployed -> Running -> Terminated."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Sequence

from requestor.clients.activity import ActivityApiClient
from requestor.config.models import ActivityConfig
from requestor.core.enums import ActivityState, AgreementState, RemoteActivityState
from requestor.core.errors import (
    ActivityError,
    ApiError,
    ApiUnreachable,
    ExecutionFailed,
    InvalidStateTransition,
    ProviderUnresponsive,
    RetryExhausted,
)
from requestor.core.retry import Backoff, poll_until
from requestor.core.time_utils import now_utc
from requestor.market.models import Agreement

from .models import ActivityHandle, CommandResult, DeployResult, ExecutionReport, deploy_command, start_command

LOGGER = logging.getLogger(__name__)

TransitionCallback = Callable[[ActivityHandle, ActivityState], None]

GONE_STATUSES = {404, 410}


class ActivityDriver:
    """Drives a single activity through its lifecycle over the activity API.

    Every transition is requested with an exe-script batch and then confirmed
    by polling ``GET activity/{id}/state`` with bounded exponential backoff.
    """

    def __init__(
        self,
        api: ActivityApiClient,
        config: ActivityConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_transition: TransitionCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api = api
        self._config = config
        self._sleep = sleep
        self._listeners: list[TransitionCallback] = [on_transition] if on_transition is not None else []
        self._logger = logger or LOGGER
        self._state_backoff = Backoff(
            attempts=config.state_poll_attempts,
            base_delay=config.backoff_base_sec,
            max_delay=config.backoff_max_sec,
        )
        self._exec_backoff = Backoff(
            attempts=config.exec_poll_attempts,
            base_delay=config.backoff_base_sec,
            max_delay=config.backoff_max_sec,
        )

    def add_listener(self, callback: TransitionCallback) -> None:
        """Register ``callback`` to be told about every local state change."""

        self._listeners.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_activity(self, agreement: Agreement) -> ActivityHandle:
        if agreement.state is not AgreementState.APPROVED:
            raise ActivityError(
                f"Agreement {agreement.agreement_id} is {agreement.state.value}, activities need an approved one"
            )
        activity_id = self._api.create_activity(agreement.agreement_id)
        handle = ActivityHandle(
            activity_id=activity_id,
            agreement_id=agreement.agreement_id,
            provider_id=agreement.provider_id,
        )
        self._logger.info("Activity created", extra={"activity_id": activity_id, "agreement_id": agreement.agreement_id})
        return handle

    def deploy(self, handle: ActivityHandle) -> DeployResult:
        self._require(handle, ActivityState.NEW)
        results = self._run_batch(handle, [deploy_command()], label="deploy")
        deploy_output = results[0].stdout if results else None
        try:
            deploy_result = DeployResult.from_text(deploy_output)
        except (ValueError, KeyError, TypeError) as exc:
            raise ExecutionFailed(f"Activity {handle.activity_id}: unreadable deploy result: {exc}") from exc
        if not deploy_result.valid:
            raise ExecutionFailed(f"Activity {handle.activity_id}: deploy failed: {deploy_result.message}")
        handle.deploy_result = deploy_result
        self._await_remote_state(handle, {RemoteActivityState.DEPLOYED, RemoteActivityState.READY}, label="deploy")
        self._advance(handle, ActivityState.DEPLOYED)
        return deploy_result

    def start(self, handle: ActivityHandle, args: Sequence[str] = ()) -> None:
        self._require(handle, ActivityState.DEPLOYED)
        self._run_batch(handle, [start_command(args)], label="start")
        self._await_remote_state(handle, {RemoteActivityState.READY}, label="start")
        self._advance(handle, ActivityState.RUNNING)

    def await_completion(
        self,
        handle: ActivityHandle,
        commands: Sequence[Mapping[str, Any]],
    ) -> ExecutionReport:
        """Execute ``commands`` and collect their results into a report.

        Raises :class:`ExecutionFailed` (carrying the report) if any command
        finished with an error.
        """

        self._require(handle, ActivityState.RUNNING)
        started_at = now_utc()
        results = self._run_batch(handle, commands, label="run") if commands else []
        report = ExecutionReport(
            activity_id=handle.activity_id,
            agreement_id=handle.agreement_id,
            provider_id=handle.provider_id,
            success=all(result.ok for result in results),
            results=results,
            started_at=started_at,
            finished_at=now_utc(),
        )
        if not report.success:
            failed = report.failed_results[0]
            raise ExecutionFailed(
                f"Activity {handle.activity_id}: command {failed.index} failed: {failed.message or failed.stderr}",
                report,
            )
        return report

    def destroy(self, handle: ActivityHandle) -> bool:
        """Best-effort, idempotent destroy.

        Returns ``True`` when the API confirmed (or the activity was already
        gone), ``False`` when the call failed or the handle was already
        terminated. The handle ends up ``TERMINATED`` either way.
        """

        if handle.is_terminated:
            return False
        confirmed = True
        try:
            self._api.destroy_activity(handle.activity_id)
        except ApiError as exc:
            if exc.status in GONE_STATUSES:
                self._logger.debug("Activity %s already gone", handle.activity_id)
            else:
                self._logger.warning("Failed to destroy activity %s: %s", handle.activity_id, exc)
                confirmed = False
        except ApiUnreachable as exc:
            self._logger.warning("Failed to destroy activity %s: %s", handle.activity_id, exc)
            confirmed = False
        self._advance(handle, ActivityState.TERMINATED)
        return confirmed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require(self, handle: ActivityHandle, expected: ActivityState) -> None:
        if handle.state is not expected:
            raise InvalidStateTransition(
                f"Activity {handle.activity_id} is {handle.state.value}, expected {expected.value}"
            )

    def _advance(self, handle: ActivityHandle, target: ActivityState) -> None:
        handle.transition(target)
        self._logger.info("Activity state changed", extra={"activity_id": handle.activity_id, "state": target.value})
        for listener in self._listeners:
            listener(handle, target)

    def _run_batch(
        self,
        handle: ActivityHandle,
        commands: Sequence[Mapping[str, Any]],
        *,
        label: str,
    ) -> list[CommandResult]:
        batch_id = self._api.exec(handle.activity_id, commands)
        collected: Dict[int, CommandResult] = {}

        def fetch() -> bool:
            try:
                payload = self._api.get_exec_batch_results(
                    handle.activity_id,
                    batch_id,
                    timeout=self._config.exec_poll_timeout_sec,
                )
            except ApiError as exc:
                if exc.status == 408:
                    return False
                raise
            for item in payload:
                result = CommandResult.from_api(item)
                collected[result.index] = result
            return any(result.is_batch_finished or not result.ok for result in collected.values())

        try:
            poll_until(fetch, bool, backoff=self._exec_backoff, sleep=self._sleep, label=f"{label} batch")
        except RetryExhausted as exc:
            raise ProviderUnresponsive(
                f"Activity {handle.activity_id}: {label} batch {batch_id} unfinished after {exc.attempts} polls"
            ) from exc
        results = [collected[index] for index in sorted(collected)]
        # Run failures are reported by await_completion together with the report.
        if label != "run":
            failed = next((result for result in results if not result.ok), None)
            if failed is not None:
                reason = failed.message or failed.stderr or "command error"
                raise ExecutionFailed(f"Activity {handle.activity_id}: {label} failed: {reason}")
        return results

    def _await_remote_state(
        self,
        handle: ActivityHandle,
        targets: set[RemoteActivityState],
        *,
        label: str,
    ) -> RemoteActivityState | None:
        def fetch() -> RemoteActivityState | None:
            state = _parse_remote_state(self._api.get_state(handle.activity_id))
            if state is RemoteActivityState.UNRESPONSIVE:
                raise ProviderUnresponsive(f"Activity {handle.activity_id}: provider reported Unresponsive")
            if state is RemoteActivityState.TERMINATED:
                raise ExecutionFailed(f"Activity {handle.activity_id}: terminated by provider during {label}")
            return state

        try:
            return poll_until(
                fetch,
                lambda state: state in targets,
                backoff=self._state_backoff,
                sleep=self._sleep,
                label=f"{label} state",
            )
        except RetryExhausted as exc:
            last = exc.last_value.value if exc.last_value else "unknown"
            raise ProviderUnresponsive(
                f"Activity {handle.activity_id}: {label} not acknowledged after {exc.attempts} polls (last state {last})"
            ) from exc


def _parse_remote_state(payload: Mapping[str, Any]) -> RemoteActivityState | None:
    """``{"state": ["Deployed", null], ...}``; the first element is the current state."""

    raw = payload.get("state")
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if not raw:
        return None
    try:
        return RemoteActivityState(str(raw))
    except ValueError:
        LOGGER.debug("Unknown activity state %r", raw)
        return None


__all__ = ["ActivityDriver", "TransitionCallback"]
