"""Requestor orchestrator: key import, negotiation, execution, report.

The orchestrator is the single place where errors are turned into an exit
code. Subsystems raise their most specific error; ``run`` catches it, records
the failure kind, and always releases what the run acquired (activity, then
agreement, then demand subscription) before returning.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Sequence, TextIO

import httpx

from requestor.activity.driver import ActivityDriver
from requestor.activity.models import ActivityHandle, ExecutionReport, run_commands_from_config
from requestor.clients.activity import ActivityApiClient
from requestor.clients.admin import KeyStoreClient
from requestor.clients.market import MarketApiClient
from requestor.clients.rest import RestClient
from requestor.config.models import RequestorConfig
from requestor.core.enums import ActivityState, ExitCode, RunStage
from requestor.core.errors import (
    ActivityError,
    AgreementRejected,
    CoreError,
    ExecutionFailed,
    KeyImportError,
    MarketError,
    NegotiationTimeout,
    RunTimeout,
    TelemetryError,
)
from requestor.core.time_utils import now_utc
from requestor.market.constraints import AcceptanceCriteria, ScoringFunction
from requestor.market.models import DemandSpec
from requestor.market.negotiator import MarketClient
from requestor.telemetry.events import RunRecord, TelemetryEvent
from requestor.telemetry.storage import TelemetryStorage

from .context import RequestorContext, RunDeadline, RunOutcome

STAGE_EXIT_CODES: Dict[RunStage, ExitCode] = {
    RunStage.KEY_IMPORT: ExitCode.KEY_IMPORT,
    RunStage.MARKET: ExitCode.MARKET,
    RunStage.ACTIVITY: ExitCode.ACTIVITY,
    RunStage.REPORT: ExitCode.UNEXPECTED,
}


class RequestorOrchestrator:
    """Run one requestor session end to end."""

    def __init__(
        self,
        config: RequestorConfig,
        *,
        keystore: KeyStoreClient,
        market: MarketClient,
        driver: ActivityDriver,
        storage: TelemetryStorage | None = None,
        scorer: ScoringFunction | None = None,
        clients: Sequence[RestClient] = (),
        deadline: RunDeadline | None = None,
        stdout: TextIO | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._keystore = keystore
        self._market = market
        self._driver = driver
        self._storage = storage
        self._scorer = scorer
        self._clients = list(clients)
        self._deadline = deadline or RunDeadline(config.run_timeout_sec)
        self._stdout = stdout
        self._logger = logger or logging.getLogger("requestor").getChild("orchestrator")
        self._context: RequestorContext | None = None
        driver.add_listener(self._on_activity_transition)

    @classmethod
    def from_config(
        cls,
        config: RequestorConfig,
        *,
        storage: TelemetryStorage | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        scorer: ScoringFunction | None = None,
        stdout: TextIO | None = None,
        logger: logging.Logger | None = None,
    ) -> "RequestorOrchestrator":
        """Build the API clients and subsystems described by ``config``."""

        base_logger = logger or logging.getLogger("requestor")
        deadline = RunDeadline(config.run_timeout_sec, clock)
        sleep = deadline.guard(sleep)
        api = config.api
        app_key = config.identity.app_key
        common: Dict[str, Any] = {
            "transport": transport,
            "timeout": api.request_timeout_sec,
            "backoff_base": api.backoff_base_sec,
            "sleep": sleep,
        }
        keystore = KeyStoreClient(api.admin_url, **common)
        market_api = MarketApiClient(api.market_url, app_key=app_key, max_retries=api.max_retries, **common)
        activity_api = ActivityApiClient(api.activity_url, app_key=app_key, max_retries=api.max_retries, **common)
        market = MarketClient(
            market_api,
            config.negotiation,
            clock=clock,
            logger=base_logger.getChild("market"),
        )
        driver = ActivityDriver(
            activity_api,
            config.activity,
            sleep=sleep,
            logger=base_logger.getChild("activity"),
        )
        return cls(
            config,
            keystore=keystore,
            market=market,
            driver=driver,
            storage=storage,
            scorer=scorer,
            clients=(keystore, market_api, activity_api),
            deadline=deadline,
            stdout=stdout,
            logger=base_logger.getChild("orchestrator"),
        )

    @property
    def driver(self) -> ActivityDriver:
        return self._driver

    def close(self) -> None:
        for client in self._clients:
            client.close()

    def __enter__(self) -> "RequestorOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def run(self) -> RunOutcome:
        """Execute the full sequence; never raises for run failures."""

        context = RequestorContext()
        self._context = context
        self._logger.info("Requestor run started", extra={"run_id": context.run_id})
        outcome = RunOutcome(exit_code=ExitCode.UNEXPECTED, failure_kind="unexpected_error")
        self._deadline.start()
        try:
            report = self._execute(context)
            outcome = RunOutcome(exit_code=ExitCode.SUCCESS, report=report)
        except KeyboardInterrupt as exc:
            outcome = self._failure(context, exc, "interrupted")
        except CoreError as exc:
            outcome = self._failure(context, exc, exc.kind)
        except Exception as exc:
            self._logger.exception("Unexpected error during %s", context.stage.value)
            outcome = self._failure(context, exc, "unexpected_error")
        finally:
            self._deadline.disarm()
            self._cleanup(context, finished=outcome.success)
            self._context = None
        self._finish(context, outcome)
        return outcome

    def _execute(self, context: RequestorContext) -> ExecutionReport:
        identity_cfg = self._config.identity
        self._enter(context, RunStage.KEY_IMPORT)
        if not identity_cfg.app_key or not identity_cfg.node_id:
            raise KeyImportError("An app key and a node id are required to import the identity")
        try:
            context.identity = self._keystore.import_key(identity_cfg.app_key, identity_cfg.node_id)
        except ValueError as exc:
            raise KeyImportError(f"Invalid identity: {exc}") from exc
        self._emit(context, "key_imported", {"node_id": context.identity.node_id})

        self._enter(context, RunStage.MARKET)
        context.demand = self._market.publish_demand(DemandSpec.from_config(self._config.demand))
        self._emit(context, "demand_published", {"subscription_id": context.demand.subscription_id})
        criteria = AcceptanceCriteria.from_config(self._config.negotiation.acceptance, self._config.demand)
        try:
            context.agreement = self._market.negotiate(
                context.demand,
                criteria,
                deadline_sec=self._deadline.cap(self._config.negotiation.deadline_sec),
                scorer=self._scorer,
            )
        except (NegotiationTimeout, AgreementRejected):
            # A negotiation cut short by the run budget is a run timeout.
            self._deadline.check()
            raise
        self._emit(
            context,
            "agreement_approved",
            {"agreement_id": context.agreement.agreement_id, "provider_id": context.agreement.provider_id},
        )
        # One agreement per run; stop receiving proposals.
        self._market.unsubscribe(context.demand)

        self._enter(context, RunStage.ACTIVITY)
        context.activity = self._driver.create_activity(context.agreement)
        self._deadline.check()
        self._driver.deploy(context.activity)
        self._deadline.check()
        self._driver.start(context.activity)
        self._deadline.check()
        commands = run_commands_from_config(self._config.activity.commands)
        context.report = self._driver.await_completion(context.activity, commands)

        context.stage = RunStage.REPORT
        return context.report

    def _enter(self, context: RequestorContext, stage: RunStage) -> None:
        context.stage = stage
        self._deadline.check()

    def _failure(self, context: RequestorContext, exc: BaseException, kind: str) -> RunOutcome:
        exit_code = _exit_code_for(exc, context.stage)
        if isinstance(exc, ExecutionFailed) and isinstance(exc.report, ExecutionReport):
            context.report = exc.report
        details = context.describe()
        details.update({"failure_kind": kind, "exit_code": int(exit_code)})
        if isinstance(exc, KeyboardInterrupt):
            self._logger.warning("Run interrupted", extra=details)
        else:
            self._logger.error("Run failed: %s", exc, extra=details)
        self._emit(context, "run_failed", {"failure_kind": kind, "message": str(exc)}, level="ERROR")
        return RunOutcome(exit_code=exit_code, report=context.report, failure_kind=kind, error=exc)

    # ------------------------------------------------------------------
    # Cleanup and reporting
    # ------------------------------------------------------------------
    def _cleanup(self, context: RequestorContext, *, finished: bool) -> None:
        if context.activity is not None:
            self._driver.destroy(context.activity)
        agreement = context.approved_agreement
        if agreement is not None:
            self._market.terminate_agreement(agreement, "Finished" if finished else "Cancelled")
        if context.demand is not None:
            self._market.unsubscribe(context.demand)

    def _finish(self, context: RequestorContext, outcome: RunOutcome) -> None:
        report_path: Path | None = None
        if outcome.report is not None and self._storage is not None:
            try:
                report_path = self._storage.write_report(outcome.report)
            except TelemetryError as exc:
                self._logger.warning("Failed to persist execution report: %s", exc)
        if outcome.success and outcome.report is not None:
            self._logger.info(
                "Run finished",
                extra={
                    "run_id": context.run_id,
                    "activity_id": outcome.report.activity_id,
                    "commands": len(outcome.report.results),
                    "report_path": str(report_path) if report_path else None,
                },
            )
            self._emit(context, "run_finished", {"report_path": str(report_path) if report_path else None})
            stream = self._stdout or sys.stdout
            stream.write(json.dumps(outcome.report.to_dict(), indent=2, ensure_ascii=False) + "\n")
            stream.flush()
        self._record_run(context, outcome)

    def _record_run(self, context: RequestorContext, outcome: RunOutcome) -> None:
        if self._storage is None:
            return
        record = RunRecord(
            run_id=context.run_id,
            node_id=context.identity.node_id if context.identity else None,
            started_at=context.started_at,
            finished_at=now_utc(),
            exit_code=int(outcome.exit_code),
            failure_kind=outcome.failure_kind,
            subscription_id=context.demand.subscription_id if context.demand else None,
            agreement_id=context.agreement.agreement_id if context.agreement else None,
            activity_id=context.activity.activity_id if context.activity else None,
            provider_id=context.agreement.provider_id if context.agreement else None,
            commands=len(outcome.report.results) if outcome.report else 0,
        )
        try:
            self._storage.append_run(record)
        except TelemetryError as exc:
            self._logger.warning("Failed to append run record: %s", exc)

    def _on_activity_transition(self, handle: ActivityHandle, state: ActivityState) -> None:
        if self._context is None:
            return
        self._emit(self._context, "activity_state", {"activity_id": handle.activity_id, "state": state.value})

    def _emit(
        self,
        context: RequestorContext,
        event_type: str,
        payload: Dict[str, Any],
        *,
        level: str = "INFO",
    ) -> None:
        if self._storage is None:
            return
        event = TelemetryEvent(
            timestamp=datetime.now(tz=timezone.utc),
            event_type=event_type,
            level=level,
            payload=payload,
            context={"run_id": context.run_id, "stage": context.stage.value},
        )
        try:
            self._storage.append_event(event)
        except TelemetryError as exc:
            self._logger.warning("Failed to append telemetry event: %s", exc)


def _exit_code_for(exc: BaseException, stage: RunStage) -> ExitCode:
    if isinstance(exc, KeyboardInterrupt):
        return ExitCode.INTERRUPTED
    if isinstance(exc, RunTimeout):
        return ExitCode.TIMEOUT
    if isinstance(exc, KeyImportError):
        return ExitCode.KEY_IMPORT
    if isinstance(exc, MarketError):
        return ExitCode.MARKET
    if isinstance(exc, ActivityError):
        return ExitCode.ACTIVITY
    if isinstance(exc, CoreError):
        return STAGE_EXIT_CODES[stage]
    return ExitCode.UNEXPECTED


__all__ = ["RequestorOrchestrator", "STAGE_EXIT_CODES"]
