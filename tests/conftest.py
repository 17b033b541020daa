from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

from requestor.config.models import (
    AcceptanceConfig,
    ActivityConfig,
    ApiConfig,
    IdentityConfig,
    NegotiationConfig,
    RequestorConfig,
    RunCommandConfig,
    TelemetryConfig,
)

DAEMON_URL = "http://yagna.test"
MARKET_PREFIX = "/market-api/v1/"
ACTIVITY_PREFIX = "/activity-api/v1/"
MARKET_URL = f"{DAEMON_URL}{MARKET_PREFIX}"
ACTIVITY_URL = f"{DAEMON_URL}{ACTIVITY_PREFIX}"

TEST_KEY = "ba5508aba59041f7affe232d5d310aa8"
TEST_NODE_ID = "0x35ca494ae0085717159de173acd94cf5797a4338"
PROVIDER_ID = "0x1111111111111111111111111111111111111111"

DURATION_SEC = "golem.usage.duration_sec"
CPU_SEC = "golem.usage.cpu_sec"

DEFAULT_DEPLOY_OUTPUT = json.dumps({"valid": {"Ok": "success"}, "vols": [], "startMode": "blocking"})


def make_proposal(
    proposal_id: str,
    state: str = "Initial",
    *,
    issuer: str = PROVIDER_ID,
    prev: str | None = None,
    duration_coeff: float = 0.0001,
    cpu_coeff: float = 0.00005,
    fixed: float = 0.0,
    mem_gib: float | None = 4.0,
    storage_gib: float | None = 10.0,
    threads: int | None = 2,
    runtime: str = "wasmtime",
    **extra: Any,
) -> Dict[str, Any]:
    properties: Dict[str, Any] = {
        "golem.runtime.name": runtime,
        "golem.com.usage.vector": [DURATION_SEC, CPU_SEC],
        "golem.com.pricing.model.linear.coeffs": [duration_coeff, cpu_coeff, fixed],
    }
    if mem_gib is not None:
        properties["golem.inf.mem.gib"] = mem_gib
    if storage_gib is not None:
        properties["golem.inf.storage.gib"] = storage_gib
    if threads is not None:
        properties["golem.inf.cpu.threads"] = threads
    properties.update(extra)
    payload: Dict[str, Any] = {
        "proposalId": proposal_id,
        "issuerId": issuer,
        "state": state,
        "properties": properties,
        "constraints": "()",
        "timestamp": "2024-01-01T12:00:00.000Z",
    }
    if prev:
        payload["prevProposalId"] = prev
    return payload


def proposal_event(proposal: Dict[str, Any]) -> Dict[str, Any]:
    return {"eventType": "ProposalEvent", "eventDate": "2024-01-01T12:00:00.000Z", "proposal": proposal}


class FakeDaemon:
    """In-memory stand-in for the admin, market and activity APIs."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.auth_headers: List[str | None] = []
        self.admin_unreachable = False
        self.import_status = 204
        self.imported: List[Dict[str, Any]] = []
        # market
        self.demands: Dict[str, Dict[str, Any]] = {}
        self.unsubscribed: List[str] = []
        self.event_batches: List[List[Dict[str, Any]]] = []
        self.drafts: Dict[str, Dict[str, Any]] = {}
        self.countered: List[str] = []
        self.rejected: List[str] = []
        self.agreements: Dict[str, str] = {}
        self.confirmed: List[str] = []
        self.approval_answers: List[Tuple[int, Any]] = []
        self.create_failures: List[Tuple[int, str]] = []
        self.confirm_failures: Dict[str, int] = {}
        self.terminated: List[str] = []
        # activity
        self.activities: Dict[str, str] = {}
        self.scripts: List[List[Dict[str, Any]]] = []
        self.batches: Dict[str, List[Dict[str, Any]]] = {}
        self.deploy_output: str | None = DEFAULT_DEPLOY_OUTPUT
        self.run_results: List[Dict[str, Any]] | None = None
        self.state_script: List[str] = []
        self.destroyed: List[str] = []
        self.destroy_status = 204

    # ------------------------------------------------------------------
    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        self.auth_headers.append(request.headers.get("Authorization"))
        if path.startswith("/admin/"):
            return self._admin(request, path)
        if path.startswith(MARKET_PREFIX):
            return self._market(request, path[len(MARKET_PREFIX):])
        if path.startswith(ACTIVITY_PREFIX):
            return self._activity(request, path[len(ACTIVITY_PREFIX):])
        return httpx.Response(404, json={"message": f"no route for {path}"})

    def market_calls(self) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[1].startswith(MARKET_PREFIX)]

    def activity_calls(self) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[1].startswith(ACTIVITY_PREFIX)]

    # ------------------------------------------------------------------
    def _admin(self, request: httpx.Request, path: str) -> httpx.Response:
        if self.admin_unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "POST" and path == "/admin/import-key":
            if self.import_status >= 300:
                return httpx.Response(self.import_status, json={"message": "key rejected"})
            self.imported.append(json.loads(request.content))
            return httpx.Response(self.import_status)
        return httpx.Response(404)

    def _market(self, request: httpx.Request, path: str) -> httpx.Response:
        parts = path.split("/")
        method = request.method
        if method == "POST" and parts == ["demands"]:
            subscription_id = f"sub-{len(self.demands) + 1}"
            self.demands[subscription_id] = json.loads(request.content)
            return httpx.Response(201, json=subscription_id)
        if method == "DELETE" and len(parts) == 2 and parts[0] == "demands":
            self.unsubscribed.append(parts[1])
            return httpx.Response(204)
        if method == "GET" and len(parts) == 3 and parts[2] == "events":
            batch = self.event_batches.pop(0) if self.event_batches else []
            return httpx.Response(200, json=batch)
        if method == "POST" and len(parts) == 4 and parts[2] == "proposals":
            proposal_id = parts[3]
            self.countered.append(proposal_id)
            draft = self.drafts.get(proposal_id)
            if draft is not None:
                self.event_batches.append([proposal_event(draft)])
            return httpx.Response(201, json=f"counter-{proposal_id}")
        if method == "POST" and len(parts) == 5 and parts[4] == "reject":
            self.rejected.append(parts[3])
            return httpx.Response(204)
        if method == "POST" and parts == ["agreements"]:
            if self.create_failures:
                status, message = self.create_failures.pop(0)
                return httpx.Response(status, json={"message": message})
            agreement_id = f"agr-{len(self.agreements) + 1}"
            self.agreements[agreement_id] = json.loads(request.content)["proposalId"]
            return httpx.Response(201, json=agreement_id)
        if method == "POST" and len(parts) == 3 and parts[0] == "agreements":
            agreement_id, action = parts[1], parts[2]
            if action == "confirm":
                self.confirmed.append(agreement_id)
                status = self.confirm_failures.get(agreement_id)
                if status is not None:
                    return httpx.Response(status, json={"message": "provider withdrew"})
                return httpx.Response(204)
            if action == "wait":
                status, body = self.approval_answers.pop(0) if self.approval_answers else (200, "Approved")
                if body is None:
                    return httpx.Response(status)
                return httpx.Response(status, json=body)
            if action == "terminate":
                self.terminated.append(agreement_id)
                return httpx.Response(200)
        return httpx.Response(404, json={"message": f"no market route for {path}"})

    def _activity(self, request: httpx.Request, path: str) -> httpx.Response:
        parts = path.split("/")
        method = request.method
        if method == "POST" and parts == ["activity"]:
            activity_id = f"act-{len(self.activities) + 1}"
            self.activities[activity_id] = "Initialized"
            return httpx.Response(201, json=activity_id)
        if method == "DELETE" and len(parts) == 2:
            self.destroyed.append(parts[1])
            if self.destroy_status < 300:
                self.activities[parts[1]] = "Terminated"
                return httpx.Response(self.destroy_status)
            return httpx.Response(self.destroy_status, json={"message": "destroy failed"})
        if method == "POST" and len(parts) == 3 and parts[2] == "exec":
            return self._exec(parts[1], json.loads(json.loads(request.content)["text"]))
        if method == "GET" and len(parts) == 4 and parts[2] == "exec":
            return httpx.Response(200, json=self.batches.get(parts[3], []))
        if method == "GET" and len(parts) == 3 and parts[2] == "state":
            state = self.state_script.pop(0) if self.state_script else self.activities[parts[1]]
            return httpx.Response(200, json={"state": [state, None], "reason": None, "errorMessage": None})
        return httpx.Response(404, json={"message": f"no activity route for {path}"})

    def _exec(self, activity_id: str, script: List[Dict[str, Any]]) -> httpx.Response:
        self.scripts.append(script)
        batch_id = f"batch-{len(self.scripts)}"
        first = script[0] if script else {}
        if "deploy" in first:
            results = [_result(0, stdout=self.deploy_output)]
            self.activities[activity_id] = "Deployed"
        elif "start" in first:
            results = [_result(0)]
            self.activities[activity_id] = "Ready"
        elif self.run_results is not None:
            results = list(self.run_results)
        else:
            results = [
                _result(index, stdout=f"{command['run']['entry_point']} done", finished=index == len(script) - 1)
                for index, command in enumerate(script)
            ]
        self.batches[batch_id] = results
        return httpx.Response(200, json=batch_id)


def _result(index: int, *, stdout: str | None = None, finished: bool = True) -> Dict[str, Any]:
    return {
        "index": index,
        "eventDate": "2024-01-01T12:00:01.000Z",
        "result": "Ok",
        "stdout": stdout,
        "stderr": None,
        "message": None,
        "isBatchFinished": finished,
    }


class FakeClock:
    """Monotonic clock advancing ``step`` seconds on every read."""

    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def transport(daemon: FakeDaemon) -> httpx.MockTransport:
    return httpx.MockTransport(daemon.handle)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def frozen_clock() -> FakeClock:
    return FakeClock(step=0.0)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: List[float]) -> Callable[[float], None]:
    return sleeps.append


@pytest.fixture
def telemetry_tmpdir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("telemetry")


@pytest.fixture
def negotiation_config() -> NegotiationConfig:
    return NegotiationConfig(
        deadline_sec=10,
        poll_timeout_sec=1,
        max_events=5,
        approval_timeout_sec=5,
        acceptance=AcceptanceConfig(max_fixed_price=0.1, max_price_cpu_hour=1.0, max_price_duration_hour=1.0),
    )


@pytest.fixture
def activity_config() -> ActivityConfig:
    return ActivityConfig(
        state_poll_attempts=3,
        backoff_base_sec=0.1,
        backoff_max_sec=1.0,
        exec_poll_timeout_sec=1,
        exec_poll_attempts=3,
        commands=[RunCommandConfig(entry_point="main", args=["--job", "1"])],
    )


@pytest.fixture
def requestor_config(
    telemetry_tmpdir: Path,
    negotiation_config: NegotiationConfig,
    activity_config: ActivityConfig,
) -> RequestorConfig:
    return RequestorConfig(
        api=ApiConfig(admin_url=DAEMON_URL, market_url=MARKET_URL, activity_url=ACTIVITY_URL, backoff_base_sec=0),
        identity=IdentityConfig(app_key=TEST_KEY, node_id=TEST_NODE_ID),
        negotiation=negotiation_config,
        activity=activity_config,
        telemetry=TelemetryConfig(
            logs_dir=str(telemetry_tmpdir / "logs"),
            reports_dir=str(telemetry_tmpdir / "reports"),
        ),
    )


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger("requestor")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def proposal_factory() -> Callable[..., Dict[str, Any]]:
    return make_proposal


@pytest.fixture
def event_factory() -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    return proposal_event


@pytest.fixture
def market_api(requestor_config: RequestorConfig, transport: httpx.MockTransport, fake_sleep):
    from requestor.clients.market import MarketApiClient

    client = MarketApiClient(
        requestor_config.api.market_url,
        app_key=requestor_config.identity.app_key,
        transport=transport,
        backoff_base=0,
        sleep=fake_sleep,
    )
    yield client
    client.close()


@pytest.fixture
def activity_api(requestor_config: RequestorConfig, transport: httpx.MockTransport, fake_sleep):
    from requestor.clients.activity import ActivityApiClient

    client = ActivityApiClient(
        requestor_config.api.activity_url,
        app_key=requestor_config.identity.app_key,
        transport=transport,
        backoff_base=0,
        sleep=fake_sleep,
    )
    yield client
    client.close()
