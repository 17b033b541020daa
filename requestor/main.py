from __future__ import annotations

import argparse
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO

import httpx

from requestor.config.loader import load_requestor_config
from requestor.core.enums import ExitCode
from requestor.core.errors import ConfigurationError
from requestor.runtime.orchestrator import RequestorOrchestrator
from requestor.telemetry import configure_logging
from requestor.telemetry.storage import TelemetryStorage


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ya-requestor",
        description="Import a key, negotiate an agreement and run a task on a provider.",
    )
    parser.add_argument("--config", help="YAML config file (default: $REQUESTOR_CONFIG)")
    parser.add_argument("--market-url", help="Market API root, e.g. http://127.0.0.1:7465/market-api/v1/")
    parser.add_argument("--activity-url", help="Activity API root, e.g. http://127.0.0.1:7465/activity-api/v1/")
    parser.add_argument("--admin-url", help="Admin API root used for the key import")
    parser.add_argument("--app-key", help="Hex key to import; also used as the API bearer token ($YAGNA_APPKEY)")
    parser.add_argument("--node-id", help="Node id the key belongs to ($YAGNA_NODE_ID)")
    parser.add_argument("--run-timeout", type=float, help="Overall run budget in seconds")
    return parser


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "api.market_url": args.market_url,
        "api.activity_url": args.activity_url,
        "api.admin_url": args.admin_url,
        "identity.app_key": args.app_key,
        "identity.node_id": args.node_id,
        "run_timeout_sec": args.run_timeout,
    }


def run(
    argv: Sequence[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    transport: httpx.BaseTransport | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Parse ``argv``, run one requestor session and return the exit code."""

    args = build_parser().parse_args(argv)
    environ = os.environ if env is None else env
    try:
        config = load_requestor_config(args.config, env=environ, overrides=_cli_overrides(args))
    except ConfigurationError as exc:
        logger = configure_logging(log_dir=None)
        logger.error("Invalid configuration: %s", exc, extra={"failure_kind": exc.kind})
        return int(ExitCode.UNEXPECTED)

    telemetry = config.telemetry
    logger = configure_logging(log_dir=Path(telemetry.logs_dir), level=telemetry.log_level)
    logger.info(
        "Bootstrapping requestor",
        extra={"market_url": config.api.market_url, "activity_url": config.api.activity_url},
    )
    storage = TelemetryStorage(logs_dir=Path(telemetry.logs_dir), reports_dir=Path(telemetry.reports_dir))
    with RequestorOrchestrator.from_config(
        config,
        storage=storage,
        transport=transport,
        stdout=stdout,
        logger=logger,
    ) as orchestrator:
        outcome = orchestrator.run()
    logger.info(
        "Shutdown complete",
        extra={"exit_code": int(outcome.exit_code), "failure_kind": outcome.failure_kind},
    )
    return int(outcome.exit_code)


def _raise_interrupt(signum: int, _: object) -> None:
    raise KeyboardInterrupt(f"signal {signum}")


def main() -> None:
    # SIGTERM takes the same cleanup path as Ctrl-C.
    signal.signal(signal.SIGTERM, _raise_interrupt)
    sys.exit(run())


if __name__ == "__main__":
    main()
