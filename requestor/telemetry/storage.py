"""Helpers for persisting telemetry artifacts (events, run ledger, reports)."""
from __future__ import annotations

import csv
import json
from pathlib import Path

from requestor.activity.models import ExecutionReport
from requestor.core.errors import TelemetryError
from requestor.telemetry.events import RunRecord, TelemetryEvent


class TelemetryStorage:
    """Write structured telemetry objects to disk.

    The orchestrator pushes :class:`TelemetryEvent` instances for each
    milestone of a run, appends one :class:`RunRecord` when the run ends and,
    on success, writes the :class:`ExecutionReport` as a JSON document.
    """

    def __init__(
        self,
        *,
        logs_dir: Path,
        reports_dir: Path,
    ) -> None:
        self._logs_dir = logs_dir
        self._reports_dir = reports_dir
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._reports_dir.mkdir(parents=True, exist_ok=True)

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    @property
    def reports_dir(self) -> Path:
        return self._reports_dir

    # ------------------------------------------------------------------
    # JSON event logs
    # ------------------------------------------------------------------
    def append_event(self, event: TelemetryEvent) -> Path:
        """Append ``event`` as JSON to ``logs/events_YYYYMMDD.jsonl``."""

        date_str = event.timestamp.strftime("%Y%m%d")
        path = self._logs_dir / f"events_{date_str}.jsonl"
        try:
            with path.open("a", encoding="utf-8") as handle:
                json.dump(event.to_dict(), handle, ensure_ascii=False)
                handle.write("\n")
        except OSError as exc:  # pragma: no cover - filesystem errors are rare
            raise TelemetryError(f"Failed to write telemetry event: {exc}") from exc
        return path

    # ------------------------------------------------------------------
    # Run ledger (CSV)
    # ------------------------------------------------------------------
    def append_run(self, record: RunRecord) -> Path:
        """Persist ``record`` into ``reports/runs_YYYYMMDD.csv``."""

        date_str = record.finished_at.strftime("%Y%m%d")
        path = self._reports_dir / f"runs_{date_str}.csv"
        row = record.to_csv_row()
        write_header = not path.exists()
        try:
            with path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=list(row.keys()))
                if write_header:
                    writer.writeheader()
                writer.writerow(row)
        except OSError as exc:  # pragma: no cover
            raise TelemetryError(f"Failed to write run record: {exc}") from exc
        return path

    # ------------------------------------------------------------------
    # Execution report JSON
    # ------------------------------------------------------------------
    def write_report(self, report: ExecutionReport) -> Path:
        """Persist ``report`` to ``reports/report_<activity_id>.json``."""

        path = self._reports_dir / f"report_{report.activity_id}.json"
        try:
            with path.open("w", encoding="utf-8") as handle:
                json.dump(report.to_dict(), handle, indent=2, ensure_ascii=False)
        except OSError as exc:  # pragma: no cover
            raise TelemetryError(f"Failed to write execution report: {exc}") from exc
        return path


__all__ = ["TelemetryStorage"]
