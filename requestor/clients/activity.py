"""Activity API client (requestor side).

Wraps the ``activity-api/v1`` control and state endpoints:

* ``POST activity`` creates an activity for an agreement;
* ``POST activity/{id}/exec`` submits an exe-script batch;
* ``GET activity/{id}/exec/{batchId}`` long-polls batch results;
* ``GET activity/{id}/state`` reports the provider-side state;
* ``DELETE activity/{id}`` destroys it.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from requestor.core.errors import CoreError
from requestor.core.types import ActivityId, AgreementId, BatchId, JSONLike

from .rest import RestClient, parse_id


class ActivityApiClient(RestClient):
    """Synchronous client for ``activity-api/v1``."""

    def create_activity(self, agreement_id: AgreementId) -> ActivityId:
        result = self._request("POST", "activity", json_body={"agreementId": agreement_id})
        return ActivityId(parse_id(result, "activityId"))

    def destroy_activity(self, activity_id: ActivityId) -> None:
        self._request("DELETE", f"activity/{activity_id}")

    def exec(self, activity_id: ActivityId, commands: Sequence[Mapping[str, Any]]) -> BatchId:
        """Submit ``commands``; the API expects the script as a JSON text field."""

        body = {"text": json.dumps(list(commands))}
        result = self._request("POST", f"activity/{activity_id}/exec", json_body=body)
        return BatchId(parse_id(result, "batchId"))

    def get_exec_batch_results(
        self,
        activity_id: ActivityId,
        batch_id: BatchId,
        *,
        timeout: float,
    ) -> Sequence[JSONLike]:
        result = self._request(
            "GET",
            f"activity/{activity_id}/exec/{batch_id}",
            params={"timeout": timeout},
            timeout=timeout + 5.0,
        )
        if not result:
            return []
        if not isinstance(result, list):
            raise CoreError(f"Unexpected batch results payload: {result!r}")
        return result

    def get_state(self, activity_id: ActivityId) -> JSONLike:
        return self._request("GET", f"activity/{activity_id}/state") or {}


__all__ = ["ActivityApiClient"]
