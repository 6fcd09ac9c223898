from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from app.constants import STATUS_ENDPOINT_URL, STATUS_FAILED, STATUS_SUCCESSFUL
from app.schemas import AuthContext, OperationHandle
from app.services.auth import ApiClient
from app.services.errors import ApiRequestError, PollTransportError

LOGGER = logging.getLogger("flow.poller")


@dataclass
class PollStatus:
    scene_id: str
    status: str
    result_url: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESSFUL

    @property
    def is_failure(self) -> bool:
        return self.status == STATUS_FAILED


def _dig(payload: Any, *keys: str) -> Any:
    current = payload
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def decode_status_response(payload: Any) -> List[PollStatus]:
    """Decode a batched status response; entries without a scene id are skipped."""
    operations = payload.get("operations") if isinstance(payload, dict) else None
    if not isinstance(operations, list):
        return []
    statuses: List[PollStatus] = []
    for entry in operations:
        if not isinstance(entry, dict):
            continue
        scene_id = _dig(entry, "operation", "metadata", "sceneId") or entry.get("sceneId")
        if not isinstance(scene_id, str) or not scene_id:
            continue
        status = entry.get("status")
        result_url = _dig(entry, "operation", "metadata", "video", "fifeUrl")
        error_message = _dig(entry, "error", "message")
        statuses.append(
            PollStatus(
                scene_id=scene_id,
                status=status if isinstance(status, str) else "",
                result_url=result_url if isinstance(result_url, str) else None,
                error_message=error_message if isinstance(error_message, str) else None,
            )
        )
    return statuses


def build_status_request(handles: Sequence[OperationHandle]) -> Dict[str, Any]:
    return {
        "operations": [
            {"operation": {"name": handle.operation_name}, "sceneId": handle.scene_id}
            for handle in handles
        ]
    }


class StatusPoller:
    """Query the status of every outstanding operation with one request."""

    def __init__(self, client: Optional[ApiClient] = None, endpoint: str = STATUS_ENDPOINT_URL) -> None:
        self._client = client or ApiClient()
        self._endpoint = endpoint

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def poll(self, handles: Sequence[OperationHandle], auth: AuthContext) -> List[PollStatus]:
        if not handles:
            return []
        try:
            payload = self._client.post_json(self._endpoint, auth, build_status_request(handles))
        except ApiRequestError as exc:
            raise PollTransportError(str(exc)) from exc
        statuses = decode_status_response(payload)
        LOGGER.debug("Polled %s operations, %s statuses decoded", len(handles), len(statuses))
        return statuses
