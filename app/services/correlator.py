from __future__ import annotations

import logging
import queue
from typing import Any, List, Optional

from playwright.sync_api import Error as PlaywrightError

from app.constants import GENERATE_ENDPOINT_PATTERN
from app.schemas import OperationHandle

LOGGER = logging.getLogger("flow.correlator")


def decode_operation_handle(payload: Any) -> Optional[OperationHandle]:
    """Extract the handle from a submission confirmation, or ``None`` if absent."""
    if not isinstance(payload, dict):
        return None
    operations = payload.get("operations")
    if not isinstance(operations, list) or not operations:
        return None
    first = operations[0]
    if not isinstance(first, dict):
        return None
    operation = first.get("operation")
    name = operation.get("name") if isinstance(operation, dict) else None
    scene_id = first.get("sceneId")
    if not isinstance(name, str) or not name or not isinstance(scene_id, str) or not scene_id:
        return None
    return OperationHandle(operation_name=name, scene_id=scene_id)


class OperationCorrelator:
    """Collect submission confirmations observed on the session's network traffic.

    The response callback only enqueues matching responses; decoding happens in
    :meth:`drain`, which the orchestrator calls from its own control loop so that
    item state keeps a single writer.
    """

    def __init__(self, endpoint_pattern: str = GENERATE_ENDPOINT_PATTERN, maxsize: int = 256) -> None:
        self._pattern = endpoint_pattern
        self._responses: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)

    def attach(self, session) -> None:
        session.on_response(self.observe)

    def observe(self, response) -> None:
        url = getattr(response, "url", "") or ""
        if self._pattern not in url:
            return
        try:
            self._responses.put_nowait(response)
        except queue.Full:
            LOGGER.warning("Correlation queue full; dropping confirmation from %s", url)

    def pending(self) -> int:
        return self._responses.qsize()

    def drain(self) -> List[OperationHandle]:
        handles: List[OperationHandle] = []
        while True:
            try:
                response = self._responses.get_nowait()
            except queue.Empty:
                break
            try:
                payload = response.json()
            except (PlaywrightError, ValueError) as exc:
                LOGGER.debug("Ignoring unreadable confirmation from %s: %s", getattr(response, "url", "?"), exc)
                continue
            handle = decode_operation_handle(payload)
            if handle is None:
                LOGGER.debug("Confirmation from %s carried no operation handle", getattr(response, "url", "?"))
                continue
            handles.append(handle)
        return handles
