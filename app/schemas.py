from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ItemState(str, Enum):
    idle = "idle"
    queued = "queued"
    submitted = "submitted"
    awaiting_handle = "awaiting_handle"
    polling = "polling"
    succeeded = "succeeded"
    failed = "failed"


IN_FLIGHT_STATES = frozenset(
    {ItemState.queued, ItemState.submitted, ItemState.awaiting_handle, ItemState.polling}
)
TERMINAL_STATES = frozenset({ItemState.succeeded, ItemState.failed})


class EventStatus(str, Enum):
    queued = "queued"
    running = "running"
    success = "success"
    error = "error"


STATE_EVENT_STATUS = {
    ItemState.idle: EventStatus.queued,
    ItemState.queued: EventStatus.queued,
    ItemState.submitted: EventStatus.running,
    ItemState.awaiting_handle: EventStatus.running,
    ItemState.polling: EventStatus.running,
    ItemState.succeeded: EventStatus.success,
    ItemState.failed: EventStatus.error,
}


class RunStatus(str, Enum):
    queued = "queued"
    executing = "executing"
    finished = "finished"
    failed = "failed"
    cancelled = "cancelled"


class OperationHandle(BaseModel):
    """Server-issued reference to an asynchronous generation job."""

    operation_name: str
    scene_id: str

    model_config = {"frozen": True}


class AuthContext(BaseModel):
    session_cookie: str
    bearer_token: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("bearer_token")
    @classmethod
    def blank_token_is_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class WorkItemInput(BaseModel):
    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


def _ensure_unique_ids(items: List[WorkItemInput]) -> List[WorkItemInput]:
    seen = set()
    for item in items:
        if item.id in seen:
            raise ValueError(f"Duplicate work item id '{item.id}'.")
        seen.add(item.id)
    return items


class AutomationStartRequest(BaseModel):
    items: List[WorkItemInput] = Field(..., min_length=1)
    credential: AuthContext
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=32)

    @field_validator("items")
    @classmethod
    def validate_unique_ids(cls, items: List[WorkItemInput]) -> List[WorkItemInput]:
        return _ensure_unique_ids(items)


class RerunRequest(BaseModel):
    credential: AuthContext
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=32)


class ProgressEvent(BaseModel):
    run_id: str
    item_id: str
    message: str
    status: EventStatus
    state: ItemState
    result_url: Optional[str] = None
    sequence: int = 0
    created_at: Optional[str] = None


class RunSummary(BaseModel):
    items_total: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    items_pending: int = 0
    progress: float = 0.0


class Run(BaseModel):
    id: str
    status: RunStatus
    limit: int
    project_id: Optional[str] = None
    source_run_id: Optional[str] = None
    note: Optional[str] = None
    summary: RunSummary = Field(default_factory=RunSummary)
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class WorkItemRecord(BaseModel):
    run_id: str
    item_id: str
    text: str
    state: ItemState
    message: str = ""
    result_url: Optional[str] = None
    operation_name: Optional[str] = None
    scene_id: Optional[str] = None
    sequence: int = 0
    updated_at: Optional[str] = None


class EventPage(BaseModel):
    events: List[ProgressEvent]
    next: int
    status: Optional[RunStatus] = None


class FlowConfig(BaseModel):
    max_concurrent_items: int
    poll_interval_seconds: float
    login_timeout_seconds: int
    input_timeout_seconds: int
    poll_timeout_seconds: int
    poll_backoff_max_seconds: float
    await_handle_before_submit: bool
    profile_dir: str
    headless: bool
    type_delay_ms: int


class FlowConfigUpdate(BaseModel):
    max_concurrent_items: Optional[int] = None
    poll_interval_seconds: Optional[float] = None
    login_timeout_seconds: Optional[int] = None
    input_timeout_seconds: Optional[int] = None
    poll_timeout_seconds: Optional[int] = None
    poll_backoff_max_seconds: Optional[float] = None
    await_handle_before_submit: Optional[bool] = None
    profile_dir: Optional[str] = None
    headless: Optional[bool] = None
    type_delay_ms: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)
