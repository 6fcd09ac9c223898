from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool

from app.schemas import (
    AutomationStartRequest,
    EventPage,
    RerunRequest,
    Run,
    RunStatus,
    WorkItemRecord,
)
from app.services.errors import ConfigurationError
from app.services.orchestrator import get_orchestrator
from app.services.storage import FlowRepository, RepositoryDep

router = APIRouter(prefix="/api", tags=["api"])

TERMINAL_RUN_STATUSES = {
    RunStatus.finished.value,
    RunStatus.failed.value,
    RunStatus.cancelled.value,
}


def _require_run(repo: FlowRepository, run_id: str) -> Dict:
    record = repo.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


# Automation ----------------------------------------------------------------------
@router.post("/automation/start", response_model=Run, status_code=201)
async def start_automation(payload: AutomationStartRequest) -> Run:
    orchestrator = get_orchestrator()
    try:
        return orchestrator.start(
            [item.model_dump() for item in payload.items],
            payload.credential,
            limit=payload.max_concurrent,
        )
    except (ConfigurationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/automation/stop")
async def stop_automation() -> Dict[str, List[str]]:
    orchestrator = get_orchestrator()
    cancelled = await run_in_threadpool(orchestrator.stop)
    return {"cancelled": cancelled}


# Runs ----------------------------------------------------------------------------
@router.get("/runs", response_model=List[Run])
async def list_runs(status: Optional[RunStatus] = None, repo: FlowRepository = RepositoryDep) -> List[Run]:
    return repo.list_runs(status=status.value if status else None)


@router.get("/runs/{run_id}", response_model=Run)
async def get_run(run_id: str, repo: FlowRepository = RepositoryDep) -> Run:
    return _require_run(repo, run_id)


@router.get("/runs/{run_id}/items", response_model=List[WorkItemRecord])
async def list_run_items(run_id: str, repo: FlowRepository = RepositoryDep) -> List[WorkItemRecord]:
    _require_run(repo, run_id)
    return repo.list_items(run_id)


@router.post("/runs/{run_id}/cancel", response_model=Run)
async def cancel_run(run_id: str, repo: FlowRepository = RepositoryDep) -> Run:
    record = _require_run(repo, run_id)
    if record.get("status") in TERMINAL_RUN_STATUSES:
        raise HTTPException(status_code=400, detail="Completed runs cannot be cancelled.")
    orchestrator = get_orchestrator()
    await run_in_threadpool(orchestrator.cancel_run, run_id)
    updated = repo.get_run(run_id)
    assert updated is not None
    return updated


@router.post("/runs/{run_id}/rerun", response_model=Run, status_code=201)
async def rerun(run_id: str, payload: RerunRequest, repo: FlowRepository = RepositoryDep) -> Run:
    _require_run(repo, run_id)
    orchestrator = get_orchestrator()
    try:
        return orchestrator.rerun(run_id, payload.credential, limit=payload.max_concurrent)
    except (ConfigurationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/runs/{run_id}/events", response_model=EventPage)
async def run_events(
    run_id: str,
    since: int = 0,
    timeout: float = 25,
    repo: FlowRepository = RepositoryDep,
) -> EventPage:
    """Long-poll for progress events with a sequence number of at least ``since``."""
    start = time.monotonic()
    while True:
        record = _require_run(repo, run_id)
        events = repo.list_events(run_id, since=since)
        finished = record.get("status") in TERMINAL_RUN_STATUSES
        if events or finished or time.monotonic() - start >= timeout:
            next_sequence = events[-1]["sequence"] + 1 if events else max(since, 0)
            return {"events": events, "next": next_sequence, "status": record.get("status")}
        await asyncio.sleep(0.5)


@router.get("/orchestrator/ping")
async def orchestrator_ping() -> Dict[str, str]:
    return {"status": "ok"}
