from __future__ import annotations

from fastapi import APIRouter, HTTPException

from app.schemas import FlowConfig, FlowConfigUpdate
from app.services.storage import FlowRepository, RepositoryDep

router = APIRouter(prefix="/api", tags=["config"])


@router.get("/config", response_model=FlowConfig)
async def read_config(repo: FlowRepository = RepositoryDep) -> FlowConfig:
    return repo.get_config()


@router.patch("/config", response_model=FlowConfig)
async def update_config(payload: FlowConfigUpdate, repo: FlowRepository = RepositoryDep) -> FlowConfig:
    changes = payload.changes()
    if not changes:
        return repo.get_config()
    try:
        return repo.update_config(changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
