import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse

from app.routes import api
from app.routes import config as config_api
from app.services.orchestrator import shutdown_orchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    # stop() blocks until the browser session is released.
    await run_in_threadpool(shutdown_orchestrator)


app = FastAPI(title="Flow Batch Automation", lifespan=lifespan)
app.include_router(api.router)
app.include_router(config_api.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Redirect visitors to the run list as the primary entry point."""
    return RedirectResponse(url="/api/runs", status_code=303)
