import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel

from bundler.config import cfg
from bundler.constants import StageName, SubmissionMode
from bundler.errors import NetworkError, PreflightError
from bundler.logging_config import setup_logging
from bundler.orchestrator import Orchestrator, from_config

setup_logging()
log = logging.getLogger("bundler.app")

TIMEOUT = 3.0


async def _probe_rippled(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Probe the rippled RPC endpoint until it responds."""
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries})")
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "orchestrator", None) is None:
        # set by `bundler serve` from -c/-i; the import-time config otherwise
        conf = getattr(app.state, "conf", None) or cfg
        rpc = conf["ledger"]["rpc_url"]
        log.info("Probing RPC endpoint %s...", rpc)
        await _probe_rippled(rpc)
        app.state.orchestrator = from_config(conf)
    app.state.run_lock = asyncio.Lock()
    log.info("Ready: %s", app.state.orchestrator.snapshot()["asset"])
    try:
        yield
    finally:
        log.info("Shutdown complete")


app = FastAPI(
    title="XRPL Bundler",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Sell", "description": "Staged sells across the inventory"},
        {"name": "Launch", "description": "Packed launch bundle"},
        {"name": "State", "description": "Run state"},
    ],
)

r_sell = APIRouter(prefix="/sell", tags=["Sell"])
r_launch = APIRouter(tags=["Launch"])
r_state = APIRouter(prefix="/state", tags=["State"])


class SellReq(BaseModel):
    wait_for_threshold: bool | None = None


class LaunchReq(BaseModel):
    mode: SubmissionMode | None = None


class GatherReq(BaseModel):
    new_only: bool = False


def _orchestrator() -> Orchestrator:
    orch = getattr(app.state, "orchestrator", None)
    if orch is None:
        raise HTTPException(status_code=503, detail="Not initialized")
    return orch


def _run_lock() -> asyncio.Lock:
    lock = getattr(app.state, "run_lock", None)
    if lock is None:
        lock = app.state.run_lock = asyncio.Lock()
    return lock


@app.get("/health")
def health():
    return {"status": "ok"}


@r_state.get("/summary")
async def state_summary():
    return _orchestrator().snapshot()


@r_sell.post("/{stage}")
async def sell(stage: StageName, req: SellReq | None = None):
    orch = _orchestrator()
    lock = _run_lock()
    if lock.locked():
        raise HTTPException(status_code=409, detail="Another run is in progress")
    async with lock:
        try:
            summary = await orch.run_stage(stage, wait_for_threshold=req.wait_for_threshold if req else None)
        except PreflightError as e:
            raise HTTPException(status_code=409, detail=str(e))
    return summary.to_dict()


@r_launch.post("/launch")
async def launch(req: LaunchReq | None = None):
    orch = _orchestrator()
    lock = _run_lock()
    if lock.locked():
        raise HTTPException(status_code=409, detail="Another run is in progress")
    async with lock:
        try:
            result = await orch.launch(req.mode if req else None)
        except PreflightError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NetworkError as e:
            raise HTTPException(status_code=502, detail=str(e))
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.to_dict())
    return result.to_dict()


@r_launch.post("/gather")
async def gather(req: GatherReq | None = None):
    orch = _orchestrator()
    lock = _run_lock()
    if lock.locked():
        raise HTTPException(status_code=409, detail="Another run is in progress")
    async with lock:
        summary = await orch.gather(new_only=req.new_only if req else False)
    return summary.to_dict()


@r_launch.get("/bundle/{bundle_id}")
async def bundle(bundle_id: str):
    try:
        status = await _orchestrator().bundle_status(bundle_id)
    except NetworkError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if status is None:
        raise HTTPException(status_code=404, detail=f"Bundle {bundle_id} not found")
    return status


app.include_router(r_sell)
app.include_router(r_launch)
app.include_router(r_state)
