"""Kilo Server — FastAPI control API over a KiloRuntime.

Startup: start the runtime (open the checkpoint store, build components).
Shutdown: halt running pipelines through the shutdown coordinator so each
gets an interrupted checkpoint, then close the store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import Field, ValidationError

from kilo import __version__
from kilo.errors import CheckpointNotFoundError, ConfigError, InvalidResumeStateError
from kilo.pipeline.approval import Decision
from kilo.pipeline.models import ExecutionMode, ResumeRef, WireModel
from kilo.runtime import KiloRuntime

logger = logging.getLogger(__name__)


# ── Request bodies ───────────────────────────────────────────────────────────


class StartPipelineRequest(WireModel):
    objective: str = Field(min_length=1)
    mode: ExecutionMode | None = None


class ResumePipelineRequest(WireModel):
    sequence: int | None = Field(default=None, ge=0)


def get_runtime(request: Request) -> KiloRuntime:
    return request.app.state.runtime


def _ref(pipeline_id: str, sequence: int | None = None) -> ResumeRef:
    try:
        return ResumeRef(pipeline_id=pipeline_id, sequence=sequence)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid pipeline reference: {pipeline_id}") from e


# ── Pipeline routes ──────────────────────────────────────────────────────────

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


@router.post("", status_code=202)
async def start_pipeline(body: StartPipelineRequest, runtime: KiloRuntime = Depends(get_runtime)):
    """Start a pipeline in the background."""
    try:
        pipeline_id = runtime.launch(body.objective, body.mode)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"pipelineId": pipeline_id}


@router.get("")
async def list_pipelines(runtime: KiloRuntime = Depends(get_runtime)):
    live = set(runtime.live_pipelines())
    return {
        "pipelines": [
            {"pipelineId": pid, "running": pid in live} for pid in await runtime.list_pipelines()
        ]
    }


@router.get("/{pipeline_id}")
async def get_pipeline(pipeline_id: str, runtime: KiloRuntime = Depends(get_runtime)):
    """Live state while running, else the final result, else the latest checkpoint."""
    ref = _ref(pipeline_id)
    live = runtime.status(pipeline_id)
    if live is not None:
        return {
            "pipelineId": pipeline_id,
            "running": True,
            "pipeline": live.model_dump(mode="json", by_alias=True),
        }
    if runtime.is_running(pipeline_id):
        return {"pipelineId": pipeline_id, "running": True, "pipeline": None}

    result = runtime.result(pipeline_id)
    if result is not None:
        return {
            "pipelineId": pipeline_id,
            "running": False,
            "result": result.model_dump(mode="json", by_alias=True),
        }

    store = await runtime.store_for(ref.pipeline_id)
    latest = await store.load_latest(ref.pipeline_id)
    if latest is None:
        raise HTTPException(status_code=404, detail=f"Pipeline {pipeline_id} not found")
    return {
        "pipelineId": pipeline_id,
        "running": False,
        "checkpoint": latest.model_dump(mode="json", by_alias=True),
    }


@router.get("/{pipeline_id}/checkpoints")
async def list_checkpoints(pipeline_id: str, runtime: KiloRuntime = Depends(get_runtime)):
    ref = _ref(pipeline_id)
    store = await runtime.store_for(ref.pipeline_id)
    checkpoints = await store.list_checkpoints(ref.pipeline_id)
    return {
        "pipelineId": pipeline_id,
        "checkpoints": [
            {
                "sequence": c.sequence,
                "reason": c.reason.value,
                "phaseName": c.phase_name,
                "pipelineStatus": c.pipeline_status.value,
                "timestamp": c.timestamp.isoformat(),
            }
            for c in checkpoints
        ],
    }


@router.get("/{pipeline_id}/checkpoints/{sequence}")
async def get_checkpoint(pipeline_id: str, sequence: int, runtime: KiloRuntime = Depends(get_runtime)):
    ref = _ref(pipeline_id, sequence)
    store = await runtime.store_for(ref.pipeline_id)
    checkpoint = await store.load_by_id(ref.pipeline_id, sequence)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail=f"Checkpoint {pipeline_id}#{sequence} not found")
    return checkpoint.model_dump(mode="json", by_alias=True)


@router.post("/{pipeline_id}/resume", status_code=202)
async def resume_pipeline(
    pipeline_id: str,
    body: ResumePipelineRequest | None = None,
    runtime: KiloRuntime = Depends(get_runtime),
):
    ref = _ref(pipeline_id, body.sequence if body else None)
    try:
        await runtime.launch_resume(ref)
    except CheckpointNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (InvalidResumeStateError, RuntimeError) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return {"pipelineId": pipeline_id}


@router.post("/{pipeline_id}/approval")
async def decide_approval(
    pipeline_id: str,
    decision: Decision,
    runtime: KiloRuntime = Depends(get_runtime),
):
    if not runtime.gate.decide(pipeline_id, decision):
        raise HTTPException(status_code=404, detail=f"No approval pending for pipeline {pipeline_id}")
    return {"pipelineId": pipeline_id, "action": decision.action.value}


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(runtime: KiloRuntime) -> FastAPI:
    """Create the FastAPI application around an unstarted runtime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan — startup and shutdown."""
        await runtime.start()
        yield
        await runtime.close()

    app = FastAPI(
        title="Kilo",
        version=__version__,
        description="BMAD pipeline orchestrator",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.include_router(router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "project": runtime.config.project.name,
            "version": __version__,
            "running": runtime.live_pipelines(),
            "pendingApprovals": len(runtime.gate.pending()),
        }

    @app.get("/approvals")
    async def list_approvals():
        """Pending semi-mode approval requests."""
        return {
            "approvals": [r.model_dump(mode="json", by_alias=True) for r in runtime.gate.pending()]
        }

    return app
