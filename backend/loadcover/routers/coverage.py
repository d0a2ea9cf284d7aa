"""API routes for the load-coverage pipeline."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from loadcover.core.logging import logger
from loadcover.models.coverage import (
    CheckCallReplyRequest,
    FallOffAcceptanceRequest,
    FallOffRequest,
    JobToggleRequest,
)
from loadcover.services.lifecycle import InvalidTransitionError
from loadcover.services.pipeline import CoveragePipeline, get_pipeline

router = APIRouter(prefix="/coverage", tags=["coverage"])


@router.post("/loads/{load_id}/matches")
def rank_carriers(load_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    try:
        return pipeline.matching.rank_carriers(load_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except Exception as exc:
        logger.error("Carrier matching failed", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/loads/{load_id}/match-results")
def list_match_results(load_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    return {"load_id": load_id, "results": pipeline.store.list_match_results(load_id)}


@router.get("/loads/{load_id}/risk")
def score_load(load_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    try:
        return pipeline.risk.score_load(load_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except Exception as exc:
        logger.error("Risk scoring failed", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/loads/{load_id}/risk-logs")
def list_risk_logs(
    load_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return {"load_id": load_id, "logs": pipeline.store.list_risk_logs(load_id, limit=limit)}


@router.post("/loads/{load_id}/check-calls")
def create_check_call_schedule(load_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    try:
        schedules = pipeline.check_calls.create_schedule(load_id)
        return {"load_id": load_id, "count": len(schedules), "schedules": schedules}
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except Exception as exc:
        logger.error("Failed to create check-call schedule", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/loads/{load_id}/check-calls")
def list_check_calls(load_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    return {"load_id": load_id, "schedules": pipeline.store.list_check_calls(load_id)}


@router.post("/loads/{load_id}/fall-off")
async def execute_fall_off_recovery(
    load_id: str,
    request: FallOffRequest,
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    try:
        return await pipeline.fall_off.execute_fall_off_recovery(load_id, request.reason)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except Exception as exc:
        logger.error("Fall-off recovery failed", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/webhooks/check-call-reply")
async def check_call_reply(request: CheckCallReplyRequest, pipeline: CoveragePipeline = Depends(get_pipeline)):
    try:
        reply = await pipeline.check_calls.handle_response(request.from_phone, request.text)
    except Exception as exc:
        logger.error("Check-call reply handling failed", from_phone=request.from_phone, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    return {"matched": reply is not None, "reply": reply}


@router.post("/webhooks/fall-off-acceptance")
async def fall_off_acceptance(request: FallOffAcceptanceRequest, pipeline: CoveragePipeline = Depends(get_pipeline)):
    try:
        event = await pipeline.fall_off.handle_fall_off_acceptance(request.load_id, request.carrier_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except Exception as exc:
        logger.error("Fall-off acceptance failed", load_id=request.load_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    return {"recovered": event is not None, "event": event}


@router.get("/jobs")
def list_jobs(pipeline: CoveragePipeline = Depends(get_pipeline)):
    return {"jobs": pipeline.runner.list_jobs()}


@router.post("/jobs/{job_name}/run")
async def run_job(job_name: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    if job_name not in pipeline.jobs.names():
        raise HTTPException(status_code=404, detail="Job not found")
    return await pipeline.runner.run_job(job_name)


@router.patch("/jobs/{job_name}")
def toggle_job(job_name: str, request: JobToggleRequest, pipeline: CoveragePipeline = Depends(get_pipeline)):
    try:
        pipeline.runner.set_enabled(job_name, request.enabled)
    except KeyError:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_name": job_name, "enabled": request.enabled}
