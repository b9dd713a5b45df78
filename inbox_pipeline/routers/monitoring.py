"""
Operational endpoints for mailbox monitoring, the job queue and recovery.

POST /monitoring/{account_id}/start|stop|sync - control one account
                                              (sync?queued=true queues a sync job)
GET  /monitoring                              - list active sessions
GET  /queue/stats                             - job and message counts
POST /recovery/run                            - run one recovery sweep now
"""

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.pipeline.container import Pipeline

log = get_logger(__name__)
router = APIRouter()


class MonitorResponse(BaseModel):
    success: bool
    message: str


class IntervalRequest(BaseModel):
    seconds: int


def _pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not running")
    return pipeline


@router.post("/monitoring/{account_id}/start", response_model=MonitorResponse)
async def start_monitoring(account_id: int, request: Request):
    """Start monitoring an account; the first check runs immediately."""
    pipeline = _pipeline(request)
    result = await run_in_threadpool(pipeline.detector.start_monitoring, account_id)
    if not result.success:
        log.info("monitoring_start_rejected", account_id=account_id, reason=result.message)
        raise HTTPException(status_code=409, detail=result.message)
    return MonitorResponse(success=True, message=result.message)


@router.post("/monitoring/{account_id}/stop", response_model=MonitorResponse)
async def stop_monitoring(account_id: int, request: Request):
    result = _pipeline(request).detector.stop_monitoring(account_id)
    return MonitorResponse(success=result.success, message=result.message)


@router.post("/monitoring/{account_id}/sync", response_model=MonitorResponse)
async def trigger_sync(account_id: int, request: Request, queued: bool = False):
    """
    Run a change check now for a monitored account.

    With ?queued=true the check is handed to the workers as a sync job
    instead, for any account, and the response returns at once.
    """
    detector = _pipeline(request).detector
    if queued:
        result = await run_in_threadpool(detector.queue_sync, account_id)
        if not result.success:
            raise HTTPException(status_code=404, detail=result.message)
        return MonitorResponse(success=True, message=result.message)

    result = await run_in_threadpool(detector.trigger_manual_sync, account_id)
    if not result.success:
        raise HTTPException(status_code=409, detail=result.message)
    return MonitorResponse(success=True, message=result.message)


@router.put("/monitoring/interval")
async def set_interval(body: IntervalRequest, request: Request):
    applied = _pipeline(request).detector.set_check_interval(body.seconds)
    return {"interval_seconds": applied}


@router.get("/monitoring")
async def list_sessions(request: Request):
    detector = _pipeline(request).detector
    return {
        "interval_seconds": detector.interval_seconds,
        "sessions": [session.to_dict() for session in detector.active_sessions()],
    }


@router.get("/queue/stats")
async def queue_stats(request: Request):
    pipeline = _pipeline(request)
    jobs = await run_in_threadpool(pipeline.queue.stats)
    messages = await run_in_threadpool(pipeline.db.get_message_stats)
    return {"queue": pipeline.queue.queue_name, "jobs": jobs, "messages": messages}


@router.post("/recovery/run")
async def run_recovery(request: Request):
    """Reclaim stalled jobs and re-queue stuck messages now."""
    stats = await run_in_threadpool(_pipeline(request).sweeper.sweep)
    return stats
