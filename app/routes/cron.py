"""
Cron endpoints driving the trigger scan.

An external scheduler calls these with Authorization: Bearer <CRON_SECRET>.
Responses carry the phase counters even when nothing was due.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.auth.verify import cron_auth
from app.infrastructure.observability.logging import get_logger
from app.jobs.trigger_detector_job import (
    TriggerDetectorError,
    TriggerDetectorJob,
    trigger_detector_job,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Cron"], dependencies=[Depends(cron_auth)])


def get_trigger_detector() -> TriggerDetectorJob:
    return trigger_detector_job


def _scan_failed(e: TriggerDetectorError) -> JSONResponse:
    logger.error("Cron scan failed", operation=e.operation, error=str(e))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


@router.post("/process-reminders")
async def process_reminders(job: TriggerDetectorJob = Depends(get_trigger_detector)):
    """Send all due reminders."""
    try:
        result = await job.process_reminders()
    except TriggerDetectorError as e:
        return _scan_failed(e)

    return {"success": True, **result.to_dict(), "timestamp": _timestamp()}


@router.post("/check-secrets")
async def check_secrets(job: TriggerDetectorJob = Depends(get_trigger_detector)):
    """Trigger overdue secrets and disclose their shares."""
    try:
        result = await job.check_secrets()
    except TriggerDetectorError as e:
        return _scan_failed(e)

    return {"success": True, **result.to_dict(), "timestamp": _timestamp()}


@router.post("/scan")
async def scan(job: TriggerDetectorJob = Depends(get_trigger_detector)):
    """Full cycle: reminders, overdue secrets and disclosure retries."""
    try:
        metrics = await job.run_once()
    except TriggerDetectorError as e:
        return _scan_failed(e)

    return {"success": True, **metrics, "timestamp": _timestamp()}
