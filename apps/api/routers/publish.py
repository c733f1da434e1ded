"""Publish approved videos to connected platforms."""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from config import settings
from routers.auth_scope import AuthContext, require_scope
from routers.errors import to_http_exception
from routers.rate_limit import rate_limit
from services.connectors import ConnectorUnavailableError
from services.errors import PipelineError
from services.publishing import PublishOrchestrator
from services.pipeline_queue import schedule_pipeline_step

router = APIRouter()


class PublishRequest(BaseModel):
    platforms: Optional[List[str]] = None


class PublishQueuedResponse(BaseModel):
    video_id: str
    status: str
    available_platforms: List[str]
    skipped_platforms: Dict[str, str]
    job_id: Optional[str] = None
    queue_job_id: Optional[str] = None


def get_publish_orchestrator() -> PublishOrchestrator:
    return PublishOrchestrator()


@router.post(
    "/videos/{video_id}/publish",
    response_model=PublishQueuedResponse,
    dependencies=[Depends(rate_limit("publish", settings.PUBLISH_RATE_LIMIT_PER_HOUR, 3600))],
)
async def publish_video(
    video_id: str,
    request: PublishRequest,
    auth: AuthContext = Depends(require_scope("publish")),
    orchestrator: PublishOrchestrator = Depends(get_publish_orchestrator),
):
    """
    Check captions and credentials, then publish in the background.

    Platforms without a usable credential are reported as skipped; the request
    fails with 400 when none are usable.
    """
    try:
        plan = await orchestrator.preflight(video_id, request.platforms)
    except (PipelineError, ConnectorUnavailableError) as exc:
        raise to_http_exception(exc) from exc

    platforms = plan.available_platforms + list(plan.skipped)
    try:
        job = await schedule_pipeline_step(video_id, "publish", {"platforms": platforms})
    except Exception as exc:
        raise HTTPException(
            status_code=503,
            detail="Pipeline queue unavailable. Check Redis/worker availability and retry.",
        ) from exc

    return PublishQueuedResponse(
        video_id=video_id,
        status="queued",
        available_platforms=plan.available_platforms,
        skipped_platforms=dict(plan.skipped),
        job_id=job.get("id"),
        queue_job_id=job.get("queue_job_id"),
    )
