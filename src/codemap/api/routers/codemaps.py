"""
API routes for codemap generation jobs.

Endpoints
---------
- `POST /codemaps`: submit a query for a workspace (async, 202).
- `GET /jobs/{job_id}`: poll status, phase and the resulting codemap.
- `POST /jobs/{job_id}/cancel`: signal a running job to stop.
- `POST /suggestions`: suggest codemap queries for recently opened files.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, HTTPException, status

from codemap.agents.suggestion_agent import generate_suggestions
from codemap.api import background
from codemap.api.job_store import get_job_store
from codemap.api.schemas import CodemapRequest, JobInfo, SuggestionRequest
from codemap.core.contracts.codemap import Suggestion
from codemap.core.settings import load_settings
from codemap.prompts import prompts_from_settings

router = APIRouter(tags=["Codemaps"])


def _job_or_404(job_id: str) -> JobInfo:
    job = get_job_store().get_job(job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return job


@router.post(
    "/codemaps",
    response_model=JobInfo,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a new codemap generation job",
)
async def submit_codemap(
    request: CodemapRequest,
    background_tasks: BackgroundTasks,
) -> JobInfo:
    """
    Dispatch a new codemap generation job.

    Client Workflow
    ---------------
    1. Receive `job_id` from this response.
    2. Poll `GET /jobs/{job_id}` until status is `completed`, `failed` or `cancelled`.
    """
    # Raises ValueError (mapped to 400) before any job is created.
    request.workspace_root()

    store = get_job_store()
    job_id = store.create_job(request.query)
    background_tasks.add_task(background.run_codemap_task, job_id, request)
    return _job_or_404(job_id)


@router.get(
    "/jobs/{job_id}",
    response_model=JobInfo,
    response_model_exclude_none=True,
    summary="Get job status and results",
)
async def get_job_status(job_id: str) -> JobInfo:
    """
    Retrieve the current status, phase or final codemap of a job.
    """
    return _job_or_404(job_id)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobInfo,
    summary="Cancel a pending or running job",
)
async def cancel_job(job_id: str) -> JobInfo:
    job = _job_or_404(job_id)
    if not get_job_store().cancel(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} already finished ({job.status.value})",
        )
    return job


@router.post(
    "/suggestions",
    response_model=list[Suggestion],
    summary="Suggest codemap queries for recently opened files",
)
async def suggest(request: SuggestionRequest) -> list[Suggestion]:
    settings = load_settings()
    return await generate_suggestions(
        background.build_session(settings),
        request.recent_files,
        prompts=prompts_from_settings(settings),
        language=settings.language,
    )


__all__ = ["router"]
