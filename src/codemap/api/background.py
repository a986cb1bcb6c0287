# src/codemap/api/background.py
"""
Background task runner for codemap generation jobs.

This module provides the worker coroutine scheduled via FastAPI's
`BackgroundTasks`. It drives one :class:`CodemapPipeline`, mirrors its phase
changes into the job store and maps every outcome onto a job state. It never
raises to the caller.
"""

from __future__ import annotations

from codemap.agents.callbacks import PipelineCallbacks
from codemap.api.job_store import get_job_store
from codemap.api.schemas import CodemapRequest, JobStatus
from codemap.core.errors import CodemapError, DiagramSynthesisError, GenerationCancelled
from codemap.core.settings import PipelineConfig, Settings, get_logger, load_settings
from codemap.llm.client import OpenAIChatSession
from codemap.llm.session import ModelSession
from codemap.pipelines.codemap_generation import CodemapPipeline
from codemap.prompts import prompts_from_settings

log = get_logger(__name__)


def build_session(settings: Settings) -> ModelSession:
    """Model session for API jobs (patched in tests)."""
    return OpenAIChatSession.from_settings(settings)


def build_pipeline(job_id: str, request: CodemapRequest) -> CodemapPipeline:
    settings = load_settings()
    store = get_job_store()
    config = PipelineConfig.from_settings(
        settings, mode=request.mode, detail_level=request.detail_level
    )
    callbacks = PipelineCallbacks(
        on_phase_change=lambda name, _number: store.mark_phase(job_id, name),
    )
    return CodemapPipeline(
        build_session(settings),
        config,
        prompts=prompts_from_settings(settings),
        callbacks=callbacks,
    )


async def run_codemap_task(job_id: str, request: CodemapRequest) -> None:
    """
    Run the pipeline for ``job_id`` and record the outcome in the job store.

    Parameters
    ----------
    job_id:
        The UUID of the job to update.
    request:
        The validated request body.
    """
    store = get_job_store()
    job = store.get_job(job_id)
    if job is None or job.status is JobStatus.CANCELLED:
        return

    try:
        pipeline = build_pipeline(job_id, request)
        store.attach_pipeline(job_id, pipeline)
        store.mark_processing(job_id)
        codemap = await pipeline.generate(request.query, request.workspace_root())
    except GenerationCancelled:
        log.info("Job %s cancelled", job_id)
        store.mark_cancelled(job_id)
        return
    except DiagramSynthesisError as exc:
        store.mark_failed(job_id, f"Pipeline Error: {exc}", partial=exc.partial)
        return
    except CodemapError as exc:
        log.error("Job %s failed: %s", job_id, exc)
        store.mark_failed(job_id, f"Pipeline Error: {exc}")
        return
    except Exception as exc:
        # Transport and programming errors: the job must still leave PROCESSING.
        log.error("Job %s crashed: %s", job_id, exc, exc_info=True)
        store.mark_failed(job_id, f"Pipeline Error: {exc}")
        return

    if codemap is None:
        store.mark_failed(job_id, "Pipeline Error: no codemap could be extracted")
        return
    store.mark_completed(job_id, codemap)


__all__ = ["build_pipeline", "build_session", "run_codemap_task"]
