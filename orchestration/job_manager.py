# orchestration/job_manager.py
"""
Background execution of analysis runs, detached from whoever started them.

Jobs are snapshotted to a ``JobStore`` after every mutation. A job found
``running`` when the store is reloaded cannot still be alive, so it is
demoted to ``pending`` and becomes eligible for re-dispatch.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from config import settings
from core.exceptions import ReaderPanelError
from processing.prompt_builder import AnalysisMode

from models import (
    AnalysisProgress,
    Archetype,
    BackgroundJob,
    ChunkingOptions,
    Credentials,
    JobStatus,
)
from orchestration.analysis_controller import AnalysisController, AnalysisState
from orchestration.cancellation import CancellationToken
from orchestration.two_layer_controller import TwoLayerAnalysisController
from storage.job_store import InMemoryJobStore, JobStore

logger = structlog.get_logger(__name__)

READER_ANALYSIS_JOB = "reader_analysis"
TWO_LAYER_ANALYSIS_JOB = "two_layer_analysis"
STOPPED_MESSAGE = "Job was manually stopped"


class JobContext:
    """What a handler may touch while its job runs."""

    def __init__(
        self, manager: BackgroundJobManager, job_id: str, cancel_token: CancellationToken
    ) -> None:
        self._manager = manager
        self.job_id = job_id
        self.cancel_token = cancel_token

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    async def update(self, **fields: Any) -> BackgroundJob | None:
        return await self._manager.update_job(self.job_id, **fields)


JobHandler = Callable[[BackgroundJob, dict[str, Any], JobContext], Awaitable[list[Any] | None]]


class BackgroundJobManager:
    """Registry-driven job runner with persisted snapshots."""

    def __init__(
        self,
        store: JobStore | None = None,
        max_concurrent_jobs: int | None = None,
    ) -> None:
        self.store: JobStore = store or InMemoryJobStore()
        self._jobs: dict[str, BackgroundJob] = {}
        self._handlers: dict[str, JobHandler] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._semaphore = asyncio.Semaphore(
            max_concurrent_jobs or settings.MAX_CONCURRENT_JOBS
        )

    def register_job_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler
        logger.debug("Registered job handler", job_type=job_type)

    async def create_job(self, job_type: str, payload: dict[str, Any]) -> str:
        """Persist a new ``pending`` job and start it in the background."""
        job_id = f"{job_type}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        job = BackgroundJob(id=job_id, type=job_type, payload=dict(payload))
        self._jobs[job_id] = job
        await self.store.save(job)
        logger.info("Created background job", job_id=job_id, job_type=job_type)
        self._dispatch(job_id)
        return job_id

    def get_job(self, job_id: str) -> BackgroundJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(self) -> list[BackgroundJob]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    async def update_job(self, job_id: str, **fields: Any) -> BackgroundJob | None:
        """Merge ``fields`` into the job, recompute progress and persist."""
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("Update for unknown job ignored", job_id=job_id)
            return None

        merged = job.model_dump()
        merged.update(fields)
        if "progress" not in fields and merged["total_steps"] > 0:
            merged["progress"] = min(
                100.0, merged["completed_steps"] / merged["total_steps"] * 100.0
            )
        updated = BackgroundJob.model_validate(merged)
        self._jobs[job_id] = updated
        await self.store.save(updated)
        return updated.model_copy(deep=True)

    async def stop_job(self, job_id: str) -> bool:
        """Ask a job to stop. It finishes its current batch, then fails as stopped."""
        job = self._jobs.get(job_id)
        if job is None or job.is_finished:
            return False
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel(STOPPED_MESSAGE)
        if job_id not in self._tasks:
            await self.update_job(
                job_id, status=JobStatus.FAILED, error=STOPPED_MESSAGE, end_time=time.time()
            )
        logger.info("Stop requested for job", job_id=job_id)
        return True

    async def restore_jobs(self) -> list[BackgroundJob]:
        """Load persisted jobs, demoting orphaned ``running`` jobs to ``pending``."""
        restored = await self.store.load_all()
        for job in restored:
            if job.id in self._jobs:
                continue
            if job.status == JobStatus.RUNNING:
                job = job.model_copy(
                    update={"status": JobStatus.PENDING, "current_step": "Requeued after restart"}
                )
                await self.store.save(job)
                logger.info("Requeued orphaned running job", job_id=job.id)
            self._jobs[job.id] = job
        return self.list_jobs()

    async def resume_pending_jobs(self) -> list[str]:
        """Re-dispatch every pending job that has a registered handler."""
        resumed: list[str] = []
        for job_id, job in list(self._jobs.items()):
            if job.status != JobStatus.PENDING or job_id in self._tasks:
                continue
            if job.type not in self._handlers:
                logger.warning(
                    "Pending job has no registered handler", job_id=job_id, job_type=job.type
                )
                continue
            self._dispatch(job_id)
            resumed.append(job_id)
        return resumed

    async def clear_completed_jobs(self) -> int:
        finished = [job_id for job_id, job in self._jobs.items() if job.is_finished]
        for job_id in finished:
            del self._jobs[job_id]
            self._tokens.pop(job_id, None)
            await self.store.delete(job_id)
        return len(finished)

    async def wait_for_job(
        self, job_id: str, timeout: float | None = None
    ) -> BackgroundJob | None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.get_job(job_id)

    async def shutdown(self) -> None:
        """Cancel every job task still in flight."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _dispatch(self, job_id: str) -> None:
        token = CancellationToken()
        self._tokens[job_id] = token
        task = asyncio.create_task(self._process_job(job_id, token))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))

    async def _process_job(self, job_id: str, token: CancellationToken) -> None:
        async with self._semaphore:
            job = self._jobs.get(job_id)
            if job is None or job.is_finished:
                return
            if token.cancelled:
                await self.update_job(
                    job_id, status=JobStatus.FAILED, error=STOPPED_MESSAGE, end_time=time.time()
                )
                return

            handler = self._handlers.get(job.type)
            if handler is None:
                logger.error("No handler registered for job type", job_id=job_id, job_type=job.type)
                await self.update_job(
                    job_id,
                    status=JobStatus.FAILED,
                    error=f"No handler registered for job type: {job.type}",
                    end_time=time.time(),
                )
                return

            running = await self.update_job(job_id, status=JobStatus.RUNNING)
            ctx = JobContext(self, job_id, token)
            try:
                results = await handler(running, dict(job.payload), ctx)
            except asyncio.CancelledError:
                logger.warning("Job task cancelled", job_id=job_id)
                raise
            except Exception as exc:
                logger.error("Background job failed", job_id=job_id, error=str(exc), exc_info=True)
                await self.update_job(
                    job_id, status=JobStatus.FAILED, error=str(exc), end_time=time.time()
                )
                return

            final: dict[str, Any] = {"end_time": time.time()}
            if results is not None:
                final["results"] = list(results)
            if token.cancelled:
                final.update(status=JobStatus.FAILED, error=STOPPED_MESSAGE)
                logger.info("Background job stopped", job_id=job_id)
            else:
                final.update(status=JobStatus.COMPLETED, progress=100.0)
                logger.info("Background job completed", job_id=job_id)
            await self.update_job(job_id, **final)


def _progress_fields(snapshot: AnalysisProgress) -> dict[str, Any]:
    return {
        "current_step": snapshot.status,
        "total_steps": snapshot.total_steps,
        "completed_steps": snapshot.current_step,
        "results": [r.to_json_dict() for r in snapshot.results],
    }


def make_reader_analysis_handler(
    credentials: Credentials,
    controller_factory: Callable[[], AnalysisController] = AnalysisController,
) -> JobHandler:
    """Adapt ``AnalysisController`` to a job handler.

    Payload: ``{"text": str, "archetypes": [...], "chunking_options"?: {...},
    "mode"?: str}``. The credentials are bound here so they never land in
    the persisted payload.
    """

    async def handler(
        job: BackgroundJob, payload: dict[str, Any], ctx: JobContext
    ) -> list[Any]:
        archetypes = [Archetype.model_validate(a) for a in payload.get("archetypes", [])]
        options = None
        if payload.get("chunking_options"):
            options = ChunkingOptions.model_validate(payload["chunking_options"])
        mode = AnalysisMode(payload.get("mode", AnalysisMode.STANDARD.value))

        if ctx.cancelled:
            logger.info("Job stopped before its analysis started", job_id=job.id)
            return []
        controller = controller_factory()

        async def on_progress(snapshot: AnalysisProgress) -> None:
            await ctx.update(**_progress_fields(snapshot))

        results = await controller.run_analysis(
            payload["text"],
            archetypes,
            credentials,
            on_progress=on_progress,
            chunking_options=options,
            mode=mode,
            cancel_token=ctx.cancel_token,
        )
        serialized = [r.to_json_dict() for r in results]
        if controller.state == AnalysisState.FAILED:
            await ctx.update(results=serialized)
            status = controller.last_progress.status if controller.last_progress else ""
            raise ReaderPanelError(status or "Analysis failed")
        return serialized

    return handler


def make_two_layer_handler(
    credentials: Credentials,
    controller_factory: Callable[[], TwoLayerAnalysisController] = TwoLayerAnalysisController,
) -> JobHandler:
    """Adapt ``TwoLayerAnalysisController``. Payload: ``{"text", "archetype", "chunking_options"?}``."""

    async def handler(
        job: BackgroundJob, payload: dict[str, Any], ctx: JobContext
    ) -> list[Any]:
        archetype = Archetype.model_validate(payload["archetype"])
        options = None
        if payload.get("chunking_options"):
            options = ChunkingOptions.model_validate(payload["chunking_options"])

        if ctx.cancelled:
            logger.info("Job stopped before its analysis started", job_id=job.id)
            return []
        controller = controller_factory()

        async def on_progress(snapshot: AnalysisProgress) -> None:
            await ctx.update(**_progress_fields(snapshot))

        results = await controller.run_two_layer_analysis(
            payload["text"],
            archetype,
            credentials,
            on_progress=on_progress,
            chunking_options=options,
            cancel_token=ctx.cancel_token,
        )
        serialized = [r.to_json_dict() for r in results]
        if controller.state == AnalysisState.FAILED:
            await ctx.update(results=serialized)
            status = controller.last_progress.status if controller.last_progress else ""
            raise ReaderPanelError(status or "Two-layer analysis failed")
        return serialized

    return handler
