"""In-process registry of render jobs started through the API."""

import asyncio
import logging
from typing import Optional

from captionburn.api.websocket import JobSubscriptions, job_subscriptions
from captionburn.config import Settings, get_settings
from captionburn.exceptions import CaptionBurnError, RenderCancelledError, RenderJobNotFoundError
from captionburn.render.job import RenderJob
from captionburn.render.pipeline import render_video_with_captions, validate_render_inputs
from captionburn.schemas.render import RenderRequest

logger = logging.getLogger(__name__)


class RenderJobManager:
    """Starts renders as asyncio tasks and keeps their jobs for status queries."""

    def __init__(
        self,
        subscriptions: Optional[JobSubscriptions] = None,
        settings: Optional[Settings] = None,
    ):
        self.subscriptions = subscriptions or job_subscriptions
        self.settings = settings or get_settings()
        self._jobs: dict[str, RenderJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._notifications: set[asyncio.Task] = set()

    def start(self, request: RenderRequest) -> RenderJob:
        """Validate paths, register a job and start rendering in the background."""
        validate_render_inputs(request.video_path, request.output_path, request.replacement_audio_path)
        job = RenderJob(settings=self.settings)
        self._jobs[job.id] = job
        task = asyncio.create_task(self._run(job, request))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job.id, None))
        logger.info(f"[JOB] Started render job {job.id} for {request.video_path}")
        return job

    def find(self, job_id: str) -> Optional[RenderJob]:
        return self._jobs.get(job_id)

    def get(self, job_id: str) -> RenderJob:
        job = self.find(job_id)
        if job is None:
            raise RenderJobNotFoundError(f"Render job not found: {job_id}")
        return job

    def list_jobs(self) -> list[RenderJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    async def wait(self, job_id: str) -> RenderJob:
        """Wait for a job's render task to finish and return the job."""
        job = self.get(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return job

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job: stops its ffmpeg processes and workers and purges its files."""
        job = self.get(job_id)
        cancelled = await job.cancel()
        if cancelled:
            logger.info(f"[JOB] Cancelled render job {job_id}")
            if job_id not in self._tasks:
                await self.subscriptions.publish(job)
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every running job and wait for its task to finish."""
        running = list(self._tasks)
        for job_id in running:
            await self._jobs[job_id].cancel()
        for job_id in running:
            await self.wait(job_id)

    def _notify(self, job: RenderJob) -> None:
        task = asyncio.get_running_loop().create_task(self.subscriptions.publish(job))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _run(self, job: RenderJob, request: RenderRequest) -> None:
        try:
            await render_video_with_captions(
                request.video_path,
                request.captions,
                request.output_path,
                clips=request.clips,
                replacement_audio_path=request.replacement_audio_path,
                export_settings=request.export_settings,
                on_progress=lambda percent, stage: self._notify(job),
                job=job,
                require_captions=request.require_captions,
                settings=self.settings,
            )
        except RenderCancelledError:
            job.mark_cancelled()
        except CaptionBurnError as e:
            if not job.is_finished:
                job.mark_failed(e.message, e.code)
        except Exception as e:
            # Background task: the job records the failure
            logger.exception(f"[JOB] Render job {job.id} crashed: {e}")
            if not job.is_finished:
                job.mark_failed(str(e), "INTERNAL_ERROR")

        await self.subscriptions.publish(job)


render_job_manager = RenderJobManager()
