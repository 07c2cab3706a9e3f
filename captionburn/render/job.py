"""
Render job state and cancellation.

A RenderJob owns everything a single render creates: its temporary work
directory, the ffmpeg processes it spawned and the overlay worker
processes it started. Cancelling the job stops all of them. The work
directory is removed by the running pipeline once its own threads have
returned, or by cancel() itself when no pipeline is running.
"""

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from captionburn.config import Settings, get_settings
from captionburn.exceptions import RenderCancelledError

logger = logging.getLogger(__name__)


class RenderStatus(Enum):
    """Render job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RenderProgress:
    """Progress information for a render job."""

    job_id: str
    status: RenderStatus
    percent: float = 0.0
    current_step: Optional[str] = None
    elapsed_ms: int = 0
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "percent": self.percent,
            "current_step": self.current_step,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.status == RenderStatus.COMPLETED:
            data["output_path"] = self.output_path
            data["output_size"] = self.output_size
        elif self.status == RenderStatus.FAILED:
            data["error_code"] = self.error_code
            data["error_message"] = self.error_message
        return data


@dataclass
class TrackedWorker:
    process: Any  # multiprocessing.Process
    cancel_event: Any  # multiprocessing.Event


class RenderJob:
    """A single render and the resources it owns."""

    def __init__(self, job_id: Optional[str] = None, settings: Optional[Settings] = None):
        self.id = job_id or str(uuid4())
        self.settings = settings or get_settings()
        self.status = RenderStatus.PENDING
        self.progress = 0
        self.current_stage: Optional[str] = None
        self.output_path: Optional[str] = None
        self.output_size: Optional[int] = None
        self.error_code: Optional[str] = None
        self.error_message: Optional[str] = None
        self.created_at = datetime.now(timezone.utc)
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.work_dir: Optional[str] = None

        self._processes: set[asyncio.subprocess.Process] = set()
        self._workers: list[TrackedWorker] = []
        self._cancelled = False
        self._pipeline_active = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_finished(self) -> bool:
        return self.status in (RenderStatus.COMPLETED, RenderStatus.FAILED, RenderStatus.CANCELLED)

    @property
    def elapsed_ms(self) -> int:
        if not self.started_at:
            return 0
        end = self.completed_at or datetime.now(timezone.utc)
        return int((end - self.started_at).total_seconds() * 1000)

    @property
    def process_count(self) -> int:
        return len(self._processes)

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_work_dir(self) -> str:
        if self.work_dir is None:
            self.work_dir = tempfile.mkdtemp(prefix=f"captionburn_{self.id}_", dir=self.settings.render_temp_root)
            logger.info(f"[JOB] {self.id}: work dir {self.work_dir}")
        return self.work_dir

    def mark_started(self) -> None:
        """Mark the job as rendering; its pipeline now owns the work directory."""
        self.status = RenderStatus.PROCESSING
        self.started_at = datetime.now(timezone.utc)
        self._pipeline_active = True

    def finish(self) -> None:
        """Called by the pipeline on every exit path, after its threads have returned."""
        self._pipeline_active = False
        self.cleanup()

    def mark_completed(self, output_path: str, output_size: int) -> None:
        self.status = RenderStatus.COMPLETED
        self.output_path = output_path
        self.output_size = output_size
        self.progress = 100
        self.current_stage = "Complete"
        self.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, error_message: str, error_code: Optional[str] = None) -> None:
        self.status = RenderStatus.FAILED
        self.error_message = error_message
        self.error_code = error_code
        self.completed_at = datetime.now(timezone.utc)

    def mark_cancelled(self) -> None:
        self._cancelled = True
        self.status = RenderStatus.CANCELLED
        if self.completed_at is None:
            self.completed_at = datetime.now(timezone.utc)

    def update_progress(self, percent: int, stage: str) -> None:
        self.progress = percent
        self.current_stage = stage

    def get_progress(self) -> RenderProgress:
        """Snapshot of the job for progress messages."""
        return RenderProgress(
            job_id=self.id,
            status=self.status,
            percent=float(self.progress),
            current_step=self.current_stage,
            elapsed_ms=self.elapsed_ms,
            output_path=self.output_path,
            output_size=self.output_size,
            error_code=self.error_code,
            error_message=self.error_message,
        )

    # ------------------------------------------------------------------
    # Resource tracking
    # ------------------------------------------------------------------

    def check_cancelled(self) -> None:
        if self._cancelled:
            raise RenderCancelledError()

    def track_process(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)
        if self._cancelled:
            # Spawned while cancel() was running
            self._terminate_process(process)

    def untrack_process(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    def track_worker(self, process: Any, cancel_event: Any) -> None:
        self._workers.append(TrackedWorker(process, cancel_event))
        if self._cancelled:
            cancel_event.set()

    def untrack_worker(self, process: Any) -> None:
        self._workers = [w for w in self._workers if w.process is not process]

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @staticmethod
    def _terminate_process(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def cancel(self) -> bool:
        """Stop every process and worker this job owns.

        The work directory is removed here only when no pipeline is running;
        otherwise the pipeline removes it once its overlay thread has returned.
        Returns False if the job had already finished.
        """
        if self.status in (RenderStatus.COMPLETED, RenderStatus.FAILED):
            return False
        if not self._cancelled:
            logger.info(
                f"[JOB] {self.id}: cancelling ({len(self._processes)} processes, {len(self._workers)} workers)"
            )
        self._cancelled = True

        processes = list(self._processes)
        workers = list(self._workers)
        for process in processes:
            self._terminate_process(process)
        for worker in workers:
            worker.cancel_event.set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.render_terminate_grace_s
        while loop.time() < deadline and (
            any(p.returncode is None for p in processes) or any(w.process.is_alive() for w in workers)
        ):
            await asyncio.sleep(0.05)

        for process in processes:
            if process.returncode is None:
                logger.warning(f"[JOB] {self.id}: killing ffmpeg pid={process.pid}")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        for worker in workers:
            if worker.process.is_alive():
                logger.warning(f"[JOB] {self.id}: terminating overlay worker pid={worker.process.pid}")
                worker.process.terminate()

        self.mark_cancelled()
        if not self._pipeline_active:
            self.cleanup()
        return True

    def cleanup(self) -> None:
        """Remove the work directory."""
        if self.work_dir:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            logger.info(f"[JOB] {self.id}: removed {self.work_dir}")
            self.work_dir = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "current_stage": self.current_stage,
            "output_path": self.output_path,
            "output_size": self.output_size,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
