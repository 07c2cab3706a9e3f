"""Tests for render job lifecycle and cancellation."""

import asyncio
import os
import sys

import pytest

from captionburn.config import Settings
from captionburn.exceptions import RenderCancelledError
from captionburn.render.job import RenderJob, RenderStatus


class FakeWorker:
    """Stands in for a multiprocessing.Process that stops when asked."""

    def __init__(self, stubborn: bool = False):
        self.pid = 4242
        self.stubborn = stubborn
        self.terminated = False
        self.event = None

    def is_alive(self) -> bool:
        if self.terminated:
            return False
        return self.stubborn or not self.event.is_set()

    def terminate(self) -> None:
        self.terminated = True


class FakeEvent:
    def __init__(self):
        self._set = False

    def set(self) -> None:
        self._set = True

    def is_set(self) -> bool:
        return self._set


def _worker(job: RenderJob, stubborn: bool = False) -> FakeWorker:
    worker = FakeWorker(stubborn)
    worker.event = FakeEvent()
    job.track_worker(worker, worker.event)
    return worker


@pytest.fixture
def settings(temp_output_dir):
    return Settings(render_temp_root=str(temp_output_dir), render_terminate_grace_s=0.2)


class TestRenderJobLifecycle:
    """Tests for status transitions."""

    def test_initial_state(self, settings):
        """Test a new job is pending with no progress."""
        job = RenderJob("job-1", settings)

        assert job.status == RenderStatus.PENDING
        assert job.progress == 0
        assert job.is_finished is False
        assert job.elapsed_ms == 0

    def test_completed(self, settings):
        """Test completion records output and full progress."""
        job = RenderJob("job-1", settings)
        job.mark_started()
        job.mark_completed("/tmp/out.mp4", 1234)

        data = job.to_dict()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["output_size"] == 1234
        assert data["completed_at"] is not None

    def test_progress_snapshot(self, settings):
        """Test get_progress reflects the latest update."""
        job = RenderJob("job-1", settings)
        job.mark_started()
        job.update_progress(42, "Compositing captions")

        progress = job.get_progress().to_dict()
        assert progress["percent"] == 42.0
        assert progress["current_step"] == "Compositing captions"
        assert progress["status"] == "processing"

    def test_work_dir_created_once(self, settings, temp_output_dir):
        """Test the work dir lives under the temp root and is reused."""
        job = RenderJob("job-1", settings)

        work_dir = job.create_work_dir()

        assert work_dir == job.create_work_dir()
        assert os.path.dirname(work_dir) == str(temp_output_dir)
        assert os.path.basename(work_dir).startswith("captionburn_job-1_")
        job.cleanup()
        assert not os.path.exists(work_dir)


class TestRenderJobCancel:
    """Tests for RenderJob.cancel."""

    @pytest.mark.asyncio
    async def test_cancel_terminates_processes_and_removes_work_dir(self, settings):
        """Test that cancel stops a running subprocess and deletes temp files."""
        job = RenderJob("job-1", settings)
        work_dir = job.create_work_dir()
        open(os.path.join(work_dir, "part.mp4"), "w").close()
        proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(30)")
        job.track_process(proc)

        assert await job.cancel() is True

        await asyncio.wait_for(proc.wait(), timeout=5)
        assert proc.returncode is not None
        assert job.status == RenderStatus.CANCELLED
        assert job.work_dir is None
        assert not os.path.exists(work_dir)

    @pytest.mark.asyncio
    async def test_cancel_running_job_leaves_work_dir_to_pipeline(self, settings):
        """Test that a running pipeline, not cancel(), removes the work dir."""
        job = RenderJob("job-1", settings)
        job.mark_started()
        work_dir = job.create_work_dir()

        await job.cancel()

        assert job.status == RenderStatus.CANCELLED
        assert os.path.isdir(work_dir)

        job.finish()
        assert not os.path.exists(work_dir)
        assert job.work_dir is None

    @pytest.mark.asyncio
    async def test_cancel_signals_workers(self, settings):
        """Test that cancel sets every worker's event and terminates stragglers."""
        job = RenderJob("job-1", settings)
        polite = _worker(job)
        stubborn = _worker(job, stubborn=True)

        await job.cancel()

        assert polite.event.is_set()
        assert polite.terminated is False
        assert stubborn.terminated is True

    @pytest.mark.asyncio
    async def test_no_new_work_after_cancel(self, settings):
        """Test that work registered after cancel is stopped immediately."""
        job = RenderJob("job-1", settings)
        await job.cancel()

        with pytest.raises(RenderCancelledError):
            job.check_cancelled()
        late = _worker(job)
        assert late.event.is_set()

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self, settings):
        """Test that completed jobs cannot be cancelled."""
        job = RenderJob("job-1", settings)
        job.mark_completed("/tmp/out.mp4", 1)

        assert await job.cancel() is False
        assert job.status == RenderStatus.COMPLETED
