"""Render API endpoints - renders run as in-process asyncio tasks."""

import logging

from fastapi import APIRouter, WebSocket, status
from starlette.websockets import WebSocketDisconnect

from captionburn.api.websocket import job_subscriptions
from captionburn.render.job import RenderJob
from captionburn.schemas.render import RenderJobResponse, RenderRequest
from captionburn.services.render_jobs import render_job_manager

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(job: RenderJob) -> RenderJobResponse:
    return RenderJobResponse(
        id=job.id,
        status=job.status.value,
        progress=job.progress,
        current_stage=job.current_stage,
        output_path=job.output_path,
        output_size=job.output_size,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.post(
    "/renders",
    response_model=RenderJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_render(render_request: RenderRequest) -> RenderJobResponse:
    """
    Start burning captions into a video.

    Paths are local to the server. The render runs in the background; poll
    GET /renders/{job_id} or connect to the websocket for progress.
    """
    job = render_job_manager.start(render_request)
    return _to_response(job)


@router.get("/renders", response_model=list[RenderJobResponse])
async def list_renders() -> list[RenderJobResponse]:
    return [_to_response(job) for job in render_job_manager.list_jobs()]


@router.get("/renders/{job_id}", response_model=RenderJobResponse)
async def get_render_status(job_id: str) -> RenderJobResponse:
    return _to_response(render_job_manager.get(job_id))


@router.delete("/renders/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_render(job_id: str) -> None:
    """Cancel a render: stops ffmpeg and overlay workers and removes temporary files."""
    await render_job_manager.cancel(job_id)


@router.websocket("/renders/{job_id}/ws")
async def render_progress_socket(websocket: WebSocket, job_id: str) -> None:
    """Stream snapshots of a render job: its current state first, then every change."""
    job = render_job_manager.find(job_id)
    if job is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await job_subscriptions.subscribe(websocket, job)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        job_subscriptions.unsubscribe(websocket, job_id)
