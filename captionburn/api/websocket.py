"""Websocket subscriptions for render job progress.

Clients subscribe to one render job. Every message is a snapshot of the job
built from RenderJob.get_progress(); its type follows the job status:

- progress: pending or processing
- complete: output_path and output_size
- error: error_code and error_message
- cancelled
"""

import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from captionburn.render.job import RenderJob, RenderStatus

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {
    RenderStatus.PENDING: "progress",
    RenderStatus.PROCESSING: "progress",
    RenderStatus.COMPLETED: "complete",
    RenderStatus.FAILED: "error",
    RenderStatus.CANCELLED: "cancelled",
}


def render_job_message(job: RenderJob) -> dict[str, Any]:
    return {"type": MESSAGE_TYPES[job.status], **job.get_progress().to_dict()}


class JobSubscriptions:
    """Websocket clients per render job."""

    def __init__(self):
        self._subscribers: defaultdict[str, set[WebSocket]] = defaultdict(set)

    def subscribers(self, job_id: str) -> set[WebSocket]:
        return set(self._subscribers.get(job_id, ()))

    async def subscribe(self, websocket: WebSocket, job: RenderJob) -> None:
        """Accept the client and send it the job's current state."""
        await websocket.accept()
        self._subscribers[job.id].add(websocket)
        await websocket.send_json(render_job_message(job))

    def unsubscribe(self, websocket: WebSocket, job_id: str) -> None:
        subscribers = self._subscribers.get(job_id)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self._subscribers[job_id]

    async def publish(self, job: RenderJob) -> None:
        """Send the job's current state to every client watching it."""
        subscribers = self.subscribers(job.id)
        if not subscribers:
            return

        message = render_job_message(job)
        for websocket in subscribers:
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"[WS] Dropping client for job {job.id}: {e}")
                self.unsubscribe(websocket, job.id)


job_subscriptions = JobSubscriptions()
