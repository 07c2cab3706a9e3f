from captionburn.render.job import RenderJob, RenderProgress, RenderStatus
from captionburn.render.pipeline import CaptionRenderPipeline, render_video_with_captions

__all__ = [
    "CaptionRenderPipeline",
    "RenderJob",
    "RenderProgress",
    "RenderStatus",
    "render_video_with_captions",
]
