from captionburn.schemas.caption import (
    CaptionPosition,
    CaptionSegment,
    CaptionStyle,
    ExportSettings,
    VideoClip,
    WordTiming,
    parse_captions,
    parse_clips,
)
from captionburn.schemas.render import RenderJobResponse, RenderRequest

__all__ = [
    "CaptionPosition",
    "CaptionSegment",
    "CaptionStyle",
    "ExportSettings",
    "VideoClip",
    "WordTiming",
    "parse_captions",
    "parse_clips",
    "RenderJobResponse",
    "RenderRequest",
]
