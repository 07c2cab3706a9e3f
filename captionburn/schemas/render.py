from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from captionburn.schemas.caption import CaptionSegment, ExportSettings, VideoClip


class RenderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_path: str = Field(alias="videoPath")
    output_path: str = Field(alias="outputPath")
    captions: list[CaptionSegment] = []
    clips: list[VideoClip] | None = None
    replacement_audio_path: str | None = Field(default=None, alias="replacementAudioPath")
    export_settings: ExportSettings | None = Field(default=None, alias="exportSettings")
    require_captions: bool = Field(default=False, alias="requireCaptions")  # Fail instead of copying when no caption survives


class RenderJobResponse(BaseModel):
    id: str
    status: str
    progress: int
    current_stage: str | None
    output_path: str | None
    output_size: int | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
