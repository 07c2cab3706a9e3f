import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from captionburn.exceptions import InvalidInputError

_COLOR_PATTERN = re.compile(r"^#(?:[0-9A-Fa-f]{3}|[0-9A-Fa-f]{6}|[0-9A-Fa-f]{8})$")

TextTransform = Literal["none", "uppercase", "lowercase", "capitalize"]
TextAlign = Literal["left", "center", "right"]
RenderMode = Literal["karaoke", "progressive"]
Quality = Literal["low", "medium", "high", "ultra"]


class WordTiming(BaseModel):
    """A single word with its own display window (milliseconds)."""

    model_config = ConfigDict(populate_by_name=True)

    word: str
    start_ms: float = Field(validation_alias=AliasChoices("start_ms", "startMs", "start"), ge=0)
    end_ms: float = Field(validation_alias=AliasChoices("end_ms", "endMs", "end"), ge=0)


class CaptionPosition(BaseModel):
    """Caption anchor as a percentage of the frame."""

    x: float = Field(default=50.0, ge=0.0, le=100.0)
    y: float = Field(default=80.0, ge=0.0, le=100.0)


class CaptionStyle(BaseModel):
    """Visual style of a caption.

    Accepts snake_case input. camelCase aliases are accepted for compatibility
    with the editor's project files.
    """

    model_config = ConfigDict(populate_by_name=True)

    font: str = "Arial"
    font_size: float = Field(default=32, gt=0, alias="fontSize")
    scale: float = Field(default=1.0, gt=0)
    text_color: str = Field(default="#FFFFFF", alias="textColor")
    highlighter_color: str = Field(default="#FFFF00", alias="highlighterColor")
    background_color: str = Field(default="transparent", alias="backgroundColor")
    stroke_color: str = Field(default="transparent", alias="strokeColor")
    stroke_width: float = Field(default=0, ge=0, alias="strokeWidth")
    text_transform: TextTransform = Field(default="none", alias="textTransform")
    text_align: TextAlign = Field(default="center", alias="textAlign")
    position: CaptionPosition = Field(default_factory=CaptionPosition)
    render_mode: RenderMode = Field(default="karaoke", alias="renderMode")
    emphasize_mode: bool = Field(default=False, alias="emphasizeMode")
    burn_in: bool = Field(
        default=True,
        validation_alias=AliasChoices("burn_in", "burnIn", "burnInSubtitles"),
    )

    @field_validator("text_color", "highlighter_color", "background_color", "stroke_color")
    @classmethod
    def validate_color(cls, v: str, info) -> str:
        if v.lower() == "transparent":
            return "transparent"
        if _COLOR_PATTERN.match(v):
            return v
        raise ValueError(f'{info.field_name} must be "transparent" or a HEX color like "#FFFFFF" (got {v})')


class CaptionSegment(BaseModel):
    """A timed caption with optional per-word timing."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    start_time_ms: float = Field(validation_alias=AliasChoices("start_time_ms", "startTimeMs", "startTime"), ge=0)
    end_time_ms: float = Field(validation_alias=AliasChoices("end_time_ms", "endTimeMs", "endTime"), ge=0)
    text: str
    style: CaptionStyle = Field(default_factory=CaptionStyle)
    words: list[WordTiming] | None = None

    @property
    def duration_ms(self) -> float:
        return self.end_time_ms - self.start_time_ms

    @property
    def has_words(self) -> bool:
        return bool(self.words)


class VideoClip(BaseModel):
    """A span of the original timeline, possibly marked as removed."""

    model_config = ConfigDict(populate_by_name=True)

    start_time: float = Field(validation_alias=AliasChoices("start_time", "startTime"), ge=0)
    end_time: float = Field(validation_alias=AliasChoices("end_time", "endTime"), ge=0)
    is_removed: bool = Field(default=False, validation_alias=AliasChoices("is_removed", "isRemoved"))

    @model_validator(mode="after")
    def validate_span(self) -> "VideoClip":
        if self.start_time >= self.end_time:
            raise ValueError(f"clip start_time must be before end_time (got {self.start_time} >= {self.end_time})")
        return self


class ExportSettings(BaseModel):
    framerate: float | None = Field(default=None, gt=0)
    quality: Quality | None = None


_captions_adapter = TypeAdapter(list[CaptionSegment])
_clips_adapter = TypeAdapter(list[VideoClip])


def _format_validation_error(label: str, exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return f"Invalid {label}"
    first_error = errors[0]
    loc = " -> ".join(str(x) for x in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")
    return f"Invalid {label}: {loc}: {msg}" if loc else f"Invalid {label}: {msg}"


def parse_captions(raw: list[Any] | None) -> list[CaptionSegment]:
    """Validate caption dicts (or models) into CaptionSegment instances."""
    if not raw:
        return []
    try:
        return _captions_adapter.validate_python(
            [c.model_dump() if isinstance(c, CaptionSegment) else c for c in raw]
        )
    except ValidationError as e:
        raise InvalidInputError(_format_validation_error("captions", e)) from e


def parse_clips(raw: list[Any] | None) -> list[VideoClip]:
    """Validate clip dicts (or models) into VideoClip instances."""
    if not raw:
        return []
    try:
        return _clips_adapter.validate_python(
            [c.model_dump() if isinstance(c, VideoClip) else c for c in raw]
        )
    except ValidationError as e:
        raise InvalidInputError(_format_validation_error("clips", e)) from e
