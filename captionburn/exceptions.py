"""Custom exceptions for the captionburn renderer.

Every failure surfaced by a render carries a machine-readable code and the
HTTP status the API layer maps it to.
"""

from typing import Any


class CaptionBurnError(Exception):
    """Base exception for all captionburn errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and progress messages."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


# =============================================================================
# Input Errors (4xx)
# =============================================================================


class InvalidInputError(CaptionBurnError):
    """Missing or unreadable input, malformed caption or clip data."""

    code = "INVALID_INPUT"
    status_code = 400
    message = "Invalid render input"


class TimingInconsistencyError(CaptionBurnError):
    """Caption timing could not be reconciled with the edited timeline."""

    code = "TIMING_INCONSISTENCY"
    status_code = 422
    message = "Caption timing is inconsistent"


class RenderJobNotFoundError(CaptionBurnError):
    code = "RENDER_JOB_NOT_FOUND"
    status_code = 404
    message = "Render job not found"


class RenderCancelledError(CaptionBurnError):
    """The render was cancelled. Never converted into a fallback."""

    code = "RENDER_CANCELLED"
    status_code = 409
    message = "Render cancelled"


# =============================================================================
# Engine Errors (5xx)
# =============================================================================


class ExternalEngineError(CaptionBurnError):
    """ffmpeg/ffprobe exited with an error."""

    code = "ENGINE_FAILURE"
    status_code = 502
    message = "Media engine failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        returncode: int | None = None,
        stderr_tail: str = "",
        command: list[str] | None = None,
        code: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, code=code, status_code=status_code)
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        self.command = command or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["returncode"] = self.returncode
        data["stderr_tail"] = self.stderr_tail
        return data


class ResourceExhaustedError(ExternalEngineError):
    """Too many open files, argument list too long, out of memory."""

    code = "RESOURCE_EXHAUSTED"
    message = "Media engine ran out of resources"
    retryable = True


class EngineCrashError(ExternalEngineError):
    """Engine killed by a signal or segfault."""

    code = "ENGINE_CRASH"
    message = "Media engine crashed"


class HardwareEncoderError(ExternalEngineError):
    """Hardware encoder rejected the stream or the device is unavailable."""

    code = "HARDWARE_ENCODER_FAILURE"
    message = "Hardware encoder failed"


class OverlayGenerationError(CaptionBurnError):
    """A caption overlay worker failed or exited without reporting."""

    code = "OVERLAY_GENERATION_FAILED"
    status_code = 500
    message = "Caption overlay generation failed"


class OutputValidationError(CaptionBurnError):
    code = "OUTPUT_VALIDATION_FAILED"
    status_code = 500
    message = "Rendered output is missing or empty"
