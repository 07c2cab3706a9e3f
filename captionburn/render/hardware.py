"""Hardware video encoder detection and quality mapping."""

import logging
import platform
import subprocess
from enum import Enum
from functools import lru_cache
from typing import Optional

from captionburn.config import Settings, get_settings

logger = logging.getLogger(__name__)


class HardwareAccel(Enum):
    """Video encoder backend."""

    NONE = "none"
    VIDEOTOOLBOX = "videotoolbox"
    NVENC = "nvenc"
    QSV = "qsv"
    AMF = "amf"


ENCODERS = {
    HardwareAccel.NONE: "libx264",
    HardwareAccel.VIDEOTOOLBOX: "h264_videotoolbox",
    HardwareAccel.NVENC: "h264_nvenc",
    HardwareAccel.QSV: "h264_qsv",
    HardwareAccel.AMF: "h264_amf",
}

# quality -> (x264 preset, crf)
SOFTWARE_QUALITY = {
    "low": ("fast", 28),
    "medium": ("medium", 23),
    "high": ("slow", 18),
    "ultra": ("veryslow", 15),
}

NVENC_PRESETS = {"low": "p2", "medium": "p4", "high": "p6", "ultra": "p7"}
AMF_QUALITY = {"low": "speed", "medium": "balanced", "high": "quality", "ultra": "quality"}
VIDEOTOOLBOX_BITRATES = {"low": "1500k", "medium": "4000k", "high": "8000k", "ultra": "12000k"}

GPU_FAILURE_KEYWORDS = [
    "nvenc",
    "amf",
    "qsv",
    "videotoolbox",
    "no capable devices found",
    "cannot load libcuda",
    "cuda error",
    "device not available",
    "hardware device",
    "unsupported device",
    "error initializing output stream",
    "mfx session",
]


def encoder_for(accel: HardwareAccel) -> str:
    return ENCODERS[accel]


def video_quality_args(accel: HardwareAccel, quality: str) -> list[str]:
    """Encoder plus rate-control flags for a quality level."""
    preset, crf = SOFTWARE_QUALITY.get(quality, SOFTWARE_QUALITY["high"])
    encoder = ["-c:v", encoder_for(accel)]

    if accel == HardwareAccel.NVENC:
        return encoder + ["-preset", NVENC_PRESETS.get(quality, "p6"), "-rc", "vbr", "-cq", str(crf), "-b:v", "0"]
    if accel == HardwareAccel.QSV:
        return encoder + ["-global_quality", str(crf), "-look_ahead", "1"]
    if accel == HardwareAccel.AMF:
        return encoder + [
            "-rc", "vbr_peak",
            "-qp_i", str(crf),
            "-qp_p", str(crf),
            "-quality", AMF_QUALITY.get(quality, "quality"),
        ]
    if accel == HardwareAccel.VIDEOTOOLBOX:
        return encoder + ["-b:v", VIDEOTOOLBOX_BITRATES.get(quality, "8000k"), "-allow_sw", "1"]
    return encoder + ["-preset", preset, "-crf", str(crf)]


def supports_overlay_compositing(accel: HardwareAccel) -> bool:
    """VideoToolbox is only used for plain encodes, never overlay filter graphs."""
    return accel not in (HardwareAccel.VIDEOTOOLBOX,)


def is_hardware_encoder_failure(error_text: str) -> bool:
    text = error_text.lower()
    return any(keyword in text for keyword in GPU_FAILURE_KEYWORDS)


def preferred_accel_order(system: Optional[str] = None) -> list[HardwareAccel]:
    system = system or platform.system()
    if system == "Darwin":
        return [HardwareAccel.VIDEOTOOLBOX]
    return [HardwareAccel.NVENC, HardwareAccel.QSV, HardwareAccel.AMF]


@lru_cache(maxsize=4)
def detect_available_encoders(ffmpeg_path: str) -> frozenset[str]:
    """Encoder names listed by `ffmpeg -encoders`."""
    try:
        result = subprocess.run(
            [ffmpeg_path, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            check=True,
            timeout=15,
        )
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        logger.warning(f"[HWACCEL] Failed to probe FFmpeg encoders: {exc}")
        return frozenset()

    names = set()
    for line in result.stdout.splitlines():
        parts = line.split()
        # " V....D libx264   libx264 H.264 ..." -> flags, name, description
        if len(parts) >= 2 and parts[0].startswith("V"):
            names.add(parts[1])
    return frozenset(names)


@lru_cache(maxsize=8)
def probe_encoder(ffmpeg_path: str, encoder: str) -> bool:
    """Encode one tiny frame to prove the device behind an encoder is usable."""
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-f", "lavfi",
        "-i", "color=c=black:s=256x256:d=0.1",
        "-frames:v", "1",
        "-c:v", encoder,
        "-f", "null",
        "-",
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=20)
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        logger.info(f"[HWACCEL] Trial encode with {encoder} failed: {exc}")
        return False
    if result.returncode != 0:
        logger.info(f"[HWACCEL] Trial encode with {encoder} failed: {result.stderr.strip()[-200:]}")
        return False
    return True


def select_hardware_acceleration(settings: Optional[Settings] = None) -> HardwareAccel:
    """Pick the first usable hardware encoder for this machine, else NONE."""
    settings = settings or get_settings()
    mode = settings.render_hardware_acceleration.lower()
    if mode == "none":
        return HardwareAccel.NONE

    if mode == "auto":
        candidates = preferred_accel_order()
    else:
        try:
            candidates = [HardwareAccel(mode)]
        except ValueError:
            logger.warning(f"[HWACCEL] Unknown hardware acceleration '{mode}', using software encoding")
            return HardwareAccel.NONE

    available = detect_available_encoders(settings.ffmpeg_path)
    for accel in candidates:
        encoder = encoder_for(accel)
        if encoder not in available:
            continue
        if probe_encoder(settings.ffmpeg_path, encoder):
            logger.info(f"[HWACCEL] Using {accel.value} ({encoder})")
            return accel

    logger.info("[HWACCEL] No usable hardware encoder, using libx264")
    return HardwareAccel.NONE
