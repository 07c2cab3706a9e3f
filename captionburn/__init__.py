"""Burn timed captions into video with ffmpeg."""

__version__ = "0.1.0"
