"""Chunked streaming transcription over whisper.cpp, with a model cache."""

from chunkscribe.constants import (
    DEFAULT_TIMEOUT_MS,
    SAMPLE_RATE,
    WINDOW_SAMPLES,
    WINDOW_SECONDS,
)
from chunkscribe.cues import Segment, parse_cue_line, time_to_ms

__all__ = [
    "SAMPLE_RATE",
    "WINDOW_SECONDS",
    "WINDOW_SAMPLES",
    "DEFAULT_TIMEOUT_MS",
    "Segment",
    "parse_cue_line",
    "time_to_ms",
]
