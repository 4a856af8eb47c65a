"""Runtime configuration: process settings and per-call transcription options."""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_cache_path

from chunkscribe.constants import DEFAULT_TIMEOUT_MS, MAX_STREAM_SECONDS

ENV_PREFIX = "CHUNKSCRIBE_"
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class TranscriptionOptions:
    """Options for one transcription run. Never mutated after creation.

    Attributes:
        language: Spoken language code, or "auto" for detection.
        threads: Worker threads the engine may use for inference.
        translate: Translate to English instead of transcribing.
        sleep_ms_between_chunks: Pause between windows, if set.
        restart_model_on_error: Restart the engine and retry a window that
            timed out or faulted, instead of failing the stream.
        timeout_ms: Maximum wait for the next engine event.
        max_restarts: Retry attempts per window when restarting on error.
    """

    language: str = "auto"
    threads: int = 4
    translate: bool = False
    sleep_ms_between_chunks: int | None = None
    restart_model_on_error: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_restarts: int = 3

    def __post_init__(self) -> None:
        if self.threads < 1:
            raise ValueError(f"threads must be >= 1, got {self.threads}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        if self.max_restarts < 0:
            raise ValueError(f"max_restarts must be >= 0, got {self.max_restarts}")
        if self.sleep_ms_between_chunks is not None and self.sleep_ms_between_chunks < 0:
            raise ValueError("sleep_ms_between_chunks must be >= 0")


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, read from CHUNKSCRIBE_* environment variables."""

    cache_dir: Path
    engine_dir: Path
    cache_enabled: bool = True
    max_cache_size: int | None = None
    download_timeout_s: float = 60.0
    max_stream_seconds: int = MAX_STREAM_SECONDS
    model_id: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the environment (or an explicit mapping)."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value is not None and value.strip() else None

        cache_dir = Path(get("CACHE_DIR") or user_cache_path("chunkscribe"))
        engine_dir = Path(get("ENGINE_DIR") or cache_dir / "engine")

        enabled = get("CACHE_ENABLED")
        max_size = get("MAX_CACHE_SIZE")
        timeout = get("DOWNLOAD_TIMEOUT")
        stream_limit = get("MAX_STREAM_SECONDS")

        return cls(
            cache_dir=cache_dir,
            engine_dir=engine_dir,
            cache_enabled=enabled is None or enabled.lower() not in _FALSE_VALUES,
            max_cache_size=_parse_number(int, "MAX_CACHE_SIZE", max_size),
            download_timeout_s=_parse_number(float, "DOWNLOAD_TIMEOUT", timeout) or 60.0,
            max_stream_seconds=_parse_number(int, "MAX_STREAM_SECONDS", stream_limit) or MAX_STREAM_SECONDS,
            model_id=get("MODEL"),
            log_level=(get("LOG_LEVEL") or "INFO").upper(),
        )


def _parse_number(kind, name: str, value: str | None):
    if value is None:
        return None
    try:
        return kind(value)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from e
