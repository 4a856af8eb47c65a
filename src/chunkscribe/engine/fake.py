"""Fake engine for CPU-based testing.

Replays scripted output on the result and diagnostic channels, allowing
reliable tests of the bridge and session without a native whisper build.
"""

import hashlib
import threading
import time
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from chunkscribe.constants import SAMPLE_RATE
from chunkscribe.cues import format_cue_line
from chunkscribe.engine.protocol import OutputHandler

DONE_DIAGNOSTIC = "whisper_print_timings: total time = 0.00 ms"


@dataclass
class FakeResponse:
    """Scripted behaviour for one engine call.

    Attributes:
        lines: Lines emitted on the result channel, in order.
        diagnostic: Line emitted on the diagnostic channel once all lines
            are out. None means the call never signals completion.
        delay_ms: Sleep before the first emission.
        line_delay_ms: Sleep between consecutive result lines.
        error: Exception raised by the blocking call after emitting.
    """

    lines: list[str] = field(default_factory=list)
    diagnostic: str | None = DONE_DIAGNOSTIC
    delay_ms: float = 0.0
    line_delay_ms: float = 0.0
    error: Exception | None = None


@dataclass
class FakeCall:
    """Arguments of one recorded full_default call."""

    instance: int
    num_samples: int
    language: str
    threads: int
    translate: bool


class FakeEngine:
    """Deterministic CPU engine for testing.

    Each call consumes the next queued FakeResponse. Without one, the call
    emits a single cue spanning the window, with text derived from the audio
    length and content hash.
    """

    def __init__(self, responses: list[FakeResponse] | None = None, fail_init: bool = False):
        """Initialize the fake engine.

        Args:
            responses: Scripted responses, consumed one per call.
            fail_init: Make ``init`` return 0 (a failed load).
        """
        self.on_result: OutputHandler | None = None
        self.on_diagnostic: OutputHandler | None = None
        self.files: dict[str, bytes] = {}
        self.calls: list[FakeCall] = []
        self.init_count = 0
        self.dispose_count = 0
        self._responses: deque[FakeResponse] = deque(responses or [])
        self._fail_init = fail_init
        self._live: set[int] = set()
        self._next_handle = 1
        self._lock = threading.Lock()

    def queue(self, *responses: FakeResponse) -> None:
        """Append scripted responses for upcoming calls."""
        with self._lock:
            self._responses.extend(responses)

    def init(self, model_path: str) -> int | None:
        self.init_count += 1
        if self._fail_init or model_path not in self.files:
            return 0
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._live.add(handle)
        return handle

    def full_default(
        self,
        instance: int,
        audio: np.ndarray,
        language: str,
        threads: int,
        translate: bool,
    ) -> None:
        with self._lock:
            self.calls.append(FakeCall(instance, len(audio), language, threads, translate))
            response = self._responses.popleft() if self._responses else None
        if response is None:
            response = FakeResponse(lines=[self._default_line(audio)])

        if response.delay_ms > 0:
            time.sleep(response.delay_ms / 1000.0)

        for i, line in enumerate(response.lines):
            if i and response.line_delay_ms > 0:
                time.sleep(response.line_delay_ms / 1000.0)
            self._emit(instance, self.on_result, line)

        if response.diagnostic is not None:
            self._emit(instance, self.on_diagnostic, response.diagnostic)
        if response.error is not None:
            raise response.error

    def write_file(self, path: str, data: bytes) -> None:
        self.files[path] = bytes(data)

    def unlink_file(self, path: str) -> None:
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    def dispose(self) -> None:
        self.dispose_count += 1
        with self._lock:
            self._live.clear()

    @property
    def call_count(self) -> int:
        """Number of full_default calls made."""
        return len(self.calls)

    def _emit(self, instance: int, handler: OutputHandler | None, line: str) -> None:
        # A disposed instance stops talking, like a freed native context.
        with self._lock:
            alive = instance in self._live
        if alive and handler is not None:
            handler(line)

    @staticmethod
    def _default_line(audio: np.ndarray) -> str:
        duration_ms = len(audio) * 1000 // SAMPLE_RATE
        digest = hashlib.sha256(audio[: min(100, len(audio))].tobytes()).hexdigest()
        return format_cue_line(0, duration_ms, f"[fake:{digest[:8]}|{duration_ms / 1000:.2f}s]")
