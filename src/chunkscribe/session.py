"""Chunked streaming transcription over the event bridge.

Long input is split into fixed windows, one engine call each. Segments are
pushed by the engine as they are produced and pulled by the caller through
an async generator; timestamps are moved onto the timeline of the whole
input.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator

import numpy as np

from chunkscribe.audio import as_samples, samples_to_ms, split_windows
from chunkscribe.bridge import CallOutcome, EventBridge
from chunkscribe.config import TranscriptionOptions
from chunkscribe.constants import WINDOW_SAMPLES
from chunkscribe.cues import Segment
from chunkscribe.errors import EngineFaultError, ReentrancyError, TranscriptionTimeoutError
from chunkscribe.timeout import TimeoutGuard

logger = logging.getLogger(__name__)

_RETRYABLE = (TranscriptionTimeoutError, EngineFaultError)


class _WindowRun:
    """Push-to-pull state for one attempt at one window.

    Holds the pending segment queue, at most one parked waiter, the
    completion flag and the captured error.
    """

    def __init__(self, bridge: EventBridge, window: np.ndarray, offset_ms: int, options: TranscriptionOptions):
        self._bridge = bridge
        self._window = window
        self._offset_ms = offset_ms
        self._options = options
        self._queue: deque[Segment] = deque()
        self._waiter: asyncio.Future[Segment | None] | None = None
        self._guard = TimeoutGuard()
        self._task: asyncio.Task[CallOutcome] | None = None
        self._closed = False
        self.completed = False
        self.error: BaseException | None = None
        self.last_end_ms: int | None = None

    def start(self) -> None:
        self._task = asyncio.ensure_future(
            self._bridge.call(self._window, self._options, self._on_segment)
        )
        self._task.add_done_callback(self._on_done)

    async def next_segment(self) -> Segment | None:
        """Return the next segment, or None once the window completed.

        Raises:
            TranscriptionTimeoutError: No event within ``timeout_ms``.
            The captured call error, once the call failed.
        """
        while True:
            if self._queue:
                return self._queue.popleft()
            if self.completed:
                if self.error is not None:
                    raise self.error
                return None

            loop = asyncio.get_running_loop()
            waiter: asyncio.Future[Segment | None] = loop.create_future()
            self._waiter = waiter
            deadline = self._guard.arm(
                self._options.timeout_ms,
                f"No transcription event within {self._options.timeout_ms}ms",
            )
            try:
                await asyncio.wait({waiter, deadline}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                self._waiter = None

            if waiter.done():
                if deadline.done():
                    deadline.exception()  # mark retrieved, the segment won the race
                self._guard.clear()
                segment = waiter.result()
                if segment is not None:
                    return segment
                continue

            # Only the deadline can have finished here.
            self.error = deadline.exception()
            waiter.cancel()
            raise self.error

    def close(self) -> None:
        """Stop listening. The engine call itself is left to finish."""
        self._closed = True
        self._guard.clear()
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()
        self._waiter = None

    def _on_segment(self, segment: Segment) -> None:
        if self._closed:
            return
        self.last_end_ms = segment.time_end
        adjusted = segment.shifted(self._offset_ms)
        # Any event resets the watchdog.
        self._guard.clear()
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(adjusted)
        else:
            self._queue.append(adjusted)

    def _on_done(self, task: asyncio.Task[CallOutcome]) -> None:
        if task.cancelled():
            if self.error is None:
                self.error = EngineFaultError("Engine call was abandoned")
        elif task.exception() is not None:
            self.error = task.exception()
        else:
            outcome = task.result()
            if not outcome.ok:
                self.error = EngineFaultError(f"Engine reported a fault: {outcome.detail}")
        self.completed = True
        self._guard.clear()
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)


class TranscriptionSession:
    """Streams segments for arbitrarily long audio, one window at a time.

    Each ``stream()`` call works on fresh state and may be abandoned at any
    point by no longer iterating; an engine call already running finishes
    in the background, but nothing more is yielded.
    """

    def __init__(self, bridge: EventBridge, window_samples: int = WINDOW_SAMPLES):
        self._bridge = bridge
        self._window_samples = window_samples

    async def stream(
        self,
        audio: np.ndarray | bytes,
        options: TranscriptionOptions | None = None,
    ) -> AsyncIterator[Segment]:
        """Transcribe ``audio`` and yield segments as the engine emits them.

        Args:
            audio: 16kHz mono float32 samples, or their little-endian bytes.
            options: Per-run transcription options.

        Yields:
            Segments with timestamps relative to the start of ``audio``.

        Raises:
            ReentrancyError: The bridge is already running a call.
            TranscriptionTimeoutError: A wait exceeded ``timeout_ms`` and no
                restart was configured (or restarts were exhausted).
            EngineFaultError: The engine failed a window, same conditions.
        """
        options = options or TranscriptionOptions()
        if self._bridge.is_busy:
            raise ReentrancyError("Already transcribing")

        samples = as_samples(audio)
        windows = split_windows(samples, self._window_samples)
        offset_ms = 0

        for index, window in enumerate(windows):
            if index and options.sleep_ms_between_chunks:
                await asyncio.sleep(options.sleep_ms_between_chunks / 1000)

            logger.debug("Window %d/%d at offset %dms", index + 1, len(windows), offset_ms)
            yielded_end: int | None = None
            restarts = 0
            while True:
                run = _WindowRun(self._bridge, window, offset_ms, options)
                run.start()
                try:
                    while True:
                        segment = await run.next_segment()
                        if segment is None:
                            break
                        if yielded_end is not None and segment.time_end <= yielded_end:
                            continue
                        yielded_end = segment.time_end
                        yield segment
                except _RETRYABLE as e:
                    if not options.restart_model_on_error or restarts >= options.max_restarts:
                        raise
                    restarts += 1
                    logger.warning(
                        "Window %d failed (%s), restarting engine (attempt %d/%d)",
                        index + 1,
                        e,
                        restarts,
                        options.max_restarts,
                    )
                    await self._bridge.restart()
                    continue
                finally:
                    run.close()
                break

            if run.last_end_ms is not None:
                offset_ms += run.last_end_ms
            else:
                offset_ms += samples_to_ms(len(window))

    async def transcribe(
        self,
        audio: np.ndarray | bytes,
        options: TranscriptionOptions | None = None,
    ) -> list[Segment]:
        """Collect every segment of ``stream()`` into a list."""
        return [segment async for segment in self.stream(audio, options)]
