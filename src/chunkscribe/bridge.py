"""Event bridge between the native engine and asyncio.

The engine's transcription call blocks, returns nothing, and reports only
through two output channels. The bridge runs the call in the default
executor, republishes both channels as subscribable event streams on the
event loop, and turns the first diagnostic line of a call into a tagged
CallOutcome.
"""

import asyncio
import enum
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from chunkscribe.config import TranscriptionOptions
from chunkscribe.constants import ADVISORY_CALL_SECONDS, MODEL_FILE_NAME, SAMPLE_RATE
from chunkscribe.cues import Segment, parse_cue_line
from chunkscribe.engine.protocol import Engine
from chunkscribe.errors import (
    CueFormatError,
    EngineFaultError,
    NotInitializedError,
    ReentrancyError,
)

logger = logging.getLogger(__name__)

RESULT = "result"
DIAGNOSTIC = "diagnostic"

_FAULT_RE = re.compile(r"^\s*(error|fatal)\b|failed|abort", re.IGNORECASE)


class EngineState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"


@dataclass(frozen=True)
class CallOutcome:
    """How one engine call ended.

    Attributes:
        ok: False when the terminal diagnostic line reports a fault.
        detail: The diagnostic line that ended the call.
        segment_count: Result lines received during the call.
    """

    ok: bool
    detail: str
    segment_count: int = 0


def classify_diagnostic(line: str) -> bool:
    """Return True when a terminal diagnostic line is a benign completion.

    The engine uses one channel for both log chatter and errors, so this is
    a heuristic on the text.
    """
    return _FAULT_RE.search(line) is None


class EventStream:
    """A named stream of string events with any number of subscribers."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[str], None]] = []

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback and return a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, value: str) -> None:
        for callback in list(self._subscribers):
            callback(value)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class EventBridge:
    """Owns one engine instance and enforces a single call in flight.

    Typical use::

        bridge = EventBridge(lambda: WhisperCppEngine(engine_dir))
        await bridge.load_model(model_bytes)
        outcome = await bridge.call(samples, options, on_segment)
    """

    def __init__(self, engine_factory: Callable[[], Engine]):
        """Initialize the bridge.

        Args:
            engine_factory: Creates the engine on first use. May raise
                UnsupportedEnvironmentError when the native binding is absent.
        """
        self._engine_factory = engine_factory
        self._engine: Engine | None = None
        self._instance: int | None = None
        self._model_path: str | None = None
        self._model_name: str | None = None
        self._state = EngineState.IDLE
        self._generation = 0
        self._pending: asyncio.Future[CallOutcome] | None = None
        self._blocking: asyncio.Future[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._streams = {RESULT: EventStream(RESULT), DIAGNOSTIC: EventStream(DIAGNOSTIC)}
        self._streams[DIAGNOSTIC].subscribe(lambda line: logger.debug("engine: %s", line))

    def subscribe(self, channel: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to raw engine lines on ``"result"`` or ``"diagnostic"``."""
        try:
            stream = self._streams[channel]
        except KeyError:
            raise ValueError(f"Unknown channel: {channel!r}") from None
        return stream.subscribe(callback)

    def load_engine(self) -> Engine:
        """Create the engine if needed and wire its output channels."""
        if self._engine is None:
            engine = self._engine_factory()
            engine.on_result = lambda line: self._forward(RESULT, line)
            engine.on_diagnostic = lambda line: self._forward(DIAGNOSTIC, line)
            self._engine = engine
        return self._engine

    async def load_model(
        self,
        data: bytes,
        file_name: str = MODEL_FILE_NAME,
        model_name: str | None = None,
    ) -> None:
        """Stage model bytes into the engine and initialize an instance.

        Args:
            data: Model weights (ggml file contents).
            file_name: Name the model is staged under.
            model_name: Label reported by ``model_name``.
        """
        if self._state is EngineState.BUSY:
            raise ReentrancyError("Already transcribing")
        engine = self.load_engine()
        if self._instance is not None:
            self.dispose()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stage_file, engine, file_name, data)
        instance = await loop.run_in_executor(None, engine.init, file_name)
        if not instance:
            raise NotInitializedError(f"Engine failed to initialize model {file_name}")

        self._instance = instance
        self._model_path = file_name
        self._model_name = model_name or file_name
        logger.info("Model %s loaded (%d bytes)", self._model_name, len(data))

    async def restart(self) -> None:
        """Dispose and re-initialize the instance from the staged model.

        Any outstanding call is abandoned: its result future is cancelled and
        late emissions from it are ignored. The engine call itself cannot be
        interrupted, so the bridge stays busy until it has returned.
        """
        if self._engine is None:
            raise NotInitializedError("module not loaded")
        if self._model_path is None:
            raise NotInitializedError("instance not loaded")

        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._generation += 1

        blocking = self._blocking
        if blocking is not None and not blocking.done():
            logger.info("Waiting for the abandoned engine call to return before restarting")
            await asyncio.wait({blocking})
        self._blocking = None
        self._state = EngineState.IDLE

        self._engine.dispose()
        self._instance = None
        loop = asyncio.get_running_loop()
        instance = await loop.run_in_executor(None, self._engine.init, self._model_path)
        if not instance:
            raise NotInitializedError(f"Engine failed to re-initialize model {self._model_path}")
        self._instance = instance
        logger.info("Engine restarted with model %s", self._model_name)

    def dispose(self) -> None:
        """Release the current engine instance."""
        if self._engine is not None:
            self._engine.dispose()
        self._instance = None

    async def call(
        self,
        samples: np.ndarray,
        options: TranscriptionOptions | None = None,
        on_segment: Callable[[Segment], None] | None = None,
    ) -> CallOutcome:
        """Run one engine call over ``samples``.

        Args:
            samples: Float32 window at 16kHz.
            options: Language, threads and translate flags.
            on_segment: Called once per parsed result line, in order.

        Returns:
            The tagged outcome carried by the first diagnostic line.

        Raises:
            ReentrancyError: A call is already outstanding.
            NotInitializedError: Engine or model instance not loaded.
            EngineFaultError: The blocking engine call raised, or returned
                without a completion signal.
            CueFormatError: A result line could not be parsed.
        """
        if self._state is EngineState.BUSY:
            raise ReentrancyError("Already transcribing")
        if self._engine is None:
            raise NotInitializedError("module not loaded")
        if self._instance is None:
            raise NotInitializedError("instance not loaded")

        options = options or TranscriptionOptions()
        duration_s = len(samples) / SAMPLE_RATE
        if duration_s > ADVISORY_CALL_SECONDS:
            logger.warning(
                "Engine call with %.1fs of audio exceeds the advised %ds",
                duration_s,
                ADVISORY_CALL_SECONDS,
            )

        self._state = EngineState.BUSY
        self._generation += 1
        generation = self._generation
        loop = asyncio.get_running_loop()
        self._loop = loop
        done: asyncio.Future[CallOutcome] = loop.create_future()
        self._pending = done
        count = 0

        def handle_result(line: str) -> None:
            nonlocal count
            if generation != self._generation or done.done():
                return
            try:
                segment = parse_cue_line(line)
            except CueFormatError as e:
                done.set_exception(e)
                return
            count += 1
            if on_segment is not None:
                on_segment(segment)

        def handle_diagnostic(line: str) -> None:
            if generation != self._generation or done.done():
                return
            done.set_result(CallOutcome(ok=classify_diagnostic(line), detail=line, segment_count=count))

        def handle_return(future: asyncio.Future) -> None:
            if future.cancelled():
                return
            e = future.exception()
            if done.done() or generation != self._generation:
                return
            if e is not None:
                done.set_exception(EngineFaultError(f"Engine call failed: {e}"))
            else:
                done.set_exception(EngineFaultError("Engine returned without a completion signal"))

        unsubscribe_result = self._streams[RESULT].subscribe(handle_result)
        unsubscribe_diagnostic = self._streams[DIAGNOSTIC].subscribe(handle_diagnostic)
        try:
            blocking = loop.run_in_executor(
                None,
                self._engine.full_default,
                self._instance,
                samples,
                options.language,
                options.threads,
                options.translate,
            )
            self._blocking = blocking
            # Results arrive via call_soon_threadsafe; wait for them to drain
            # before settling on the engine's return.
            blocking.add_done_callback(lambda f: loop.call_soon(handle_return, f))
            try:
                return await done
            finally:
                # The call may settle before the engine returns (a bad result
                # line); the engine stays in use until it has.
                if generation == self._generation and not blocking.done():
                    await asyncio.wait({blocking})
        finally:
            unsubscribe_result()
            unsubscribe_diagnostic()
            if generation == self._generation:
                self._state = EngineState.IDLE
                self._pending = None
                self._blocking = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is EngineState.BUSY

    @property
    def is_loaded(self) -> bool:
        return self._engine is not None and self._instance is not None

    @property
    def model_name(self) -> str | None:
        return self._model_name if self._instance is not None else None

    @staticmethod
    def _stage_file(engine: Engine, file_name: str, data: bytes) -> None:
        try:
            engine.unlink_file(file_name)
        except FileNotFoundError:
            logger.debug("No previous %s to remove", file_name)
        engine.write_file(file_name, data)

    def _forward(self, channel: str, line: str) -> None:
        """Hand an engine emission (from any thread) to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Dropping %s line, no event loop: %s", channel, line)
            return
        try:
            loop.call_soon_threadsafe(self._streams[channel].emit, line)
        except RuntimeError:
            logger.debug("Dropping %s line, event loop closed: %s", channel, line)
