"""FastAPI server exposing chunked transcription over WebSocket.

Clients send float32 little-endian audio frames and receive segments as
JSON. The app depends only on an EventBridge, so it runs the same against
the real whisper.cpp engine and the FakeEngine.

Run with the settings from the environment:
    uvicorn --factory chunkscribe.server:create_app_from_settings
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from chunkscribe.audio import validate_audio_format
from chunkscribe.bridge import EventBridge
from chunkscribe.cache import ModelCache
from chunkscribe.config import Settings, TranscriptionOptions
from chunkscribe.constants import (
    BYTES_PER_SAMPLE,
    MAX_STREAM_SECONDS,
    SAMPLE_RATE,
    STORE_FILE_NAME,
    WINDOW_SECONDS,
)
from chunkscribe.errors import ChunkscribeError
from chunkscribe.logging_setup import configure_logging
from chunkscribe.models import all_models
from chunkscribe.session import TranscriptionSession
from chunkscribe.store import ModelStore

logger = logging.getLogger(__name__)

EOS = b"EOS"


class StreamBuffer:
    """Accumulates audio frames for a single WebSocket connection.

    Args:
        max_bytes: Upper bound on buffered audio, or None for no bound.
    """

    def __init__(self, max_bytes: int | None = None) -> None:
        self._buffer = bytearray()
        self.max_bytes = max_bytes

    @property
    def buffer_bytes(self) -> int:
        return len(self._buffer)

    @property
    def buffer_samples(self) -> int:
        return len(self._buffer) // BYTES_PER_SAMPLE

    def has_room_for(self, data: bytes) -> bool:
        return self.max_bytes is None or len(self._buffer) + len(data) <= self.max_bytes

    def append(self, data: bytes) -> None:
        self._buffer.extend(data)

    def flush(self) -> bytes:
        """Return the buffered audio and clear."""
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def options_from_query(params, defaults: TranscriptionOptions) -> TranscriptionOptions:
    """Override default options with WebSocket query parameters."""
    translate = params.get("translate")
    return TranscriptionOptions(
        language=params.get("language", defaults.language),
        threads=int(params.get("threads", defaults.threads)),
        translate=defaults.translate if translate is None else translate.lower() in ("1", "true", "yes"),
        sleep_ms_between_chunks=defaults.sleep_ms_between_chunks,
        restart_model_on_error=defaults.restart_model_on_error,
        timeout_ms=int(params.get("timeout_ms", defaults.timeout_ms)),
        max_restarts=defaults.max_restarts,
    )


def create_app(
    bridge: EventBridge,
    cache: ModelCache | None = None,
    model_id: str | None = None,
    options: TranscriptionOptions | None = None,
    window_samples: int | None = None,
    max_stream_seconds: int = MAX_STREAM_SECONDS,
) -> FastAPI:
    """Create a FastAPI application around an event bridge.

    Args:
        bridge: Bridge owning the engine (real or fake).
        cache: Model cache used for startup loading and the model routes.
        model_id: Model acquired and staged into the bridge at startup.
        options: Default transcription options for streams.
        window_samples: Override the session window size.
        max_stream_seconds: Audio a client may send before EOS; the
            connection is closed with an error beyond it.

    Returns:
        Configured FastAPI application.
    """
    defaults = options or TranscriptionOptions()
    session_kwargs = {"window_samples": window_samples} if window_samples else {}
    max_stream_bytes = max_stream_seconds * SAMPLE_RATE * BYTES_PER_SAMPLE

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if model_id is not None:
            if cache is None:
                raise RuntimeError("A model cache is required to load a model at startup")
            data = await cache.load_model(model_id)
            await bridge.load_model(data, model_name=model_id)
        yield
        bridge.dispose()

    app = FastAPI(title="chunkscribe", lifespan=lifespan)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "model": bridge.model_name,
            "sample_rate": SAMPLE_RATE,
            "window_seconds": WINDOW_SECONDS,
            "busy": bridge.is_busy,
        }

    @app.get("/v1/models")
    async def list_models():
        models = await cache.list_available() if cache is not None else all_models()
        return [model.to_dict() for model in models]

    @app.delete("/v1/models/cache")
    async def clear_cache():
        if cache is not None:
            await cache.clear()
        return {"status": "cleared"}

    @app.websocket("/v1/stream")
    async def stream_transcribe(websocket: WebSocket):
        """WebSocket endpoint for transcribing uploaded audio.

        Protocol:
        - Client sends binary float32 audio frames (16kHz mono)
        - Client sends b"EOS" to start transcription of everything sent
        - Server responds with {"type": "segment", "time_start", "time_end", "text"}
        - Server sends {"status": "complete"} when done
        """
        await websocket.accept()
        buffer = StreamBuffer(max_stream_bytes)
        try:
            stream_options = options_from_query(websocket.query_params, defaults)
        except ValueError as e:
            await websocket.send_json({"error": str(e), "kind": type(e).__name__})
            await websocket.close()
            return

        try:
            while True:
                data = await websocket.receive_bytes()

                if data == EOS:
                    session = TranscriptionSession(bridge, **session_kwargs)
                    try:
                        async for segment in session.stream(buffer.flush(), stream_options):
                            await websocket.send_json({"type": "segment", **segment.to_dict()})
                    except ChunkscribeError as e:
                        logger.warning("Transcription failed: %s", e)
                        await websocket.send_json({"error": str(e), "kind": type(e).__name__})
                    await websocket.send_json({"status": "complete"})
                    break

                if not validate_audio_format(data):
                    await websocket.send_json({"error": "Invalid audio format (must be float32)"})
                    continue

                if not buffer.has_room_for(data):
                    logger.warning("Client exceeded the %ds stream limit", max_stream_seconds)
                    await websocket.send_json({"error": f"Audio exceeds the {max_stream_seconds}s stream limit"})
                    await websocket.close(code=1009)
                    return

                buffer.append(data)

        except WebSocketDisconnect:
            logger.debug("Client disconnected with %d buffered bytes", buffer.buffer_bytes)

    return app


def create_app_from_settings(settings: Settings | None = None) -> FastAPI:
    """Build engine, bridge, store and cache from CHUNKSCRIBE_* settings."""
    from chunkscribe.engine.whispercpp import WhisperCppEngine

    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    store = ModelStore(settings.cache_dir / STORE_FILE_NAME)
    cache = ModelCache(
        store,
        cache_enabled=settings.cache_enabled,
        max_cache_size=settings.max_cache_size,
        timeout_s=settings.download_timeout_s,
    )
    bridge = EventBridge(lambda: WhisperCppEngine(settings.engine_dir))
    return create_app(
        bridge,
        cache=cache,
        model_id=settings.model_id,
        max_stream_seconds=settings.max_stream_seconds,
    )
