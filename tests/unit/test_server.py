"""Unit tests for the FastAPI server with FakeEngine."""

import httpx
import numpy as np
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from chunkscribe.bridge import EventBridge
from chunkscribe.cache import ModelCache
from chunkscribe.config import TranscriptionOptions
from chunkscribe.constants import MODEL_FILE_NAME, SAMPLE_RATE
from chunkscribe.engine.fake import FakeEngine, FakeResponse
from chunkscribe.models import MODEL_TABLE, get_model
from chunkscribe.server import EOS, StreamBuffer, create_app, options_from_query
from chunkscribe.store import Keyspace, ModelStore

MODEL_BYTES = b"fake ggml weights"


def serve_model(request: httpx.Request) -> httpx.Response:
    if str(request.url) == get_model("tiny.en").source_url:
        return httpx.Response(200, content=MODEL_BYTES)
    return httpx.Response(404)


def make_cache(store: ModelStore | None = None) -> ModelCache:
    client = httpx.AsyncClient(transport=httpx.MockTransport(serve_model))
    return ModelCache(store, client=client)


def receive_until_complete(ws) -> list[dict]:
    messages = []
    while True:
        msg = ws.receive_json()
        messages.append(msg)
        if msg.get("status") == "complete":
            return messages


def audio_bytes(seconds: float) -> bytes:
    return np.zeros(int(SAMPLE_RATE * seconds), dtype=np.float32).tobytes()


class TestStreamBuffer:
    """Tests for StreamBuffer buffer management."""

    def test_initial_state(self):
        """Buffer should start empty."""
        buffer = StreamBuffer()
        assert buffer.buffer_bytes == 0
        assert buffer.buffer_samples == 0

    def test_append_data(self):
        """Appending data should increase buffer size."""
        buffer = StreamBuffer()
        buffer.append(bytes(40))
        assert buffer.buffer_bytes == 40
        assert buffer.buffer_samples == 10

    def test_flush_clears_buffer(self):
        """Flush should return data and clear."""
        buffer = StreamBuffer()
        audio = np.array([0.5, -0.5], dtype=np.float32)

        buffer.append(audio.tobytes())
        result = buffer.flush()

        assert buffer.buffer_bytes == 0
        np.testing.assert_array_equal(np.frombuffer(result, dtype="<f4"), audio)

    def test_room_is_bounded(self):
        buffer = StreamBuffer(max_bytes=8)
        assert buffer.has_room_for(bytes(8))
        buffer.append(bytes(4))
        assert not buffer.has_room_for(bytes(8))
        assert StreamBuffer().has_room_for(bytes(1 << 20))


class TestOptionsFromQuery:
    """Tests for per-connection option overrides."""

    def test_defaults_pass_through(self):
        defaults = TranscriptionOptions(language="de", restart_model_on_error=True)
        assert options_from_query({}, defaults) == defaults

    def test_overrides(self):
        options = options_from_query(
            {"language": "fr", "threads": "2", "translate": "true", "timeout_ms": "500"},
            TranscriptionOptions(),
        )
        assert (options.language, options.threads, options.translate, options.timeout_ms) == ("fr", 2, True, 500)

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            options_from_query({"threads": "0"}, TranscriptionOptions())


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_reports_loaded_model(self):
        """Startup should acquire the model and stage it into the engine."""
        engine = FakeEngine()
        app = create_app(EventBridge(lambda: engine), cache=make_cache(), model_id="tiny.en")

        with TestClient(app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["model"] == "tiny.en"
        assert data["sample_rate"] == 16000
        assert data["busy"] is False
        assert engine.files[MODEL_FILE_NAME] == MODEL_BYTES

    def test_shutdown_disposes_engine(self):
        engine = FakeEngine()
        app = create_app(EventBridge(lambda: engine), cache=make_cache(), model_id="tiny.en")

        with TestClient(app):
            pass

        assert engine.dispose_count == 1

    def test_model_without_cache_fails_startup(self):
        app = create_app(EventBridge(FakeEngine), model_id="tiny.en")
        with pytest.raises(RuntimeError):
            with TestClient(app):
                pass


class TestModelRoutes:
    """Tests for the model listing and cache routes."""

    def test_list_models(self, tmp_path):
        store = ModelStore(tmp_path / "models.sqlite3")
        store.put(Keyspace.BY_ID, "base", b"1")
        app = create_app(EventBridge(FakeEngine), cache=make_cache(store))

        with TestClient(app) as client:
            models = client.get("/v1/models").json()

        assert len(models) == len(MODEL_TABLE)
        flags = {m["id"]: m["cached"] for m in models}
        assert flags["base"] is True
        assert flags["tiny.en"] is False

    def test_clear_cache(self, tmp_path):
        store = ModelStore(tmp_path / "models.sqlite3")
        store.put(Keyspace.BY_ID, "base", b"1")
        app = create_app(EventBridge(FakeEngine), cache=make_cache(store))

        with TestClient(app) as client:
            response = client.delete("/v1/models/cache")

        assert response.json() == {"status": "cleared"}
        assert store.get_all_keys(Keyspace.BY_ID) == []


class TestWebSocketEndpoint:
    """Tests for the WebSocket /v1/stream endpoint."""

    @pytest.fixture
    def engine(self):
        return FakeEngine()

    @pytest.fixture
    def app(self, engine):
        return create_app(
            EventBridge(lambda: engine),
            cache=make_cache(),
            model_id="tiny.en",
            window_samples=SAMPLE_RATE,
        )

    @pytest.mark.timeout(10)
    def test_eos_without_audio(self, app, engine):
        """EOS on an empty buffer completes without calling the engine."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(EOS)
                assert ws.receive_json() == {"status": "complete"}
        assert engine.call_count == 0

    @pytest.mark.timeout(10)
    def test_segments_across_windows(self, app, engine):
        """2.5 seconds in 1 second windows streams three stitched segments."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(audio_bytes(1.5))
                ws.send_bytes(audio_bytes(1.0))
                ws.send_bytes(EOS)
                messages = receive_until_complete(ws)

        segments = [m for m in messages if m.get("type") == "segment"]
        assert [(s["time_start"], s["time_end"]) for s in segments] == [(0, 1000), (1000, 2000), (2000, 2500)]
        assert engine.call_count == 3

    @pytest.mark.timeout(10)
    def test_query_options_reach_engine(self, app, engine):
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream?language=nl&threads=2&translate=1") as ws:
                ws.send_bytes(audio_bytes(0.5))
                ws.send_bytes(EOS)
                receive_until_complete(ws)

        call = engine.calls[0]
        assert (call.language, call.threads, call.translate) == ("nl", 2, True)

    @pytest.mark.timeout(10)
    def test_invalid_query_closes(self, app):
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream?threads=many") as ws:
                msg = ws.receive_json()
        assert msg["kind"] == "ValueError"

    @pytest.mark.timeout(10)
    def test_invalid_audio(self, app):
        """A frame that is not whole float32 samples is rejected, not fatal."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(bytes(101))

                msg = ws.receive_json()
                assert msg == {"error": "Invalid audio format (must be float32)"}

                # Still should be able to send EOS
                ws.send_bytes(EOS)
                assert ws.receive_json()["status"] == "complete"

    @pytest.mark.timeout(10)
    def test_engine_fault_reported(self, app, engine):
        engine.queue(FakeResponse(diagnostic="error: failed to encode"))

        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(audio_bytes(1.0))
                ws.send_bytes(EOS)
                messages = receive_until_complete(ws)

        errors = [m for m in messages if "error" in m]
        assert len(errors) == 1
        assert errors[0]["kind"] == "EngineFaultError"
        assert "failed to encode" in errors[0]["error"]

    @pytest.mark.timeout(10)
    def test_no_model_loaded(self):
        app = create_app(EventBridge(FakeEngine))

        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(audio_bytes(0.5))
                ws.send_bytes(EOS)
                messages = receive_until_complete(ws)

        assert messages[0]["kind"] == "NotInitializedError"

    @pytest.mark.timeout(10)
    def test_stream_limit_closes_connection(self, engine):
        """Audio beyond the per-connection limit is refused before EOS."""
        app = create_app(
            EventBridge(lambda: engine),
            cache=make_cache(),
            model_id="tiny.en",
            max_stream_seconds=1,
        )

        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(audio_bytes(0.75))
                ws.send_bytes(audio_bytes(0.5))
                msg = ws.receive_json()
                with pytest.raises(WebSocketDisconnect) as closed:
                    ws.receive_json()

        assert msg == {"error": "Audio exceeds the 1s stream limit"}
        assert closed.value.code == 1009
        assert engine.call_count == 0
