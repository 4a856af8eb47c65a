"""Unit tests for the command-line interface."""

import logging
import wave

import numpy as np
import pytest

from chunkscribe import cli
from chunkscribe.constants import SAMPLE_RATE
from chunkscribe.store import Keyspace, ModelStore


def write_wav(path, samples: np.ndarray, rate: int = SAMPLE_RATE, channels: int = 1) -> None:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes((samples * 32767).astype("<i2").tobytes())


@pytest.fixture(autouse=True)
def reset_logging():
    """run() attaches a handler bound to the captured stderr; drop it after."""
    yield
    logger = logging.getLogger("chunkscribe")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def cache_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("CHUNKSCRIBE_CACHE_DIR", str(tmp_path))
    return tmp_path


class TestParser:
    def test_transcribe_defaults(self):
        args = cli.build_parser().parse_args(["transcribe", "a.wav"])
        options = cli.options_from_args(args)

        assert args.model == "base.en"
        assert options.language == "auto"
        assert options.threads == 4
        assert options.restart_model_on_error is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestReadWav:
    def test_reads_float_samples(self, tmp_path):
        path = tmp_path / "tone.wav"
        write_wav(path, np.array([0.0, 0.5, -0.5], dtype=np.float32))

        samples = cli.read_wav(path)

        assert samples.dtype == np.float32
        np.testing.assert_allclose(samples, [0.0, 0.5, -0.5], atol=1e-4)

    def test_rejects_wrong_rate(self, tmp_path):
        path = tmp_path / "cd.wav"
        write_wav(path, np.zeros(10, dtype=np.float32), rate=44100)

        with pytest.raises(ValueError, match="expected 16kHz mono"):
            cli.read_wav(path)


class TestCommands:
    def test_models_lists_cache_state(self, cache_dir, capsys):
        ModelStore(cache_dir / "models.sqlite3").put(Keyspace.BY_ID, "tiny.en", b"123")

        assert cli.run(["models"]) == 0

        out = capsys.readouterr().out
        tiny = next(line for line in out.splitlines() if line.startswith("tiny.en "))
        assert "cached" in tiny
        assert "1 cached record(s)" in out

    def test_clear_cache(self, cache_dir, capsys):
        store = ModelStore(cache_dir / "models.sqlite3")
        store.put(Keyspace.BY_ID, "tiny.en", b"123")

        assert cli.run(["clear-cache"]) == 0
        assert store.get_all_keys(Keyspace.BY_ID) == []
        assert "cleared" in capsys.readouterr().out

    def test_errors_become_exit_code(self, cache_dir, capsys):
        assert cli.run(["transcribe", str(cache_dir / "missing.wav")]) == 1
        assert "Error:" in capsys.readouterr().err
