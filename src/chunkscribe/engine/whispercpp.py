"""Native engine backed by whisper.cpp through pywhispercpp.

Requires the ``whisper`` extra. The module itself imports cleanly without
it; constructing WhisperCppEngine raises UnsupportedEnvironmentError.
"""

import logging
from pathlib import Path

import numpy as np

from chunkscribe.cues import format_cue_line
from chunkscribe.engine.protocol import OutputHandler
from chunkscribe.errors import UnsupportedEnvironmentError

logger = logging.getLogger(__name__)

DONE_DIAGNOSTIC = "whisper_full: done"


class WhisperCppEngine:
    """whisper.cpp adapter speaking the Engine protocol.

    Model files are staged into ``root_dir``. Segments are reported as cue
    lines on ``on_result`` while inference runs, and the call ends with one
    line on ``on_diagnostic``: ``whisper_full: done`` or ``error: ...``.
    """

    def __init__(self, root_dir: str | Path):
        try:
            from pywhispercpp.model import Model
        except ImportError as e:
            raise UnsupportedEnvironmentError(
                "pywhispercpp is not installed; install chunkscribe[whisper]"
            ) from e

        self.on_result: OutputHandler | None = None
        self.on_diagnostic: OutputHandler | None = None
        self._model_cls = Model
        self._root = Path(root_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._models: dict[int, object] = {}
        self._next_handle = 1

    def write_file(self, path: str, data: bytes) -> None:
        self._resolve(path).write_bytes(data)

    def unlink_file(self, path: str) -> None:
        self._resolve(path).unlink()

    def init(self, model_path: str) -> int | None:
        target = self._resolve(model_path)
        if not target.is_file():
            logger.error("Model file not staged: %s", target)
            return 0
        model = self._model_cls(
            str(target),
            redirect_whispercpp_logs_to=None,
            print_progress=False,
            print_realtime=False,
        )
        handle = self._next_handle
        self._next_handle += 1
        self._models[handle] = model
        return handle

    def full_default(
        self,
        instance: int,
        audio: np.ndarray,
        language: str,
        threads: int,
        translate: bool,
    ) -> None:
        model = self._models.get(instance)
        if model is None:
            self._diagnostic(f"error: unknown instance {instance}")
            return

        def on_segment(segment) -> None:
            # pywhispercpp timestamps are centiseconds
            line = format_cue_line(segment.t0 * 10, segment.t1 * 10, segment.text.strip())
            if self.on_result is not None:
                self.on_result(line)

        try:
            model.transcribe(
                np.ascontiguousarray(audio, dtype=np.float32),
                language=language,
                n_threads=threads,
                translate=translate,
                new_segment_callback=on_segment,
            )
        except Exception as e:
            self._diagnostic(f"error: {e}")
            return
        self._diagnostic(DONE_DIAGNOSTIC)

    def dispose(self) -> None:
        self._models.clear()

    def _resolve(self, path: str) -> Path:
        return self._root / path.lstrip("/")

    def _diagnostic(self, line: str) -> None:
        if self.on_diagnostic is not None:
            self.on_diagnostic(line)
