"""Engine protocol defining the boundary to the native whisper engine.

The engine is a black box with a fire-and-forget transcription call. It
reports results only through two output channels: ``on_result`` receives
cue lines, ``on_diagnostic`` receives log/error lines. The first
diagnostic line after a call starts marks the end of that call.
"""

from collections.abc import Callable
from typing import Protocol

import numpy as np

OutputHandler = Callable[[str], None]


class Engine(Protocol):
    """Protocol for whisper-style inference engines.

    Implementations may emit on their output channels from any thread; the
    bridge marshals emissions back onto the event loop.
    """

    on_result: OutputHandler | None
    on_diagnostic: OutputHandler | None

    def init(self, model_path: str) -> int | None:
        """Load a staged model file and return an instance handle.

        Returns:
            A truthy handle on success, or a falsy value on failure.
        """
        ...

    def full_default(
        self,
        instance: int,
        audio: np.ndarray,
        language: str,
        threads: int,
        translate: bool,
    ) -> None:
        """Run one blocking transcription call.

        Results are not returned: each segment is emitted as a cue line on
        ``on_result`` and completion is signalled on ``on_diagnostic``.
        """
        ...

    def write_file(self, path: str, data: bytes) -> None:
        """Stage a file into the engine's private filesystem."""
        ...

    def unlink_file(self, path: str) -> None:
        """Remove a staged file. Raises FileNotFoundError if absent."""
        ...

    def dispose(self) -> None:
        """Release all model instances held by the engine."""
        ...
