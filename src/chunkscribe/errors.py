"""Error types raised by the transcription pipeline and the model cache."""


class ChunkscribeError(Exception):
    """Base class for all chunkscribe errors."""


class UnsupportedEnvironmentError(ChunkscribeError):
    """A required platform capability (native engine binding) is missing."""


class NotInitializedError(ChunkscribeError):
    """The engine or its model instance was used before being loaded."""


class ReentrancyError(ChunkscribeError):
    """A second engine call was attempted while one is still outstanding."""


class TranscriptionTimeoutError(ChunkscribeError, TimeoutError):
    """No engine event arrived within the configured wait bound."""


class EngineFaultError(ChunkscribeError):
    """The engine reported a failure instead of a normal completion."""


class CueFormatError(ChunkscribeError, ValueError):
    """An engine result line does not follow the cue line format."""


class ModelDownloadError(ChunkscribeError):
    """A model could not be fetched over the network."""


class CacheStoreError(ChunkscribeError):
    """The persistent model store is unavailable or an operation failed.

    Never escapes ModelCache: it is logged and treated as a miss or no-op.
    """


class UnknownModelError(ChunkscribeError, KeyError):
    """The requested model id is not in the static model table."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown model"
