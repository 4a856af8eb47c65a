"""Core constants for the chunkscribe transcription pipeline.

whisper.cpp consumes 16kHz mono float32 audio. Long recordings are split
into fixed windows of WINDOW_SECONDS, one engine call per window.
"""

# Audio format requirements
SAMPLE_RATE: int = 16000  # Hz - required by whisper.cpp
BYTES_PER_SAMPLE: int = 4  # float32

# Transcription window: 100s of audio per engine call
WINDOW_SECONDS: int = 100
WINDOW_SAMPLES: int = SAMPLE_RATE * WINDOW_SECONDS

# Calls longer than this are logged as a warning but still dispatched
ADVISORY_CALL_SECONDS: int = 120

# Watchdog for "wait for the next engine event"
DEFAULT_TIMEOUT_MS: int = 30000

# File name the model is staged under in the engine's filesystem
MODEL_FILE_NAME: str = "whisper.bin"

# Model cache persistence
STORE_FILE_NAME: str = "models.sqlite3"
STORE_SCHEMA_VERSION: int = 2
BLOB_DIR_NAME: str = "blobs"  # model payload files, next to the store file
DOWNLOAD_CHUNK_BYTES: int = 1024 * 1024

# Audio a WebSocket client may buffer before EOS (1h is ~230MB of float32)
MAX_STREAM_SECONDS: int = 3600
