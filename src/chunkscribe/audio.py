"""Sample buffer conversion and windowing utilities.

The pipeline works on 16kHz mono float32 numpy arrays. Windows are views
into the caller's buffer, never copies, so long recordings stay cheap.
"""

import numpy as np

from chunkscribe.constants import BYTES_PER_SAMPLE, SAMPLE_RATE, WINDOW_SAMPLES


def as_samples(data: np.ndarray | bytes | bytearray | memoryview) -> np.ndarray:
    """Return a 1-D float32 view of a sample buffer.

    Args:
        data: A float32 numpy array, or raw little-endian float32 bytes.

    Returns:
        Float32 numpy array sharing memory with the input where possible.

    Raises:
        ValueError: If a byte buffer is not a whole number of samples.
    """
    if isinstance(data, np.ndarray):
        if data.dtype != np.float32:
            data = data.astype(np.float32)
        return data.reshape(-1)

    if not validate_audio_format(data):
        raise ValueError(
            f"Byte buffer length {len(data)} is not a multiple of {BYTES_PER_SAMPLE}"
        )
    return np.frombuffer(data, dtype="<f4")


def split_windows(samples: np.ndarray, window_samples: int = WINDOW_SAMPLES) -> list[np.ndarray]:
    """Split a sample buffer into fixed-size windows.

    Args:
        samples: Float32 sample buffer.
        window_samples: Size of each window in samples.

    Returns:
        Views into ``samples``. The last window may be shorter.
    """
    if window_samples <= 0:
        raise ValueError(f"window_samples must be positive, got {window_samples}")
    return [samples[i : i + window_samples] for i in range(0, len(samples), window_samples)]


def samples_to_ms(num_samples: int) -> int:
    """Duration in milliseconds of ``num_samples`` at the fixed sample rate."""
    return num_samples * 1000 // SAMPLE_RATE


def validate_audio_format(data: bytes | bytearray | memoryview) -> bool:
    """Check that a byte buffer holds whole float32 samples."""
    return len(data) % BYTES_PER_SAMPLE == 0


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 array normalized to [-1, 1].

    Args:
        data: Raw PCM16 little-endian audio bytes.

    Returns:
        Float32 numpy array with values in [-1, 1].
    """
    audio = np.frombuffer(data, dtype=np.int16).astype(np.float32)
    audio /= 32768.0
    return audio
