"""Command-line interface for chunkscribe.

Usage:
    chunkscribe models
    chunkscribe clear-cache
    chunkscribe transcribe recording.wav --model base.en
    chunkscribe stream recording.wav --url ws://localhost:8000/v1/stream

Audio must be a 16kHz mono PCM16 WAV file. Settings (cache directory,
engine directory, cache size) come from CHUNKSCRIBE_* environment
variables.
"""

import argparse
import asyncio
import json
import sys
import wave
from pathlib import Path

import numpy as np
import websockets

from chunkscribe.audio import pcm16_to_float32
from chunkscribe.bridge import EventBridge
from chunkscribe.cache import ModelCache
from chunkscribe.config import Settings, TranscriptionOptions
from chunkscribe.constants import SAMPLE_RATE, STORE_FILE_NAME
from chunkscribe.cues import format_cue_line
from chunkscribe.errors import ChunkscribeError
from chunkscribe.logging_setup import configure_logging
from chunkscribe.session import TranscriptionSession
from chunkscribe.store import ModelStore

FRAME_SAMPLES = SAMPLE_RATE  # 1s of audio per WebSocket frame


def read_wav(path: Path) -> np.ndarray:
    """Read a 16kHz mono PCM16 WAV file as float32 samples."""
    with wave.open(str(path), "rb") as wf:
        if wf.getnchannels() != 1 or wf.getsampwidth() != 2 or wf.getframerate() != SAMPLE_RATE:
            raise ValueError(
                f"{path}: expected 16kHz mono PCM16, got {wf.getframerate()}Hz "
                f"{wf.getnchannels()}ch {wf.getsampwidth() * 8}-bit"
            )
        return pcm16_to_float32(wf.readframes(wf.getnframes()))


def build_cache(settings: Settings) -> ModelCache:
    store = ModelStore(settings.cache_dir / STORE_FILE_NAME)
    return ModelCache(
        store,
        cache_enabled=settings.cache_enabled,
        max_cache_size=settings.max_cache_size,
        timeout_s=settings.download_timeout_s,
    )


def print_progress(percent: int) -> None:
    print(f"\rDownloading model: {percent:3d}%", end="", file=sys.stderr, flush=True)
    if percent == 100:
        print(file=sys.stderr)


def options_from_args(args: argparse.Namespace) -> TranscriptionOptions:
    return TranscriptionOptions(
        language=args.language,
        threads=args.threads,
        translate=args.translate,
        sleep_ms_between_chunks=args.sleep_ms,
        restart_model_on_error=args.restart_on_error,
        timeout_ms=args.timeout_ms,
    )


async def cmd_models(cache: ModelCache) -> int:
    for model in await cache.list_available():
        flag = "cached" if model.cached else ""
        print(f"{model.id:<16} {model.display_name:<28} {model.size_mb:>5} MB  {flag}")
    info = await cache.cache_info()
    print(f"\n{info.count} cached record(s), {info.total_size / 1e6:.1f} MB")
    return 0


async def cmd_clear_cache(cache: ModelCache) -> int:
    await cache.clear()
    print("Model cache cleared")
    return 0


async def cmd_transcribe(args: argparse.Namespace, settings: Settings, cache: ModelCache) -> int:
    from chunkscribe.engine.whispercpp import WhisperCppEngine

    samples = read_wav(args.audio)
    data = await cache.load_model(args.model, on_progress=print_progress)

    bridge = EventBridge(lambda: WhisperCppEngine(settings.engine_dir))
    await bridge.load_model(data, model_name=args.model)
    try:
        session = TranscriptionSession(bridge)
        async for segment in session.stream(samples, options_from_args(args)):
            print(format_cue_line(segment.time_start, segment.time_end, segment.text), flush=True)
    finally:
        bridge.dispose()
    return 0


async def cmd_stream(args: argparse.Namespace) -> int:
    samples = read_wav(args.audio)
    params = f"language={args.language}&threads={args.threads}&timeout_ms={args.timeout_ms}"
    if args.translate:
        params += "&translate=true"
    url = f"{args.url}{'&' if '?' in args.url else '?'}{params}"

    status = 0
    async with websockets.connect(url, max_size=None) as ws:
        for i in range(0, len(samples), FRAME_SAMPLES):
            await ws.send(samples[i : i + FRAME_SAMPLES].astype("<f4").tobytes())
        await ws.send(b"EOS")

        async for message in ws:
            data = json.loads(message)
            if data.get("type") == "segment":
                print(format_cue_line(data["time_start"], data["time_end"], data["text"]), flush=True)
            elif "error" in data:
                print(f"Error: {data['error']}", file=sys.stderr)
                status = 1
            elif data.get("status") == "complete":
                break
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chunkscribe",
        description="Chunked whisper.cpp transcription with a cached model downloader",
    )
    parser.add_argument("--log-level", default=None, help="Override CHUNKSCRIBE_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("models", help="List known models and whether they are cached")
    sub.add_parser("clear-cache", help="Delete every cached model")

    def add_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("audio", type=Path, help="16kHz mono PCM16 WAV file")
        p.add_argument("--language", default="auto", help="Spoken language (default: auto)")
        p.add_argument("--threads", type=int, default=4, help="Engine threads (default: 4)")
        p.add_argument("--translate", action="store_true", help="Translate to English")
        p.add_argument("--timeout-ms", type=int, default=30000, help="Max wait per engine event")

    transcribe = sub.add_parser("transcribe", help="Transcribe a WAV file locally")
    add_options(transcribe)
    transcribe.add_argument("--model", default="base.en", help="Model id (see `models`)")
    transcribe.add_argument("--sleep-ms", type=int, default=None, help="Pause between windows")
    transcribe.add_argument(
        "--restart-on-error",
        action="store_true",
        help="Restart the engine and retry a window that times out or faults",
    )

    stream = sub.add_parser("stream", help="Send a WAV file to a running server")
    add_options(stream)
    stream.add_argument("--url", default="ws://localhost:8000/v1/stream", help="Server WebSocket URL")

    return parser


async def main(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "stream":
        return await cmd_stream(args)

    cache = build_cache(settings)
    if args.command == "models":
        return await cmd_models(cache)
    if args.command == "clear-cache":
        return await cmd_clear_cache(cache)
    return await cmd_transcribe(args, settings, cache)


def run(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(args.log_level or settings.log_level)
    try:
        return asyncio.run(main(args, settings))
    except (ChunkscribeError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nStopped", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(run())
