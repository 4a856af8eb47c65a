"""Model acquisition cache.

Streams model downloads with progress reporting, persists them in the
ModelStore under a logical id or their source URL, and serves repeat
requests from the store. Persistence problems are logged and treated as a
miss; only network failures fail an acquisition.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

import httpx

from chunkscribe.constants import DOWNLOAD_CHUNK_BYTES
from chunkscribe.errors import CacheStoreError, ModelDownloadError
from chunkscribe.models import ModelDescriptor, all_models, get_model
from chunkscribe.store import Keyspace, ModelStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

# Returned by _store_call when the store raised
_FAILED = object()


@dataclass(frozen=True)
class CacheInfo:
    count: int
    total_size: int


class _Progress:
    """Reports integer percentages, each value at most once."""

    def __init__(self, callback: ProgressCallback | None):
        self._callback = callback
        self._last: int | None = None

    def report(self, percent: int) -> None:
        percent = max(0, min(100, percent))
        if self._callback is None or percent == self._last:
            return
        self._last = percent
        self._callback(percent)


class ModelCache:
    """Downloads model weights once and serves them from the store after.

    The two keyspaces are independent: a model fetched by id is not found
    when looked up by its URL, and vice versa.
    """

    def __init__(
        self,
        store: ModelStore | None,
        cache_enabled: bool = True,
        max_cache_size: int | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 60.0,
        chunk_size: int = DOWNLOAD_CHUNK_BYTES,
    ):
        """Initialize the cache.

        Args:
            store: Persistent store, or None to always download.
            cache_enabled: Read and write the store at all.
            max_cache_size: Total bytes kept across both keyspaces; least
                recently used records are evicted beyond it. None is unlimited.
            client: Shared HTTP client. One is created per download otherwise.
            timeout_s: Network timeout for downloads without a shared client.
            chunk_size: Read size while streaming a download.
        """
        self._store = store
        self._enabled = cache_enabled and store is not None
        self._max_cache_size = max_cache_size
        self._client = client
        self._timeout_s = timeout_s
        self._chunk_size = chunk_size

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def load_model(self, model_id: str, on_progress: ProgressCallback | None = None) -> bytes:
        """Acquire a model from the static table, keyed by its id."""
        return await self.acquire(model_id, is_url_key=False, on_progress=on_progress)

    async def load_model_by_url(self, url: str, on_progress: ProgressCallback | None = None) -> bytes:
        """Acquire a model from an arbitrary URL, keyed by that URL."""
        return await self.acquire(url, is_url_key=True, on_progress=on_progress)

    async def acquire(
        self,
        key: str,
        is_url_key: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> bytes:
        """Return model bytes for ``key``, downloading them on a cache miss.

        Args:
            key: A model id from the static table, or a source URL.
            is_url_key: Treat ``key`` as a URL and use the by-url keyspace.
            on_progress: Receives integer percentages 0-100.

        Raises:
            UnknownModelError: ``key`` is not a known model id.
            ModelDownloadError: Transport error or non-success status.
        """
        keyspace = Keyspace.BY_URL if is_url_key else Keyspace.BY_ID
        url = key if is_url_key else get_model(key).source_url
        progress = _Progress(on_progress)

        if self._enabled:
            cached = await self._store_call("read", self._store.get, keyspace, key)
            if cached is not _FAILED and cached is not None and cached.data:
                logger.info("Model %s loaded from cache", key)
                progress.report(100)
                await self._store_call("touch", self._store.touch, keyspace, key)
                return cached.data

        logger.info("Loading model %s from %s", key, url)
        data = await self._download(url, progress)

        if self._enabled:
            saved = await self._store_call("write", self._store.put, keyspace, key, data)
            if saved is not _FAILED:
                logger.info("Model %s saved to cache (%d bytes)", key, len(data))
                await self._evict(keep=(keyspace, key))
        return data

    async def list_available(self) -> list[ModelDescriptor]:
        """All known models, flagged with whether they are cached by id.

        Degrades to the static list with ``cached`` unset if the store
        cannot be read.
        """
        models = all_models()
        if not self._enabled:
            return models
        keys = await self._store_call("read", self._store.get_all_keys, Keyspace.BY_ID)
        if keys is _FAILED:
            return models
        cached = set(keys)
        return [model.with_cached(model.id in cached) for model in models]

    async def is_cached(self, model_id: str) -> bool:
        if not self._enabled:
            return False
        record = await self._store_call("read", self._store.get, Keyspace.BY_ID, model_id)
        return record is not _FAILED and record is not None

    async def cache_info(self) -> CacheInfo:
        """Record count and total bytes across both keyspaces."""
        if not self._enabled:
            return CacheInfo(count=0, total_size=0)
        records = await self._all_records()
        if records is None:
            return CacheInfo(count=0, total_size=0)
        return CacheInfo(count=len(records), total_size=sum(r.size for _, r in records))

    async def clear(self) -> None:
        """Empty both keyspaces. A failure on one is logged, not raised."""
        if self._store is None:
            return
        for keyspace in Keyspace:
            await self._store_call("clear", self._store.clear, keyspace)
        logger.info("Model cache cleared")

    async def _download(self, url: str, progress: _Progress) -> bytes:
        if self._client is not None:
            return await self._stream(self._client, url, progress)
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            return await self._stream(client, url, progress)

    async def _stream(self, client: httpx.AsyncClient, url: str, progress: _Progress) -> bytes:
        chunks: list[bytes] = []
        received = 0
        try:
            async with client.stream("GET", url, follow_redirects=True) as response:
                if not response.is_success:
                    raise ModelDownloadError(
                        f"Failed to load model: {response.status_code} {response.reason_phrase}"
                    )
                total = _content_length(response)
                progress.report(0)
                async for chunk in response.aiter_bytes(self._chunk_size):
                    chunks.append(chunk)
                    received += len(chunk)
                    if total:
                        progress.report(received * 100 // total)
        except httpx.HTTPError as e:
            raise ModelDownloadError(f"Failed to load model from {url}: {e}") from e

        progress.report(100)
        return b"".join(chunks)

    async def _evict(self, keep: tuple[Keyspace, str]) -> None:
        if self._max_cache_size is None:
            return
        records = await self._all_records()
        if records is None:
            return
        total = sum(r.size for _, r in records)
        for keyspace, record in records:
            if total <= self._max_cache_size:
                break
            if (keyspace, record.key) == keep:
                continue
            if await self._store_call("evict", self._store.delete, keyspace, record.key) is not _FAILED:
                total -= record.size
                logger.info("Evicted %s %s (%d bytes)", keyspace.value, record.key, record.size)

    async def _all_records(self):
        """(keyspace, record) pairs without payload, least recently used first."""
        records = []
        for keyspace in Keyspace:
            found = await self._store_call("read", self._store.get_all, keyspace, False)
            if found is _FAILED:
                return None
            records.extend((keyspace, record) for record in found)
        records.sort(key=lambda pair: pair[1].timestamp)
        return records

    async def _store_call(self, action: str, func, *args):
        """Run a blocking store operation; log and return _FAILED on failure."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except CacheStoreError:
            logger.exception("Model cache %s failed", action)
            return _FAILED


def _content_length(response: httpx.Response) -> int | None:
    value = response.headers.get("content-length")
    if value is None:
        return None
    try:
        total = int(value)
    except ValueError:
        return None
    return total if total > 0 else None
