"""Cancelable watchdog used to bound waits on engine events."""

import asyncio

from chunkscribe.errors import TranscriptionTimeoutError


class TimeoutGuard:
    """A deadline future that fails after a delay unless cleared first.

    The guard never blocks anything itself: callers race its future
    against the thing they are waiting for.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[None] | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False

    def arm(self, delay_ms: int, message: str) -> asyncio.Future[None]:
        """Start a new deadline, clearing any previous one.

        Args:
            delay_ms: Milliseconds before the deadline fails.
            message: Message of the TranscriptionTimeoutError it fails with.

        Returns:
            Future that fails with TranscriptionTimeoutError after
            ``delay_ms``, or resolves to None once cleared.
        """
        self.clear()
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        self._future = future
        self._fired = False

        def fire() -> None:
            self._handle = None
            if not future.done():
                self._fired = True
                future.set_exception(TranscriptionTimeoutError(message))

        self._handle = loop.call_later(delay_ms / 1000, fire)
        return future

    def clear(self) -> None:
        """Disarm the deadline. Idempotent, safe after it fired."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._future is not None and not self._future.done():
            self._future.set_result(None)
        self._future = None

    @property
    def fired(self) -> bool:
        """Whether the most recent deadline expired."""
        return self._fired

    @property
    def armed(self) -> bool:
        return self._handle is not None
