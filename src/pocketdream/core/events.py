"""Best-effort, in-order event delivery to a single listener.

Each generation gets its own :class:`EventChannel`.  Events are queued and
handed to the listener on a daemon thread, so a slow listener never stalls
the denoising loop.  When the queue is full new events are dropped.
:meth:`EventChannel.close` waits a bounded time for accepted events to be
delivered, so a caller that waits for ``generate`` to finish has seen every
event that was not dropped.  A listener that never returns costs at most
that timeout.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

from pocketdream.core.types import GenerationEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[GenerationEvent], None]

_CLOSE = object()


class EventChannel:
    """Publish/subscribe channel with at most one subscriber.

    Args:
        listener: Callable receiving every delivered event.  ``None`` makes
            the channel a no-op.
        maxsize: Maximum number of undelivered events.
    """

    def __init__(self, listener: EventListener | None = None, maxsize: int = 256) -> None:
        self._listener = listener
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._dropped = 0
        self._thread: threading.Thread | None = None

        if listener is not None:
            self._thread = threading.Thread(
                target=self._deliver, name="pocketdream-events", daemon=True
            )
            self._thread.start()

    @property
    def dropped(self) -> int:
        """Number of events discarded because the queue was full."""
        return self._dropped

    def publish(self, event: GenerationEvent) -> None:
        """Queue *event* for delivery without blocking."""
        if self._listener is None or self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped += 1
            logger.debug("Event queue full, dropping %s", type(event).__name__)

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop accepting events and wait for queued ones to be delivered."""
        if self._closed:
            return
        self._closed = True
        if self._thread is None:
            return
        # A full queue behind a stuck listener loses its oldest event to the sentinel.
        while True:
            try:
                self._queue.put_nowait(_CLOSE)
                break
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self._dropped += 1
                except queue.Empty:
                    pass
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Event listener did not drain within %.1fs", timeout)

    def _deliver(self) -> None:
        while True:
            event = self._queue.get()
            if event is _CLOSE:
                return
            try:
                self._listener(event)
            except Exception:
                logger.exception("Event listener raised while handling %s", type(event).__name__)
