from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator

from storeops_app.core.defaults import DEFAULT_PROGRESS_QUEUE_SIZE

LOGGER = logging.getLogger(__name__)
TERMINAL_STATUS_VALUES = {"completed", "failed"}


def is_terminal_snapshot(snapshot: dict[str, Any]) -> bool:
    return str(snapshot.get("status") or "") in TERMINAL_STATUS_VALUES


class ProgressSubscription:
    """Bounded queue of job snapshots for one consumer.

    When the queue is full the oldest snapshot is dropped. Snapshots are full
    job states, so a consumer that falls behind only loses intermediate counts.
    """

    def __init__(self, channel: "ProgressChannel", job_id: str, *, maxsize: int) -> None:
        self.job_id = job_id
        self._channel = channel
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, snapshot: dict[str, Any]) -> None:
        if self._closed:
            return
        while True:
            try:
                self._queue.put_nowait(snapshot)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def next(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Return the next snapshot, or ``None`` when ``timeout`` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel.unsubscribe(self)

    def __enter__(self) -> "ProgressSubscription":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        try:
            while True:
                snapshot = await self.next()
                yield snapshot
                if is_terminal_snapshot(snapshot):
                    return
        finally:
            self.close()


class ProgressChannel:
    """Fan-out of job snapshots from the pipeline to transport adapters."""

    def __init__(self, *, queue_size: int = DEFAULT_PROGRESS_QUEUE_SIZE) -> None:
        self._queue_size = max(1, int(queue_size))
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[ProgressSubscription]] = {}

    def subscribe(self, job_id: str) -> ProgressSubscription:
        subscription = ProgressSubscription(self, str(job_id), maxsize=self._queue_size)
        with self._lock:
            self._subscribers.setdefault(subscription.job_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            listeners = self._subscribers.get(subscription.job_id)
            if not listeners:
                return
            if subscription in listeners:
                listeners.remove(subscription)
            if not listeners:
                self._subscribers.pop(subscription.job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(str(job_id), []))

    def publish(self, snapshot: dict[str, Any]) -> int:
        job_id = str(snapshot.get("job_id") or "")
        with self._lock:
            listeners = list(self._subscribers.get(job_id, []))
        for subscription in listeners:
            subscription.offer(snapshot)
        LOGGER.debug(
            "Published import progress. job_id=%s phase=%s listeners=%s",
            job_id,
            snapshot.get("phase"),
            len(listeners),
            extra={"event": "import_progress_published", "job_id": job_id},
        )
        return len(listeners)
