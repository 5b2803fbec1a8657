from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Protocol

LOGGER = logging.getLogger(__name__)
DEFAULT_CHUNK_SIZE = 64 * 1024


class FileStreamProvider(Protocol):
    def open_stream(self) -> AsyncIterator[bytes]:
        ...


class BytesStreamProvider:
    def __init__(self, data: bytes, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._data = bytes(data or b"")
        self._chunk_size = max(1, int(chunk_size))

    async def open_stream(self) -> AsyncIterator[bytes]:
        for offset in range(0, len(self._data), self._chunk_size):
            yield self._data[offset : offset + self._chunk_size]


class LocalFileStreamProvider:
    """Streams a file from disk, optionally removing it once fully read.

    Uploads are spooled to disk before the request returns, so the pipeline
    can keep reading after the request's own upload object is closed.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        delete_after_read: bool = False,
    ) -> None:
        self.path = Path(path)
        self._chunk_size = max(1, int(chunk_size))
        self._delete_after_read = bool(delete_after_read)

    async def open_stream(self) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(self.path.open, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()
            if self._delete_after_read:
                self.discard()

    def discard(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("Failed to remove spooled upload file. path=%s", self.path, exc_info=True)

