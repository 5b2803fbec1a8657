from __future__ import annotations

import asyncio
import codecs
from collections import deque
from contextlib import aclosing
import csv
import io
import logging
import math
from pathlib import Path
import re
from typing import Any, AsyncIterator, Callable

import pandas as pd

from storeops_app.imports.config import SPREADSHEET_EXTENSIONS
from storeops_app.imports.errors import ImportParseError
from storeops_app.imports.sources import FileStreamProvider

LOGGER = logging.getLogger(__name__)

RawRecord = dict[str, Any]
ParseProgressCallback = Callable[[int], None]

_LABEL_STRIP_PATTERN = re.compile(r"[\s_\-]+")
_LINE_BREAK_PATTERN = re.compile(r"\r\n|\r|\n")
_UNNAMED_COLUMN_PATTERN = re.compile(r"^Unnamed: \d+$")
_SPREADSHEET_ENGINES = {"xlsx": "openpyxl", "xls": "xlrd"}


def normalize_label(value: Any) -> str:
    """Lowercase and drop whitespace, underscores and hyphens."""
    return _LABEL_STRIP_PATTERN.sub("", str(value if value is not None else "").strip().lower())


def detect_upload_format(file_name: str) -> str:
    ext = Path(str(file_name or "")).suffix.lower()
    return SPREADSHEET_EXTENSIONS.get(ext, "csv")


def _dedupe_headers(raw_headers: list[Any]) -> list[str]:
    headers: list[str] = []
    for index, raw in enumerate(raw_headers, start=1):
        name = str(raw if raw is not None else "").strip()
        if not name or _UNNAMED_COLUMN_PATTERN.match(name):
            name = f"column_{index}"
        base = name
        suffix = 2
        while name in headers:
            name = f"{base}_{suffix}"
            suffix += 1
        headers.append(name)
    return headers


class _StreamDecoder:
    """Incremental UTF-8 (BOM aware) decoder that falls back to latin-1."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="strict")
        self._fallback = False

    def decode(self, chunk: bytes, *, final: bool = False) -> str:
        if self._fallback:
            return chunk.decode("latin-1")
        try:
            return self._decoder.decode(chunk, final)
        except UnicodeDecodeError:
            pending, _ = self._decoder.getstate()
            self._fallback = True
            LOGGER.warning(
                "Upload is not valid UTF-8; decoding the remainder as latin-1.",
                extra={"event": "import_decode_fallback"},
            )
            return (pending + chunk).decode("latin-1")


class _CsvRecordFeed:
    """Line source for ``csv.reader`` that only releases complete records.

    Physical lines are held back until their quote count is balanced, so a
    quoted field spanning several lines is never split across chunk reads.
    """

    def __init__(self) -> None:
        self._ready: deque[str] = deque()
        self._buffer = ""
        self._pending = ""
        self._pending_quotes = 0
        self.physical_line = 0

    def __iter__(self) -> "_CsvRecordFeed":
        return self

    def __next__(self) -> str:
        if not self._ready:
            raise StopIteration
        return self._ready.popleft()

    @property
    def has_records(self) -> bool:
        return bool(self._ready)

    def _push_line(self, line: str) -> None:
        self.physical_line += 1
        self._pending += line
        self._pending_quotes += line.count('"')
        if self._pending_quotes % 2 == 0:
            self._ready.append(self._pending)
            self._pending = ""
            self._pending_quotes = 0

    def feed(self, text: str) -> None:
        self._buffer += text
        position = 0
        for match in _LINE_BREAK_PATTERN.finditer(self._buffer):
            if match.end() == len(self._buffer) and match.group() == "\r":
                # A trailing CR may be the first half of a CRLF split across chunks.
                break
            self._push_line(self._buffer[position : match.start()] + "\n")
            position = match.end()
        self._buffer = self._buffer[position:]

    def finish(self) -> None:
        if self._buffer:
            tail = self._buffer.rstrip("\r")
            self._buffer = ""
            if tail:
                self._push_line(tail + "\n")
        if self._pending:
            raise ImportParseError(
                f"CSV parsing error: unterminated quoted field starting near line {self.physical_line}."
            )


class _CsvRowBuilder:
    def __init__(
        self,
        *,
        on_progress: ParseProgressCallback | None,
        progress_interval: int,
    ) -> None:
        self.headers: list[str] | None = None
        self.records: list[RawRecord] = []
        self._on_progress = on_progress
        self._progress_interval = max(1, int(progress_interval))

    def add(self, cells: list[str]) -> None:
        values = [str(cell or "").strip() for cell in cells]
        if not any(values):
            return
        if self.headers is None:
            self.headers = _dedupe_headers(values)
            return
        record: RawRecord = {}
        for index, header in enumerate(self.headers):
            if index >= len(values):
                break
            record[header] = values[index]
        self.records.append(record)
        if self._on_progress is not None and len(self.records) % self._progress_interval == 0:
            self._on_progress(len(self.records))


def _drain_reader(reader: Any, feed: _CsvRecordFeed, builder: _CsvRowBuilder) -> None:
    while feed.has_records:
        try:
            cells = next(reader)
        except StopIteration:
            return
        except csv.Error as exc:
            raise ImportParseError(f"CSV parsing error near line {feed.physical_line}: {exc}") from exc
        builder.add(cells)


async def parse_csv_stream(
    stream: AsyncIterator[bytes],
    *,
    on_progress: ParseProgressCallback | None = None,
    progress_interval: int = 1000,
) -> list[RawRecord]:
    """Parse a CSV byte stream into records keyed by the header row.

    Whitespace is trimmed, blank lines are skipped, short rows keep only the
    cells they have and extra cells are dropped. Malformed quoting raises
    ``ImportParseError``.
    """
    decoder = _StreamDecoder()
    feed = _CsvRecordFeed()
    reader = csv.reader(feed, strict=True, skipinitialspace=True)
    builder = _CsvRowBuilder(on_progress=on_progress, progress_interval=progress_interval)

    async for chunk in stream:
        if not chunk:
            continue
        feed.feed(decoder.decode(chunk))
        _drain_reader(reader, feed, builder)
    feed.feed(decoder.decode(b"", final=True))
    feed.finish()
    _drain_reader(reader, feed, builder)

    LOGGER.info(
        "CSV parsed. rows=%s columns=%s",
        len(builder.records),
        len(builder.headers or []),
        extra={"event": "import_csv_parsed", "rows": len(builder.records)},
    )
    return builder.records


async def read_stream_bytes(stream: AsyncIterator[bytes]) -> bytes:
    buffer = io.BytesIO()
    async for chunk in stream:
        if chunk:
            buffer.write(chunk)
    return buffer.getvalue()


def _spreadsheet_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar
        return value.item()
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned if cleaned else None
    return value


def parse_spreadsheet_bytes(
    raw_bytes: bytes,
    *,
    file_format: str = "xlsx",
    on_progress: ParseProgressCallback | None = None,
    progress_interval: int = 1000,
) -> list[RawRecord]:
    """Read the first worksheet of an Excel workbook into records.

    Other worksheets are ignored. Blank cells are omitted from each record and
    fully blank rows are dropped.
    """
    if not raw_bytes:
        raise ImportParseError("Excel parsing error: the uploaded workbook is empty.")
    engine = _SPREADSHEET_ENGINES.get(file_format, "openpyxl")
    try:
        frame = pd.read_excel(
            io.BytesIO(raw_bytes),
            sheet_name=0,
            header=0,
            dtype=object,
            engine=engine,
        )
    except Exception as exc:
        raise ImportParseError(f"Excel parsing error: {exc}") from exc

    headers = _dedupe_headers(list(frame.columns))
    interval = max(1, int(progress_interval))
    records: list[RawRecord] = []
    for values in frame.itertuples(index=False, name=None):
        record: RawRecord = {}
        for header, raw_value in zip(headers, values):
            value = _spreadsheet_cell(raw_value)
            if value is not None:
                record[header] = value
        if not record:
            continue
        records.append(record)
        if on_progress is not None and len(records) % interval == 0:
            on_progress(len(records))

    LOGGER.info(
        "Spreadsheet parsed. rows=%s columns=%s",
        len(records),
        len(headers),
        extra={"event": "import_spreadsheet_parsed", "rows": len(records)},
    )
    return records


async def parse_upload(
    provider: FileStreamProvider,
    file_name: str,
    *,
    on_progress: ParseProgressCallback | None = None,
    progress_interval: int = 1000,
) -> list[RawRecord]:
    file_format = detect_upload_format(file_name)
    async with aclosing(provider.open_stream()) as stream:
        if file_format == "csv":
            return await parse_csv_stream(
                stream,
                on_progress=on_progress,
                progress_interval=progress_interval,
            )
        raw_bytes = await read_stream_bytes(stream)

    thread_progress: ParseProgressCallback | None = None
    if on_progress is not None:
        loop = asyncio.get_running_loop()

        def _report_from_worker(count: int) -> None:
            loop.call_soon_threadsafe(on_progress, count)

        thread_progress = _report_from_worker

    records = await asyncio.to_thread(
        parse_spreadsheet_bytes,
        raw_bytes,
        file_format=file_format,
        on_progress=thread_progress,
        progress_interval=progress_interval,
    )
    # The worker reports every full interval; the final count is reported here.
    if on_progress is not None and len(records) % max(1, int(progress_interval)):
        on_progress(len(records))
    return records
