from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable

from storeops_app.imports.parsing import RawRecord, normalize_label

LOGGER = logging.getLogger(__name__)


@dataclass
class HeaderFilterResult:
    records: list[RawRecord] = field(default_factory=list)
    header_row_index: int | None = None
    skipped: int = 0


def _normalized_vocabulary(vocabulary: Iterable[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for item in vocabulary:
        token = normalize_label(item)
        if token and token not in seen:
            seen.append(token)
    return tuple(seen)


def _count_matches(record: RawRecord, tokens: tuple[str, ...]) -> int:
    matches = 0
    for value in record.values():
        if value is None or isinstance(value, (int, float)):
            continue
        cell = normalize_label(value)
        if not cell:
            continue
        if any(token == cell or token in cell for token in tokens):
            matches += 1
    return matches


def count_header_matches(record: RawRecord, vocabulary: Iterable[str]) -> int:
    """Count cells whose normalized text equals or contains a known header label."""
    return _count_matches(record, _normalized_vocabulary(vocabulary))


def find_header_row_index(
    records: list[RawRecord],
    vocabulary: Iterable[str],
    *,
    threshold: int = 4,
) -> int | None:
    tokens = _normalized_vocabulary(vocabulary)
    if not tokens:
        return None
    for index, record in enumerate(records):
        if _count_matches(record, tokens) >= threshold:
            return index
    return None


def filter_header_rows(
    records: list[RawRecord],
    vocabulary: Iterable[str],
    *,
    threshold: int = 4,
) -> HeaderFilterResult:
    """Drop the first row that looks like a header restatement and everything before it.

    Leaves ``records`` untouched when no row reaches ``threshold``.
    """
    index = find_header_row_index(records, vocabulary, threshold=threshold)
    if index is None:
        return HeaderFilterResult(records=list(records), header_row_index=None, skipped=0)
    skipped = index + 1
    LOGGER.info(
        "Dropped repeated header rows. header_row_index=%s skipped=%s",
        index,
        skipped,
        extra={"event": "import_header_rows_dropped", "header_row_index": index},
    )
    return HeaderFilterResult(records=records[skipped:], header_row_index=index, skipped=skipped)
