from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, time
import logging
import math
import re
from typing import Any, Callable, Iterable

from storeops_app.imports.config import (
    FIELD_KIND_PRICE,
    FIELD_KIND_QUANTITY,
    ImportField,
    ImportTarget,
)
from storeops_app.imports.parsing import RawRecord, normalize_label

LOGGER = logging.getLogger(__name__)

NormalizedRecord = dict[str, Any]
NormalizeProgressCallback = Callable[[int, int], None]
ColumnPlan = dict[str, str | None]

_CURRENCY_PATTERN = re.compile(r"(?:rp|idr|usd|sgd|eur)\.?|[$€£¥]", re.IGNORECASE)
_PRICE_DIGITS_PATTERN = re.compile(r"[0-9.,]*[0-9][0-9.,]*")

# Canonical field lookups are done against the same normalized form as headers.
normalize_header_key = normalize_label


@dataclass
class NormalizationResult:
    records: list[NormalizedRecord] = field(default_factory=list)
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def cell_text(value: Any) -> str:
    """Render a parsed cell as trimmed text; blanks become ``""``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def parse_price(value: Any) -> float | None:
    """Parse a price tolerant of currency markers and locale punctuation.

    ``"Rp 15.000,00"``, ``"15,000"`` and ``15000`` all give ``15000.0``.
    Blank or non-numeric input gives ``None``, never zero.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)

    text = re.sub(r"\s+", "", _CURRENCY_PATTERN.sub("", str(value)))
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative, text = True, text[1:-1]
    if text.startswith("-"):
        negative, text = True, text[1:]
    if text.endswith((",-", ".-")):
        text = text[:-2]
    if not _PRICE_DIGITS_PATTERN.fullmatch(text):
        return None
    cleaned = text.strip(".,")

    last_comma = cleaned.rfind(",")
    last_dot = cleaned.rfind(".")
    if last_comma >= 0 and last_dot >= 0:
        decimal_mark = "," if last_comma > last_dot else "."
        thousands_mark = "." if decimal_mark == "," else ","
        cleaned = cleaned.replace(thousands_mark, "").replace(decimal_mark, ".")
    elif last_comma >= 0 or last_dot >= 0:
        mark = "," if last_comma >= 0 else "."
        pieces = cleaned.split(mark)
        if len(pieces) > 2 or len(pieces[-1]) == 3:
            cleaned = "".join(pieces)
        else:
            cleaned = ".".join(pieces)

    try:
        amount = float(cleaned)
    except ValueError:
        return None
    return -amount if negative else amount


def parse_quantity(value: Any, default: int = 1) -> int:
    amount = parse_price(value)
    if amount is None or amount <= 0:
        return default
    return int(amount)


def _first_source_key(
    aliases: Iterable[str],
    normalized_keys: list[tuple[str, str]],
    claimed: set[str],
    *,
    substring: bool,
) -> str | None:
    for alias in aliases:
        token = normalize_header_key(alias)
        if not token:
            continue
        for source_key, normalized in normalized_keys:
            if source_key in claimed:
                continue
            if normalized == token or (substring and token in normalized):
                return source_key
    return None


def resolve_column_plan(source_keys: Iterable[str], target: ImportTarget) -> ColumnPlan:
    """Map each canonical field to the source column that feeds it.

    Exact alias matches are claimed for every field before any substring
    match is tried, and a source column feeds at most one field.
    """
    normalized_keys = [(key, normalize_header_key(key)) for key in source_keys]
    claimed: set[str] = set()
    plan: ColumnPlan = {item.key: None for item in target.fields}
    for substring in (False, True):
        for item in target.fields:
            if plan[item.key] is not None:
                continue
            source_key = _first_source_key(item.aliases, normalized_keys, claimed, substring=substring)
            if source_key is not None:
                plan[item.key] = source_key
                claimed.add(source_key)
    return plan


def resolve_alias_value(record: RawRecord, aliases: Iterable[str]) -> str:
    """Return the trimmed text of the first column matching ``aliases``, or ``""``."""
    alias_list = list(aliases)
    normalized_keys = [(key, normalize_header_key(key)) for key in record]
    for substring in (False, True):
        source_key = _first_source_key(alias_list, normalized_keys, set(), substring=substring)
        if source_key is not None:
            return cell_text(record.get(source_key))
    return ""


def _coerce_field(item: ImportField, raw_value: Any) -> Any:
    if item.kind == FIELD_KIND_PRICE:
        amount = parse_price(raw_value)
        return amount if amount is not None else item.default
    if item.kind == FIELD_KIND_QUANTITY:
        return parse_quantity(raw_value, default=int(item.default if item.default is not None else 1))
    text = cell_text(raw_value)
    return text if text else item.default


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def missing_required_fields(record: NormalizedRecord, target: ImportTarget) -> list[str]:
    missing = [key for key in target.required if _is_blank(record.get(key))]
    if target.required_any and all(_is_blank(record.get(key)) for key in target.required_any):
        missing.append(" or ".join(target.required_any))
    return missing


def _build_record(
    record: RawRecord,
    target: ImportTarget,
    plan: ColumnPlan,
    context: dict[str, str],
) -> NormalizedRecord:
    normalized: NormalizedRecord = dict(context)
    for item in target.fields:
        source_key = plan.get(item.key)
        raw_value = record.get(source_key) if source_key is not None else None
        normalized[item.key] = _coerce_field(item, raw_value)
    return normalized


def _clean_context(target: ImportTarget, context: dict[str, Any] | None) -> dict[str, str]:
    values = context or {}
    return {key: str(values.get(key) or "").strip() for key in target.context_fields}


def normalize_record(
    record: RawRecord,
    target: ImportTarget,
    *,
    context: dict[str, Any] | None = None,
    plan: ColumnPlan | None = None,
) -> NormalizedRecord | None:
    """Normalize one raw row; ``None`` when a required field is blank."""
    column_plan = plan if plan is not None else resolve_column_plan(record.keys(), target)
    normalized = _build_record(record, target, column_plan, _clean_context(target, context))
    if missing_required_fields(normalized, target):
        return None
    return normalized


async def normalize_records(
    records: list[RawRecord],
    target: ImportTarget,
    *,
    context: dict[str, Any] | None = None,
    on_progress: NormalizeProgressCallback | None = None,
    yield_every: int = 1000,
    max_errors: int = 100,
) -> NormalizationResult:
    """Normalize every row, yielding to the event loop every ``yield_every`` rows.

    ``on_progress`` receives the running valid and failed counts at each yield.
    Rows keep their 1-based position among data rows in error messages.
    """
    result = NormalizationResult()
    clean_context = _clean_context(target, context)
    plans: dict[tuple[str, ...], ColumnPlan] = {}
    step = max(1, int(yield_every))
    error_cap = max(0, int(max_errors))

    for index, record in enumerate(records, start=1):
        key_set = tuple(record.keys())
        plan = plans.get(key_set)
        if plan is None:
            plan = resolve_column_plan(key_set, target)
            plans[key_set] = plan

        normalized = _build_record(record, target, plan, clean_context)
        missing = missing_required_fields(normalized, target)
        if missing:
            result.failed += 1
            if len(result.errors) < error_cap:
                result.errors.append(f"Row {index}: missing required field {', '.join(missing)}.")
        else:
            result.records.append(normalized)

        if index % step == 0:
            if on_progress is not None:
                on_progress(len(result.records), result.failed)
            await asyncio.sleep(0)

    if result.failed > len(result.errors):
        result.errors.append(
            f"{result.failed - len(result.errors)} more rows failed validation; showing the first {len(result.errors)}."
        )
    if result.failed:
        LOGGER.info(
            "Rejected import rows. target=%s failed=%s",
            target.key,
            result.failed,
            extra={"event": "import_rows_rejected", "target": target.key, "failed": result.failed},
        )
    return result
