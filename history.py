"""Date-range queries and CSV export over the append-only history log."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import store

logger = logging.getLogger(__name__)

HistoryRow = Dict[str, Any]
HistoryReader = Callable[[str, Optional[datetime], Optional[datetime]], List[HistoryRow]]

PREFERRED_ORDER = [
    "snapshot_date",
    "character_name",
    "character_id",
    "action",
    "details",
    "notes",
    "daily_status",
    "wtp",
    "sdn_outskirts",
    "sdn_core",
    "golden_active",
    "golden_started_at",
    "golden_expired_at",
]
PREFERRED_RANK = {name: index for index, name in enumerate(PREFERRED_ORDER)}

EMPTY_CELL = "--"


class HistoryError(Exception):
    pass


class ValidationError(HistoryError):
    pass


class InvalidRange(ValidationError):
    pass


class UpstreamError(HistoryError):
    pass


class ExportError(HistoryError):
    pass


def parse_date_param(value: str | None, boundary: str) -> date | None:
    if value is None or not str(value).strip():
        return None
    text = str(value).strip()
    try:
        if "T" in text or " " in text:
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid {boundary} date. Expected ISO format.") from exc


@dataclass(frozen=True)
class DateRange:
    start: date | None = None
    end: date | None = None

    @classmethod
    def from_params(cls, start: str | None, end: str | None) -> "DateRange":
        return cls(parse_date_param(start, "start"), parse_date_param(end, "end"))

    def validate(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise InvalidRange("Invalid date range: start is after end.")
        return self

    def lower_bound(self) -> datetime | None:
        if self.start is None:
            return None
        return datetime.combine(self.start, time.min)

    def upper_bound(self) -> datetime | None:
        if self.end is None:
            return None
        return datetime.combine(self.end, time.max)


def fetch_range(actor_id: str, date_range: DateRange, reader: HistoryReader | None = None) -> List[HistoryRow]:
    """Rows for ``actor_id`` whose timestamp falls inside ``date_range``, newest first.

    Raises :class:`InvalidRange` before touching the store, and
    :class:`UpstreamError` when the store reports a failure.
    """
    date_range.validate()
    reader = reader or store.fetch_history_rows
    try:
        rows = reader(actor_id, date_range.lower_bound(), date_range.upper_bound())
    except store.StoreError as exc:
        logger.error("history_log fetch failed: %s", exc)
        raise UpstreamError(str(exc) or "Failed to load history log") from exc
    return [dict(row) for row in rows or []]


def order_columns(rows: Iterable[Mapping[str, Any]]) -> List[str]:
    seen = set()
    for row in rows:
        seen.update(row.keys())
    preferred = sorted((name for name in seen if name in PREFERRED_RANK), key=PREFERRED_RANK.__getitem__)
    remaining = sorted(name for name in seen if name not in PREFERRED_RANK)
    return preferred + remaining


def column_label(name: str) -> str:
    return name.replace("_", " ")


def _parse_iso(value: str) -> datetime | None:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def format_cell_value(column: str, value: Any) -> str:
    if value is None:
        return EMPTY_CELL
    if isinstance(value, datetime):
        return value.strftime("%d %b %Y %H:%M")
    if isinstance(value, date):
        return value.strftime("%d %b %Y")
    if isinstance(value, str):
        if column == "snapshot_date":
            parsed = _parse_iso(value)
            if parsed is not None:
                return parsed.strftime("%d %b %Y")
        if column.endswith("_at"):
            parsed = _parse_iso(value)
            if parsed is not None:
                return parsed.strftime("%d %b %Y %H:%M")
    return str(value)


def csv_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def to_csv(rows: Sequence[Mapping[str, Any]]) -> str:
    if not rows:
        return ""
    columns = order_columns(rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(columns)
    for row in rows:
        writer.writerow([csv_text(row.get(column)) for column in columns])
    return buffer.getvalue()


def export_csv(actor_id: str, date_range: DateRange, reader: HistoryReader | None = None) -> str:
    """Re-fetch ``date_range`` from the store and render it as one CSV document.

    Validation problems propagate as :class:`ValidationError`; anything that
    goes wrong while fetching or rendering becomes :class:`ExportError`.
    """
    try:
        rows = fetch_range(actor_id, date_range, reader=reader)
    except UpstreamError as exc:
        raise ExportError(str(exc)) from exc
    try:
        return to_csv(rows)
    except (csv.Error, TypeError, ValueError) as exc:
        logger.error("history_log CSV export failed: %s", exc)
        raise ExportError("Unexpected error generating CSV.") from exc


def export_filename(date_range: DateRange) -> str:
    start = date_range.start.isoformat() if date_range.start else "all"
    end = date_range.end.isoformat() if date_range.end else "all"
    return f"history-log-{start}_{end}.csv"
