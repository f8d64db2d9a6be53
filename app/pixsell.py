"""PixSell diary/calls CSV export: column layout, row tokenizer, timestamps.

The export is a fixed-format report. It starts with five report header lines,
then one visit or call per row. Columns are addressed by position; the
positions below are the contract with the export and are not derived from the
header text.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

HEADER_LINES = 5

# PixSell times are wall-clock Australian Eastern Standard Time. No DST.
PIXSELL_TZ = timezone(timedelta(hours=10), "AEST")


class PixSellColumns:
    DATE = 0
    START = 1
    ACCOUNT = 4  # Zoho contact id for Zoho-sourced accounts
    COMMENTS = 7
    REP_CODE = 18  # e.g. CW, EM, JA
    CATEGORY = 27  # PHONE or VISIT


class VisitImportError(Exception):
    pass


class ParseError(VisitImportError):
    pass


def cell(row: list[str], index: int) -> str:
    if index < len(row):
        return row[index]
    return ""


def is_blank_row(row: list[str]) -> bool:
    return not row or not any(row)


def iter_rows(content: bytes) -> Iterator[list[str]]:
    """Yield trimmed cell lists for every non-blank data row of the export.

    Rows may be shorter than the column layout; use ``cell`` to read them.
    Raises ParseError when the CSV structure itself is broken: bytes that are
    not UTF-8, NUL characters, or an unterminated quoted field.
    """
    try:
        decoded = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(f"file is not valid UTF-8 text (byte {exc.start})") from exc
    if "\x00" in decoded:
        raise ParseError("file contains NUL characters")

    handle = io.StringIO(decoded, newline="")
    for _ in range(HEADER_LINES):
        if not handle.readline():
            return

    reader = csv.reader(handle, strict=True)
    try:
        for raw in reader:
            row = [value.strip() for value in raw]
            if is_blank_row(row):
                continue
            yield row
    except csv.Error as exc:
        raise ParseError(f"line {reader.line_num + HEADER_LINES}: {exc}") from exc


def _to_int(part: str) -> int | None:
    part = part.strip()
    if not part or not part.isascii() or not part.isdigit():
        return None
    return int(part)


def normalize_timestamp(date_str: str | None, time_str: str | None) -> datetime | None:
    """Combine a PixSell date and start time into an aware datetime at UTC+10.

    Dates are ``D/M/YYYY`` (padding optional) or ``YYYY-MM-DD``; times are
    ``H:MM`` with optional seconds, which are dropped. Returns None for
    anything that is not a real calendar instant.
    """
    date_str = (date_str or "").strip()
    time_str = (time_str or "").strip()
    if not date_str or not time_str:
        return None

    if "/" in date_str:
        parts = date_str.split("/")
        if len(parts) != 3:
            return None
        day, month, year = parts
    else:
        parts = date_str.split("-")
        if len(parts) != 3:
            return None
        year, month, day = parts

    time_parts = time_str.split(":")
    if len(time_parts) < 2:
        return None

    values = [_to_int(p) for p in (year, month, day, time_parts[0], time_parts[1])]
    if any(v is None for v in values):
        return None
    y, m, d, hh, mm = values
    try:
        return datetime(y, m, d, hh, mm, tzinfo=PIXSELL_TZ)
    except ValueError:
        return None
