from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.pixsell import (
    PixSellColumns as Col,
    ParseError,
    VisitImportError,
    cell,
    iter_rows,
    normalize_timestamp,
)

__all__ = [
    "BATCH_SIZE",
    "PREVIEW_LIMIT",
    "ZOHO_ACCOUNT_PREFIX",
    "ImportRecord",
    "ImportSummary",
    "LookupLoadError",
    "LookupSnapshot",
    "ParseError",
    "SkipReason",
    "VisitBatchWriter",
    "VisitImportError",
    "VisitType",
    "WriteError",
    "WriteResult",
    "import_visits_csv",
    "load_lookups",
    "map_row",
]

logger = logging.getLogger(__name__)

ZOHO_ACCOUNT_PREFIX = "1748"
BATCH_SIZE = 500
PREVIEW_LIMIT = 20


class LookupLoadError(VisitImportError):
    pass


class WriteError(VisitImportError):
    pass


class SkipReason(str, Enum):
    NON_ZOHO = "non_zoho"
    NO_STORE_MATCH = "no_store_match"
    NO_REP_CODE = "no_rep_code"
    NO_REP_MATCH = "no_rep_match"
    BAD_DATE = "bad_date"


class VisitType(str, Enum):
    VISIT = "visit"
    PHONE = "phone"


@dataclass(frozen=True)
class ImportRecord:
    store_id: int
    rep_id: int
    visited_at: datetime
    visit_type: VisitType
    note: str | None = None

    @property
    def natural_key(self) -> tuple[int, int, datetime]:
        return (self.store_id, self.rep_id, self.visited_at)


@dataclass(frozen=True)
class LookupSnapshot:
    """Reference data read once at the start of a pass.

    stores maps Zoho contact id -> store id (active stores only).
    reps maps upper-cased rep code -> user id (active users with a rep code).
    """

    stores: Mapping[str, int]
    reps: Mapping[str, int]

    @classmethod
    def build(cls, stores: Mapping[str, int], reps: Mapping[str, int]) -> LookupSnapshot:
        return cls(
            stores=MappingProxyType(dict(stores)),
            reps=MappingProxyType({code.upper(): user_id for code, user_id in reps.items()}),
        )


def load_lookups(db: Session) -> LookupSnapshot:
    try:
        store_rows = db.execute(
            text(
                """
                SELECT id, zoho_contact_id
                FROM stores
                WHERE active = TRUE AND zoho_contact_id IS NOT NULL
                """
            )
        ).all()
        rep_rows = db.execute(
            text(
                """
                SELECT id, rep_code
                FROM users
                WHERE active = TRUE AND rep_code IS NOT NULL
                """
            )
        ).all()
    except SQLAlchemyError as exc:
        raise LookupLoadError(f"could not load stores/reps: {exc}") from exc

    stores = {str(contact_id).strip(): store_id for store_id, contact_id in store_rows}
    reps = {str(code).strip(): user_id for user_id, code in rep_rows}
    return LookupSnapshot.build(stores, reps)


def map_row(row: list[str], lookups: LookupSnapshot) -> ImportRecord | SkipReason:
    """Validate one export row; the first failing check decides the skip reason."""
    account = cell(row, Col.ACCOUNT).strip()
    rep_code = cell(row, Col.REP_CODE).strip().upper()

    # Other account schemes (PP, PAC, ...) are not synced stores.
    if not account.startswith(ZOHO_ACCOUNT_PREFIX):
        return SkipReason.NON_ZOHO

    store_id = lookups.stores.get(account)
    if store_id is None:
        return SkipReason.NO_STORE_MATCH

    if not rep_code:
        return SkipReason.NO_REP_CODE
    rep_id = lookups.reps.get(rep_code)
    if rep_id is None:
        return SkipReason.NO_REP_MATCH

    visited_at = normalize_timestamp(cell(row, Col.DATE), cell(row, Col.START))
    if visited_at is None:
        return SkipReason.BAD_DATE

    category = cell(row, Col.CATEGORY).strip().lower()
    visit_type = VisitType.PHONE if category == "phone" else VisitType.VISIT
    note = cell(row, Col.COMMENTS).strip() or None

    return ImportRecord(
        store_id=store_id,
        rep_id=rep_id,
        visited_at=visited_at,
        visit_type=visit_type,
        note=note,
    )


@dataclass
class ImportSummary:
    dry_run: bool
    total_rows: int = 0
    valid_rows: int = 0
    skipped: dict[SkipReason, int] = field(default_factory=lambda: {r: 0 for r in SkipReason})
    preview: list[dict[str, str]] = field(default_factory=list)
    imported: int = 0
    duplicates: int = 0

    def add_skip(self, reason: SkipReason) -> None:
        self.total_rows += 1
        self.skipped[reason] += 1

    def add_valid(self, row: list[str], record: ImportRecord) -> None:
        self.total_rows += 1
        self.valid_rows += 1
        if self.dry_run and len(self.preview) < PREVIEW_LIMIT:
            self.preview.append(
                {
                    "date": cell(row, Col.DATE),
                    "start": cell(row, Col.START),
                    "account": cell(row, Col.ACCOUNT),
                    "store_name": f"(id {record.store_id})",
                    "rep_code": cell(row, Col.REP_CODE),
                    "category": cell(row, Col.CATEGORY) or "VISIT",
                    "note": cell(row, Col.COMMENTS),
                }
            )

    @property
    def skipped_no_rep(self) -> int:
        return self.skipped[SkipReason.NO_REP_CODE] + self.skipped[SkipReason.NO_REP_MATCH]

    def preview_payload(self) -> dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "validRows": self.valid_rows,
            "nonZoho": self.skipped[SkipReason.NON_ZOHO],
            "noStore": self.skipped[SkipReason.NO_STORE_MATCH],
            "noRep": self.skipped_no_rep,
            "badDate": self.skipped[SkipReason.BAD_DATE],
            "preview": list(self.preview),
        }

    def run_payload(self) -> dict[str, Any]:
        return {
            "ok": True,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "skipped_non_zoho": self.skipped[SkipReason.NON_ZOHO],
            "skipped_no_store": self.skipped[SkipReason.NO_STORE_MATCH],
            "skipped_no_rep": self.skipped_no_rep,
            "skipped_bad_date": self.skipped[SkipReason.BAD_DATE],
        }

    def to_payload(self) -> dict[str, Any]:
        return self.preview_payload() if self.dry_run else self.run_payload()


@dataclass(frozen=True)
class WriteResult:
    imported: int
    duplicates: int
    chunks: int


def chunked(records: Sequence[ImportRecord], size: int) -> Iterator[Sequence[ImportRecord]]:
    for start in range(0, len(records), size):
        yield records[start : start + size]


class VisitBatchWriter:
    """Insert import records in fixed-size chunks, ignoring natural-key conflicts.

    Each chunk is one multi-row INSERT committed on its own. Chunks run in
    order; when one fails the earlier chunks stay committed and WriteError is
    raised. Re-running the same file is safe because conflicting rows are
    counted as duplicates instead of inserted.
    """

    def __init__(self, db: Session, batch_size: int = BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.db = db
        self.batch_size = batch_size

    def _insert_chunk(self, chunk: Sequence[ImportRecord]) -> int:
        values = []
        params: dict[str, Any] = {}
        for i, record in enumerate(chunk):
            values.append(f"(:rep_id_{i}, :store_id_{i}, :visited_at_{i}, :visit_type_{i}, :note_{i})")
            params[f"rep_id_{i}"] = record.rep_id
            params[f"store_id_{i}"] = record.store_id
            params[f"visited_at_{i}"] = record.visited_at.isoformat()
            params[f"visit_type_{i}"] = record.visit_type.value
            params[f"note_{i}"] = record.note

        result = self.db.execute(
            text(
                f"""
                INSERT INTO visits (rep_id, store_id, visited_at, visit_type, note)
                VALUES {", ".join(values)}
                ON CONFLICT (store_id, rep_id, visited_at) DO NOTHING
                """
            ),
            params,
        )
        return max(result.rowcount, 0)

    def write_all(self, records: Sequence[ImportRecord]) -> WriteResult:
        imported = 0
        duplicates = 0
        chunks = 0
        for chunk in chunked(records, self.batch_size):
            chunks += 1
            try:
                written = self._insert_chunk(chunk)
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise WriteError(
                    f"chunk {chunks} failed after {imported} row(s) were committed: {exc}"
                ) from exc
            imported += written
            duplicates += len(chunk) - written
            logger.debug("visit import chunk %d: %d inserted, %d duplicate", chunks, written, len(chunk) - written)
        return WriteResult(imported=imported, duplicates=duplicates, chunks=chunks)


def _validate(rows: Iterable[list[str]], lookups: LookupSnapshot, summary: ImportSummary) -> list[ImportRecord]:
    records: list[ImportRecord] = []
    for row in rows:
        outcome = map_row(row, lookups)
        if isinstance(outcome, SkipReason):
            summary.add_skip(outcome)
            continue
        summary.add_valid(row, outcome)
        records.append(outcome)
    return records


def import_visits_csv(
    db: Session,
    content: bytes,
    *,
    dry_run: bool = False,
    batch_size: int = BATCH_SIZE,
) -> ImportSummary:
    """Run one import pass over a PixSell export.

    Preview (``dry_run=True``) and run passes tokenize, load lookups and
    validate identically; only the run pass writes. Raises ParseError,
    LookupLoadError or WriteError and returns no summary when the pass aborts.
    """
    rows = list(iter_rows(content))
    lookups = load_lookups(db)

    summary = ImportSummary(dry_run=dry_run)
    records = _validate(rows, lookups, summary)

    if dry_run:
        return summary

    result = VisitBatchWriter(db, batch_size=batch_size).write_all(records)
    summary.imported = result.imported
    summary.duplicates = result.duplicates
    logger.info(
        "visit import: imported=%d duplicates=%d skipped_non_zoho=%d skipped_no_store=%d "
        "skipped_no_rep=%d skipped_bad_date=%d",
        summary.imported,
        summary.duplicates,
        summary.skipped[SkipReason.NON_ZOHO],
        summary.skipped[SkipReason.NO_STORE_MATCH],
        summary.skipped_no_rep,
        summary.skipped[SkipReason.BAD_DATE],
    )
    return summary
