import logging
from datetime import date, datetime, timedelta, timezone

from fastapi import Depends, FastAPI, File, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, engine
from app.visit_import import LookupLoadError, ParseError, WriteError, import_visits_csv

app = FastAPI(title="Sales Visits")
logger = logging.getLogger(__name__)

VISIT_LIST_DEFAULT_LIMIT = 20
VISIT_LIST_MAX_LIMIT = 100
VISIT_UNDO_WINDOW = timedelta(minutes=5)


class VisitCreate(BaseModel):
    rep_id: int
    store_id: int | None = None
    note: str | None = None


@app.on_event("startup")
def ensure_visit_import_schema():
    with engine.begin() as conn:
        conn.execute(text("ALTER TABLE users ADD COLUMN IF NOT EXISTS rep_code VARCHAR(10)"))
        conn.execute(
            text(
                "ALTER TABLE visits ADD COLUMN IF NOT EXISTS visit_type VARCHAR(20) NOT NULL DEFAULT 'visit'"
            )
        )
        conn.execute(
            text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_visits_dedup
                  ON visits (store_id, rep_id, visited_at)
                """
            )
        )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def json_safe(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [json_safe(v) for v in value]
    return value


def as_utc(value) -> datetime | None:
    # SQLite hands timestamps back as text; naive values are UTC.
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def read_upload(upload: UploadFile | None) -> bytes | JSONResponse:
    if upload is None:
        return error_response(400, "No file uploaded")
    limit = settings.import_max_upload_bytes
    payload = await upload.read(limit + 1)
    if len(payload) > limit:
        return error_response(413, "Uploaded file is too large")
    return payload


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.post("/api/visits/import/preview")
async def import_preview(
    csv: UploadFile | None = File(None),
    db: Session = Depends(get_db),
):
    payload = await read_upload(csv)
    if isinstance(payload, JSONResponse):
        return payload

    try:
        summary = import_visits_csv(db, payload, dry_run=True)
    except ParseError as exc:
        return error_response(400, f"Failed to parse CSV: {exc}")
    except LookupLoadError as exc:
        logger.exception("Could not load lookups for visit import preview")
        return error_response(500, f"Failed to load reference data: {exc}")
    finally:
        db.rollback()
    return summary.preview_payload()


@app.post("/api/visits/import/run")
async def import_run(
    csv: UploadFile | None = File(None),
    db: Session = Depends(get_db),
):
    payload = await read_upload(csv)
    if isinstance(payload, JSONResponse):
        return payload

    try:
        summary = import_visits_csv(db, payload, dry_run=False)
    except ParseError as exc:
        db.rollback()
        return error_response(400, f"Failed to parse CSV: {exc}")
    except LookupLoadError as exc:
        db.rollback()
        logger.exception("Could not load lookups for visit import")
        return error_response(500, f"Failed to load reference data: {exc}")
    except WriteError as exc:
        logger.exception("Visit import aborted while writing")
        return error_response(500, f"Import failed: {exc}")
    return summary.run_payload()


@app.get("/api/visits")
def list_visits(
    rep_id: int | None = Query(None),
    limit: int = Query(VISIT_LIST_DEFAULT_LIMIT, ge=1),
    db: Session = Depends(get_db),
):
    params = {"limit": min(limit, VISIT_LIST_MAX_LIMIT)}
    where = ""
    if rep_id is not None:
        where = "WHERE v.rep_id = :rep_id"
        params["rep_id"] = rep_id

    try:
        rows = db.execute(
            text(
                f"""
                SELECT v.id, v.visited_at, v.visit_type, v.note, v.rep_id, v.store_id, v.created_at,
                       s.name AS store_name, s.grade,
                       u.name AS rep_name
                FROM visits v
                JOIN stores s ON s.id = v.store_id
                JOIN users u ON u.id = v.rep_id
                {where}
                ORDER BY v.visited_at DESC
                LIMIT :limit
                """
            ),
            params,
        ).mappings().all()
    except SQLAlchemyError:
        logger.exception("Unexpected database error while listing visits")
        return error_response(500, "Failed to load visits")
    return {"items": [json_safe(dict(r)) for r in rows]}


@app.get("/api/visits/analytics")
def visit_analytics(
    rep_id: int | None = Query(None),
    db: Session = Depends(get_db),
):
    params = {}
    conditions = ["s.active = TRUE"]
    if rep_id is not None:
        conditions.append("s.rep_id = :rep_id")
        params["rep_id"] = rep_id

    try:
        rows = db.execute(
            text(
                f"""
                SELECT s.id, s.name, s.grade, s.state, s.channel_type,
                       u.name AS rep_name,
                       MAX(v.visited_at) AS last_visit_at,
                       COUNT(v.id) AS visit_count
                FROM stores s
                LEFT JOIN users u ON u.id = s.rep_id
                LEFT JOIN visits v ON v.store_id = s.id
                WHERE {" AND ".join(conditions)}
                GROUP BY s.id, s.name, s.grade, s.state, s.channel_type, u.name
                ORDER BY s.name ASC
                """
            ),
            params,
        ).mappings().all()
    except SQLAlchemyError:
        logger.exception("Unexpected database error while loading visit analytics")
        return error_response(500, "Failed to load analytics")

    now = datetime.now(timezone.utc)
    items = []
    for r in rows:
        item = dict(r)
        last_visit = as_utc(item["last_visit_at"])
        item["days_since_visit"] = (now - last_visit).days if last_visit else None
        items.append(json_safe(item))
    return {"items": items}


@app.post("/api/visits")
def log_visit(visit: VisitCreate, db: Session = Depends(get_db)):
    if not visit.store_id:
        return error_response(400, "store_id is required")

    try:
        store = db.execute(
            text("SELECT id, name, rep_id FROM stores WHERE id = :store_id AND active = TRUE"),
            {"store_id": visit.store_id},
        ).mappings().first()
        if store is None:
            return error_response(404, "Store not found")

        row = db.execute(
            text(
                """
                INSERT INTO visits (rep_id, store_id, visited_at, note)
                VALUES (:rep_id, :store_id, NOW(), :note)
                RETURNING id, rep_id, store_id, visited_at, visit_type, note, created_at
                """
            ),
            {
                "rep_id": visit.rep_id,
                "store_id": visit.store_id,
                "note": (visit.note or "").strip() or None,
            },
        ).mappings().one()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Unexpected database error while logging visit")
        return error_response(500, "Failed to log visit")
    return json_safe({**dict(row), "store_name": store["name"]})


@app.delete("/api/visits/{visit_id}")
def undo_visit(
    visit_id: str,
    rep_id: int = Query(...),
    db: Session = Depends(get_db),
):
    cleaned = visit_id.strip()
    if not cleaned.isdigit():
        return error_response(400, "Invalid visit id")

    try:
        visit = db.execute(
            text("SELECT id, rep_id, created_at FROM visits WHERE id = :visit_id"),
            {"visit_id": int(cleaned)},
        ).mappings().first()
        if visit is None:
            return error_response(404, "Visit not found")
        if visit["rep_id"] != rep_id:
            return error_response(403, "You can only undo your own visits")
        if datetime.now(timezone.utc) - as_utc(visit["created_at"]) > VISIT_UNDO_WINDOW:
            return error_response(400, "Undo window has expired (5 minutes)")

        db.execute(text("DELETE FROM visits WHERE id = :visit_id"), {"visit_id": visit["id"]})
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Unexpected database error while undoing visit")
        return error_response(500, "Failed to undo visit")
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.app_host, port=settings.app_port)
