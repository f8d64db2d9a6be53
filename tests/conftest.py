from datetime import datetime
from pathlib import Path
import sys

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import main
from app.database import Base
from app import models  # noqa: F401  registers tables on Base.metadata

PIXSELL_HEADER = (
    "PixSell Diary Report\n"
    "Company: Artico\n"
    "Period: 01/03/2024 - 31/03/2024\n"
    "\n"
    "Date,Start,End,Type,Account,Account Name,Contact,Comments\n"
)
PIXSELL_WIDTH = 28


@pytest.fixture()
def engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def register_now(dbapi_conn, _):
        dbapi_conn.create_function("NOW", 0, lambda: datetime.utcnow().isoformat(sep=" "))

    Base.metadata.create_all(engine)
    seed_reference_data(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client_and_engine(engine, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    original_startup = list(main.app.router.on_startup)
    original_shutdown = list(main.app.router.on_shutdown)
    original_lifespan = main.app.router.lifespan_context

    async def _noop_lifespan(_app):
        yield

    main.app.router.on_startup = []
    main.app.router.on_shutdown = []
    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db

    client = TestClient(main.app)
    try:
        yield client, engine
    finally:
        client.close()
        main.app.dependency_overrides.clear()
        main.app.router.on_startup = original_startup
        main.app.router.on_shutdown = original_shutdown
        main.app.router.lifespan_context = original_lifespan


def seed_reference_data(engine):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO users (id, email, name, role, rep_code, active)
                VALUES
                  (10, 'cw@example.com', 'Caroline Williams', 'rep', 'CW', 1),
                  (11, 'em@example.com', 'Elizabeth Marton', 'rep', 'EM', 0),
                  (12, 'boss@example.com', 'Manager', 'manager', NULL, 1),
                  (13, 'ja@example.com', 'Jackie Aldenhoven', 'rep', 'ja', 1)
                """
            )
        )
        conn.execute(
            text(
                """
                INSERT INTO stores (id, zoho_contact_id, name, grade, state, rep_id, active)
                VALUES
                  (1, '1748000000001', 'Gift Shop One', 'A', 'NSW', 10, 1),
                  (2, '1748000000002', 'Pharmacy Two', 'B', 'VIC', 13, 1),
                  (3, '1748000000003', 'Closed Store', 'C', 'QLD', 10, 0)
                """
            )
        )


def pixsell_row(
    date="5/3/2024",
    start="9:30",
    account="1748000000001",
    comments="",
    rep_code="CW",
    category="VISIT",
    width=PIXSELL_WIDTH,
):
    cells = [""] * width
    values = {0: date, 1: start, 4: account, 7: comments, 18: rep_code, 27: category}
    for index, value in values.items():
        if index < width:
            cells[index] = value
    return cells


def pixsell_csv(rows):
    lines = []
    for row in rows:
        cells = []
        for c in row:
            if "," in c or '"' in c:
                c = '"' + c.replace('"', '""') + '"'
            cells.append(c)
        lines.append(",".join(cells))
    return (PIXSELL_HEADER + "\n".join(lines) + "\n").encode("utf-8")


def visit_rows(count, *, start_day=1):
    """Distinct valid rows for store 1 / rep CW, one minute apart."""
    rows = []
    for i in range(count):
        day = start_day + (i // (24 * 60)) % 28
        minute_of_day = i % (24 * 60)
        rows.append(
            pixsell_row(
                date=f"{day}/3/2024",
                start=f"{minute_of_day // 60}:{minute_of_day % 60:02d}",
                comments=f"visit {i}",
            )
        )
    return rows


@pytest.fixture()
def make_csv():
    return pixsell_csv


@pytest.fixture()
def make_row():
    return pixsell_row


@pytest.fixture()
def make_visit_rows():
    return visit_rows
