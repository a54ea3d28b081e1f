from __future__ import annotations

import io
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadledger import audit, events
from leadledger.core.config import get_settings
from leadledger.core.database import Base, get_db
from leadledger.crm.api import get_current_user
from leadledger.crm.import_export import parse_tabular
from leadledger.crm.models import CRMIdentity, CRMLead
from leadledger.crm.repositories import LeadRepository
from leadledger.errors import ParseError
from leadledger.main import app
from leadledger.platform.security.context import ActorUser


CSV_UPLOAD = (
    "Name,Phone,Course,City\n"
    "Ali Raza,0300-1234567,Data Science,Lahore\n"
    "Sara Khan,+92 301 7654321,Web Development,\n"
    ",03009998888,Web Development,Karachi\n"
    "Bad Phone,12345,Web Development,Karachi\n"
    "Ali Again,03001234567,Data Science,Lahore\n"
    "Existing Lead,03111111111,Python,\n"
    ",,,\n"
    "Zainab Noor,03222222222,Python,Multan\n"
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add_all(
        [
            CRMIdentity(id="admin-1", name="Admin One", email="admin@example.com", role="admin"),
            CRMIdentity(id="csr-1", name="Csr One", email="csr1@example.com", role="csr"),
            CRMIdentity(id="csr-2", name="Csr Two", email="csr2@example.com", role="csr"),
            CRMIdentity(id="csr-3", name="Csr Three", email="csr3@example.com", role="csr", status="inactive"),
        ]
    )
    session.add(
        CRMLead(
            name="Stored Lead",
            phone="03111111111",
            course="Python",
            assigned_to="csr-2",
            created_by="csr-2",
        )
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {"admin": ("admin-1", "admin"), "csr1": ("csr-1", "csr")}
    state = {"current": "csr1"}

    def override_get_current_user(request: Request) -> ActorUser:
        user_id, role = actors[state["current"]]
        return ActorUser(user_id=user_id, role=role, correlation_id=getattr(request.state, "correlation_id", None))

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _lead_count(session: Session) -> int:
    return int(session.scalar(select(func.count()).select_from(CRMLead)) or 0)


def _csv_file(text: str = CSV_UPLOAD, name: str = "leads.csv") -> dict[str, tuple[str, bytes, str]]:
    return {"file": (name, text.encode("utf-8"), "text/csv")}


def _xlsx_bytes(rows: list[list[object]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_csv_upload_reports_inserted_duplicates_and_rejections(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/leads/bulk", files=_csv_file(), data={"assigned_to": "csr-2"})
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["dry_run"] is False
    assert body["total_rows"] == 7
    assert body["inserted_count"] == 3
    assert body["accepted_count"] == 3
    assert body["skipped_duplicate_count"] == 2
    assert body["failed_count"] == 2
    assert [item["row_number"] for item in body["rejected_rows"]] == [4, 5]
    assert body["rejected_rows"][0]["reason"] == "name is required"
    assert body["rejected_rows"][1]["row"]["Phone"] == "12345"

    assert _lead_count(db_session) == 4
    uploaded = db_session.scalars(select(CRMLead).where(CRMLead.source == "excel-upload")).all()
    assert sorted(lead.phone for lead in uploaded) == ["+923017654321", "03001234567", "03222222222"]
    # CSR uploads always land on the uploader.
    assert {lead.assigned_to for lead in uploaded} == {"csr-1"}
    assert {lead.status for lead in uploaded} == {"new"}
    sara = next(lead for lead in uploaded if lead.name == "Sara Khan")
    assert sara.city == "Unknown"

    bulk_audits = [entry for entry in audit.audit_entries if entry["action"] == "bulk_create"]
    assert len(bulk_audits) == 1
    assert len(bulk_audits[0]["after"]["lead_ids"]) == 3
    bulk_events = [item for item in events.published_events if item["event_type"] == "crm.leads.bulk_ingested"]
    assert bulk_events[0]["payload"]["inserted_count"] == 3


def test_reupload_is_all_duplicates(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client

    first = test_client.post("/api/crm/leads/bulk", files=_csv_file())
    assert first.json()["inserted_count"] == 3

    second = test_client.post("/api/crm/leads/bulk", files=_csv_file())
    assert second.status_code == 200
    body = second.json()
    assert body["inserted_count"] == 0
    assert body["skipped_duplicate_count"] == 5
    assert _lead_count(db_session) == 4


def test_xlsx_upload_reads_first_sheet_with_header_aliases(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("admin")
    content = _xlsx_bytes(
        [
            ["Full Name", "Mobile", "Program", "Source"],
            ["Usman Ghani", 3004445555, "Data Science", None],
            [None, None, None, None],
            ["Iqra Aziz", "+92-300-666-7777", "Cyber Security", "referral"],
        ]
    )

    response = test_client.post(
        "/api/crm/leads/bulk",
        files={"file": ("leads.xlsx", content, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        data={"assigned_to": "csr-2"},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["total_rows"] == 2
    assert body["inserted_count"] == 2

    leads = {lead.name: lead for lead in db_session.scalars(select(CRMLead).where(CRMLead.assigned_to == "csr-2"))}
    assert leads["Usman Ghani"].phone == "3004445555"
    assert leads["Usman Ghani"].source == "excel-upload"
    assert leads["Iqra Aziz"].phone == "+923006667777"
    assert leads["Iqra Aziz"].source == "referral"
    assert leads["Iqra Aziz"].created_by == "admin-1"


@pytest.mark.parametrize(
    ("assigned_to", "message_fragment"),
    [(None, "required"), ("ghost", "known identity"), ("csr-3", "inactive")],
)
def test_admin_upload_requires_active_assignee(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    assigned_to: str | None,
    message_fragment: str,
) -> None:
    test_client, set_actor = client
    set_actor("admin")
    data = {"assigned_to": assigned_to} if assigned_to else {}

    response = test_client.post("/api/crm/leads/bulk", files=_csv_file(), data=data)
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"] == {"field": "assigned_to"}
    assert message_fragment in body["message"]
    assert _lead_count(db_session) == 1


def test_validate_endpoint_is_a_dry_run(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/leads/bulk/validate", files=_csv_file())
    assert response.status_code == 200
    body = response.json()
    assert body["dry_run"] is True
    assert body["accepted_count"] == 3
    assert body["inserted_count"] == 0
    assert body["skipped_duplicate_count"] == 2
    assert body["failed_count"] == 2
    assert _lead_count(db_session) == 1
    assert not audit.audit_entries


@pytest.mark.parametrize(
    ("filename", "content", "content_type"),
    [
        ("leads.csv", b"", "text/csv"),
        ("leads.pdf", b"%PDF-1.7 not a table", "application/pdf"),
        ("leads.xlsx", b"definitely not a zip archive", "application/octet-stream"),
        ("leads.csv", "\n\n".encode("utf-8"), "text/csv"),
    ],
)
def test_unreadable_upload_is_a_parse_error(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    filename: str,
    content: bytes,
    content_type: str,
) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/leads/bulk", files={"file": (filename, content, content_type)})
    assert response.status_code == 422
    assert response.json()["code"] == "PARSE_ERROR"
    assert _lead_count(db_session) == 1


def test_upload_over_row_limit_is_rejected(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setattr(get_settings(), "bulk_upload_max_rows", 2)

    response = test_client.post("/api/crm/leads/bulk", files=_csv_file())
    assert response.status_code == 422
    assert response.json()["details"] == {"max_rows": 2}
    assert _lead_count(db_session) == 1


def test_row_storage_failure_does_not_abort_batch(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    original_add = LeadRepository.add

    def flaky_add(self: LeadRepository, session: Session, lead: CRMLead) -> CRMLead:
        if lead.phone == "+923017654321":
            raise IntegrityError("INSERT INTO crm_lead", {}, Exception("constraint failed"))
        return original_add(self, session, lead)

    monkeypatch.setattr(LeadRepository, "add", flaky_add)

    response = test_client.post("/api/crm/leads/bulk", files=_csv_file())
    assert response.status_code == 200
    body = response.json()
    assert body["inserted_count"] == 2
    assert body["failed_count"] == 3
    failed = {item["row_number"]: item["reason"] for item in body["rejected_rows"]}
    assert failed[3] == "row could not be stored"
    assert "constraint" not in response.text
    assert _lead_count(db_session) == 3


def test_parse_tabular_keeps_header_keys_and_drops_blank_rows() -> None:
    rows = parse_tabular("\ufeffName,Phone\n  Ali ,0300 1234567\n,\n".encode("utf-8"), "upload.csv")
    assert rows == [{"Name": "Ali", "Phone": "0300 1234567"}]

    with pytest.raises(ParseError):
        parse_tabular(b"name,phone\n", "leads.docx")
