from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadledger.core.database import Base, get_db
from leadledger.crm.api import get_current_user
from leadledger.logging import JsonLogFormatter
from leadledger.main import app
from leadledger.platform.security.context import ActorUser


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="csr-1",
            role="csr",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "leadledger.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_conversion_logs_carry_lead_and_sale(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead = client.post(
        "/api/crm/leads",
        json={"name": "Logged Lead", "phone": "03007778888", "course": "Python"},
        headers={"X-Correlation-Id": "log-corr-1"},
    )
    assert lead.status_code == 201
    sale = client.post(
        f"/api/crm/leads/{lead.json()['id']}/convert",
        json={"amount": 900},
        headers={"X-Correlation-Id": "log-corr-2"},
    )
    assert sale.status_code == 201

    converted = [
        record
        for record in caplog.records
        if record.name == "leadledger.crm" and record.getMessage() == "lead.converted"
    ]
    assert len(converted) == 1
    record = converted[0]
    assert getattr(record, "lead_id", None) == lead.json()["id"]
    assert getattr(record, "sale_id", None) == sale.json()["id"]
    assert getattr(record, "user_id", None) == "csr-1"
    assert getattr(record, "correlation_id", None) == "log-corr-2"


def test_rejected_conversion_is_logged_with_error_code(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead = client.post("/api/crm/leads", json={"name": "Twice", "phone": "03005550000", "course": "Python"})
    client.post(f"/api/crm/leads/{lead.json()['id']}/convert", json={"amount": 100})
    second = client.post(f"/api/crm/leads/{lead.json()['id']}/convert", json={"amount": 100})
    assert second.status_code == 409

    rejected = [record for record in caplog.records if record.getMessage() == "lead.conversion_rejected"]
    assert rejected
    assert getattr(rejected[-1], "error", None) == "CONFLICT"


def test_json_formatter_emits_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "leadledger.crm",
            "levelname": "INFO",
            "msg": "lead.created",
            "lead_id": "lead-1",
            "user_id": "csr-1",
            "password": "hunter2",
            "correlation_id": "fmt-1",
        }
    )
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["logger"] == "leadledger.crm"
    assert payload["msg"] == "lead.created"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"lead_id": "lead-1", "user_id": "csr-1"}
