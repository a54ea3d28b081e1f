from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadledger.core.auth import issue_token
from leadledger.core.config import get_settings
from leadledger.core.database import Base, get_db
from leadledger.crm.models import CRMIdentity
from leadledger.main import app


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add(CRMIdentity(id="csr-1", name="Csr One", email="csr1@example.com", role="csr"))
    session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    session.close()
    Base.metadata.drop_all(bind=engine)


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Basic Y3NyOnNlY3JldA=="},
        {"Authorization": "Bearer not-a-jwt"},
    ],
)
def test_missing_or_malformed_token_is_unauthenticated(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get("/api/crm/leads", headers={**headers, "X-Correlation-Id": "corr-auth"})
    assert response.status_code == 401
    assert response.json() == {
        "code": "UNAUTHENTICATED",
        "message": response.json()["message"],
        "details": None,
        "correlation_id": "corr-auth",
    }


def test_token_signed_with_other_secret_is_rejected(client: TestClient) -> None:
    forged = jwt.encode({"sub": "csr-1", "role": "csr"}, "some-other-secret", algorithm="HS256")
    response = client.get("/api/me", headers=_bearer(forged))
    assert response.status_code == 401
    assert response.json()["message"] == "invalid or expired token"


def test_expired_token_is_rejected(client: TestClient) -> None:
    settings = get_settings()
    expired = jwt.encode(
        {"sub": "csr-1", "role": "csr", "exp": datetime.now(timezone.utc) - timedelta(minutes=5)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    assert client.get("/api/me", headers=_bearer(expired)).status_code == 401


def test_token_without_subject_or_known_role_is_rejected(client: TestClient) -> None:
    settings = get_settings()
    no_subject = jwt.encode({"role": "csr"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    assert client.get("/api/me", headers=_bearer(no_subject)).json()["message"] == "token has no subject"

    manager = issue_token("mgr-1", "manager")
    response = client.get("/api/me", headers=_bearer(manager))
    assert response.status_code == 401
    assert response.json()["message"] == "token carries an unknown role"


def test_me_describes_registered_caller(client: TestClient) -> None:
    response = client.get("/api/me", headers=_bearer(issue_token("csr-1", "csr")))
    assert response.status_code == 200
    assert response.json() == {
        "user_id": "csr-1",
        "role": "csr",
        "name": "Csr One",
        "registered": True,
        "status": "active",
    }


def test_me_for_unregistered_caller_uses_token_claims(client: TestClient) -> None:
    response = client.get("/api/me", headers=_bearer(issue_token("admin-9", "ADMIN", name="Ops Admin")))
    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "admin"
    assert body["name"] == "Ops Admin"
    assert body["registered"] is False


def test_authenticated_csr_creates_own_lead(client: TestClient) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"name": "Hamza Ali", "phone": "03001112222", "course": "Python", "assigned_to": "someone-else"},
        headers=_bearer(issue_token("csr-1", "csr")),
    )
    assert response.status_code == 201, response.text
    assert response.json()["assigned_to"] == "csr-1"
    assert response.json()["created_by"] == "csr-1"


def test_health_needs_no_token(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
