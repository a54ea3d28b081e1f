from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import select

from leadledger import audit
from leadledger.crm.models import CRMLead, CRMSale
from leadledger.crm.repositories import IdentityRepository, LeadRepository, SaleRepository
from leadledger.platform.security import (
    ActorUser,
    ScopeDeniedError,
    ScopePredicate,
    apply_scope_filter,
    require_admin,
    scope_for,
    validate_owner_access,
)


ADMIN = ActorUser(user_id="admin-1", role="admin", correlation_id="corr-admin")
CSR = ActorUser(user_id="csr-1", role="csr", correlation_id="corr-csr")


@pytest.fixture(autouse=True)
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


def _sql(stmt) -> str:  # type: ignore[no-untyped-def]
    return str(stmt.compile(compile_kwargs={"literal_binds": True}))


def test_scope_for_roles() -> None:
    assert scope_for(ADMIN) == ScopePredicate()
    assert scope_for(ADMIN).unrestricted
    assert scope_for(CSR) == ScopePredicate(owner_id="csr-1")
    assert scope_for(CSR).allows("csr-1")
    assert not scope_for(CSR).allows("csr-2")
    assert not scope_for(CSR).allows(None)


def test_apply_scope_filter_restricts_csr_queries() -> None:
    scoped = apply_scope_filter(select(CRMLead), CRMLead.assigned_to, CSR)
    assert "crm_lead.assigned_to = 'csr-1'" in _sql(scoped)

    unrestricted = apply_scope_filter(select(CRMLead), CRMLead.assigned_to, ADMIN)
    assert "assigned_to =" not in _sql(unrestricted)


def test_caller_filter_only_narrows_scope() -> None:
    stmt = LeadRepository().apply_scope_query(select(CRMLead).where(CRMLead.assigned_to == "csr-2"), CSR)
    sql = _sql(stmt)
    assert "crm_lead.assigned_to = 'csr-2'" in sql
    assert "crm_lead.assigned_to = 'csr-1'" in sql


def test_sale_repository_scopes_on_csr_column() -> None:
    sql = _sql(SaleRepository().apply_scope_query(select(CRMSale), CSR))
    assert "crm_sale.csr_id = 'csr-1'" in sql


def test_repository_without_owner_column_is_unscoped() -> None:
    repository = IdentityRepository()
    stmt = select(CRMLead)
    assert repository.apply_scope_query(stmt, CSR) is stmt
    with pytest.raises(RuntimeError):
        repository.owner_column()


def test_owner_access_denial_is_audited() -> None:
    validate_owner_access("crm.lead", "csr-1", CSR)
    validate_owner_access("crm.lead", "csr-2", ADMIN)
    assert audit.audit_entries == []

    with pytest.raises(ScopeDeniedError) as exc_info:
        validate_owner_access("crm.lead", "csr-2", CSR, action="update")
    assert exc_info.value.status_code == 403
    assert exc_info.value.code == "ACCESS_DENIED"
    assert exc_info.value.resource == "crm.lead"
    assert exc_info.value.action == "update"

    entry = audit.audit_entries[-1]
    assert entry["entity_type"] == "security.scope"
    assert entry["action"] == "scope.denied"
    assert entry["correlation_id"] == "corr-csr"
    assert entry["after"]["target_owner_id"] == "csr-2"
    assert entry["after"]["action"] == "update"


def test_require_admin() -> None:
    require_admin("crm.lead", ADMIN, action="purge")
    with pytest.raises(ScopeDeniedError) as exc_info:
        require_admin("crm.lead", CSR, action="purge")
    assert "admin role required" in exc_info.value.message
    assert audit.audit_entries[-1]["after"]["target_owner_id"] is None
