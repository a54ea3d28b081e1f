from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from leadledger.crm.models import CRMIdentity, CRMLead, CRMSale
from leadledger.crm.statuses import CONVERTED_SPELLINGS, LeadStatus
from leadledger.platform.security.repository import BaseRepository


class IdentityRepository(BaseRepository):
    resource = "crm.identity"
    model = CRMIdentity

    def get(self, session: Session, identity_id: str) -> CRMIdentity | None:
        return session.get(CRMIdentity, identity_id)

    def get_by_email(self, session: Session, email: str) -> CRMIdentity | None:
        return session.scalar(select(CRMIdentity).where(CRMIdentity.email == email))

    def add(self, session: Session, identity: CRMIdentity) -> CRMIdentity:
        session.add(identity)
        session.flush()
        return identity


class LeadRepository(BaseRepository):
    resource = "crm.lead"
    model = CRMLead
    owner_attribute = "assigned_to"

    def get(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        return session.get(CRMLead, lead_id)

    def get_for_update(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        """Re-read the row from storage, bypassing whatever the session already holds."""

        stmt = (
            select(CRMLead)
            .where(CRMLead.id == lead_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)

    def add(self, session: Session, lead: CRMLead) -> CRMLead:
        session.add(lead)
        session.flush()
        return lead

    def existing_phones(self, session: Session, phones: Iterable[str]) -> set[str]:
        """Phones already stored anywhere, regardless of who owns the lead."""

        wanted = sorted(set(phones))
        found: set[str] = set()
        # Keep the IN list well under driver parameter limits.
        for offset in range(0, len(wanted), 500):
            chunk = wanted[offset : offset + 500]
            found.update(session.scalars(select(CRMLead.phone).where(CRMLead.phone.in_(chunk))))
        return found

    def transition_to_converted(
        self,
        session: Session,
        lead_id: uuid.UUID,
        *,
        sale_amount: Decimal,
        converted_at: datetime,
        actor_user_id: str,
    ) -> bool:
        """Move a non-converted lead to converted in one conditional write.

        Returns False when another writer converted the lead first.
        """

        stmt = (
            update(CRMLead)
            .where(CRMLead.id == lead_id, CRMLead.status.not_in(CONVERTED_SPELLINGS))
            .values(
                status=LeadStatus.CONVERTED.value,
                sale_amount=sale_amount,
                converted_at=converted_at,
                last_updated_by=actor_user_id,
                updated_at=converted_at,
                row_version=CRMLead.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        return result.rowcount == 1

    def apply_changes(
        self,
        session: Session,
        lead_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        expected_row_version: int | None = None,
        require_unconverted: bool = False,
    ) -> bool:
        stmt = update(CRMLead).where(CRMLead.id == lead_id)
        if expected_row_version is not None:
            stmt = stmt.where(CRMLead.row_version == expected_row_version)
        if require_unconverted:
            stmt = stmt.where(CRMLead.status.not_in(CONVERTED_SPELLINGS))
        stmt = stmt.values(**changes, row_version=CRMLead.row_version + 1).execution_options(
            synchronize_session=False
        )
        result = session.execute(stmt)
        return result.rowcount == 1

    def delete(self, session: Session, lead: CRMLead) -> None:
        session.delete(lead)
        session.flush()

    def delete_all(self, session: Session) -> int:
        result = session.execute(delete(CRMLead).execution_options(synchronize_session=False))
        return int(result.rowcount or 0)


class SaleRepository(BaseRepository):
    resource = "crm.sale"
    model = CRMSale
    owner_attribute = "csr_id"

    def get(self, session: Session, sale_id: uuid.UUID) -> CRMSale | None:
        return session.get(CRMSale, sale_id)

    def add(self, session: Session, sale: CRMSale) -> CRMSale:
        session.add(sale)
        session.flush()
        return sale

    def for_lead(self, session: Session, lead_id: uuid.UUID) -> list[CRMSale]:
        return list(session.scalars(select(CRMSale).where(CRMSale.lead_id == lead_id)))
