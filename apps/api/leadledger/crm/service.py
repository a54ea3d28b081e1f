from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadledger import audit, events
from leadledger.core.config import get_settings
from leadledger.crm.models import CRMIdentity, CRMLead, CRMSale, utcnow
from leadledger.crm.repositories import IdentityRepository, LeadRepository, SaleRepository
from leadledger.crm.schemas import (
    CallerRead,
    IdentityCreate,
    IdentityRead,
    IdentityStatusUpdate,
    LeadConvertRequest,
    LeadCreate,
    LeadListFilter,
    LeadRead,
    LeadUpdate,
    SaleRead,
    SaleStatusUpdate,
)
from leadledger.crm.statuses import CONVERTED_SPELLINGS, LeadStatus, is_converted, normalize_lead_status, normalize_sale_status
from leadledger.crm.validation import (
    MIN_NAME_LENGTH,
    normalize_phone,
    optional_text,
    require_non_negative_amount,
    require_phone,
    require_positive_amount,
    require_text,
)
from leadledger.crm.windows import DateRange, TimeWindow, custom_range, resolve_window
from leadledger.errors import ConflictError, CRMError, NotFoundError, StorageError, ValidationError
from leadledger.metrics import observe_lead_conversion, observe_storage_failure
from leadledger.otel import get_tracer, mark_span_failed
from leadledger.platform.locks import KeyedLockRegistry
from leadledger.platform.security.context import ActorUser


logger = logging.getLogger("leadledger.crm")
tracer = get_tracer("leadledger.crm")

conversion_locks = KeyedLockRegistry()


def storage_failure(session: Session, operation: str, exc: SQLAlchemyError) -> StorageError:
    """Roll back and translate a driver error. Driver detail goes to the log only."""

    session.rollback()
    observe_storage_failure(operation)
    logger.error("storage.failed", extra={"operation": operation, "error": type(exc).__name__})
    return StorageError()


class IdentityService:
    entity_type = "crm.identity"

    def __init__(self, repository: IdentityRepository | None = None) -> None:
        self.repository = repository or IdentityRepository()

    def register_identity(self, session: Session, actor_user: ActorUser, dto: IdentityCreate) -> IdentityRead:
        self.repository.require_admin(actor_user, action="register")
        email = str(dto.email).lower()
        if self.repository.get_by_email(session, email) is not None:
            raise ConflictError("an identity with this email already exists", details={"field": "email"})
        if dto.id is not None and self.repository.get(session, dto.id) is not None:
            raise ConflictError("an identity with this id already exists", details={"field": "id"})

        identity = CRMIdentity(name=dto.name.strip(), email=email, role=dto.role)
        if dto.id is not None:
            identity.id = dto.id
        try:
            self.repository.add(session, identity)
            identity_read = IdentityRead.model_validate(identity)
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "identity.register", exc) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=identity_read.id,
            action="create",
            before=None,
            after=identity_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.identity.registered",
                actor_user.user_id,
                {"identity_id": identity_read.id, "role": identity_read.role},
            )
        )
        return identity_read

    def list_identities(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        role: str | None = None,
        status: str | None = None,
    ) -> list[IdentityRead]:
        self.repository.require_admin(actor_user, action="list")
        stmt: Select[tuple[CRMIdentity]] = select(CRMIdentity)
        if role:
            stmt = stmt.where(CRMIdentity.role == role)
        if status:
            stmt = stmt.where(CRMIdentity.status == status)
        rows = session.scalars(stmt.order_by(CRMIdentity.name.asc(), CRMIdentity.id.asc())).all()
        return [IdentityRead.model_validate(item) for item in rows]

    def get_identity(self, session: Session, actor_user: ActorUser, identity_id: str) -> IdentityRead:
        identity = self.repository.get(session, identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        if identity.id != actor_user.user_id:
            self.repository.require_admin(actor_user, action="read")
        return IdentityRead.model_validate(identity)

    def set_identity_status(
        self,
        session: Session,
        actor_user: ActorUser,
        identity_id: str,
        dto: IdentityStatusUpdate,
    ) -> IdentityRead:
        self.repository.require_admin(actor_user, action="set_status")
        identity = self.repository.get(session, identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        if identity.id == actor_user.user_id and dto.status != "active":
            raise ConflictError("an admin cannot deactivate their own identity")

        before = IdentityRead.model_validate(identity).model_dump(mode="json")
        identity.status = dto.status
        try:
            session.flush()
            identity_read = IdentityRead.model_validate(identity)
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "identity.set_status", exc) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=identity_read.id,
            action="set_status",
            before=before,
            after=identity_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return identity_read

    def resolve_assignee(self, session: Session, identity_id: str | None) -> CRMIdentity:
        if not identity_id:
            raise ValidationError("assigned_to is required", details={"field": "assigned_to"})
        identity = self.repository.get(session, identity_id)
        if identity is None:
            raise ValidationError("assigned_to does not reference a known identity", details={"field": "assigned_to"})
        if identity.status != "active":
            raise ValidationError("assigned_to references an inactive identity", details={"field": "assigned_to"})
        return identity

    def describe_caller(self, session: Session, actor_user: ActorUser) -> CallerRead:
        identity = self.repository.get(session, actor_user.user_id)
        return CallerRead(
            user_id=actor_user.user_id,
            role=actor_user.role,
            name=identity.name if identity is not None else actor_user.name,
            registered=identity is not None,
            status=identity.status if identity is not None else None,
        )


class LeadService:
    entity_type = "crm.lead"

    def __init__(
        self,
        repository: LeadRepository | None = None,
        identity_service: IdentityService | None = None,
    ) -> None:
        self.repository = repository or LeadRepository()
        self.identity_service = identity_service or IdentityService()

    def resolve_owner(self, session: Session, actor_user: ActorUser, requested: str | None) -> str:
        """Admins must name an existing assignee. CSRs always own what they create."""

        if actor_user.is_admin:
            return self.identity_service.resolve_assignee(session, requested).id
        return actor_user.user_id

    def build_lead(
        self,
        actor_user: ActorUser,
        dto: LeadCreate,
        *,
        assigned_to: str,
        default_source: str = "manual",
    ) -> CRMLead:
        settings = get_settings()
        return CRMLead(
            name=require_text(dto.name, "name", min_length=MIN_NAME_LENGTH),
            phone=require_phone(dto.phone),
            course=require_text(dto.course, "course"),
            city=optional_text(dto.city) or settings.default_lead_city,
            source=optional_text(dto.source) or default_source,
            status=LeadStatus.NEW.value,
            assigned_to=assigned_to,
            created_by=actor_user.user_id,
            sale_amount=Decimal("0"),
            follow_up_date=dto.follow_up_date,
            remarks=optional_text(dto.remarks),
        )

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        assigned_to = self.resolve_owner(session, actor_user, dto.assigned_to)
        lead = self.build_lead(actor_user, dto, assigned_to=assigned_to)
        try:
            self.repository.add(session, lead)
            lead_read = self._to_read(lead)
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "lead.create", exc) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_read.id),
            action="create",
            before=None,
            after=lead_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user.user_id,
                {"lead_id": str(lead_read.id), "assigned_to": lead_read.assigned_to, "status": lead_read.status},
            )
        )
        logger.info("lead.created", extra={"lead_id": str(lead_read.id), "user_id": actor_user.user_id})
        return lead_read

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: LeadListFilter,
        *,
        limit: int = 50,
        offset: int = 0,
        tz_name: str | None = None,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = self.repository.apply_scope_query(select(CRMLead), actor_user)

        if filters.q:
            term = f"%{filters.q.strip()}%"
            clauses = [
                CRMLead.name.ilike(term),
                CRMLead.course.ilike(term),
                CRMLead.city.ilike(term),
                CRMLead.phone.ilike(term),
            ]
            phone_digits = normalize_phone(filters.q)
            if phone_digits:
                clauses.append(CRMLead.phone.contains(phone_digits.lstrip("+")))
            stmt = stmt.where(or_(*clauses))

        date_range = self._filter_range(filters, tz_name)
        if date_range is not None:
            if date_range.start is not None:
                stmt = stmt.where(CRMLead.created_at >= date_range.start)
            if date_range.end is not None:
                stmt = stmt.where(CRMLead.created_at < date_range.end)

        if filters.status:
            status_value = normalize_lead_status(filters.status)
            if status_value is LeadStatus.CONVERTED:
                stmt = stmt.where(CRMLead.status.in_(CONVERTED_SPELLINGS))
            else:
                stmt = stmt.where(CRMLead.status == status_value.value)
        if filters.source:
            stmt = stmt.where(CRMLead.source == filters.source)
        if filters.assigned_to:
            stmt = stmt.where(CRMLead.assigned_to == filters.assigned_to)

        rows = session.scalars(
            stmt.order_by(CRMLead.created_at.desc(), CRMLead.id.asc()).offset(offset).limit(limit)
        ).all()
        return [self._to_read(item) for item in rows]

    def list_leads_for_csr(
        self,
        session: Session,
        actor_user: ActorUser,
        csr_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LeadRead]:
        self.repository.validate_read_scope(csr_id, actor_user, action="list_by_csr")
        return self.list_leads(
            session,
            actor_user,
            LeadListFilter(assigned_to=csr_id),
            limit=limit,
            offset=offset,
        )

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return self._to_read(self._load_visible(session, actor_user, lead_id, action="read"))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._load_visible(session, actor_user, lead_id, action="update")
        payload = dto.model_dump(exclude_unset=True)
        expected_row_version = payload.pop("row_version", None)

        if not actor_user.is_admin:
            # Reassignment is an admin decision; CSR edits never move ownership.
            payload.pop("assigned_to", None)

        # An edit with nothing left to apply still records who made it.
        changes = self._validated_changes(session, lead, payload)

        becoming_converted = changes.get("status") == LeadStatus.CONVERTED.value and not is_converted(lead.status)
        now = utcnow()
        if becoming_converted:
            changes["converted_at"] = lead.converted_at or now
        changes["last_updated_by"] = actor_user.user_id
        changes["updated_at"] = now

        before = self._to_read(lead).model_dump(mode="json")
        try:
            applied = self.repository.apply_changes(
                session,
                lead.id,
                changes,
                expected_row_version=expected_row_version,
                require_unconverted=becoming_converted,
            )
            if not applied:
                session.rollback()
                raise ConflictError("lead was modified concurrently", details={"lead_id": str(lead_id)})
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "lead.update", exc) from exc

        session.refresh(lead)
        lead_read = self._to_read(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_read.id),
            action="update",
            before=before,
            after=lead_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.updated",
                actor_user.user_id,
                {"lead_id": str(lead_read.id), "changed_fields": sorted(changes), "status": lead_read.status},
            )
        )
        if before["status"] != lead_read.status:
            logger.info(
                "lead.status_changed",
                extra={"lead_id": str(lead_read.id), "status": lead_read.status, "user_id": actor_user.user_id},
            )
        return lead_read

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._load_visible(session, actor_user, lead_id, action="delete")
        before = self._to_read(lead).model_dump(mode="json")
        try:
            self.repository.delete(session, lead)
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "lead.delete", exc) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.lead.deleted", actor_user.user_id, {"lead_id": str(lead_id)}))

    def purge_leads(self, session: Session, actor_user: ActorUser) -> int:
        """Delete every lead. Sales are left in place."""

        self.repository.require_admin(actor_user, action="purge")
        try:
            deleted_count = self.repository.delete_all(session)
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "lead.purge", exc) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id="*",
            action="purge",
            before=None,
            after={"deleted_count": deleted_count},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.lead.purged", actor_user.user_id, {"deleted_count": deleted_count})
        )
        logger.warning("leads.purged", extra={"deleted_count": deleted_count, "user_id": actor_user.user_id})
        return deleted_count

    def _load_visible(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, *, action: str) -> CRMLead:
        lead = self.repository.get(session, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
        self.repository.validate_read_scope(lead.assigned_to, actor_user, action=action)
        return lead

    def _validated_changes(self, session: Session, lead: CRMLead, payload: dict[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if "name" in payload:
            changes["name"] = require_text(payload["name"], "name", min_length=MIN_NAME_LENGTH)
        if "phone" in payload:
            changes["phone"] = require_phone(payload["phone"])
        if "course" in payload:
            changes["course"] = require_text(payload["course"], "course")
        if "city" in payload:
            changes["city"] = optional_text(payload["city"]) or get_settings().default_lead_city
        if "source" in payload:
            changes["source"] = optional_text(payload["source"]) or "manual"
        if "remarks" in payload:
            changes["remarks"] = optional_text(payload["remarks"])
        if "follow_up_date" in payload:
            changes["follow_up_date"] = payload["follow_up_date"]
        if "assigned_to" in payload:
            changes["assigned_to"] = self.identity_service.resolve_assignee(session, payload["assigned_to"]).id
        if "sale_amount" in payload:
            if payload["sale_amount"] is None:
                raise ValidationError("sale_amount cannot be null", details={"field": "sale_amount"})
            changes["sale_amount"] = require_non_negative_amount(payload["sale_amount"], "sale_amount")

        currently_converted = is_converted(lead.status)
        if payload.get("status") is not None:
            target = normalize_lead_status(payload["status"])
            if currently_converted and target is not LeadStatus.CONVERTED:
                raise ConflictError(
                    "a converted lead cannot change status",
                    details={"lead_id": str(lead.id), "status": lead.status},
                )
            changes["status"] = target.value
        elif "status" in payload:
            raise ValidationError("status cannot be null", details={"field": "status"})

        ends_converted = changes.get("status") == LeadStatus.CONVERTED.value or currently_converted
        if ends_converted:
            amount = changes.get("sale_amount", lead.sale_amount)
            if amount is None or Decimal(amount) <= 0:
                raise ValidationError(
                    "sale_amount must be greater than 0 for a converted lead",
                    details={"field": "sale_amount"},
                )
        return changes

    def _filter_range(self, filters: LeadListFilter, tz_name: str | None) -> DateRange | None:
        if filters.window is not None:
            return resolve_window(filters.window, tz_name=tz_name, start=filters.start, end=filters.end)
        if filters.start is not None or filters.end is not None:
            return _open_range(filters.start, filters.end, tz_name)
        return None

    def _to_read(self, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(lead)


class SaleService:
    entity_type = "crm.sale"

    def __init__(self, repository: SaleRepository | None = None) -> None:
        self.repository = repository or SaleRepository()

    def create_sale(
        self,
        session: Session,
        *,
        lead: CRMLead,
        amount: Decimal,
        payment_method: str | None = None,
        remarks: str | None = None,
    ) -> CRMSale:
        """Stage the sale for a conversion. Only the conversion flow calls this."""

        sale = CRMSale(
            lead_id=lead.id,
            csr_id=lead.assigned_to,
            amount=amount,
            course=lead.course,
            payment_method=optional_text(payment_method) or get_settings().default_payment_method,
            remarks=optional_text(remarks),
        )
        return self.repository.add(session, sale)

    def list_sales(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        csr_id: str | None = None,
        date_range: DateRange | None = None,
    ) -> list[SaleRead]:
        stmt: Select[tuple[CRMSale]] = self.repository.apply_scope_query(select(CRMSale), actor_user)
        if csr_id:
            stmt = stmt.where(CRMSale.csr_id == csr_id)
        if date_range is not None:
            if date_range.start is not None:
                stmt = stmt.where(CRMSale.created_at >= date_range.start)
            if date_range.end is not None:
                stmt = stmt.where(CRMSale.created_at < date_range.end)
        rows = session.scalars(stmt.order_by(CRMSale.created_at.desc(), CRMSale.id.asc())).all()
        return [SaleRead.model_validate(item) for item in rows]

    def list_sales_by_csr(self, session: Session, actor_user: ActorUser, csr_id: str) -> list[SaleRead]:
        self.repository.validate_read_scope(csr_id, actor_user, action="list_by_csr")
        return self.list_sales(session, actor_user, csr_id=csr_id)

    def list_sales_by_date_range(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        window: TimeWindow | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        tz_name: str | None = None,
    ) -> list[SaleRead]:
        if window is None:
            date_range = custom_range(start, end, tz_name=tz_name)
        else:
            date_range = resolve_window(window, tz_name=tz_name, start=start, end=end)
        return self.list_sales(session, actor_user, date_range=date_range)

    def get_sale(self, session: Session, actor_user: ActorUser, sale_id: uuid.UUID) -> SaleRead:
        sale = self.repository.get(session, sale_id)
        if sale is None:
            raise NotFoundError("sale not found", details={"sale_id": str(sale_id)})
        self.repository.validate_read_scope(sale.csr_id, actor_user, action="read")
        return SaleRead.model_validate(sale)

    def update_sale_status(
        self,
        session: Session,
        actor_user: ActorUser,
        sale_id: uuid.UUID,
        dto: SaleStatusUpdate,
    ) -> SaleRead:
        self.repository.require_admin(actor_user, action="set_status")
        sale = self.repository.get(session, sale_id)
        if sale is None:
            raise NotFoundError("sale not found", details={"sale_id": str(sale_id)})

        target = normalize_sale_status(dto.status)
        before = SaleRead.model_validate(sale).model_dump(mode="json")
        sale.status = target.value
        sale.verified_by = actor_user.user_id
        if dto.remarks is not None:
            sale.remarks = optional_text(dto.remarks)
        try:
            session.flush()
            sale_read = SaleRead.model_validate(sale)
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "sale.set_status", exc) from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(sale_id),
            action="set_status",
            before=before,
            after=sale_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.sale.status_changed",
                actor_user.user_id,
                {"sale_id": str(sale_id), "status": sale_read.status},
            )
        )
        return sale_read


class ConversionService:
    """Turns a lead into a sale.

    The status transition and the sale insert share one transaction, and the
    transition is a conditional write, so a lead yields at most one sale no matter
    how many requests race for it.
    """

    def __init__(
        self,
        lead_repository: LeadRepository | None = None,
        sale_service: SaleService | None = None,
        locks: KeyedLockRegistry | None = None,
    ) -> None:
        self.lead_repository = lead_repository or LeadRepository()
        self.sale_service = sale_service or SaleService()
        self.locks = locks or conversion_locks

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> SaleRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("user_id", actor_user.user_id)
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)
            try:
                lead = self.lead_repository.get(session, lead_id)
                if lead is None:
                    raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
                self.lead_repository.validate_write_scope(lead.assigned_to, actor_user, action="convert")
                amount = require_positive_amount(dto.amount, "amount")

                with self.locks.hold(str(lead_id)):
                    sale_read, before_status = self._convert_exclusive(session, actor_user, lead_id, amount, dto)
            except CRMError as exc:
                mark_span_failed(span, exc)
                observe_lead_conversion(_conversion_outcome(exc))
                logger.info(
                    "lead.conversion_rejected",
                    extra={"lead_id": str(lead_id), "user_id": actor_user.user_id, "error": exc.code},
                )
                raise

        duration = time.perf_counter() - started
        observe_lead_conversion("converted", duration)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.lead",
            entity_id=str(lead_id),
            action="convert",
            before={"status": before_status},
            after={"status": LeadStatus.CONVERTED.value, "sale_id": str(sale_read.id), "amount": str(sale_read.amount)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.converted",
                actor_user.user_id,
                {"lead_id": str(lead_id), "sale_id": str(sale_read.id), "amount": str(sale_read.amount)},
            )
        )
        events.publish(
            events.build_envelope(
                "crm.sale.created",
                actor_user.user_id,
                {"sale_id": str(sale_read.id), "lead_id": str(lead_id), "csr_id": sale_read.csr_id},
            )
        )
        logger.info(
            "lead.converted",
            extra={
                "lead_id": str(lead_id),
                "sale_id": str(sale_read.id),
                "user_id": actor_user.user_id,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return sale_read

    def _convert_exclusive(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        amount: Decimal,
        dto: LeadConvertRequest,
    ) -> tuple[SaleRead, str]:
        try:
            current = self.lead_repository.get_for_update(session, lead_id)
            if current is None:
                raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
            if is_converted(current.status):
                raise ConflictError("lead is already converted", details={"lead_id": str(lead_id)})
            before_status = current.status

            transitioned = self.lead_repository.transition_to_converted(
                session,
                lead_id,
                sale_amount=amount,
                converted_at=utcnow(),
                actor_user_id=actor_user.user_id,
            )
            if not transitioned:
                raise ConflictError("lead is already converted", details={"lead_id": str(lead_id)})

            sale = self.sale_service.create_sale(
                session,
                lead=current,
                amount=amount,
                payment_method=dto.payment_method,
                remarks=dto.remarks,
            )
            sale_read = SaleRead.model_validate(sale)
            session.commit()
        except CRMError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            raise storage_failure(session, "lead.convert", exc) from exc
        return sale_read, before_status


def _conversion_outcome(exc: CRMError) -> str:
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, StorageError):
        return "storage_error"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, ValidationError):
        return "invalid"
    return "denied"


def _open_range(start: datetime | None, end: datetime | None, tz_name: str | None) -> DateRange:
    if start is not None and end is not None:
        return custom_range(start, end, tz_name=tz_name)
    if start is not None:
        return DateRange(start=custom_range(start, start, tz_name=tz_name).start)
    return DateRange(end=custom_range(end, end, tz_name=tz_name).end)
