from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from leadledger.context import get_correlation_id
from leadledger.core.auth import AuthUser, get_current_user as get_auth_user
from leadledger.core.database import get_db
from leadledger.crm.import_export import BulkIngestionService
from leadledger.crm.reporting import ReportingService
from leadledger.crm.schemas import (
    AdminDashboardRead,
    BulkIngestResult,
    CsrDashboardRead,
    IdentityCreate,
    IdentityRead,
    IdentityStatusUpdate,
    LeadConvertRequest,
    LeadCreate,
    LeadListFilter,
    LeadPurgeResult,
    LeadRead,
    LeadUpdate,
    ReportRead,
    SaleRead,
    SaleStatusUpdate,
)
from leadledger.crm.service import ConversionService, IdentityService, LeadService, SaleService
from leadledger.crm.windows import ReportPeriod, TimeWindow
from leadledger.errors import CRMError
from leadledger.platform.security.context import ActorUser


leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
sales_router = APIRouter(prefix="/api/crm", tags=["crm.sales"])
identities_router = APIRouter(prefix="/api/crm", tags=["crm.identities"])
reports_router = APIRouter(prefix="/api/crm", tags=["crm.reports"])

identity_service = IdentityService()
lead_service = LeadService(identity_service=identity_service)
sale_service = SaleService()
conversion_service = ConversionService(lead_repository=lead_service.repository, sale_service=sale_service)
bulk_ingestion_service = BulkIngestionService(lead_service=lead_service)
reporting_service = ReportingService(lead_repository=lead_service.repository, sale_repository=sale_service.repository)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        role=auth_user.role,
        name=auth_user.name,
        correlation_id=correlation_id or None,
    )


def request_timezone(request: Request) -> str | None:
    return getattr(getattr(request.state, "context", None), "timezone", None)


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    q: str | None = Query(default=None),
    window: TimeWindow | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        filters = LeadListFilter(
            q=q,
            window=window,
            start=start,
            end=end,
            status=status_filter,
            source=source,
            assigned_to=assigned_to,
        )
        return lead_service.list_leads(
            db,
            user,
            filters,
            limit=limit,
            offset=offset,
            tz_name=request_timezone(request),
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.get("/leads/by-csr/{csr_id}", response_model=list[LeadRead])
def list_leads_for_csr(
    request: Request,
    csr_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads_for_csr(db, user, csr_id, limit=limit, offset=offset)
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.post("/leads/bulk", response_model=BulkIngestResult)
def bulk_upload_leads(
    request: Request,
    file: UploadFile = File(...),
    assigned_to: str | None = Form(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkIngestResult | JSONResponse:
    try:
        return bulk_ingestion_service.ingest(
            db,
            user,
            file.file.read(),
            filename=file.filename,
            content_type=file.content_type,
            assigned_to=assigned_to,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.post("/leads/bulk/validate", response_model=BulkIngestResult)
def validate_bulk_upload(
    request: Request,
    file: UploadFile = File(...),
    assigned_to: str | None = Form(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkIngestResult | JSONResponse:
    try:
        return bulk_ingestion_service.ingest(
            db,
            user,
            file.file.read(),
            filename=file.filename,
            content_type=file.content_type,
            assigned_to=assigned_to,
            dry_run=True,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.delete("/leads", response_model=LeadPurgeResult)
def purge_leads(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadPurgeResult | JSONResponse:
    try:
        return LeadPurgeResult(deleted_count=lead_service.purge_leads(db, user))
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        lead_service.delete_lead(db, user, lead_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.post("/leads/{lead_id}/convert", response_model=SaleRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SaleRead | JSONResponse:
    try:
        return conversion_service.convert_lead(db, user, lead_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@sales_router.get("/sales", response_model=list[SaleRead])
def list_sales(
    request: Request,
    csr_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SaleRead] | JSONResponse:
    try:
        return sale_service.list_sales(db, user, csr_id=csr_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@sales_router.get("/sales/csr/{csr_id}", response_model=list[SaleRead])
def list_sales_by_csr(
    request: Request,
    csr_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SaleRead] | JSONResponse:
    try:
        return sale_service.list_sales_by_csr(db, user, csr_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@sales_router.get("/sales/by-date", response_model=list[SaleRead])
def list_sales_by_date(
    request: Request,
    window: TimeWindow | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SaleRead] | JSONResponse:
    try:
        return sale_service.list_sales_by_date_range(
            db,
            user,
            window=window,
            start=start,
            end=end,
            tz_name=request_timezone(request),
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@sales_router.get("/sales/{sale_id}", response_model=SaleRead)
def get_sale(
    request: Request,
    sale_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SaleRead | JSONResponse:
    try:
        return sale_service.get_sale(db, user, sale_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@sales_router.patch("/sales/{sale_id}/status", response_model=SaleRead)
def update_sale_status(
    request: Request,
    sale_id: uuid.UUID,
    dto: SaleStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SaleRead | JSONResponse:
    try:
        return sale_service.update_sale_status(db, user, sale_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@identities_router.post("/identities", response_model=IdentityRead, status_code=status.HTTP_201_CREATED)
def register_identity(
    request: Request,
    dto: IdentityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IdentityRead | JSONResponse:
    try:
        return identity_service.register_identity(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@identities_router.get("/identities", response_model=list[IdentityRead])
def list_identities(
    request: Request,
    role: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[IdentityRead] | JSONResponse:
    try:
        return identity_service.list_identities(db, user, role=role, status=status_filter)
    except CRMError as exc:
        return crm_error_response(request, exc)


@identities_router.get("/identities/{identity_id}", response_model=IdentityRead)
def get_identity(
    request: Request,
    identity_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IdentityRead | JSONResponse:
    try:
        return identity_service.get_identity(db, user, identity_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@identities_router.patch("/identities/{identity_id}/status", response_model=IdentityRead)
def set_identity_status(
    request: Request,
    identity_id: str,
    dto: IdentityStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IdentityRead | JSONResponse:
    try:
        return identity_service.set_identity_status(db, user, identity_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@reports_router.get("/dashboard/csr", response_model=CsrDashboardRead)
def csr_dashboard(
    request: Request,
    csr_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CsrDashboardRead | JSONResponse:
    try:
        return reporting_service.csr_dashboard(db, user, csr_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@reports_router.get("/dashboard/admin", response_model=AdminDashboardRead)
def admin_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AdminDashboardRead | JSONResponse:
    try:
        return reporting_service.admin_dashboard(db, user)
    except CRMError as exc:
        return crm_error_response(request, exc)


@reports_router.get("/reports/leads", response_model=ReportRead)
def lead_report(
    request: Request,
    period: ReportPeriod = Query(default=ReportPeriod.DAY),
    converted_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReportRead | JSONResponse:
    try:
        return reporting_service.lead_report(
            db,
            user,
            period,
            converted_only=converted_only,
            tz_name=request_timezone(request),
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@reports_router.get("/reports/sales", response_model=ReportRead)
def sales_report(
    request: Request,
    period: ReportPeriod = Query(default=ReportPeriod.DAY),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReportRead | JSONResponse:
    try:
        return reporting_service.sales_report(db, user, period, tz_name=request_timezone(request))
    except CRMError as exc:
        return crm_error_response(request, exc)
