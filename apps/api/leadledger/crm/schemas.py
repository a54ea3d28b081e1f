from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from leadledger.crm.windows import ReportPeriod, TimeWindow


IdentityRole = Literal["admin", "csr"]
IdentityStatus = Literal["active", "inactive"]


class IdentityCreate(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=2)
    email: EmailStr
    role: IdentityRole = "csr"


class IdentityStatusUpdate(BaseModel):
    status: IdentityStatus


class IdentityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: str
    status: str
    created_at: datetime
    updated_at: datetime


class CallerRead(BaseModel):
    user_id: str
    role: str
    name: str | None = None
    registered: bool = False
    status: str | None = None


class LeadCreate(BaseModel):
    name: str
    phone: str
    course: str
    city: str | None = None
    source: str | None = None
    assigned_to: str | None = None
    follow_up_date: datetime | None = None
    remarks: str | None = None


class LeadUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = None
    phone: str | None = None
    course: str | None = None
    city: str | None = None
    source: str | None = None
    status: str | None = None
    assigned_to: str | None = None
    sale_amount: Decimal | None = Field(default=None, allow_inf_nan=True)
    follow_up_date: datetime | None = None
    remarks: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str
    course: str
    city: str
    source: str
    status: str
    assigned_to: str
    created_by: str
    last_updated_by: str | None
    sale_amount: Decimal
    follow_up_date: datetime | None
    remarks: str | None
    converted_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadListFilter(BaseModel):
    q: str | None = None
    window: TimeWindow | None = None
    start: datetime | None = None
    end: datetime | None = None
    status: str | None = None
    source: str | None = None
    assigned_to: str | None = None


class LeadConvertRequest(BaseModel):
    amount: Decimal | None = Field(default=None, allow_inf_nan=True)
    payment_method: str | None = None
    remarks: str | None = None


class LeadPurgeResult(BaseModel):
    deleted_count: int


class SaleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    csr_id: str
    amount: Decimal
    course: str
    status: str
    payment_method: str
    remarks: str | None
    verified_by: str | None
    created_at: datetime
    updated_at: datetime


class SaleStatusUpdate(BaseModel):
    status: str = Field(min_length=1)
    remarks: str | None = None


class RejectedRow(BaseModel):
    row_number: int
    row: dict[str, Any]
    reason: str


class BulkIngestResult(BaseModel):
    dry_run: bool = False
    total_rows: int = 0
    accepted_count: int = 0
    inserted_count: int = 0
    skipped_duplicate_count: int = 0
    failed_count: int = 0
    rejected_rows: list[RejectedRow] = Field(default_factory=list)


class GroupCount(BaseModel):
    key: str | None
    total: int


class CsrSalesSummary(BaseModel):
    csr_id: str
    sales_count: int
    revenue: Decimal


class CsrDashboardRead(BaseModel):
    csr_id: str
    total_leads: int
    converted_leads: int
    pending_leads: int
    conversion_rate: float
    total_sales: int
    total_revenue: Decimal
    leads_by_status: list[GroupCount]


class AdminDashboardRead(BaseModel):
    total_leads: int
    converted_leads: int
    conversion_rate: float
    total_sales: int
    total_revenue: Decimal
    leads_by_status: list[GroupCount]
    leads_by_csr: list[GroupCount]
    sales_by_csr: list[CsrSalesSummary]


class ReportBucket(BaseModel):
    bucket: str
    count: int
    amount: Decimal | None = None


class ReportRead(BaseModel):
    period: ReportPeriod
    timezone: str
    buckets: list[ReportBucket]
