from __future__ import annotations

from collections import Counter, defaultdict
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leadledger.crm.models import CRMLead, CRMSale
from leadledger.crm.repositories import LeadRepository, SaleRepository
from leadledger.crm.schemas import (
    AdminDashboardRead,
    CsrDashboardRead,
    CsrSalesSummary,
    GroupCount,
    ReportBucket,
    ReportRead,
)
from leadledger.crm.statuses import CONVERTED_SPELLINGS, LeadStatus, is_converted
from leadledger.crm.windows import ReportPeriod, bucket_key, resolve_timezone
from leadledger.platform.security.context import ActorUser


def _rate(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part * 100.0 / whole, 2)


def _status_counts(rows: list[tuple[str, int]]) -> list[GroupCount]:
    merged: Counter[str] = Counter()
    for status, total in rows:
        merged[LeadStatus.CONVERTED.value if is_converted(status) else status] += int(total)
    return [GroupCount(key=key, total=total) for key, total in sorted(merged.items())]


class ReportingService:
    def __init__(
        self,
        lead_repository: LeadRepository | None = None,
        sale_repository: SaleRepository | None = None,
    ) -> None:
        self.lead_repository = lead_repository or LeadRepository()
        self.sale_repository = sale_repository or SaleRepository()

    def csr_dashboard(self, session: Session, actor_user: ActorUser, csr_id: str | None = None) -> CsrDashboardRead:
        target = csr_id or actor_user.user_id
        self.lead_repository.validate_read_scope(target, actor_user, action="dashboard")

        status_rows = session.execute(
            select(CRMLead.status, func.count()).where(CRMLead.assigned_to == target).group_by(CRMLead.status)
        ).all()
        by_status = _status_counts([(row[0], row[1]) for row in status_rows])
        total_leads = sum(item.total for item in by_status)
        converted = sum(item.total for item in by_status if item.key == LeadStatus.CONVERTED.value)
        pending = sum(
            item.total for item in by_status if item.key not in {LeadStatus.CONVERTED.value, LeadStatus.REJECTED.value}
        )

        sales_count, revenue = session.execute(
            select(func.count(CRMSale.id), func.coalesce(func.sum(CRMSale.amount), 0)).where(CRMSale.csr_id == target)
        ).one()

        return CsrDashboardRead(
            csr_id=target,
            total_leads=total_leads,
            converted_leads=converted,
            pending_leads=pending,
            conversion_rate=_rate(int(sales_count), total_leads),
            total_sales=int(sales_count),
            total_revenue=Decimal(str(revenue)),
            leads_by_status=by_status,
        )

    def admin_dashboard(self, session: Session, actor_user: ActorUser) -> AdminDashboardRead:
        self.lead_repository.require_admin(actor_user, action="dashboard")

        status_rows = session.execute(select(CRMLead.status, func.count()).group_by(CRMLead.status)).all()
        by_status = _status_counts([(row[0], row[1]) for row in status_rows])
        total_leads = sum(item.total for item in by_status)
        converted = sum(item.total for item in by_status if item.key == LeadStatus.CONVERTED.value)

        csr_rows = session.execute(
            select(CRMLead.assigned_to, func.count()).group_by(CRMLead.assigned_to).order_by(CRMLead.assigned_to)
        ).all()
        sales_rows = session.execute(
            select(CRMSale.csr_id, func.count(CRMSale.id), func.coalesce(func.sum(CRMSale.amount), 0))
            .group_by(CRMSale.csr_id)
            .order_by(CRMSale.csr_id)
        ).all()
        sales_by_csr = [
            CsrSalesSummary(csr_id=row[0], sales_count=int(row[1]), revenue=Decimal(str(row[2]))) for row in sales_rows
        ]

        total_sales = sum(item.sales_count for item in sales_by_csr)

        return AdminDashboardRead(
            total_leads=total_leads,
            converted_leads=converted,
            conversion_rate=_rate(total_sales, total_leads),
            total_sales=total_sales,
            total_revenue=sum((item.revenue for item in sales_by_csr), Decimal("0")),
            leads_by_status=by_status,
            leads_by_csr=[GroupCount(key=row[0], total=int(row[1])) for row in csr_rows],
            sales_by_csr=sales_by_csr,
        )

    def lead_report(
        self,
        session: Session,
        actor_user: ActorUser,
        period: ReportPeriod,
        *,
        converted_only: bool = False,
        tz_name: str | None = None,
    ) -> ReportRead:
        """Lead counts bucketed by creation time in the business timezone."""

        self.lead_repository.require_admin(actor_user, action="report")
        tz = resolve_timezone(tz_name)
        stmt = select(CRMLead.created_at)
        if converted_only:
            stmt = stmt.where(CRMLead.status.in_(CONVERTED_SPELLINGS))

        counts: Counter[str] = Counter(bucket_key(moment, period, tz) for moment in session.scalars(stmt))
        return ReportRead(
            period=period,
            timezone=tz.key,
            buckets=[ReportBucket(bucket=key, count=counts[key]) for key in sorted(counts)],
        )

    def sales_report(
        self,
        session: Session,
        actor_user: ActorUser,
        period: ReportPeriod,
        *,
        tz_name: str | None = None,
    ) -> ReportRead:
        self.sale_repository.require_admin(actor_user, action="report")
        tz = resolve_timezone(tz_name)
        counts: Counter[str] = Counter()
        amounts: defaultdict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for created_at, amount in session.execute(select(CRMSale.created_at, CRMSale.amount)):
            key = bucket_key(created_at, period, tz)
            counts[key] += 1
            amounts[key] += Decimal(str(amount))
        return ReportRead(
            period=period,
            timezone=tz.key,
            buckets=[ReportBucket(bucket=key, count=counts[key], amount=amounts[key]) for key in sorted(counts)],
        )
