from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from leadledger.core.auth import AuthUser
from leadledger.core.config import get_settings
from leadledger.core.database import get_db
from leadledger.core.rbac import require_roles
from leadledger.crm.api import (
    error_response,
    get_current_user,
    identities_router,
    identity_service,
    leads_router,
    reports_router,
    sales_router,
)
from leadledger.crm.schemas import CallerRead
from leadledger.metrics import generate_metrics_payload, metrics_content_type
from leadledger.platform.security.context import ActorUser, Role

router = APIRouter()
router.include_router(leads_router)
router.include_router(sales_router)
router.include_router(identities_router)
router.include_router(reports_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/api/me", tags=["auth"], response_model=CallerRead)
def me(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CallerRead:
    return identity_service.describe_caller(db, user)


@router.get("/metrics", tags=["system"])
def metrics(request: Request, user: AuthUser = Depends(require_roles(Role.ADMIN))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        return error_response(request, status_code=404, code="NOT_FOUND", message="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
