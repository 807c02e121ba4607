"""
api/routes/handlers.py -- Role-scoped demonstration and statistics endpoints.

Routes:
  GET /api/public/info   -- service name, version and status (public)
  GET /api/user/test     -- user-level probe (requires user role)
  GET /api/admin/test    -- admin-level probe (requires admin role)
  GET /api/admin/stats   -- account and revocation statistics (requires admin role)

Handlers are plain business logic. They trust the authorization dependency
and only ever see the Principal it admits.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import PublicInfoResponse, RouteTestResponse, StatsResponse
from auth.dependencies import require_admin, require_user
from auth.models import Principal
from core.config import APP_NAME, APP_VERSION

router = APIRouter()


@router.get("/api/public/info", response_model=PublicInfoResponse)
async def public_info() -> PublicInfoResponse:
    return PublicInfoResponse(service=APP_NAME, version=APP_VERSION, status="running")


@router.get("/api/user/test", response_model=RouteTestResponse)
async def user_test(principal: Principal = Depends(require_user)) -> RouteTestResponse:
    return RouteTestResponse(
        message=f"User API test succeeded. Current user: {principal.subject}",
        identifier=principal.subject,
        role=principal.role,
    )


@router.get("/api/admin/test", response_model=RouteTestResponse)
async def admin_test(principal: Principal = Depends(require_admin)) -> RouteTestResponse:
    return RouteTestResponse(
        message=f"Admin API test succeeded. Current admin: {principal.subject}",
        identifier=principal.subject,
        role=principal.role,
    )


@router.get("/api/admin/stats", response_model=StatsResponse)
def admin_stats(request: Request, principal: Principal = Depends(require_admin)) -> StatsResponse:
    """Account totals by role plus the size of the revocation state.

    Sync route: the counts hit the credential store, so FastAPI runs this in
    its thread pool instead of blocking the event loop.
    """
    store = request.app.state.store
    registry = request.app.state.registry
    by_role = store.count_by_role()
    active_by_role = store.count_by_role(active_only=True)
    return StatsResponse(
        total_accounts=sum(by_role.values()),
        active_accounts=sum(active_by_role.values()),
        accounts_by_role=by_role,
        revoked_tokens=len(registry),
        revoked_subjects=registry.watermark_count,
        throttled_identifiers=request.app.state.throttle.locked_out_count(),
        server_status="HEALTHY",
    )
