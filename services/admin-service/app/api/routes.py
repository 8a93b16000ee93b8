"""HTTP route definitions for the admin governance service."""

from __future__ import annotations

import logging

from datetime import datetime, timezone
from typing import Any

import jwt
from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from schemas import AccountSummary, ApiEnvelope

from ..domain.account import Account, Role
from ..domain.contracts import AccountQuery, OwnedJob
from ..domain.errors import (
    ConflictError,
    GovernanceError,
    NotFoundError,
    PreconditionError,
    StoreUnavailableError,
)
from ..domain.service import AdminGovernanceService
from ..security.tokens import actor_from_authorization

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


class ApiError(Exception):
    """Carries an HTTP status and message rendered as a failed envelope."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Render an ``ApiError`` using the uniform response envelope."""
    body = ApiEnvelope(success=False, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed bodies, params and queries as a 400 failed envelope."""
    errors = jsonable_encoder(exc.errors())
    logger.info("rejected invalid request to %s: %s", request.url.path, errors)
    body = ApiEnvelope(success=False, message="Validation failed", data={"errors": errors})
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump())


class StatusUpdateRequest(BaseModel):
    """Payload accepted when activating or deactivating an account."""

    active: bool


def _summary(account: Account) -> dict[str, Any]:
    summary = AccountSummary(
        account_id=account.account_id,
        email=account.email,
        name=account.name,
        role=Role(account.role).value,
        active=account.active,
        created_at=account.created_at,
        promoted_by=account.promoted_by,
        promoted_at=account.promoted_at,
    )
    return summary.model_dump(mode="json")


def _job(job: OwnedJob) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "company": job.company,
        "role": job.role,
        "status": job.status,
        "created_at": job.created_at.isoformat(),
    }


def _ok(message: str, data: dict[str, Any] | None = None) -> ApiEnvelope:
    return ApiEnvelope(success=True, message=message, data=data)


def _translate(exc: GovernanceError, *, conflict_status: int) -> ApiError:
    """Map a domain error to the status code this endpoint reports it with."""
    if isinstance(exc, NotFoundError):
        return ApiError(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, PreconditionError):
        return ApiError(status.HTTP_400_BAD_REQUEST, str(exc))
    if isinstance(exc, ConflictError):
        return ApiError(conflict_status, str(exc))
    logger.error("account store unavailable: %s", exc)
    return ApiError(status.HTTP_503_SERVICE_UNAVAILABLE, "account store unavailable")


def get_service(request: Request) -> AdminGovernanceService:
    """Resolve the `AdminGovernanceService` stored on the FastAPI application state."""
    service: AdminGovernanceService = request.app.state.governance_service
    return service


def get_actor(authorization: str | None = Header(default=None)) -> str:
    """Return the caller's account id from the bearer token."""
    try:
        return actor_from_authorization(authorization)
    except jwt.PyJWTError as exc:
        logger.info("rejected bearer token: %s", exc)
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Authentication required") from exc


def _check_admin(actor: str, service: AdminGovernanceService) -> str:
    try:
        account = service.get_account(actor)
    except NotFoundError:
        account = None
    except StoreUnavailableError as exc:
        raise _translate(exc, conflict_status=status.HTTP_403_FORBIDDEN) from exc
    if account is None or not account.is_admin:
        raise ApiError(status.HTTP_403_FORBIDDEN, "Admin access required")
    if not account.active:
        raise ApiError(status.HTTP_403_FORBIDDEN, "Admin account is inactive")
    return actor


def require_admin(
    actor: str = Depends(get_actor),
    service: AdminGovernanceService = Depends(get_service),
) -> str:
    """Admit only callers that are active admins in the account store."""
    return _check_admin(actor, service)


def require_admin_or_bootstrap(
    actor: str = Depends(get_actor),
    service: AdminGovernanceService = Depends(get_service),
) -> str:
    """Admit any authenticated caller while no active admin exists, else require an admin."""
    try:
        bootstrap = service.can_promote()
    except StoreUnavailableError as exc:
        raise _translate(exc, conflict_status=status.HTTP_403_FORBIDDEN) from exc
    if bootstrap:
        logger.info("admin bootstrap: promotion requested by %s", actor)
        return actor
    return _check_admin(actor, service)


@router.get("/health", response_model=ApiEnvelope)
def health(actor: str = Depends(require_admin)) -> ApiEnvelope:
    """Confirm the admin API is reachable for the calling admin."""
    return _ok(
        "Admin API is healthy",
        {"timestamp": datetime.now(timezone.utc).isoformat(), "admin_id": actor},
    )


@router.get("/governance", response_model=ApiEnvelope)
def governance_status(
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Report the current admin head-counts and whether promotion is open."""
    try:
        snapshot = service.governance_status()
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_409_CONFLICT) from exc
    return _ok(
        "Governance status",
        {
            "active_admins": snapshot.active_admins,
            "total_admins": snapshot.total_admins,
            "can_promote": snapshot.can_promote,
        },
    )


@router.get("/accounts", response_model=ApiEnvelope)
def list_accounts(
    search: str | None = Query(default=None),
    role: Role | None = Query(default=None),
    active: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: str = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Return a filtered, paginated page of accounts."""
    try:
        query = AccountQuery(
            search=search,
            role=role,
            active=active,
            page=page,
            limit=limit,
            sort_by=sort_by,
            descending=sort_order == "desc",
        )
    except ValueError as exc:
        raise ApiError(status.HTTP_400_BAD_REQUEST, str(exc)) from exc

    try:
        result = service.list_accounts(query)
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_409_CONFLICT) from exc

    total_pages = (result.total + query.limit - 1) // query.limit
    return _ok(
        "Accounts",
        {
            "accounts": [_summary(account) for account in result.items],
            "pagination": {
                "current_page": query.page,
                "total_pages": total_pages,
                "total_accounts": result.total,
                "has_next": query.page < total_pages,
                "has_prev": query.page > 1,
            },
        },
    )


@router.get("/accounts/{account_id}", response_model=ApiEnvelope)
def get_account(
    account_id: str,
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Retrieve an account with its recent jobs, job counts by status and settings."""
    try:
        details = service.get_account_details(account_id)
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_409_CONFLICT) from exc
    resources = details.resources
    return _ok(
        "Account",
        {
            "account": _summary(details.account),
            "jobs": [_job(job) for job in resources.recent_jobs],
            "job_stats": resources.job_counts,
            "settings": resources.settings,
        },
    )


@router.put("/accounts/{account_id}/promote", response_model=ApiEnvelope)
def promote_account(
    account_id: str,
    actor: str = Depends(require_admin_or_bootstrap),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Promote an account to admin while no active admin exists."""
    try:
        account = service.promote(account_id, actor=actor)
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_403_FORBIDDEN) from exc
    return _ok("Account promoted to admin", {"account": _summary(account)})


@router.put("/accounts/{account_id}/demote", response_model=ApiEnvelope)
def demote_account(
    account_id: str,
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Return an admin to the standard role unless it is the last admin."""
    try:
        account = service.demote(account_id, actor=actor)
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_403_FORBIDDEN) from exc
    return _ok("Admin demoted to standard account", {"account": _summary(account)})


@router.put("/accounts/{account_id}/status", response_model=ApiEnvelope)
def update_account_status(
    account_id: str,
    payload: StatusUpdateRequest,
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Activate or deactivate an account, never the last active admin."""
    try:
        account = service.set_active(account_id, payload.active, actor=actor)
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_400_BAD_REQUEST) from exc
    verb = "activated" if payload.active else "deactivated"
    return _ok(f"Account {verb}", {"account": _summary(account)})


@router.delete("/accounts/{account_id}", response_model=ApiEnvelope)
def delete_account(
    account_id: str,
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Permanently delete an account and the resources it owns."""
    try:
        service.delete_account(account_id, actor=actor)
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_403_FORBIDDEN) from exc
    return _ok("Account deleted")


@router.get("/audit/logs", response_model=ApiEnvelope)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    actor: str = Depends(require_admin),
    service: AdminGovernanceService = Depends(get_service),
) -> ApiEnvelope:
    """Return paginated governance audit events with optional filtering."""
    try:
        records, next_cursor = service.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise ApiError(status.HTTP_400_BAD_REQUEST, str(exc)) from exc
    except GovernanceError as exc:
        raise _translate(exc, conflict_status=status.HTTP_409_CONFLICT) from exc

    items = [
        {
            "audit_id": record.audit_id,
            "account_id": record.account_id,
            "event_type": record.event_type,
            "actor": record.actor,
            "metadata": record.metadata,
            "created_at": record.created_at.isoformat(),
        }
        for record in records
    ]
    return _ok("Audit log", {"items": items, "next_cursor": next_cursor})
