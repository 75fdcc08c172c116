"""
Web enrollment router — linking a bank from the browser.

Endpoints:
  GET    /api/enrollment/banks                — Configured banks
  POST   /api/enrollment/start/{bsim_id}      — Begin OIDC, returns the bank's auth URL
  GET    /api/enrollment/callback/{bsim_id}   — Bank redirects here; we redirect to the frontend
  GET    /api/enrollment/list                 — The user's linked banks
  DELETE /api/enrollment/{enrollment_id}      — Unlink a bank and drop its cards

The browser that starts an enrollment may not have a session yet (first
visit), so start is anonymous. The correlation id lives in an HTTP-only
cookie scoped to this router's path, and the callback signs the user in
(session cookie) once the bank has vouched for their email.
"""

import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.context import ANONYMOUS
from wsim.database import get_db
from wsim.dependencies import (
    ENROLLMENT_COOKIE,
    SESSION_COOKIE,
    get_bsim_client,
    get_current_user,
    get_enrollment_store,
    get_provider_registry,
)
from wsim.exceptions import EnrollmentCallbackError
from wsim.models.user import WalletUser
from wsim.schemas.enrollment import (
    BankListResponse,
    BankResponse,
    EnrollmentDeleteResponse,
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollmentStartRequest,
    EnrollmentStartResponse,
)
from wsim.security import create_session_token
from wsim.services import enrollment_service
from wsim.services.bsim_client import BsimClient
from wsim.services.correlation_store import CorrelationStore
from wsim.services.providers import ProviderRegistry

router = APIRouter()

ENROLLMENT_COOKIE_PATH = "/api/enrollment"


def _frontend(path: str, **params) -> str:
    url = f"{settings.FRONTEND_URL.rstrip('/')}{path}"
    return f"{url}?{urlencode(params)}" if params else url


@router.get("/banks", response_model=BankListResponse, summary="List available banks")
async def list_banks(registry: ProviderRegistry = Depends(get_provider_registry)):
    return BankListResponse(banks=[
        BankResponse(bsim_id=p.bsim_id, name=p.name, logo_url=p.logo_url)
        for p in registry.list_providers()
    ])


@router.post(
    "/start/{bsim_id}",
    response_model=EnrollmentStartResponse,
    summary="Start linking a bank",
)
async def start_enrollment(
    bsim_id: str,
    response: Response,
    body: EnrollmentStartRequest | None = None,
    registry: ProviderRegistry = Depends(get_provider_registry),
    bsim_client: BsimClient = Depends(get_bsim_client),
    store: CorrelationStore = Depends(get_enrollment_store),
):
    """
    Build the bank's authorization URL for the browser to visit.

    - **password**: Optional; 8+ characters enables password login later
    """
    started = await enrollment_service.start_enrollment(
        registry=registry,
        bsim_client=bsim_client,
        store=store,
        bsim_id=bsim_id,
        caller=ANONYMOUS,
        password=body.password if body else None,
    )

    response.set_cookie(
        ENROLLMENT_COOKIE,
        started.correlation_id,
        max_age=settings.ENROLLMENT_STATE_TTL_SECONDS,
        path=ENROLLMENT_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return EnrollmentStartResponse(
        auth_url=started.auth_url,
        bsim_id=started.provider.bsim_id,
        bank_name=started.provider.name,
    )


@router.get("/callback/{bsim_id}", summary="OIDC callback from the bank")
async def enrollment_callback(
    bsim_id: str,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    bsim_client: BsimClient = Depends(get_bsim_client),
    store: CorrelationStore = Depends(get_enrollment_store),
):
    """
    Finish the enrollment and send the browser back to the wallet.

    Success: {FRONTEND_URL}/wallet?enrolled={bsim_id}, with a session cookie.
    Failure: {FRONTEND_URL}/enroll?error={code}&message={text}.
    """
    try:
        result = await enrollment_service.complete_enrollment(
            db=db,
            registry=registry,
            bsim_client=bsim_client,
            store=store,
            bsim_id=bsim_id,
            correlation_id=request.cookies.get(ENROLLMENT_COOKIE),
            code=code,
            state=state,
            error=error,
            error_description=error_description,
        )
    except EnrollmentCallbackError as exc:
        params = {"error": exc.code}
        if exc.message:
            params["message"] = exc.message
        redirect = RedirectResponse(_frontend("/enroll", **params), status_code=302)
        # The enrollment session survives a callback routed to the wrong bank
        if exc.code != "invalid_bsim":
            redirect.delete_cookie(ENROLLMENT_COOKIE, path=ENROLLMENT_COOKIE_PATH)
        return redirect

    redirect = RedirectResponse(_frontend("/wallet", enrolled=bsim_id), status_code=302)
    redirect.delete_cookie(ENROLLMENT_COOKIE, path=ENROLLMENT_COOKIE_PATH)
    redirect.set_cookie(
        SESSION_COOKIE,
        create_session_token(str(result.user.id)),
        max_age=settings.SESSION_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return redirect


@router.get("/list", response_model=EnrollmentListResponse, summary="List linked banks")
async def list_enrollments(
    user: WalletUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    summaries = await enrollment_service.list_enrollments(db, registry, user.id)
    return EnrollmentListResponse(
        enrollments=[EnrollmentResponse.model_validate(s) for s in summaries]
    )


@router.delete(
    "/{enrollment_id}",
    response_model=EnrollmentDeleteResponse,
    summary="Unlink a bank",
)
async def delete_enrollment(
    enrollment_id: uuid.UUID,
    user: WalletUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Remove the enrollment and every card synced from it."""
    removed = await enrollment_service.delete_enrollment(db, user.id, enrollment_id)
    return EnrollmentDeleteResponse(cards_removed=removed)
