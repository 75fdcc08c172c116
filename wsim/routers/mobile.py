"""
Mobile router — device registration, mobile auth and bank enrollment.

Endpoints (all under /api/mobile):
  POST   /device/register                 — Pre-register or refresh a device (no auth)
  POST   /auth/register                   — Create an account bound to this device
  POST   /auth/login                      — Email a 6-digit code
  POST   /auth/login/verify               — Redeem the code for tokens
  POST   /auth/token/refresh              — Rotate the refresh token
  POST   /auth/logout                     — Revoke tokens (?revoke_all=true for every device)
  GET    /enrollment/banks                — Configured banks
  POST   /enrollment/start/{bsim_id}      — Begin OIDC for the signed-in user
  GET    /enrollment/callback/{bsim_id}   — Bank redirects here; we deep-link back to the app
  GET    /enrollment/list                 — The user's linked banks
  DELETE /enrollment/{enrollment_id}      — Unlink a bank

The app has no cookie jar, so mobile enrollment finds its pending record by
the bank and the OIDC state, and the callback answers with an mwsim:// deep link
instead of a web page.
"""

import logging
import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.context import CallerContext
from wsim.database import get_db
from wsim.dependencies import (
    get_bsim_client,
    get_enrollment_store,
    get_login_challenge_store,
    get_mobile_caller,
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
    MobileEnrollmentStartResponse,
)
from wsim.schemas.mobile import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    LogoutResponse,
    MobileAuthResponse,
    MobileLoginRequest,
    MobileLoginResponse,
    MobileLoginVerifyRequest,
    MobileRegisterRequest,
    MobileUserResponse,
    RefreshRequest,
    TokenPairResponse,
)
from wsim.services import device_service, enrollment_service, token_service
from wsim.services.bsim_client import BsimClient
from wsim.services.correlation_store import CorrelationStore
from wsim.services.providers import ProviderRegistry
from wsim.services.token_service import TokenPair

logger = logging.getLogger(__name__)

router = APIRouter()


def _auth_response(user: WalletUser, tokens: TokenPair) -> MobileAuthResponse:
    return MobileAuthResponse(
        user=MobileUserResponse(
            id=user.id,
            email=user.email,
            name=user.display_name,
            wallet_id=user.wallet_id,
        ),
        tokens=TokenPairResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        ),
    )


def _deep_link(**params) -> str:
    scheme = settings.MOBILE_DEEP_LINK_SCHEME
    return f"{scheme}://enrollment/callback?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Device & auth
# ---------------------------------------------------------------------------

@router.post(
    "/device/register",
    response_model=DeviceRegisterResponse,
    summary="Register a device",
)
async def register_device(
    body: DeviceRegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Issue (or return) the device credential.

    The plaintext credential is only ever in this response; the database
    keeps it encrypted.
    """
    registration = await device_service.register_device(
        db,
        device_id=body.device_id,
        platform=body.platform,
        device_name=body.device_name,
        push_token=body.push_token,
        push_token_type=body.push_token_type,
    )
    return DeviceRegisterResponse(
        device_credential=registration.device_credential,
        expires_at=registration.expires_at,
    )


@router.post(
    "/auth/register",
    response_model=MobileAuthResponse,
    status_code=201,
    summary="Create an account",
)
async def register(
    body: MobileRegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Create a wallet account and bind this device to it.

    409 "conflict" if the email is taken, 409 "device_conflict" if the
    device already belongs to someone.
    """
    user, tokens = await device_service.register_account(
        db,
        email=body.email,
        name=body.name,
        device_id=body.device_id,
        device_name=body.device_name,
        platform=body.platform,
    )
    return _auth_response(user, tokens)


@router.post("/auth/login", response_model=MobileLoginResponse, summary="Request a login code")
async def login(
    body: MobileLoginRequest,
    db: AsyncSession = Depends(get_db),
    store: CorrelationStore = Depends(get_login_challenge_store),
):
    challenge_id, code = await device_service.start_login(db, store, body.email)
    if settings.is_production:
        return MobileLoginResponse(challenge=challenge_id)

    # No email delivery outside production; the code is echoed instead
    logger.info("Login code for %s: %s", body.email, code)
    return MobileLoginResponse(challenge=challenge_id, dev_code=code)


@router.post("/auth/login/verify", response_model=MobileAuthResponse, summary="Verify a login code")
async def verify_login(
    body: MobileLoginVerifyRequest,
    db: AsyncSession = Depends(get_db),
    store: CorrelationStore = Depends(get_login_challenge_store),
):
    """Each challenge allows one attempt; a wrong code means requesting a new one."""
    user, tokens = await device_service.verify_login(
        db,
        store,
        challenge_id=body.challenge,
        code=body.code,
        device_id=body.device_id,
        device_name=body.device_name,
        platform=body.platform,
    )
    return _auth_response(user, tokens)


@router.post("/auth/token/refresh", response_model=TokenPairResponse, summary="Refresh tokens")
async def refresh(
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Trade a refresh token for a new pair. The old refresh token is dead
    afterwards; presenting it again revokes every token on the device.
    """
    tokens = await token_service.rotate_refresh_token(db, body.refresh_token)
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
    )


@router.post("/auth/logout", response_model=LogoutResponse, summary="Log out")
async def logout(
    revoke_all: bool = False,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    revoked = await device_service.logout(db, caller.user_id, caller.device_id, revoke_all)
    return LogoutResponse(revoked_tokens=revoked)


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------

@router.get("/enrollment/banks", response_model=BankListResponse, summary="List available banks")
async def list_banks(registry: ProviderRegistry = Depends(get_provider_registry)):
    return BankListResponse(banks=[
        BankResponse(bsim_id=p.bsim_id, name=p.name, logo_url=p.logo_url)
        for p in registry.list_providers()
    ])


@router.post(
    "/enrollment/start/{bsim_id}",
    response_model=MobileEnrollmentStartResponse,
    summary="Start linking a bank",
)
async def start_enrollment(
    bsim_id: str,
    body: EnrollmentStartRequest | None = None,
    caller: CallerContext = Depends(get_mobile_caller),
    registry: ProviderRegistry = Depends(get_provider_registry),
    bsim_client: BsimClient = Depends(get_bsim_client),
    store: CorrelationStore = Depends(get_enrollment_store),
):
    started = await enrollment_service.start_enrollment(
        registry=registry,
        bsim_client=bsim_client,
        store=store,
        bsim_id=bsim_id,
        caller=caller,
        password=body.password if body else None,
    )
    return MobileEnrollmentStartResponse(
        auth_url=started.auth_url,
        bsim_id=started.provider.bsim_id,
        bank_name=started.provider.name,
        state=started.state,
        callback_url_pattern=enrollment_service.callback_redirect_uri(bsim_id, mobile=True),
    )


@router.get("/enrollment/callback/{bsim_id}", summary="OIDC callback from the bank")
async def enrollment_callback(
    bsim_id: str,
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
    Finish the enrollment and deep-link back into the app.

    Success: mwsim://enrollment/callback?success=true&bsimId=..&bankName=..&cardCount=..
    Failure: mwsim://enrollment/callback?success=false&error=..&message=..
    """
    try:
        result = await enrollment_service.complete_enrollment(
            db=db,
            registry=registry,
            bsim_client=bsim_client,
            store=store,
            bsim_id=bsim_id,
            correlation_id=None,
            code=code,
            state=state,
            error=error,
            error_description=error_description,
            mobile=True,
        )
    except EnrollmentCallbackError as exc:
        params = {"success": "false", "error": exc.code}
        if exc.message:
            params["message"] = exc.message
        return RedirectResponse(_deep_link(**params), status_code=302)

    return RedirectResponse(
        _deep_link(
            success="true",
            bsimId=bsim_id,
            bankName=result.provider.name,
            cardCount=str(result.card_count),
        ),
        status_code=302,
    )


@router.get("/enrollment/list", response_model=EnrollmentListResponse, summary="List linked banks")
async def list_enrollments(
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    summaries = await enrollment_service.list_enrollments(db, registry, caller.user_id)
    return EnrollmentListResponse(
        enrollments=[EnrollmentResponse.model_validate(s) for s in summaries]
    )


@router.delete(
    "/enrollment/{enrollment_id}",
    response_model=EnrollmentDeleteResponse,
    summary="Unlink a bank",
)
async def delete_enrollment(
    enrollment_id: uuid.UUID,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    removed = await enrollment_service.delete_enrollment(db, caller.user_id, enrollment_id)
    return EnrollmentDeleteResponse(cards_removed=removed)
