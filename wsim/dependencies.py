"""
FastAPI dependencies: authentication schemes and shared services.

Each endpoint family proves identity its own way, and the dependencies
here turn that proof into something the service engines understand:

  get_current_user     web session (cookie "wsim_session" or Bearer) -> WalletUser
  get_mobile_caller    mobile access token (Bearer)                  -> CallerContext
  get_merchant         merchant API key (x-api-key header)           -> Merchant
  require_test_key     shared e2e secret (x-test-key header), never in production

Optional variants return None instead of raising so an endpoint can accept
more than one scheme (cancelling a payment works for the merchant or for
the bound mobile user).

Shared services are process-wide singletons exposed through getters so
tests can swap them with app.dependency_overrides:

  get_provider_registry, get_bsim_client,
  get_enrollment_store, get_login_challenge_store
"""

import secrets
import uuid

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.context import CallerContext
from wsim.database import get_db
from wsim.exceptions import NotAuthenticatedError, NotFoundError, PaymentError
from wsim.models.merchant import Merchant
from wsim.models.user import WalletUser
from wsim.security import SESSION_TOKEN_TYPE, decode_session_token
from wsim.services import auth_service, payment_service, token_service
from wsim.services.bsim_client import BsimClient
from wsim.services.correlation_store import CorrelationStore, InMemoryCorrelationStore
from wsim.services.providers import ProviderRegistry

SESSION_COOKIE = "wsim_session"
ENROLLMENT_COOKIE = "wsim_enrollment"

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Shared services
# ---------------------------------------------------------------------------

provider_registry = ProviderRegistry.from_settings()
bsim_client = BsimClient()
enrollment_store = InMemoryCorrelationStore(
    "enrollment", settings.CORRELATION_SWEEP_INTERVAL_SECONDS
)
login_challenge_store = InMemoryCorrelationStore(
    "login-challenge", settings.CORRELATION_SWEEP_INTERVAL_SECONDS
)


def get_provider_registry() -> ProviderRegistry:
    return provider_registry


def get_bsim_client() -> BsimClient:
    return bsim_client


def get_enrollment_store() -> CorrelationStore:
    return enrollment_store


def get_login_challenge_store() -> CorrelationStore:
    return login_challenge_store


# ---------------------------------------------------------------------------
# Web session
# ---------------------------------------------------------------------------

async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> WalletUser:
    """
    Resolve the web session to a WalletUser.

    The session cookie set by the enrollment callback or password login is
    preferred; a Bearer token carrying the same JWT is accepted for API
    clients.

    Raises:
        NotAuthenticatedError: Missing, invalid or expired session, or the
            user no longer exists.
    """
    token = request.cookies.get(SESSION_COOKIE)
    if token is None and credentials is not None:
        token = credentials.credentials
    if not token:
        raise NotAuthenticatedError("Not authenticated")

    try:
        payload = decode_session_token(token)
        if payload.get("type") != SESSION_TOKEN_TYPE:
            raise NotAuthenticatedError("Invalid session")
        user_id = uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        raise NotAuthenticatedError("Invalid or expired session")

    user = await auth_service.get_user(db, user_id)
    if user is None:
        raise NotAuthenticatedError("Invalid or expired session")
    return user


# ---------------------------------------------------------------------------
# Mobile
# ---------------------------------------------------------------------------

async def get_optional_mobile_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerContext | None:
    if credentials is None:
        return None
    user_id, device_id = token_service.verify_access_token(credentials.credentials)
    return CallerContext(user_id=user_id, device_id=device_id)


async def get_mobile_caller(
    caller: CallerContext | None = Depends(get_optional_mobile_caller),
) -> CallerContext:
    """
    Require a valid mobile access token.

    Raises:
        NotAuthenticatedError: No token, or one that is invalid, expired,
            or not an access token.
    """
    if caller is None:
        raise NotAuthenticatedError("Missing or invalid authorization header")
    return caller


# ---------------------------------------------------------------------------
# Merchants
# ---------------------------------------------------------------------------

async def get_optional_merchant(
    x_api_key: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Merchant | None:
    if x_api_key is None:
        return None
    merchant = await payment_service.get_merchant_by_api_key(db, x_api_key)
    if merchant is None:
        raise PaymentError("INVALID_API_KEY", "Invalid API key")
    return merchant


async def get_merchant(
    merchant: Merchant | None = Depends(get_optional_merchant),
) -> Merchant:
    if merchant is None:
        raise PaymentError("UNAUTHORIZED", "x-api-key header is required")
    return merchant


# ---------------------------------------------------------------------------
# End-to-end test shortcut
# ---------------------------------------------------------------------------

async def require_test_key(x_test_key: str | None = Header(default=None)) -> None:
    """
    Guard the test-approve shortcut.

    Production answers 404 so the endpoint looks absent; elsewhere the
    shared x-test-key header must match E2E_TEST_KEY.
    """
    if settings.is_production:
        raise NotFoundError("Not found")
    if x_test_key is None or not secrets.compare_digest(x_test_key, settings.E2E_TEST_KEY):
        raise PaymentError("UNAUTHORIZED", "Invalid or missing test key")
