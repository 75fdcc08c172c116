"""
Web auth router — password login, logout and the current user.

Endpoints:
  POST /api/auth/login   — Email + password, sets the session cookie
  POST /api/auth/logout  — Clears the session cookie
  GET  /api/auth/me      — The signed-in user

There is no signup: web accounts are created by the enrollment callback,
and the first bank link is how a browser first signs in.

Security notes:
  - The session JWT is set as an HTTP-only cookie (not readable from
    JavaScript) and also returned in the body for API clients.
  - Plaintext passwords only exist in memory during the request; they are
    never logged.
"""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.database import get_db
from wsim.dependencies import SESSION_COOKIE, get_current_user
from wsim.models.user import WalletUser
from wsim.schemas.auth import LoginResponse, SuccessResponse, UserLoginRequest, UserResponse
from wsim.services import auth_service

router = APIRouter()


@router.post("/login", response_model=LoginResponse, summary="Log in with a password")
async def login(
    body: UserLoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """
    Authenticate with the password chosen at enrollment.

    Returns 401 with the same message whether the email is unknown, the
    password is wrong, or the account has no password.
    """
    user, token = await auth_service.login(db, body.email, body.password)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.SESSION_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return LoginResponse(user=UserResponse.model_validate(user), token=token)


@router.post("/logout", response_model=SuccessResponse, summary="Log out")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return SuccessResponse()


@router.get("/me", response_model=UserResponse, summary="Current user")
async def me(user: WalletUser = Depends(get_current_user)):
    return user
