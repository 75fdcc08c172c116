"""
Token service — mobile access and refresh tokens.

Both token types are HS256 JWTs signed with MOBILE_JWT_SECRET and carry the
wallet as issuer (APP_URL) and the mobile app as audience ("mwsim"):

  access:  {sub: user_id, deviceId, type: "access"}          1 hour
  refresh: {sub: user_id, deviceId, type: "refresh", jti}    30 days

Every refresh token issued has a MobileRefreshToken row keyed by its jti.

Rotation:
  Redeeming a refresh token revokes its row with a conditional UPDATE
  (only an unrevoked, unexpired row matches) and issues a brand new pair.
  If nothing matched, the token was unknown, expired or already used.
  A used token coming back means someone else may hold a copy, so every
  token for that (user, device) is revoked and the caller must log in
  again. Two concurrent redemptions of the same token cannot both win:
  only one UPDATE affects the row.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import jwt, JWTError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.exceptions import NotAuthenticatedError
from wsim.models.device import MobileDevice, MobileRefreshToken

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


def _encode(claims: dict, lifetime_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    claims.update({
        "iss": settings.APP_URL,
        "aud": settings.MOBILE_TOKEN_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(seconds=lifetime_seconds),
    })
    return jwt.encode(claims, settings.MOBILE_JWT_SECRET, algorithm=settings.ALGORITHM)


def create_access_token(user_id: uuid.UUID, device_id: str) -> str:
    return _encode(
        {"sub": str(user_id), "deviceId": device_id, "type": ACCESS_TOKEN_TYPE},
        settings.MOBILE_ACCESS_TOKEN_EXPIRY,
    )


def create_refresh_token(user_id: uuid.UUID, device_id: str) -> tuple[str, str]:
    """Returns (signed_token, jti)."""
    jti = str(uuid.uuid4())
    token = _encode(
        {"sub": str(user_id), "deviceId": device_id, "type": REFRESH_TOKEN_TYPE, "jti": jti},
        settings.MOBILE_REFRESH_TOKEN_EXPIRY,
    )
    return token, jti


def decode_mobile_token(token: str) -> dict:
    """
    Verify signature, expiry, issuer and audience of a mobile token.

    Raises:
        JWTError: If any check fails.
    """
    return jwt.decode(
        token,
        settings.MOBILE_JWT_SECRET,
        algorithms=[settings.ALGORITHM],
        audience=settings.MOBILE_TOKEN_AUDIENCE,
        issuer=settings.APP_URL,
    )


def verify_access_token(token: str) -> tuple[uuid.UUID, str]:
    """
    Return (user_id, device_id) for a valid access token.

    Raises:
        NotAuthenticatedError: For anything that is not a live access token.
    """
    try:
        payload = decode_mobile_token(token)
        if payload.get("type") != ACCESS_TOKEN_TYPE or not payload.get("deviceId"):
            raise NotAuthenticatedError("Invalid or expired access token")
        return uuid.UUID(payload["sub"]), payload["deviceId"]
    except (JWTError, KeyError, ValueError):
        raise NotAuthenticatedError("Invalid or expired access token")


async def issue_token_pair(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str,
) -> TokenPair:
    """Mint an access/refresh pair and persist the refresh token's record."""
    access_token = create_access_token(user_id, device_id)
    refresh_token, jti = create_refresh_token(user_id, device_id)

    db.add(MobileRefreshToken(
        token=jti,
        user_id=user_id,
        device_id=device_id,
        expires_at=datetime.now(timezone.utc)
        + timedelta(seconds=settings.MOBILE_REFRESH_TOKEN_EXPIRY),
    ))
    await db.flush()

    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.MOBILE_ACCESS_TOKEN_EXPIRY,
    )


async def revoke_tokens(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str | None = None,
) -> int:
    """Revoke the user's live refresh tokens, for one device or all of them."""
    query = (
        update(MobileRefreshToken)
        .where(
            MobileRefreshToken.user_id == user_id,
            MobileRefreshToken.revoked_at.is_(None),
        )
        .values(revoked_at=datetime.now(timezone.utc))
    )
    if device_id is not None:
        query = query.where(MobileRefreshToken.device_id == device_id)
    result = await db.execute(query)
    return result.rowcount


async def rotate_refresh_token(db: AsyncSession, refresh_token: str) -> TokenPair:
    """
    Redeem a refresh token for a new pair.

    Raises:
        NotAuthenticatedError: If the token is invalid, or is valid but its
            record is unknown, expired or already revoked. In the latter case
            all of the (user, device) tokens are revoked first.
    """
    try:
        payload = decode_mobile_token(refresh_token)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise NotAuthenticatedError("Invalid refresh token")
        user_id = uuid.UUID(payload["sub"])
        device_id = payload["deviceId"]
        jti = payload["jti"]
    except (JWTError, KeyError, ValueError):
        raise NotAuthenticatedError("Invalid refresh token")

    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(MobileRefreshToken)
        .where(
            MobileRefreshToken.token == jti,
            MobileRefreshToken.user_id == user_id,
            MobileRefreshToken.device_id == device_id,
            MobileRefreshToken.revoked_at.is_(None),
            MobileRefreshToken.expires_at > now,
        )
        .values(revoked_at=now)
    )

    if result.rowcount != 1:
        revoked = await revoke_tokens(db, user_id, device_id)
        logger.warning(
            "Possible refresh token reuse for user %s device %s; revoked %d tokens",
            user_id, device_id, revoked,
        )
        raise NotAuthenticatedError("Invalid or revoked refresh token. Please login again.")

    await db.execute(
        update(MobileDevice)
        .where(MobileDevice.device_id == device_id)
        .values(last_used_at=now)
    )
    return await issue_token_pair(db, user_id, device_id)
