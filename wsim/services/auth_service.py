"""
Authentication service — web wallet password login.

Web users are created by the enrollment callback, never by a signup form.
A password exists only if one was supplied when the user started an
enrollment, so password login is a second way back into an account the
bank flow already created.

Login flow:
  1. Look up user by (lower-cased) email
  2. Verify the password against the stored Argon2 hash
  3. Return a signed session token

Login returns the same error for "wrong password", "email not found" and
"no password set" so emails can't be enumerated through it.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.exceptions import NotAuthenticatedError
from wsim.models.user import WalletUser
from wsim.security import create_session_token, verify_password


async def login(
    db: AsyncSession,
    email: str,
    password: str,
) -> tuple[WalletUser, str]:
    """
    Authenticate a web user and return a session token.

    Raises:
        NotAuthenticatedError: If the credentials don't match.
    """
    result = await db.execute(
        select(WalletUser).where(WalletUser.email == email.strip().lower())
    )
    user = result.scalar_one_or_none()

    if user is None or user.password_hash is None:
        raise NotAuthenticatedError("Invalid email or password")
    if not verify_password(password, user.password_hash):
        raise NotAuthenticatedError("Invalid email or password")

    return user, create_session_token(str(user.id))


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> WalletUser | None:
    return await db.get(WalletUser, user_id)
