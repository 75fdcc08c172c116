"""
Device service — mobile device registration, account creation and
email-code login.

Device credential:
  A random 32-byte secret issued to each device. The device gets the
  plaintext once per registration call; the database only ever holds the
  vault-encrypted form. Re-registering a known device returns the same
  credential until it expires, then rotates it.

Login by email code:
  /auth/login stores a LoginChallenge {email, 6-digit code} in the
  login-challenge store for 5 minutes under a random challenge id.
  /auth/login/verify takes the challenge out of the store before checking
  the code, so each challenge gets exactly one verification attempt;
  a wrong code means asking for a new one.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.exceptions import ConflictError, NotAuthenticatedError, NotFoundError
from wsim.models.device import MobileDevice
from wsim.models.user import WalletUser
from wsim.security import decrypt, encrypt, generate_token
from wsim.services import token_service
from wsim.services.correlation_store import CorrelationStore
from wsim.services.token_service import TokenPair

logger = logging.getLogger(__name__)


@dataclass
class LoginChallenge:
    email: str
    code: str


@dataclass
class DeviceRegistration:
    device_credential: str
    expires_at: datetime


def _new_credential() -> tuple[str, datetime]:
    expiry = datetime.now(timezone.utc) + timedelta(
        seconds=settings.MOBILE_DEVICE_CREDENTIAL_EXPIRY
    )
    return generate_token(32), expiry


def split_name(name: str) -> tuple[str, str]:
    """'Ada King Lovelace' -> ('Ada', 'King Lovelace')."""
    parts = name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


async def get_device(db: AsyncSession, device_id: str) -> MobileDevice | None:
    result = await db.execute(select(MobileDevice).where(MobileDevice.device_id == device_id))
    return result.scalar_one_or_none()


async def register_device(
    db: AsyncSession,
    device_id: str,
    platform: str,
    device_name: str,
    push_token: str | None = None,
    push_token_type: str | None = None,
) -> DeviceRegistration:
    """
    Pre-register a device (no user yet) or refresh a known one.

    A known device keeps its owner; only its name and push token change.
    """
    device = await get_device(db, device_id)
    now = datetime.now(timezone.utc)

    if device is None:
        credential, expiry = _new_credential()
        device = MobileDevice(
            device_id=device_id,
            platform=platform,
            device_name=device_name,
            device_credential=encrypt(credential),
            credential_expiry=expiry,
            push_token=push_token,
            push_token_type=push_token_type,
            push_token_active=push_token is not None,
        )
        db.add(device)
        await db.flush()
        logger.info("Device pre-registered: %s (%s)", device_id, platform)
        return DeviceRegistration(device_credential=credential, expires_at=expiry)

    device.device_name = device_name
    if push_token:
        device.push_token = push_token
        device.push_token_type = push_token_type or device.push_token_type
        device.push_token_active = True

    if device.credential_expiry <= now:
        credential, expiry = _new_credential()
        device.device_credential = encrypt(credential)
        device.credential_expiry = expiry
    else:
        credential = decrypt(device.device_credential)

    await db.flush()
    logger.info("Device updated: %s (%s)", device_id, platform)
    return DeviceRegistration(device_credential=credential, expires_at=device.credential_expiry)


async def register_account(
    db: AsyncSession,
    email: str,
    name: str,
    device_id: str,
    device_name: str,
    platform: str,
) -> tuple[WalletUser, TokenPair]:
    """
    Create a wallet user and bind the calling device to it.

    User, device and first refresh token are written in the request's
    transaction, so a failure leaves none of them behind.

    Raises:
        ConflictError: "conflict" if the email is taken, "device_conflict"
            if the device already belongs to a user.
    """
    email = email.strip().lower()
    existing = await db.execute(select(WalletUser).where(WalletUser.email == email))
    if existing.scalar_one_or_none() is not None:
        raise ConflictError("An account with this email already exists. Use login instead.")

    device = await get_device(db, device_id)
    if device is not None and device.user_id is not None:
        raise ConflictError(
            "This device is already registered. Use login instead.",
            error_code="device_conflict",
        )

    first_name, last_name = split_name(name)
    user = WalletUser(email=email, first_name=first_name, last_name=last_name)
    db.add(user)
    await db.flush()

    credential, expiry = _new_credential()
    if device is None:
        device = MobileDevice(
            device_id=device_id,
            platform=platform,
            device_name=device_name,
        )
        db.add(device)
    device.user_id = user.id
    device.device_name = device_name
    device.device_credential = encrypt(credential)
    device.credential_expiry = expiry
    device.last_used_at = datetime.now(timezone.utc)
    await db.flush()

    tokens = await token_service.issue_token_pair(db, user.id, device_id)
    logger.info("New user %s registered from device %s", user.id, device_id)
    return user, tokens


async def start_login(
    db: AsyncSession,
    store: CorrelationStore,
    email: str,
) -> tuple[str, str]:
    """
    Issue a login challenge for an existing user.

    Returns:
        (challenge_id, code). Delivering the code is the caller's concern.

    Raises:
        NotFoundError: If no user has this email.
    """
    email = email.strip().lower()
    result = await db.execute(select(WalletUser).where(WalletUser.email == email))
    if result.scalar_one_or_none() is None:
        raise NotFoundError("No account found with this email")

    challenge_id = str(uuid.uuid4())
    code = str(100000 + secrets.randbelow(900000))
    await store.put(
        challenge_id,
        LoginChallenge(email=email, code=code),
        settings.LOGIN_CHALLENGE_TTL_SECONDS,
    )
    return challenge_id, code


async def verify_login(
    db: AsyncSession,
    store: CorrelationStore,
    challenge_id: str,
    code: str,
    device_id: str,
    device_name: str,
    platform: str,
) -> tuple[WalletUser, TokenPair]:
    """
    Redeem a login challenge and bind the device to the user.

    Raises:
        NotAuthenticatedError: Unknown, expired or already-used challenge,
            or a wrong code.
        NotFoundError: If the user disappeared in the meantime.
    """
    challenge: LoginChallenge | None = await store.take_once(challenge_id)
    if challenge is None:
        raise NotAuthenticatedError("Invalid or expired challenge")
    if not secrets.compare_digest(challenge.code, code):
        raise NotAuthenticatedError("Invalid verification code")

    result = await db.execute(select(WalletUser).where(WalletUser.email == challenge.email))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")

    credential, expiry = _new_credential()
    now = datetime.now(timezone.utc)
    device = await get_device(db, device_id)
    if device is None:
        device = MobileDevice(device_id=device_id, platform=platform)
        db.add(device)
    elif device.user_id is not None and device.user_id != user.id:
        logger.info("Device %s re-bound from user %s to %s", device_id, device.user_id, user.id)
    device.user_id = user.id
    device.device_name = device_name
    device.device_credential = encrypt(credential)
    device.credential_expiry = expiry
    device.last_used_at = now
    await db.flush()

    tokens = await token_service.issue_token_pair(db, user.id, device_id)
    logger.info("User %s logged in from device %s", user.id, device_id)
    return user, tokens


async def logout(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str,
    revoke_all: bool = False,
) -> int:
    """
    Revoke refresh tokens and silence push notifications.

    revoke_all covers every device the user is signed in on; otherwise only
    the calling device. Devices are kept; only their push token goes
    inactive.
    """
    revoked = await token_service.revoke_tokens(
        db, user_id, None if revoke_all else device_id
    )

    query = (
        update(MobileDevice)
        .where(MobileDevice.user_id == user_id)
        .values(push_token_active=False)
    )
    if not revoke_all:
        query = query.where(MobileDevice.device_id == device_id)
    await db.execute(query)

    logger.info(
        "Logged out user %s (%s); revoked %d tokens",
        user_id, "all devices" if revoke_all else device_id, revoked,
    )
    return revoked
