"""
Enrollment service — linking a bank to the wallet over OIDC.

One engine serves both the web wallet and the mobile app; the routers
differ only in how they authenticate, where they keep the correlation id
and where they redirect afterwards.

Flow:
  start_enrollment()
    1. Look up the bank, generate PKCE verifier/challenge, state and nonce
    2. Build the authorization URL (scope includes wallet:enroll)
    3. Store {bsim_id, state, nonce, verifier, password hash, caller} in the
       correlation store for 10 minutes under a correlation id
         - web: a random id the router puts in an HTTP-only cookie
         - mobile: "{bsim_id}:{state}" (the app has no cookie jar)

  complete_enrollment(), in this exact order:
    a. bank-reported error       -> passed through verbatim
    b. no authorization code     -> missing_code
    c. web: no correlation record -> invalid_session (missing, expired or replayed)
       mobile: nothing pending for (bank, state) -> invalid_state
    d. state mismatch            -> invalid_state
    e. bank id mismatch          -> invalid_bsim
       unknown bank              -> provider_not_found
    3. Exchange the code (PKCE verifier + nonce)
    4. Find-or-create the user by email (or load the mobile caller)
    5. Upsert the enrollment for (user, bank) with encrypted credentials
    6. Sync cards (best-effort: a failed fetch is logged, never fatal)
    7. Hand the result back so the router can establish the session

  Any failure in steps 3-7 becomes callback_failed carrying the message.
  The correlation record is consumed once it is checked, so it is released
  on every later exit path. The one exception is a web callback that
  reaches the wrong bank (step e): the record stays for the right callback.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.context import CallerContext
from wsim.exceptions import (
    EnrollmentCallbackError,
    ForbiddenError,
    NotFoundError,
    UpstreamBankError,
)
from wsim.models.card import WalletCard
from wsim.models.enrollment import BsimEnrollment
from wsim.models.user import WalletUser
from wsim.security import (
    MIN_PASSWORD_LENGTH,
    encrypt,
    generate_wallet_card_token,
    hash_password,
)
from wsim.services import wallet_service
from wsim.services.bsim_client import (
    BsimClient,
    BsimClientError,
    BsimTokenResponse,
    generate_nonce,
    generate_pkce,
    generate_state,
)
from wsim.services.correlation_store import CorrelationStore
from wsim.services.providers import ProviderConfig, ProviderRegistry

logger = logging.getLogger(__name__)

WEB_CALLBACK_PATH = "/api/enrollment/callback"
MOBILE_CALLBACK_PATH = "/api/mobile/enrollment/callback"


@dataclass
class EnrollmentState:
    """Correlation record kept between start and callback."""
    bsim_id: str
    state: str
    nonce: str
    code_verifier: str
    password_hash: str | None = None
    user_id: uuid.UUID | None = None
    device_id: str | None = None


@dataclass
class EnrollmentStart:
    auth_url: str
    correlation_id: str
    state: str
    provider: ProviderConfig


@dataclass
class EnrollmentResult:
    user: WalletUser
    enrollment: BsimEnrollment
    provider: ProviderConfig
    card_count: int


@dataclass
class EnrollmentSummary:
    id: uuid.UUID
    bsim_id: str
    bank_name: str
    logo_url: str | None
    card_count: int
    enrolled_at: datetime
    credential_expiry: datetime | None


def mobile_correlation_id(bsim_id: str, state: str) -> str:
    """Mobile records are found by the bank and the OIDC state together."""
    return f"{bsim_id}:{state}"


def callback_redirect_uri(bsim_id: str, mobile: bool) -> str:
    path = MOBILE_CALLBACK_PATH if mobile else WEB_CALLBACK_PATH
    return f"{settings.APP_URL.rstrip('/')}{path}/{bsim_id}"


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

async def start_enrollment(
    registry: ProviderRegistry,
    bsim_client: BsimClient,
    store: CorrelationStore,
    bsim_id: str,
    caller: CallerContext,
    password: str | None = None,
) -> EnrollmentStart:
    """
    Begin linking a bank.

    A password shorter than MIN_PASSWORD_LENGTH is ignored; a longer one is
    hashed now and applied to the user at callback time.

    Raises:
        NotFoundError: If the bank is not configured.
        UpstreamBankError: If the bank's OIDC discovery fails.
    """
    provider = registry.get(bsim_id)
    if provider is None:
        raise NotFoundError("Bank not found")

    password_hash = None
    if password and len(password) >= MIN_PASSWORD_LENGTH:
        password_hash = hash_password(password)

    code_verifier, code_challenge = generate_pkce()
    state = generate_state()
    nonce = generate_nonce()

    try:
        auth_url = await bsim_client.build_authorization_url(
            provider,
            callback_redirect_uri(bsim_id, caller.is_mobile),
            state,
            nonce,
            code_challenge,
        )
    except BsimClientError as exc:
        logger.error("Failed to build authorization URL for %s: %s", bsim_id, exc)
        raise UpstreamBankError(str(exc), error_code="enrollment_failed") from exc

    if caller.is_mobile:
        correlation_id = mobile_correlation_id(bsim_id, state)
    else:
        correlation_id = secrets.token_urlsafe(32)
    await store.put(
        correlation_id,
        EnrollmentState(
            bsim_id=bsim_id,
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            password_hash=password_hash,
            user_id=caller.user_id,
            device_id=caller.device_id,
        ),
        settings.ENROLLMENT_STATE_TTL_SECONDS,
    )

    logger.info("Starting enrollment for %s (user=%s)", bsim_id, caller.user_id)
    return EnrollmentStart(
        auth_url=auth_url,
        correlation_id=correlation_id,
        state=state,
        provider=provider,
    )


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------

async def complete_enrollment(
    db: AsyncSession,
    registry: ProviderRegistry,
    bsim_client: BsimClient,
    store: CorrelationStore,
    bsim_id: str,
    correlation_id: str | None,
    code: str | None,
    state: str | None,
    error: str | None = None,
    error_description: str | None = None,
    mobile: bool = False,
) -> EnrollmentResult:
    """
    Validate a bank callback and persist the enrollment.

    Raises:
        EnrollmentCallbackError: With a stable code for every failure; the
            routers turn it into a redirect.
    """
    if error:
        logger.warning("Bank %s reported enrollment error: %s", bsim_id, error)
        raise EnrollmentCallbackError(error, error_description or "")

    if not code:
        raise EnrollmentCallbackError("missing_code")

    if mobile:
        record = await _take_mobile_record(store, bsim_id, state)
    else:
        record = await _take_web_record(store, bsim_id, correlation_id, state)

    provider = registry.get(bsim_id)
    if provider is None:
        raise EnrollmentCallbackError("provider_not_found")

    try:
        tokens = await bsim_client.exchange_code(
            provider,
            callback_redirect_uri(bsim_id, mobile),
            code,
            record.code_verifier,
            record.nonce,
        )
        logger.info("Exchanged enrollment code with %s", bsim_id)

        if record.user_id is not None:
            user = await db.get(WalletUser, record.user_id)
            if user is None:
                raise EnrollmentCallbackError("user_not_found")
        else:
            user = await _upsert_user(db, tokens, record.password_hash)

        enrollment = await _upsert_enrollment(db, user, provider, tokens)
        card_count = await _sync_cards(db, bsim_client, user, enrollment, provider, tokens)
    except EnrollmentCallbackError:
        await db.rollback()
        raise
    except Exception as exc:
        logger.exception("Enrollment callback for %s failed", bsim_id)
        await db.rollback()
        raise EnrollmentCallbackError("callback_failed", str(exc) or "Unknown error") from exc

    logger.info("Enrollment with %s complete for user %s", bsim_id, user.id)
    return EnrollmentResult(
        user=user,
        enrollment=enrollment,
        provider=provider,
        card_count=card_count,
    )


async def _take_web_record(
    store: CorrelationStore,
    bsim_id: str,
    correlation_id: str | None,
    state: str | None,
) -> EnrollmentState:
    record: EnrollmentState | None = None
    if correlation_id:
        record = await store.peek(correlation_id)
    if record is None:
        logger.warning("No enrollment state for callback to %s", bsim_id)
        raise EnrollmentCallbackError("invalid_session")

    if state != record.state:
        await store.take_once(correlation_id)
        logger.warning("Enrollment state mismatch for %s", bsim_id)
        raise EnrollmentCallbackError("invalid_state")

    # Left in place: a callback routed to the wrong bank does not use up the session
    if bsim_id != record.bsim_id:
        logger.warning("Enrollment bank mismatch: %s != %s", bsim_id, record.bsim_id)
        raise EnrollmentCallbackError("invalid_bsim")

    record = await store.take_once(correlation_id)
    if record is None:
        raise EnrollmentCallbackError("invalid_session")
    return record


async def _take_mobile_record(
    store: CorrelationStore,
    bsim_id: str,
    state: str | None,
) -> EnrollmentState:
    record: EnrollmentState | None = None
    if state:
        record = await store.take_once(mobile_correlation_id(bsim_id, state))
    if record is None:
        logger.warning("No pending mobile enrollment at %s for this state", bsim_id)
        raise EnrollmentCallbackError("invalid_state")
    return record


async def _upsert_user(
    db: AsyncSession,
    tokens: BsimTokenResponse,
    password_hash: str | None,
) -> WalletUser:
    email = tokens.email.strip().lower()
    result = await db.execute(select(WalletUser).where(WalletUser.email == email))
    user = result.scalar_one_or_none()

    if user is None:
        user = WalletUser(
            email=email,
            first_name=tokens.first_name,
            last_name=tokens.last_name,
            password_hash=password_hash,
        )
        db.add(user)
        await db.flush()
        logger.info("Created wallet user %s", user.id)
        return user

    if tokens.first_name:
        user.first_name = tokens.first_name
    if tokens.last_name:
        user.last_name = tokens.last_name
    # A password is set at most once through this flow
    if user.password_hash is None and password_hash:
        user.password_hash = password_hash
    await db.flush()
    return user


async def _upsert_enrollment(
    db: AsyncSession,
    user: WalletUser,
    provider: ProviderConfig,
    tokens: BsimTokenResponse,
) -> BsimEnrollment:
    credential = tokens.wallet_credential or tokens.access_token
    refresh_token = encrypt(tokens.refresh_token) if tokens.refresh_token else None
    expiry = datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)

    result = await db.execute(
        select(BsimEnrollment).where(
            BsimEnrollment.user_id == user.id,
            BsimEnrollment.bsim_id == provider.bsim_id,
        )
    )
    enrollment = result.scalar_one_or_none()

    if enrollment is None:
        enrollment = BsimEnrollment(
            user_id=user.id,
            bsim_id=provider.bsim_id,
            bsim_issuer=provider.issuer,
            fi_user_ref=tokens.fi_user_ref,
            wallet_credential=encrypt(credential),
            refresh_token=refresh_token,
            credential_expiry=expiry,
        )
        db.add(enrollment)
    else:
        enrollment.wallet_credential = encrypt(credential)
        enrollment.refresh_token = refresh_token
        enrollment.credential_expiry = expiry

    await db.flush()
    return enrollment


async def _sync_cards(
    db: AsyncSession,
    bsim_client: BsimClient,
    user: WalletUser,
    enrollment: BsimEnrollment,
    provider: ProviderConfig,
    tokens: BsimTokenResponse,
) -> int:
    """Upsert the bank's cards; returns how many the bank reported (0 on failure)."""
    if not tokens.wallet_credential:
        logger.warning(
            "No wallet_credential from %s; the wallet:enroll scope may not have been granted",
            provider.bsim_id,
        )
    credential = tokens.wallet_credential or tokens.access_token

    try:
        cards = await bsim_client.fetch_cards(provider, credential)
    except BsimClientError as exc:
        logger.error("Card sync with %s failed: %s", provider.bsim_id, exc)
        return 0

    # One wallet card per ref; the last entry the bank sends for a ref wins
    by_ref = {bank_card.card_ref: bank_card for bank_card in cards}
    for bank_card in by_ref.values():
        result = await db.execute(
            select(WalletCard).where(
                WalletCard.enrollment_id == enrollment.id,
                WalletCard.bsim_card_ref == bank_card.card_ref,
            )
        )
        card = result.scalar_one_or_none()
        if card is None:
            db.add(WalletCard(
                user_id=user.id,
                enrollment_id=enrollment.id,
                card_type=bank_card.card_type,
                last_four=bank_card.last_four,
                cardholder_name=bank_card.cardholder_name,
                expiry_month=bank_card.expiry_month,
                expiry_year=bank_card.expiry_year,
                bsim_card_ref=bank_card.card_ref,
                wallet_card_token=generate_wallet_card_token(provider.bsim_id),
                is_active=bank_card.is_active,
            ))
        else:
            card.card_type = bank_card.card_type
            card.last_four = bank_card.last_four
            card.cardholder_name = bank_card.cardholder_name
            card.expiry_month = bank_card.expiry_month
            card.expiry_year = bank_card.expiry_year
            card.is_active = bank_card.is_active

    await db.flush()
    logger.info("Synced %d cards from %s", len(by_ref), provider.bsim_id)
    return len(by_ref)


# ---------------------------------------------------------------------------
# Listing and removal
# ---------------------------------------------------------------------------

async def list_enrollments(
    db: AsyncSession,
    registry: ProviderRegistry,
    user_id: uuid.UUID,
    active_cards_only: bool = False,
) -> list[EnrollmentSummary]:
    """The user's linked banks with their card counts, oldest first."""
    result = await db.execute(
        select(BsimEnrollment)
        .where(BsimEnrollment.user_id == user_id)
        .order_by(BsimEnrollment.created_at)
    )
    enrollments = result.scalars().all()
    counts = await wallet_service.count_cards_by_enrollment(
        db, user_id, active_only=active_cards_only
    )

    summaries = []
    for enrollment in enrollments:
        provider = registry.get(enrollment.bsim_id)
        summaries.append(EnrollmentSummary(
            id=enrollment.id,
            bsim_id=enrollment.bsim_id,
            bank_name=provider.name if provider else enrollment.bsim_id,
            logo_url=provider.logo_url if provider else None,
            card_count=counts.get(enrollment.id, 0),
            enrolled_at=enrollment.created_at,
            credential_expiry=enrollment.credential_expiry,
        ))
    return summaries


async def delete_enrollment(
    db: AsyncSession,
    user_id: uuid.UUID,
    enrollment_id: uuid.UUID,
) -> int:
    """
    Remove a bank link and every card that came with it.

    If the user's default card belonged to this enrollment, the newest
    remaining active card becomes the default.

    Returns:
        The number of cards deleted.

    Raises:
        NotFoundError: If the enrollment doesn't exist.
        ForbiddenError: If it belongs to another user.
    """
    enrollment = await db.get(BsimEnrollment, enrollment_id)
    if enrollment is None:
        raise NotFoundError("Enrollment not found")
    if enrollment.user_id != user_id:
        raise ForbiddenError("Not authorized to delete this enrollment")

    result = await db.execute(
        select(WalletCard).where(WalletCard.enrollment_id == enrollment.id)
    )
    cards = result.scalars().all()
    had_default = any(card.is_default and card.is_active for card in cards)

    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
    await db.execute(delete(WalletCard).where(WalletCard.enrollment_id == enrollment.id))
    await db.delete(enrollment)
    await db.flush()

    if had_default:
        await wallet_service.promote_default_card(db, user_id)

    logger.info("Deleted enrollment %s (%d cards) for user %s", enrollment_id, len(cards), user_id)
    return len(cards)
