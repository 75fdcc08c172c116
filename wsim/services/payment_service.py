"""
Payment service — the mobile payment approval engine.

A merchant creates a payment request, the user reviews it in the mobile
app (reached through a deep link or QR code), picks a card and approves,
and the merchant's backend polls the status until it can redeem the
approval for card tokens.

State machine:

    pending ──approve──> approved ──complete──> completed
       ├──cancel──> cancelled
       └──(deadline)──> expired <──(extended deadline)── approved

Rules enforced here:
  - At most one pending request per (merchant_id, order_id). Creating a new
    request cancels the previous pending one for the same order.
  - Expiry is data, not a timer. Any read that finds a pending or approved
    request past its expires_at moves it to "expired" before answering.
  - The first mobile user to view a pending request is bound to it; any
    other user gets 403 from then on.
  - Approval asks the owning bank for an ephemeral card token using the
    enrollment's decrypted wallet credential. A bank failure leaves the
    request pending (502, nothing written).
  - Approval extends expires_at by PAYMENT_APPROVAL_GRACE_SECONDS on top of
    whatever time was left, so the merchant always gets a completion
    window however late the user approved.
  - The one-time token handed to the merchant is cleared when the payment
    completes, so it can be redeemed once.

Every transition is a conditional UPDATE filtered on the status the
request is expected to be in; the affected row count decides who won a
race (two approvals, an approval against a cancel, etc.).
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.exceptions import PaymentError
from wsim.models.card import WalletCard
from wsim.models.merchant import Merchant
from wsim.models.payment_request import MobilePaymentRequest, PaymentStatus
from wsim.schemas.order_details import OrderDetails
from wsim.security import VaultDecryptionError, decrypt, generate_token
from wsim.services import wallet_service
from wsim.services.bsim_client import BsimClient, BsimClientError
from wsim.services.providers import ProviderRegistry

logger = logging.getLogger(__name__)

# Tolerance for the structured breakdown vs. the authoritative amount
ORDER_TOTAL_TOLERANCE = 0.01


def deep_link_url(request_id: uuid.UUID) -> str:
    return f"{settings.MOBILE_DEEP_LINK_SCHEME}://payment/{request_id}"


def qr_code_url(request_id: uuid.UUID) -> str:
    """Universal link for the QR code: the web page offers to open the app."""
    return f"{settings.FRONTEND_URL.rstrip('/')}/pay/{request_id}"


async def get_merchant_by_api_key(db: AsyncSession, api_key: str) -> Merchant | None:
    result = await db.execute(select(Merchant).where(Merchant.api_key == api_key))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _get_request(db: AsyncSession, request_id: str | uuid.UUID) -> MobilePaymentRequest:
    try:
        key = request_id if isinstance(request_id, uuid.UUID) else uuid.UUID(str(request_id))
    except ValueError:
        raise PaymentError("PAYMENT_NOT_FOUND", "Payment request not found")

    payment = await db.get(MobilePaymentRequest, key)
    if payment is None:
        raise PaymentError("PAYMENT_NOT_FOUND", "Payment request not found")
    return payment


async def _conditional_update(
    db: AsyncSession,
    payment: MobilePaymentRequest,
    *criteria,
    **values,
) -> bool:
    """
    UPDATE the request only if `criteria` still hold.

    Returns True if this call changed the row. The instance is refreshed
    either way so callers see the current state.
    """
    values.setdefault("updated_at", datetime.now(timezone.utc))
    result = await db.execute(
        update(MobilePaymentRequest)
        .where(MobilePaymentRequest.id == payment.id, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    return result.rowcount == 1


async def _expire_if_due(db: AsyncSession, payment: MobilePaymentRequest) -> None:
    """Move a pending/approved request past its deadline to "expired"."""
    if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.APPROVED.value):
        return
    if payment.expires_at > datetime.now(timezone.utc):
        return

    previous = payment.status
    expired = await _conditional_update(
        db,
        payment,
        MobilePaymentRequest.status == previous,
        status=PaymentStatus.EXPIRED.value,
        one_time_token=None,
    )
    if expired:
        logger.info("Payment request %s expired (was %s)", payment.id, previous)


def _raise_not_pending(payment: MobilePaymentRequest) -> None:
    if payment.status == PaymentStatus.EXPIRED.value:
        raise PaymentError("PAYMENT_EXPIRED", "Payment request has expired")
    raise PaymentError(
        "PAYMENT_ALREADY_PROCESSED",
        f"Payment request is already {payment.status}",
    )


async def _load_pending(db: AsyncSession, request_id: str | uuid.UUID) -> MobilePaymentRequest:
    payment = await _get_request(db, request_id)
    await _expire_if_due(db, payment)
    if payment.status != PaymentStatus.PENDING.value:
        _raise_not_pending(payment)
    return payment


async def _bind_user(db: AsyncSession, payment: MobilePaymentRequest, user_id: uuid.UUID) -> None:
    """First viewer wins; everyone else is forbidden."""
    if payment.user_id is None:
        await _conditional_update(
            db,
            payment,
            MobilePaymentRequest.user_id.is_(None),
            MobilePaymentRequest.status == PaymentStatus.PENDING.value,
            user_id=user_id,
        )
    if payment.user_id != user_id:
        raise PaymentError("FORBIDDEN", "Payment request belongs to another user")


async def _resolve_card(db: AsyncSession, user_id: uuid.UUID, card_id: str) -> WalletCard:
    try:
        key = uuid.UUID(str(card_id))
    except ValueError:
        raise PaymentError("CARD_NOT_FOUND", "Card not found")
    card = await wallet_service.get_active_card(db, user_id, key)
    if card is None:
        raise PaymentError("CARD_NOT_FOUND", "Card not found")
    return card


async def _mark_approved(
    db: AsyncSession,
    payment: MobilePaymentRequest,
    user_id: uuid.UUID,
    card: WalletCard,
    card_token: str,
) -> MobilePaymentRequest:
    now = datetime.now(timezone.utc)
    # Remaining time plus the grace window
    new_expiry = payment.expires_at + timedelta(seconds=settings.PAYMENT_APPROVAL_GRACE_SECONDS)

    approved = await _conditional_update(
        db,
        payment,
        MobilePaymentRequest.status == PaymentStatus.PENDING.value,
        MobilePaymentRequest.expires_at > now,
        status=PaymentStatus.APPROVED.value,
        user_id=user_id,
        selected_card_id=card.id,
        card_token=card_token,
        wallet_card_token=card.wallet_card_token,
        one_time_token=generate_token(32),
        approved_at=now,
        expires_at=new_expiry,
    )
    if not approved:
        await _expire_if_due(db, payment)
        _raise_not_pending(payment)

    logger.info(
        "Payment request %s approved by user %s with card ending %s",
        payment.id, user_id, card.last_four,
    )
    return payment


# ---------------------------------------------------------------------------
# Merchant operations
# ---------------------------------------------------------------------------

async def create_payment_request(
    db: AsyncSession,
    merchant: Merchant,
    amount: Decimal,
    order_id: str,
    return_url: str,
    currency: str = "CAD",
    order_description: str | None = None,
    order_details: OrderDetails | None = None,
) -> MobilePaymentRequest:
    """
    Open a new pending request, cancelling any pending one for the order.

    Raises:
        PaymentError: INVALID_REQUEST for a missing order id/return URL or
            a non-positive amount.
    """
    if not order_id or not return_url:
        raise PaymentError("INVALID_REQUEST", "amount, orderId and returnUrl are required")
    if not amount.is_finite() or amount <= 0:
        raise PaymentError("INVALID_REQUEST", "amount must be a positive number")

    if order_details is not None and order_details.subtotal is not None:
        computed = order_details.computed_total()
        if abs(computed - float(amount)) > ORDER_TOTAL_TOLERANCE:
            logger.warning(
                "Order %s from %s: breakdown totals %.2f but amount is %s",
                order_id, merchant.client_id, computed, amount,
            )

    now = datetime.now(timezone.utc)
    superseded = await db.execute(
        update(MobilePaymentRequest)
        .where(
            MobilePaymentRequest.merchant_id == merchant.client_id,
            MobilePaymentRequest.order_id == order_id,
            MobilePaymentRequest.status == PaymentStatus.PENDING.value,
        )
        .values(status=PaymentStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if superseded.rowcount:
        logger.info(
            "Cancelled %d pending request(s) for order %s of %s",
            superseded.rowcount, order_id, merchant.client_id,
        )

    payment = MobilePaymentRequest(
        merchant_id=merchant.client_id,
        merchant_name=merchant.name,
        merchant_logo_url=merchant.logo_url,
        order_id=order_id,
        order_description=order_description,
        order_details=(
            order_details.model_dump(by_alias=True, exclude_none=True)
            if order_details is not None else None
        ),
        amount=amount,
        currency=currency or "CAD",
        return_url=return_url,
        status=PaymentStatus.PENDING.value,
        expires_at=now + timedelta(seconds=settings.PAYMENT_REQUEST_TTL_SECONDS),
    )
    db.add(payment)
    await db.flush()

    logger.info(
        "Payment request %s created by %s for order %s (%s %s)",
        payment.id, merchant.client_id, order_id, amount, payment.currency,
    )
    return payment


async def get_status(
    db: AsyncSession,
    request_id: str,
    merchant_id: str,
) -> MobilePaymentRequest:
    """Merchant poll. Expires the request as a side effect when it is due."""
    payment = await _get_request(db, request_id)
    if payment.merchant_id != merchant_id:
        raise PaymentError("FORBIDDEN", "Payment request belongs to another merchant")
    await _expire_if_due(db, payment)
    return payment


async def complete_payment(
    db: AsyncSession,
    request_id: str,
    merchant_id: str,
    one_time_token: str,
) -> MobilePaymentRequest:
    """
    Redeem an approval for the card tokens. The one-time token is cleared.

    Raises:
        PaymentError: INVALID_REQUEST for a token mismatch, PAYMENT_EXPIRED
            past the extended deadline, PAYMENT_ALREADY_PROCESSED if the
            request is not approved (or another completion won).
    """
    payment = await _get_request(db, request_id)
    if payment.merchant_id != merchant_id:
        raise PaymentError("FORBIDDEN", "Payment request belongs to another merchant")

    if payment.status != PaymentStatus.APPROVED.value:
        if payment.status == PaymentStatus.PENDING.value:
            await _expire_if_due(db, payment)
        if payment.status == PaymentStatus.EXPIRED.value:
            raise PaymentError("PAYMENT_EXPIRED", "Payment request has expired")
        raise PaymentError(
            "PAYMENT_ALREADY_PROCESSED",
            f"Payment request is {payment.status}, not approved",
        )

    if not payment.one_time_token or not secrets.compare_digest(
        payment.one_time_token, one_time_token
    ):
        raise PaymentError("INVALID_REQUEST", "Invalid one-time payment token")

    await _expire_if_due(db, payment)
    if payment.status == PaymentStatus.EXPIRED.value:
        raise PaymentError("PAYMENT_EXPIRED", "Payment approval window has expired")

    now = datetime.now(timezone.utc)
    completed = await _conditional_update(
        db,
        payment,
        MobilePaymentRequest.status == PaymentStatus.APPROVED.value,
        MobilePaymentRequest.one_time_token == one_time_token,
        status=PaymentStatus.COMPLETED.value,
        one_time_token=None,
        completed_at=now,
    )
    if not completed:
        raise PaymentError("PAYMENT_ALREADY_PROCESSED", "Payment request was already completed")

    logger.info("Payment request %s completed by %s", payment.id, merchant_id)
    return payment


async def cancel_payment(
    db: AsyncSession,
    request_id: str,
    merchant_id: str | None = None,
    user_id: uuid.UUID | None = None,
) -> MobilePaymentRequest:
    """
    Cancel a pending request as its merchant or its bound user.

    Cancelling anything that is not pending is an error, not a no-op.
    """
    payment = await _get_request(db, request_id)
    if merchant_id is not None:
        if payment.merchant_id != merchant_id:
            raise PaymentError("FORBIDDEN", "Payment request belongs to another merchant")
    elif user_id is None or payment.user_id != user_id:
        raise PaymentError("FORBIDDEN", "Payment request belongs to another user")

    await _expire_if_due(db, payment)
    if payment.status != PaymentStatus.PENDING.value:
        _raise_not_pending(payment)

    cancelled = await _conditional_update(
        db,
        payment,
        MobilePaymentRequest.status == PaymentStatus.PENDING.value,
        status=PaymentStatus.CANCELLED.value,
        cancelled_at=datetime.now(timezone.utc),
    )
    if not cancelled:
        _raise_not_pending(payment)

    logger.info(
        "Payment request %s cancelled by %s",
        payment.id, f"merchant {merchant_id}" if merchant_id else f"user {user_id}",
    )
    return payment


# ---------------------------------------------------------------------------
# Mobile operations
# ---------------------------------------------------------------------------

async def view_payment(
    db: AsyncSession,
    request_id: str,
    user_id: uuid.UUID,
) -> tuple[MobilePaymentRequest, list[WalletCard]]:
    """Pending request details plus the user's active cards to choose from."""
    payment = await _load_pending(db, request_id)
    await _bind_user(db, payment, user_id)
    cards = await wallet_service.list_cards(db, user_id)
    return payment, cards


async def approve_payment(
    db: AsyncSession,
    registry: ProviderRegistry,
    bsim_client: BsimClient,
    request_id: str,
    user_id: uuid.UUID,
    card_id: str,
    consent: bool,
) -> MobilePaymentRequest:
    """
    Approve a pending request with one of the user's cards.

    Raises:
        PaymentError: INVALID_REQUEST without consent, CARD_NOT_FOUND for a
            card that is missing, inactive or someone else's, CARD_TOKEN_ERROR
            if the bank won't issue a card token, plus the usual not-found,
            expired and already-processed codes.
    """
    if not consent:
        raise PaymentError("INVALID_REQUEST", "Explicit consent is required to approve a payment")

    payment = await _load_pending(db, request_id)
    await _bind_user(db, payment, user_id)
    card = await _resolve_card(db, user_id, card_id)

    enrollment = card.enrollment
    provider = registry.get(enrollment.bsim_id)
    if provider is None:
        raise PaymentError("CARD_TOKEN_ERROR", f"Bank {enrollment.bsim_id} is not configured")
    if not enrollment.wallet_credential:
        raise PaymentError("CARD_TOKEN_ERROR", "No wallet credential on file for this bank")

    try:
        credential = decrypt(enrollment.wallet_credential)
        token = await bsim_client.request_card_token(
            provider,
            credential,
            card.bsim_card_ref,
            payment.merchant_id,
            payment.amount,
            payment.currency,
        )
    except (VaultDecryptionError, BsimClientError) as exc:
        logger.error("Card token request for payment %s failed: %s", payment.id, exc)
        raise PaymentError("CARD_TOKEN_ERROR", "Failed to obtain a card token from the bank")

    return await _mark_approved(db, payment, user_id, card, token.token)


async def list_pending(db: AsyncSession, user_id: uuid.UUID) -> list[MobilePaymentRequest]:
    """Pending, unexpired requests already bound to the user, newest first."""
    result = await db.execute(
        select(MobilePaymentRequest)
        .where(
            MobilePaymentRequest.user_id == user_id,
            MobilePaymentRequest.status == PaymentStatus.PENDING.value,
            MobilePaymentRequest.expires_at > datetime.now(timezone.utc),
        )
        .order_by(MobilePaymentRequest.created_at.desc())
    )
    return list(result.scalars().all())


async def get_public(db: AsyncSession, request_id: str) -> MobilePaymentRequest:
    """Unauthenticated lookup for the QR landing page."""
    payment = await _get_request(db, request_id)
    await _expire_if_due(db, payment)
    return payment


async def test_approve(
    db: AsyncSession,
    request_id: str,
    user_id: str,
    card_id: str,
) -> MobilePaymentRequest:
    """
    Approve without asking the bank, for end-to-end test suites.

    The router refuses to reach this in production.
    """
    try:
        owner = uuid.UUID(str(user_id))
    except ValueError:
        raise PaymentError("INVALID_REQUEST", "userId must be a valid id")

    payment = await _load_pending(db, request_id)
    if payment.user_id is not None and payment.user_id != owner:
        raise PaymentError("FORBIDDEN", "Payment request belongs to another user")
    card = await _resolve_card(db, owner, card_id)

    logger.warning("Test-approving payment request %s", payment.id)
    return await _mark_approved(db, payment, owner, card, f"test_{generate_token(16)}")
