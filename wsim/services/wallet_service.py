"""
Wallet service — the user's card list, default card and card removal.

Rules enforced here:
  - Only active cards are listed, selectable as default, or usable for
    payment. Removal is a soft delete (is_active=False).
  - At most one active card per user is the default. Setting a default
    clears the previous one in the same transaction.
  - When the default card goes away (card removed, or its enrollment
    deleted), the most recently created remaining active card is promoted.
    If none remain, the user simply has no default.
"""

import logging
import uuid

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.exceptions import NotFoundError
from wsim.models.card import WalletCard
from wsim.models.enrollment import BsimEnrollment

logger = logging.getLogger(__name__)


async def list_cards(db: AsyncSession, user_id: uuid.UUID) -> list[WalletCard]:
    """Active cards, default first, then newest first."""
    result = await db.execute(
        select(WalletCard)
        .where(WalletCard.user_id == user_id, WalletCard.is_active.is_(True))
        .order_by(WalletCard.is_default.desc(), WalletCard.created_at.desc())
    )
    return list(result.scalars().all())


async def get_active_card(
    db: AsyncSession,
    user_id: uuid.UUID,
    card_id: uuid.UUID,
) -> WalletCard | None:
    """Return the card only if it is active and owned by `user_id`."""
    result = await db.execute(
        select(WalletCard).where(
            WalletCard.id == card_id,
            WalletCard.user_id == user_id,
            WalletCard.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def set_default_card(
    db: AsyncSession,
    user_id: uuid.UUID,
    card_id: uuid.UUID,
) -> WalletCard:
    """
    Make one of the user's active cards the default.

    Raises:
        NotFoundError: If the card doesn't exist, is inactive, or belongs
            to another user.
    """
    card = await get_active_card(db, user_id, card_id)
    if card is None:
        raise NotFoundError("Card not found")

    await db.execute(
        update(WalletCard)
        .where(
            WalletCard.user_id == user_id,
            WalletCard.is_default.is_(True),
            WalletCard.id != card.id,
        )
        .values(is_default=False)
        .execution_options(synchronize_session=False)
    )
    card.is_default = True
    await db.flush()
    return card


async def promote_default_card(db: AsyncSession, user_id: uuid.UUID) -> WalletCard | None:
    """Make the newest remaining active card the default, if there is one."""
    result = await db.execute(
        select(WalletCard)
        .where(WalletCard.user_id == user_id, WalletCard.is_active.is_(True))
        .order_by(WalletCard.created_at.desc())
        .limit(1)
    )
    card = result.scalar_one_or_none()
    if card is not None:
        card.is_default = True
        await db.flush()
        logger.info("Promoted card %s to default for user %s", card.id, user_id)
    return card


async def remove_card(
    db: AsyncSession,
    user_id: uuid.UUID,
    card_id: uuid.UUID,
) -> WalletCard:
    """
    Soft-delete a card, reassigning the default when needed.

    Raises:
        NotFoundError: If the card doesn't exist, is already removed, or
            belongs to another user.
    """
    card = await get_active_card(db, user_id, card_id)
    if card is None:
        raise NotFoundError("Card not found")

    was_default = card.is_default
    card.is_active = False
    card.is_default = False
    await db.flush()

    if was_default:
        await promote_default_card(db, user_id)

    return card


async def count_cards_by_enrollment(
    db: AsyncSession,
    user_id: uuid.UUID,
    active_only: bool = False,
) -> dict[uuid.UUID, int]:
    """Map each of the user's enrollment ids to its number of cards."""
    join_on = WalletCard.enrollment_id == BsimEnrollment.id
    if active_only:
        join_on = and_(join_on, WalletCard.is_active.is_(True))

    query = (
        select(BsimEnrollment.id, func.count(WalletCard.id))
        .outerjoin(WalletCard, join_on)
        .where(BsimEnrollment.user_id == user_id)
        .group_by(BsimEnrollment.id)
    )
    result = await db.execute(query)
    return {enrollment_id: count for enrollment_id, count in result.all()}
