"""
Wallet router — the signed-in user's cards.

Endpoints:
  GET    /api/wallet/cards                    — Active cards, default first
  POST   /api/wallet/cards/{card_id}/default  — Make a card the default
  DELETE /api/wallet/cards/{card_id}          — Remove a card (soft delete)
  GET    /api/wallet/enrollments              — Linked banks with active-card counts

All endpoints are scoped to the session user; another user's card id is
indistinguishable from a missing one (404).
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.database import get_db
from wsim.dependencies import get_current_user, get_provider_registry
from wsim.models.user import WalletUser
from wsim.schemas.enrollment import EnrollmentListResponse, EnrollmentResponse
from wsim.schemas.wallet import CardListResponse, CardRemovedResponse, CardResponse
from wsim.services import enrollment_service, wallet_service
from wsim.services.providers import ProviderRegistry

router = APIRouter()


@router.get("/cards", response_model=CardListResponse, summary="List cards")
async def list_cards(
    user: WalletUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cards = await wallet_service.list_cards(db, user.id)
    return CardListResponse(cards=[CardResponse.model_validate(c) for c in cards])


@router.post(
    "/cards/{card_id}/default",
    response_model=CardResponse,
    summary="Set the default card",
)
async def set_default_card(
    card_id: uuid.UUID,
    user: WalletUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Clears the previous default and sets this one in the same transaction."""
    return await wallet_service.set_default_card(db, user.id, card_id)


@router.delete(
    "/cards/{card_id}",
    response_model=CardRemovedResponse,
    summary="Remove a card",
)
async def remove_card(
    card_id: uuid.UUID,
    user: WalletUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Deactivate a card. If it was the default, the newest remaining active
    card becomes the default.
    """
    await wallet_service.remove_card(db, user.id, card_id)
    return CardRemovedResponse()


@router.get(
    "/enrollments",
    response_model=EnrollmentListResponse,
    summary="List linked banks",
)
async def list_enrollments(
    user: WalletUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    summaries = await enrollment_service.list_enrollments(
        db, registry, user.id, active_cards_only=True
    )
    return EnrollmentListResponse(
        enrollments=[EnrollmentResponse.model_validate(s) for s in summaries]
    )
