"""
Step-up router — the owner's side of agent purchases over their limits.

Endpoints (all under /api/mobile/step-up, Bearer access token):
  GET  /                  — Pending step-ups for the caller's agents
  GET  /{step_up_id}      — Details, the agent's limits and usable cards
  POST /{step_up_id}/approve  — Approve (consent required, optional card override)
  POST /{step_up_id}/reject   — Reject (optional reason)

Only the agent's owner can see or resolve a step-up (403 otherwise).
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.context import CallerContext
from wsim.database import get_db
from wsim.dependencies import get_mobile_caller
from wsim.models.agent import StepUpRequest
from wsim.models.card import WalletCard
from wsim.schemas.step_up import (
    ApprovedPaymentMethod,
    PaymentMethod,
    StepUpAgent,
    StepUpApproveRequest,
    StepUpApproveResponse,
    StepUpLimits,
    StepUpListResponse,
    StepUpPurchase,
    StepUpRejectRequest,
    StepUpRejectResponse,
    StepUpResponse,
    StepUpSummary,
)
from wsim.services import step_up_service

router = APIRouter()


def _purchase(step_up: StepUpRequest) -> StepUpPurchase:
    return StepUpPurchase(
        amount=float(step_up.amount),
        currency=step_up.currency,
        merchant_id=step_up.merchant_id,
        merchant_name=step_up.merchant_name,
        session_id=step_up.session_id,
        items=step_up.items,
    )


def _payment_method(card: WalletCard) -> PaymentMethod:
    return PaymentMethod(
        id=card.id,
        type=card.card_type,
        last_four=card.last_four,
        is_default=card.is_default,
    )


@router.get("", response_model=StepUpListResponse, summary="List pending step-ups")
async def list_pending(
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    step_ups = await step_up_service.list_pending(db, caller.user_id)
    return StepUpListResponse(step_ups=[
        StepUpSummary(
            id=s.id,
            agent=StepUpAgent(id=s.agent.id, name=s.agent.name),
            purchase=_purchase(s),
            trigger_type=s.trigger_type,
            expires_at=s.expires_at,
            time_remaining_seconds=step_up_service.time_remaining_seconds(s),
            created_at=s.created_at,
        )
        for s in step_ups
    ])


@router.get("/{step_up_id}", response_model=StepUpResponse, summary="Get a step-up")
async def get_step_up(
    step_up_id: str,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    """A pending step-up past its deadline is reported (and stored) as expired."""
    step_up, cards = await step_up_service.get_step_up(db, step_up_id, caller.user_id)
    agent = step_up.agent
    return StepUpResponse(
        id=step_up.id,
        status=step_up.status,
        agent=StepUpAgent(id=agent.id, name=agent.name),
        purchase=_purchase(step_up),
        reason=step_up.reason,
        trigger_type=step_up.trigger_type,
        limits=StepUpLimits(
            per_transaction=float(agent.per_transaction_limit),
            daily=float(agent.daily_limit),
            monthly=float(agent.monthly_limit),
            currency=agent.limit_currency,
        ),
        payment_methods=[_payment_method(c) for c in cards],
        requested_payment_method_id=step_up.requested_payment_method_id,
        expires_at=step_up.expires_at,
        time_remaining_seconds=step_up_service.time_remaining_seconds(step_up),
        created_at=step_up.created_at,
    )


@router.post(
    "/{step_up_id}/approve",
    response_model=StepUpApproveResponse,
    summary="Approve a step-up",
)
async def approve_step_up(
    step_up_id: str,
    body: StepUpApproveRequest,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    """
    - **consent**: Must be true
    - **payment_method_id**: Optional; defaults to the card the agent asked for
    """
    approval = await step_up_service.approve_step_up(
        db,
        step_up_id,
        caller.user_id,
        consent=body.consent,
        payment_method_id=body.payment_method_id,
    )
    card = approval.payment_method
    return StepUpApproveResponse(
        status=approval.step_up.status,
        transaction_id=approval.transaction.id,
        payment_method=ApprovedPaymentMethod(
            id=card.id, type=card.card_type, last_four=card.last_four
        ),
    )


@router.post(
    "/{step_up_id}/reject",
    response_model=StepUpRejectResponse,
    summary="Reject a step-up",
)
async def reject_step_up(
    step_up_id: str,
    body: StepUpRejectRequest | None = None,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    step_up = await step_up_service.reject_step_up(
        db, step_up_id, caller.user_id, reason=body.reason if body else None
    )
    return StepUpRejectResponse(status=step_up.status, reason=step_up.rejection_reason)
