"""
Step-up service — human approval for agent purchases over their limits.

An agent's purchase is checked against three limits, in this order:

  1. per_transaction  the amount alone exceeds the agent's per-purchase cap
  2. daily_limit      completed spend since local midnight + amount > cap
  3. monthly_limit    completed spend since the 1st (UTC) + amount > cap

The daily window resets at midnight in DAILY_LIMIT_RESET_TIMEZONE (wall
clock time for the owner, DST included); the monthly window resets at
00:00 UTC on the first of the month. Each AgentTransaction records the
window starts it was created in, so usage is a plain SUM over rows whose
period start is inside the current window. Only "completed" transactions
count.

When a check fails, the payment flow opens a StepUpRequest and the owner
resolves it from the mobile app:

  - approve: consent required, owner only, must be pending and unexpired,
    needs an active payment method (explicit override, else the one the
    agent asked for). One batch creates the AgentTransaction, marks the
    step-up approved and touches the agent's last_used_at.
  - reject: owner only, must be pending; allowed past expiry (the reason
    records that it had expired). Never creates a transaction.

A pending step-up found past its deadline on read is marked "expired".
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.config import settings
from wsim.exceptions import BadRequestError, ForbiddenError, NotFoundError, StepUpStateError
from wsim.models.agent import Agent, AgentTransaction, StepUpRequest
from wsim.models.card import WalletCard
from wsim.services import wallet_service

logger = logging.getLogger(__name__)

PER_TRANSACTION = "per_transaction"
DAILY_LIMIT = "daily_limit"
MONTHLY_LIMIT = "monthly_limit"

REJECTED_REASON = "User rejected"
EXPIRED_REJECTED_REASON = "Expired - User rejected"


@dataclass
class SpendingLimitResult:
    allowed: bool
    reason: str | None = None
    trigger_type: str | None = None


@dataclass
class StepUpApproval:
    step_up: StepUpRequest
    transaction: AgentTransaction
    payment_method: WalletCard


# ---------------------------------------------------------------------------
# Spending limits
# ---------------------------------------------------------------------------

def get_period_boundaries(now: datetime | None = None) -> tuple[datetime, datetime]:
    """
    Return (daily_period_start, monthly_period_start) as aware UTC datetimes.
    """
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(ZoneInfo(settings.DAILY_LIMIT_RESET_TIMEZONE))
    day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = now.astimezone(timezone.utc).replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    )
    return day_start.astimezone(timezone.utc), month_start


async def _completed_spend(db: AsyncSession, agent_id: uuid.UUID, column, since: datetime) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(AgentTransaction.amount), 0)).where(
            AgentTransaction.agent_id == agent_id,
            AgentTransaction.status == "completed",
            column >= since,
        )
    )
    return Decimal(str(result.scalar_one()))


def _money(amount: Decimal, currency: str) -> str:
    return f"{max(amount, Decimal('0')):.2f} {currency}"


async def check_spending_limits(
    db: AsyncSession,
    agent: Agent,
    amount: Decimal,
) -> SpendingLimitResult:
    """
    Decide whether `amount` fits within the agent's limits.

    The first limit broken (per-transaction, then daily, then monthly) is
    reported as trigger_type with a human-readable reason.
    """
    currency = agent.limit_currency

    if amount > agent.per_transaction_limit:
        return SpendingLimitResult(
            allowed=False,
            reason=(
                f"Amount {_money(amount, currency)} exceeds per-transaction limit "
                f"of {_money(agent.per_transaction_limit, currency)}"
            ),
            trigger_type=PER_TRANSACTION,
        )

    day_start, month_start = get_period_boundaries()

    daily = await _completed_spend(db, agent.id, AgentTransaction.daily_period_start, day_start)
    if daily + amount > agent.daily_limit:
        return SpendingLimitResult(
            allowed=False,
            reason=(
                f"Transaction would exceed daily limit of {_money(agent.daily_limit, currency)}. "
                f"Remaining today: {_money(agent.daily_limit - daily, currency)}"
            ),
            trigger_type=DAILY_LIMIT,
        )

    monthly = await _completed_spend(
        db, agent.id, AgentTransaction.monthly_period_start, month_start
    )
    if monthly + amount > agent.monthly_limit:
        return SpendingLimitResult(
            allowed=False,
            reason=(
                f"Transaction would exceed monthly limit of {_money(agent.monthly_limit, currency)}. "
                f"Remaining this month: {_money(agent.monthly_limit - monthly, currency)}"
            ),
            trigger_type=MONTHLY_LIMIT,
        )

    return SpendingLimitResult(allowed=True)


async def create_step_up_request(
    db: AsyncSession,
    agent: Agent,
    amount: Decimal,
    merchant_id: str,
    reason: str,
    trigger_type: str,
    currency: str = "CAD",
    merchant_name: str | None = None,
    session_id: str | None = None,
    items: list | None = None,
    requested_payment_method_id: uuid.UUID | None = None,
) -> StepUpRequest:
    """Open a pending step-up that expires after STEP_UP_EXPIRY_MINUTES."""
    step_up = StepUpRequest(
        agent_id=agent.id,
        amount=amount,
        currency=currency,
        merchant_id=merchant_id,
        merchant_name=merchant_name,
        session_id=session_id,
        items=items,
        reason=reason,
        trigger_type=trigger_type,
        requested_payment_method_id=requested_payment_method_id,
        status="pending",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=settings.STEP_UP_EXPIRY_MINUTES),
    )
    db.add(step_up)
    await db.flush()
    logger.info(
        "Step-up %s opened for agent %s (%s): %s",
        step_up.id, agent.id, trigger_type, reason,
    )
    return step_up


# ---------------------------------------------------------------------------
# Owner operations
# ---------------------------------------------------------------------------

async def _load_owned(db: AsyncSession, step_up_id: str, user_id: uuid.UUID) -> StepUpRequest:
    try:
        key = uuid.UUID(str(step_up_id))
    except ValueError:
        raise NotFoundError("Step-up request not found")

    step_up = await db.get(StepUpRequest, key)
    if step_up is None:
        raise NotFoundError("Step-up request not found")
    if step_up.agent.user_id != user_id:
        raise ForbiddenError("You do not own this agent")
    return step_up


async def _expire(db: AsyncSession, step_up: StepUpRequest) -> None:
    await db.execute(
        update(StepUpRequest)
        .where(StepUpRequest.id == step_up.id, StepUpRequest.status == "pending")
        .values(status="expired", resolved_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.refresh(step_up)
    logger.info("Step-up %s expired", step_up.id)


def _is_past_due(step_up: StepUpRequest) -> bool:
    return step_up.expires_at <= datetime.now(timezone.utc)


def time_remaining_seconds(step_up: StepUpRequest) -> int:
    remaining = (step_up.expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(remaining))


async def get_step_up(
    db: AsyncSession,
    step_up_id: str,
    user_id: uuid.UUID,
) -> tuple[StepUpRequest, list[WalletCard]]:
    """The request (expired first if due) and the owner's usable cards."""
    step_up = await _load_owned(db, step_up_id, user_id)
    if step_up.status == "pending" and _is_past_due(step_up):
        await _expire(db, step_up)
    cards = await wallet_service.list_cards(db, user_id)
    return step_up, cards


async def approve_step_up(
    db: AsyncSession,
    step_up_id: str,
    user_id: uuid.UUID,
    consent: bool,
    payment_method_id: str | None = None,
) -> StepUpApproval:
    """
    Approve a pending step-up and record the agent's transaction.

    Raises:
        BadRequestError: No consent, or no usable payment method.
        NotFoundError / ForbiddenError: Unknown request or not the owner.
        StepUpStateError: Already resolved ("invalid_state") or past its
            deadline ("expired").
    """
    if consent is not True:
        raise BadRequestError("Explicit consent is required to approve this purchase")

    step_up = await _load_owned(db, step_up_id, user_id)
    if step_up.status != "pending":
        raise StepUpStateError(f"Step-up request is already {step_up.status}")
    if _is_past_due(step_up):
        await _expire(db, step_up)
        raise StepUpStateError("Step-up request has expired", error_code="expired")

    method_id = payment_method_id or step_up.requested_payment_method_id
    if not method_id:
        raise BadRequestError("A payment method is required")
    try:
        card_key = method_id if isinstance(method_id, uuid.UUID) else uuid.UUID(str(method_id))
    except ValueError:
        raise BadRequestError("Invalid payment method")
    card = await wallet_service.get_active_card(db, user_id, card_key)
    if card is None:
        raise BadRequestError("Invalid payment method")

    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(StepUpRequest)
        .where(StepUpRequest.id == step_up.id, StepUpRequest.status == "pending")
        .values(status="approved", approved_payment_method_id=card.id, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.refresh(step_up)
        raise StepUpStateError(f"Step-up request is already {step_up.status}")

    day_start, month_start = get_period_boundaries(now)
    transaction = AgentTransaction(
        agent_id=step_up.agent_id,
        amount=step_up.amount,
        currency=step_up.currency,
        merchant_id=step_up.merchant_id,
        merchant_name=step_up.merchant_name,
        session_id=step_up.session_id,
        payment_method_id=card.id,
        payment_method_last_four=card.last_four,
        status="pending",
        approval_type="step_up",
        daily_period_start=day_start,
        monthly_period_start=month_start,
        step_up_id=step_up.id,
    )
    db.add(transaction)
    await db.execute(
        update(Agent)
        .where(Agent.id == step_up.agent_id)
        .values(last_used_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    await db.refresh(step_up)

    logger.info(
        "Step-up %s approved by user %s; transaction %s",
        step_up.id, user_id, transaction.id,
    )
    return StepUpApproval(step_up=step_up, transaction=transaction, payment_method=card)


async def reject_step_up(
    db: AsyncSession,
    step_up_id: str,
    user_id: uuid.UUID,
    reason: str | None = None,
) -> StepUpRequest:
    """Reject a pending step-up, even one past its deadline."""
    step_up = await _load_owned(db, step_up_id, user_id)
    if step_up.status != "pending":
        raise StepUpStateError(f"Step-up request is already {step_up.status}")

    if not reason:
        reason = EXPIRED_REJECTED_REASON if _is_past_due(step_up) else REJECTED_REASON

    result = await db.execute(
        update(StepUpRequest)
        .where(StepUpRequest.id == step_up.id, StepUpRequest.status == "pending")
        .values(
            status="rejected",
            rejection_reason=reason,
            resolved_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(step_up)
    if result.rowcount != 1:
        raise StepUpStateError(f"Step-up request is already {step_up.status}")

    logger.info("Step-up %s rejected by user %s: %s", step_up.id, user_id, reason)
    return step_up


async def list_pending(db: AsyncSession, user_id: uuid.UUID) -> list[StepUpRequest]:
    """Pending, unexpired step-ups for the user's own agents, newest first."""
    result = await db.execute(
        select(StepUpRequest)
        .join(Agent, StepUpRequest.agent_id == Agent.id)
        .where(
            Agent.user_id == user_id,
            StepUpRequest.status == "pending",
            StepUpRequest.expires_at > datetime.now(timezone.utc),
        )
        .order_by(StepUpRequest.created_at.desc())
    )
    return list(result.unique().scalars().all())
