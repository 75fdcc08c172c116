"""
Agent models — autonomous purchasers acting on a user's behalf.

Agent:
  Owned by one WalletUser and bounded by three spending limits
  (per-transaction, daily, monthly) in a single currency.

AgentTransaction:
  A purchase made by an agent. dailyPeriodStart / monthlyPeriodStart record
  which spending window the transaction counts against, so usage sums are a
  simple filter instead of a date calculation per row. Only "completed"
  transactions count toward usage.

StepUpRequest:
  Opened when a purchase would break a limit. The owner approves (which
  creates the AgentTransaction, linked back through step_up_id) or rejects
  it from the mobile app before expires_at.

      pending ──approve──> approved
         ├─────reject────> rejected
         └──(deadline)───> expired
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Text, Numeric, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wsim.database import Base, UTCDateTime, utcnow


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("wallet_users.id"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    per_transaction_limit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    daily_limit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    monthly_limit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    limit_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")

    # "active", "suspended" or "revoked"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )


class StepUpRequest(Base):
    __tablename__ = "step_up_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    agent_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("agents.id"),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")

    merchant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    items: Mapped[list | None] = mapped_column(JSON, nullable=True)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    # "per_transaction", "daily_limit" or "monthly_limit"
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)

    requested_payment_method_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    approved_payment_method_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    # "pending", "approved", "rejected" or "expired"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )

    agent: Mapped[Agent] = relationship(lazy="joined")


class AgentTransaction(Base):
    __tablename__ = "agent_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    agent_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("agents.id"),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")

    merchant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    payment_method_last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)

    # "pending", "completed" or "failed"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    # "auto" (within limits) or "step_up"
    approval_type: Mapped[str] = mapped_column(String(20), nullable=False, default="auto")

    daily_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    monthly_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # One-to-one with the step-up that authorized it, if any
    step_up_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("step_up_requests.id"),
        unique=True,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )
