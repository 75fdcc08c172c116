"""
MobilePaymentRequest model — a merchant-to-wallet payment authorization.

Lifecycle (see services/payment_service.py for the transitions):

    pending ──approve──> approved ──complete──> completed
       │                    │
       ├──cancel──> cancelled
       └──(deadline)──> expired <──(extended deadline)──┘

Key fields:
  - merchant_id: the merchant's OAuth client id (from the x-api-key lookup)
  - user_id: NULL until the first mobile user views the request; after that
    only that user may view, approve or cancel it
  - card_token: the bank's ephemeral, merchant-facing card token
  - wallet_card_token: the wallet's routable token for the chosen card
  - one_time_token: handed to the merchant on approval and cleared when
    the payment is completed, so it can be redeemed exactly once
  - expires_at: created_at + 5 minutes; approval pushes it forward by the
    grace window

At most one pending request exists per (merchant_id, order_id): creating a
new one cancels the previous pending request for the same order.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Text, Numeric, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from wsim.database import Base, UTCDateTime, utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class MobilePaymentRequest(Base):
    __tablename__ = "mobile_payment_requests"

    __table_args__ = (
        Index("ix_mobile_payment_requests_merchant_order", "merchant_id", "order_id"),
        Index("ix_mobile_payment_requests_user_status", "user_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    merchant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    merchant_logo_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Validated structured breakdown (items, shipping, tax, discounts, fees)
    order_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")

    # Where the mobile app sends the user after approval; never shown publicly
    return_url: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
    )

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("wallet_users.id"),
        nullable=True,
    )

    selected_card_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("wallet_cards.id", ondelete="SET NULL"),
        nullable=True,
    )

    card_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    wallet_card_token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    one_time_token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
