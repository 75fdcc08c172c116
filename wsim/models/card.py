"""
WalletCard model — a tokenized payment instrument synced from a bank.

Cards are created and updated in batches during the enrollment callback's
card sync. Exactly one row exists per (enrollment_id, bsim_card_ref): a
re-sync updates the mutable fields (type, last four, holder, expiry,
active) of the existing row rather than inserting another.

No card number is ever stored. The bank keeps the PAN; the wallet keeps:
  - bsim_card_ref: the bank's reference to the card
  - wallet_card_token: wsim_{bsimId}_{randomHex}, generated once at creation
  - last_four: for display ("ending in 4242")

Default and soft delete:
  - is_active=False is the wallet's soft delete; inactive cards are never
    listed or usable for payment.
  - At most one active card per user has is_default=True. Removing the
    default promotes the most recently created remaining active card.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, Integer, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wsim.database import Base, UTCDateTime, utcnow
from wsim.models.enrollment import BsimEnrollment


class WalletCard(Base):
    __tablename__ = "wallet_cards"

    __table_args__ = (
        UniqueConstraint(
            "enrollment_id", "bsim_card_ref", name="uq_wallet_cards_enrollment_card_ref"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("wallet_users.id"),
        nullable=False,
        index=True,
    )

    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bsim_enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Card network, e.g. "VISA", "MC"
    card_type: Mapped[str] = mapped_column(String(20), nullable=False)
    last_four: Mapped[str] = mapped_column(String(4), nullable=False)
    cardholder_name: Mapped[str] = mapped_column(String(255), nullable=False)
    expiry_month: Mapped[int] = mapped_column(Integer, nullable=False)
    expiry_year: Mapped[int] = mapped_column(Integer, nullable=False)

    bsim_card_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    wallet_card_token: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
    )

    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

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

    # Many-to-one; eager so async code never triggers a lazy load
    enrollment: Mapped[BsimEnrollment] = relationship(lazy="joined")

    @property
    def bsim_id(self) -> str:
        return self.enrollment.bsim_id
