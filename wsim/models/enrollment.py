"""
BsimEnrollment model — one user's link to one bank.

At most one enrollment exists per (user_id, bsim_id). Re-enrolling with the
same bank updates the row in place (fresh credential, refresh token and
expiry) instead of inserting a duplicate; the unique constraint is the
database-level backstop for that upsert.

Secrets at rest:
  - wallet_credential: the bank's long-lived wallet credential (or the raw
    access token when the bank did not grant the enrollment scope),
    encrypted with the credential vault.
  - refresh_token: the OAuth refresh token, encrypted, when one was issued.

Deleting an enrollment deletes its cards.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from wsim.database import Base, UTCDateTime, utcnow


class BsimEnrollment(Base):
    __tablename__ = "bsim_enrollments"

    __table_args__ = (
        UniqueConstraint("user_id", "bsim_id", name="uq_bsim_enrollments_user_bsim"),
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

    # Bank identifier from the provider registry (e.g. "td-sim")
    bsim_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bsim_issuer: Mapped[str] = mapped_column(String(255), nullable=False)

    # The user's "sub" at the bank
    fi_user_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    wallet_credential: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Absolute expiry computed as now + expires_in at exchange time
    credential_expiry: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

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
