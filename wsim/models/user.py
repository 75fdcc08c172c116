"""
WalletUser model — the identity anchor of the wallet.

A WalletUser is created on the first successful enrollment callback (web)
or on mobile registration, and is looked up by email everywhere else. The
email is stored lower-cased so lookups are case-insensitive.

The password is optional: users who only ever come in through a bank's
OIDC flow never have one. When present it is an Argon2id hash, set at most
once through the enrollment flow and never overwritten by it.

Users are never hard-deleted by the enrollment, payment or token flows.
"""

import secrets
import uuid
from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from wsim.database import Base, UTCDateTime, utcnow


def _generate_wallet_id() -> str:
    """Opaque external identifier shared with merchants instead of the PK."""
    return f"wallet_{secrets.token_hex(8)}"


class WalletUser(Base):
    __tablename__ = "wallet_users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Lower-cased on write; unique and indexed for lookups
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Argon2id hash, NULL for bank-only users
    password_hash: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    wallet_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        default=_generate_wallet_id,
    )

    # "none", "basic" or "enhanced"
    verification_level: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="none",
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

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
