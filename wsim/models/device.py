"""
Mobile device and refresh-token models.

MobileDevice:
  A physical device keyed by its natural device_id. A device can be
  pre-registered before anyone signs in (user_id is NULL until then), is
  bound to a user at registration or login, and is re-bound on a later
  login by a different user. The device credential is stored encrypted.
  Logout marks the push token inactive; it is never deleted.

MobileRefreshToken:
  One member of a (user, device) refresh-token family. `token` holds the
  refresh JWT's unique id (jti), not the signed token itself. A record is
  redeemable only while unexpired and unrevoked; redeeming it revokes it
  and creates exactly one successor. A redemption attempt against a
  revoked, expired or unknown record is treated as token theft.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, Text, Boolean, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from wsim.database import Base, UTCDateTime, utcnow


class MobileDevice(Base):
    __tablename__ = "mobile_devices"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    device_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # NULL while the device is only pre-registered
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("wallet_users.id"),
        nullable=True,
        index=True,
    )

    # "ios" or "android"
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    device_name: Mapped[str] = mapped_column(String(255), nullable=False)

    device_credential: Mapped[str] = mapped_column(Text, nullable=False)
    credential_expiry: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    push_token: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # "apns", "fcm" or "expo"
    push_token_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    push_token_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    biometric_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

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


class MobileRefreshToken(Base):
    __tablename__ = "mobile_refresh_tokens"

    __table_args__ = (
        Index("ix_mobile_refresh_tokens_user_device", "user_id", "device_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # The refresh JWT's jti
    token: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("wallet_users.id"),
        nullable=False,
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )
