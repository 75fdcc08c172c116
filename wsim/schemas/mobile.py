"""
Pydantic schemas for the mobile app: device registration and auth.

Platforms are "ios" or "android". Access tokens live for an hour and are
refreshed with the single-use refresh token returned alongside them.
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field

Platform = Literal["ios", "android"]


class DeviceRegisterRequest(BaseModel):
    """Request body for POST /api/mobile/device/register."""
    device_id: str = Field(min_length=1, max_length=255)
    platform: Platform
    device_name: str = Field(min_length=1, max_length=255)
    push_token: str | None = None
    push_token_type: str | None = Field(default=None, max_length=20)


class DeviceRegisterResponse(BaseModel):
    device_credential: str
    expires_at: datetime


class MobileRegisterRequest(BaseModel):
    """Request body for POST /api/mobile/auth/register."""
    email: EmailStr
    name: str = Field(min_length=1, max_length=200)
    device_id: str = Field(min_length=1, max_length=255)
    device_name: str = Field(min_length=1, max_length=255)
    platform: Platform


class MobileLoginRequest(BaseModel):
    email: EmailStr
    device_id: str = Field(min_length=1, max_length=255)


class MobileLoginResponse(BaseModel):
    challenge: str
    method: str = "email"
    message: str = "Verification code sent to email"
    # Only outside production, where no email is actually sent
    dev_code: str | None = None


class MobileLoginVerifyRequest(BaseModel):
    challenge: str
    code: str
    device_id: str = Field(min_length=1, max_length=255)
    device_name: str = Field(min_length=1, max_length=255)
    platform: Platform


class MobileUserResponse(BaseModel):
    id: uuid.UUID
    email: str
    name: str
    wallet_id: str


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int


class MobileAuthResponse(BaseModel):
    user: MobileUserResponse
    tokens: TokenPairResponse


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutResponse(BaseModel):
    success: bool = True
    revoked_tokens: int
