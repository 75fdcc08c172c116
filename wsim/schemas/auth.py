"""
Pydantic schemas for web session endpoints (password login, me).

Web users are created by the enrollment callback; there is no signup
schema. Password login only works for users who chose a password when
they started an enrollment.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr


class UserLoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""
    email: EmailStr
    password: str


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    first_name: str | None = None
    last_name: str | None = None
    wallet_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    """The token is also set as the HTTP-only session cookie."""
    user: UserResponse
    token: str
    token_type: str = "bearer"


class SuccessResponse(BaseModel):
    success: bool = True
