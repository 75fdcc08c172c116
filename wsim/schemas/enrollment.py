"""
Pydantic schemas for bank enrollment endpoints (web and mobile).

The callback endpoints answer with redirects, not JSON, so only the bank
list, the start call and the enrollment list have response models here.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel


class BankResponse(BaseModel):
    """A configured bank the user can link."""
    bsim_id: str
    name: str
    logo_url: str | None = None


class BankListResponse(BaseModel):
    banks: list[BankResponse]


class EnrollmentStartRequest(BaseModel):
    """
    Request body for POST /enrollment/start/{bsim_id}.

    A password of 8+ characters is stored (hashed) on the user created by
    the callback, enabling password login later. Shorter ones are ignored.
    """
    password: str | None = None


class EnrollmentStartResponse(BaseModel):
    auth_url: str
    bsim_id: str
    bank_name: str


class MobileEnrollmentStartResponse(EnrollmentStartResponse):
    """The mobile app opens auth_url in a browser and waits for the deep link."""
    state: str
    callback_url_pattern: str


class EnrollmentResponse(BaseModel):
    id: uuid.UUID
    bsim_id: str
    bank_name: str
    logo_url: str | None = None
    card_count: int
    enrolled_at: datetime
    credential_expiry: datetime | None = None

    model_config = {"from_attributes": True}


class EnrollmentListResponse(BaseModel):
    enrollments: list[EnrollmentResponse]


class EnrollmentDeleteResponse(BaseModel):
    success: bool = True
    cards_removed: int
