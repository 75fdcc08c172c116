"""
Pydantic schemas for the mobile payment flow.

Merchant-facing and mobile-facing shapes differ on purpose:
  - the merchant sees the one-time payment token (status poll, while
    approved) and the card tokens (on completion);
  - the mobile app sees the order and the user's cards, never tokens;
  - the public view (QR landing page) never includes the return URL or
    the merchant id.

Amounts travel as numbers; the database keeps them as exact decimals.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from wsim.schemas.order_details import OrderDetails
from wsim.schemas.wallet import CardResponse


# --- Merchant ---

class PaymentCreateRequest(BaseModel):
    """Request body for POST /api/mobile/payment/request."""
    amount: Decimal = Field(allow_inf_nan=False)
    order_id: str = Field(min_length=1, max_length=255)
    return_url: str = Field(min_length=1)
    currency: str = Field(default="CAD", min_length=3, max_length=3)
    order_description: str | None = Field(default=None, max_length=500)
    order_details: OrderDetails | None = None


class PaymentCreateResponse(BaseModel):
    request_id: uuid.UUID
    deep_link_url: str
    qr_code_url: str
    expires_at: datetime
    status: str


class PaymentStatusResponse(BaseModel):
    request_id: uuid.UUID
    status: str
    expires_at: datetime
    # Present only while the request is approved
    one_time_payment_token: str | None = None


class PaymentCompleteRequest(BaseModel):
    one_time_payment_token: str = Field(min_length=1)


class PaymentCompleteResponse(BaseModel):
    success: bool = True
    request_id: uuid.UUID
    status: str
    card_token: str
    wallet_card_token: str


class PaymentCancelResponse(BaseModel):
    success: bool = True
    request_id: uuid.UUID
    status: str


# --- Mobile ---

class PaymentSummary(BaseModel):
    request_id: uuid.UUID
    merchant_name: str
    merchant_logo_url: str | None = None
    order_id: str
    order_description: str | None = None
    amount: float
    currency: str
    status: str
    expires_at: datetime
    created_at: datetime


class PaymentDetailResponse(PaymentSummary):
    order_details: dict | None = None
    return_url: str
    cards: list[CardResponse]


class PendingPaymentsResponse(BaseModel):
    requests: list[PaymentSummary]


class PaymentApproveRequest(BaseModel):
    card_id: str = Field(min_length=1)
    consent: bool = False


class PaymentApproveResponse(BaseModel):
    success: bool = True
    request_id: uuid.UUID
    status: str
    return_url: str
    expires_at: datetime


class PublicPaymentResponse(BaseModel):
    id: uuid.UUID
    merchant_name: str
    merchant_logo_url: str | None = None
    amount: float
    currency: str
    order_description: str | None = None
    status: str
    expires_at: datetime


# --- End-to-end testing ---

class E2EApproveRequest(BaseModel):
    card_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


class E2EApproveResponse(BaseModel):
    success: bool = True
    request_id: uuid.UUID
    status: str
    one_time_token: str
