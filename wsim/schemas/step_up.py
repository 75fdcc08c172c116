"""
Pydantic schemas for agent step-up approval.

Amounts and limits are returned as numbers in the agent's currency.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel


class StepUpAgent(BaseModel):
    id: uuid.UUID
    name: str


class StepUpPurchase(BaseModel):
    amount: float
    currency: str
    merchant_id: str
    merchant_name: str | None = None
    session_id: str | None = None
    items: list | None = None


class StepUpLimits(BaseModel):
    per_transaction: float
    daily: float
    monthly: float
    currency: str


class PaymentMethod(BaseModel):
    id: uuid.UUID
    type: str
    last_four: str
    is_default: bool


class StepUpResponse(BaseModel):
    id: uuid.UUID
    status: str
    agent: StepUpAgent
    purchase: StepUpPurchase
    reason: str
    trigger_type: str
    limits: StepUpLimits
    payment_methods: list[PaymentMethod]
    requested_payment_method_id: uuid.UUID | None = None
    expires_at: datetime
    time_remaining_seconds: int
    created_at: datetime


class StepUpSummary(BaseModel):
    id: uuid.UUID
    agent: StepUpAgent
    purchase: StepUpPurchase
    trigger_type: str
    expires_at: datetime
    time_remaining_seconds: int
    created_at: datetime


class StepUpListResponse(BaseModel):
    step_ups: list[StepUpSummary]


class StepUpApproveRequest(BaseModel):
    consent: bool = False
    payment_method_id: str | None = None


class ApprovedPaymentMethod(BaseModel):
    id: uuid.UUID
    type: str
    last_four: str


class StepUpApproveResponse(BaseModel):
    success: bool = True
    status: str
    transaction_id: uuid.UUID
    payment_method: ApprovedPaymentMethod


class StepUpRejectRequest(BaseModel):
    reason: str | None = None


class StepUpRejectResponse(BaseModel):
    success: bool = True
    status: str
    reason: str
