"""
Pydantic schemas for the user's cards.

No card number is held by the wallet at all; cards are shown by network
and last four digits only.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel


class CardResponse(BaseModel):
    id: uuid.UUID
    card_type: str
    last_four: str
    cardholder_name: str
    expiry_month: int
    expiry_year: int
    bsim_id: str
    is_default: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class CardListResponse(BaseModel):
    cards: list[CardResponse]


class CardRemovedResponse(BaseModel):
    success: bool = True
