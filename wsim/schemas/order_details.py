"""
Structured order breakdown a merchant may attach to a payment request.

It only feeds the mobile approval screen (line items, shipping, tax,
discounts, fees). The request's `amount` stays authoritative: a breakdown
that doesn't add up is logged, never rejected.

Limits keep the approval screen (and the JSON column) bounded:
  items <= 50, discounts <= 10, fees <= 10
  item name <= 100, discount code <= 50, fee label <= 50,
  shipping method <= 50, tax label <= 20
"""

from pydantic import BaseModel, ConfigDict, Field

MAX_ITEMS = 50
MAX_DISCOUNTS = 10
MAX_FEES = 10
MAX_ITEM_NAME_LENGTH = 100
MAX_DISCOUNT_CODE_LENGTH = 50
MAX_FEE_LABEL_LENGTH = 50
MAX_SHIPPING_METHOD_LENGTH = 50
MAX_TAX_LABEL_LENGTH = 20

_camel = ConfigDict(populate_by_name=True)


class OrderLineItem(BaseModel):
    model_config = _camel

    name: str = Field(max_length=MAX_ITEM_NAME_LENGTH)
    # Decimals allowed for weight-based items
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0, alias="unitPrice")
    sku: str | None = None
    image_url: str | None = Field(default=None, alias="imageUrl")


class OrderShipping(BaseModel):
    method: str | None = Field(default=None, max_length=MAX_SHIPPING_METHOD_LENGTH)
    amount: float = Field(ge=0)


class OrderTax(BaseModel):
    amount: float = Field(ge=0)
    # 0.13 for 13%
    rate: float | None = Field(default=None, ge=0, le=1)
    label: str | None = Field(default=None, max_length=MAX_TAX_LABEL_LENGTH)


class OrderDiscount(BaseModel):
    code: str | None = Field(default=None, max_length=MAX_DISCOUNT_CODE_LENGTH)
    description: str | None = None
    # Positive; shown as a negative line
    amount: float = Field(gt=0)


class OrderFee(BaseModel):
    label: str = Field(max_length=MAX_FEE_LABEL_LENGTH)
    amount: float = Field(ge=0)


class OrderDetails(BaseModel):
    version: int = 1
    items: list[OrderLineItem] | None = Field(default=None, max_length=MAX_ITEMS)
    subtotal: float | None = None
    shipping: OrderShipping | None = None
    tax: OrderTax | None = None
    discounts: list[OrderDiscount] | None = Field(default=None, max_length=MAX_DISCOUNTS)
    fees: list[OrderFee] | None = Field(default=None, max_length=MAX_FEES)

    def computed_total(self) -> float:
        """subtotal + shipping + tax - discounts + fees (missing parts count as 0)."""
        total = self.subtotal or 0.0
        if self.shipping:
            total += self.shipping.amount
        if self.tax:
            total += self.tax.amount
        total -= sum(discount.amount for discount in self.discounts or [])
        total += sum(fee.amount for fee in self.fees or [])
        return total
