from typing import Optional

from pydantic import BaseModel, Field


class QuoteCustomerIn(BaseModel):
    name: str = ""
    phone: Optional[str] = None
    city: Optional[str] = None


class QuoteItemIn(BaseModel):
    product_id: int = 0
    qty: int
    name: str
    unit_price: int


class QuoteCreateRequest(BaseModel):
    customer: QuoteCustomerIn = Field(default_factory=QuoteCustomerIn)
    items: list[QuoteItemIn] = Field(default_factory=list)
    discount_percent: int = 0
    comment: str = ""
