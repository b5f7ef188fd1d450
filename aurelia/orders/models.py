from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class OrderItemInput(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    product_name: Optional[str] = Field(default=None, max_length=255)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=0)


class CreateOrderInput(BaseModel):
    items: List[OrderItemInput] = Field(min_length=1)
    payment_method: str = "razorpay"
    user_id: Optional[int] = None
    address_id: Optional[int] = None
    contact_email: Optional[EmailStr] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class OrderStatusInput(BaseModel):
    status: str
