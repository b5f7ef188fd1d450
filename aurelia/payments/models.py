from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class CreatePaymentInput(BaseModel):
    order_id: int
    amount: Optional[Decimal] = Field(default=None, gt=0)
    gateway: str = "razorpay"


class VerifyPaymentInput(BaseModel):
    payment_id: int
    razorpay_payment_id: str = Field(min_length=1, max_length=128)
    razorpay_signature: str = Field(min_length=1, max_length=255)


class CodPaymentInput(BaseModel):
    order_id: int


class RefundInput(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)
