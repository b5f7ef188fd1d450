import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, Text, UniqueConstraint, Uuid, text
from uuid6 import uuid7
from sqlmodel import Column, SQLModel, Field, Relationship, String
from aurelia.common.utils import now


class OrderStatus(enum.IntEnum):
    PENDING = 0
    CONFIRMED = 10
    PROCESSING = 20
    SHIPPED = 30
    DELIVERED = 40
    CANCELLED = 50
    RETURNED = 60


class PaymentStatus(enum.IntEnum):
    PENDING = 0
    PAID = 10
    FAILED = 20
    REFUNDED = 30


class PaymentGateway(str, enum.Enum):
    RAZORPAY = "razorpay"
    COD = "cod"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# Orders --> OrderItem (1:many, cascade)
class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False))
    user_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    address_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    contact_email: Optional[str] = Field(default=None, sa_column=Column(String(320), nullable=True))
    status: int = Field(default=OrderStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    payment_status: int = Field(default=PaymentStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    payment_method: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))  # "razorpay" / "cod"
    payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))  # gateway payment id
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    subtotal: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False))  # stored in rs
    shipping: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False))
    tax: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False))
    total: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    items: List["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "lazy": "selectin"},
    )


class OrderItem(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: int = Field(sa_column=Column(Integer, nullable=False))
    variant_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    product_name: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True))
    quantity: int = Field(sa_column=Column(Integer, nullable=False))
    unit_price_snapshot: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))  # rs

    order: Optional[Orders] = Relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("order_id", "product_id", "variant_id", name="uq_order_product_variant"),
    )

# --------------------------------------------------------------------------------------------------------------------------------

# Orders --> Payment (1:1 by order_id), never cascade deleted
class Payment(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, unique=True))
    gateway: str = Field(default=PaymentGateway.RAZORPAY.value, sa_column=Column(String(32), nullable=False, index=True))
    gateway_order_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    gateway_payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    status: int = Field(default=PaymentStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    method: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    bank: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    wallet: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    vpa: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    refund_amount: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 2), nullable=False, default=Decimal("0")))
    refund_status: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    failure_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    pay_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, index=True))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))


# Payment --> Refund (1:many partial refunds)
class Refund(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    payment_id: int = Field(sa_column=Column(Integer, ForeignKey("payment.id", ondelete="RESTRICT"), nullable=False, index=True))
    gateway_refund_id: str = Field(sa_column=Column(String(128), nullable=False, unique=True))
    amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    status: str = Field(default=RefundStatus.PENDING.value, sa_column=Column(String(32), nullable=False, index=True))
    reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    notes: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))


class WebhookEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    event_type: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    payment_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("payment.id", ondelete="SET NULL"), nullable=True, index=True))
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True))
    processed: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, server_default=text("false")))
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


# dead letter store for deliveries with a valid signature whose processing threw
class FailedWebhook(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True, index=True))
    raw_body: str = Field(sa_column=Column(Text, nullable=False))
    signature: str = Field(sa_column=Column(String(255), nullable=False))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    retries: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    max_retries: int = Field(default=5, sa_column=Column(Integer, nullable=False, default=5))
    last_retry_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    processed: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, server_default=text("false")))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    __table_args__ = (
        Index("ix_failedwebhook_pending", "processed", "retries"),
    )


# append only
class PaymentAuditLog(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    payment_id: int = Field(sa_column=Column(Integer, ForeignKey("payment.id", ondelete="RESTRICT"), nullable=False, index=True))
    action: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    performed_by: str = Field(sa_column=Column(String(128), nullable=False))
    old_status: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    new_status: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    audit_metadata: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
