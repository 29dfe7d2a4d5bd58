import uuid
from datetime import datetime
from typing import Literal

from pydantic import ConfigDict
from sqlmodel import SQLModel

from storefront.schemas.order import OrderStatus, PaymentMethod, PaymentStatus

PaymentRecordStatus = Literal["pending", "success", "failed", "cancelled", "refunded"]


class PaymentInitiate(SQLModel):
    model_config = ConfigDict(extra="forbid")

    order_id: uuid.UUID
    payment_method: PaymentMethod | None = None


class PaymentInitiateResult(SQLModel):
    """
    For cod: confirmation only. For gateway methods: the handle and key the
    client needs to open the gateway checkout.
    """

    success: bool
    payment_method: PaymentMethod
    message: str
    payment_id: str | None = None
    gateway_order_id: str | None = None
    amount: float | None = None
    currency: str | None = None
    key: str | None = None
    order_number: str


class PaymentVerify(SQLModel):
    model_config = ConfigDict(extra="forbid")

    payment_id: str
    gateway_payment_id: str
    signature: str


class PaymentOrderSummary(SQLModel):
    id: uuid.UUID
    order_number: str
    total_amount: float
    order_status: OrderStatus
    payment_status: PaymentStatus


class PaymentRead(SQLModel):
    """
    Payment joined with a trimmed order summary.
    """

    payment_id: str
    amount: float
    currency: str
    method: str
    gateway: str
    status: PaymentRecordStatus
    gateway_order_id: str | None = None
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None
    refund_amount: float | None = None
    created_at: datetime
    order: PaymentOrderSummary
