"""
Typed request payloads and results for payments and refunds.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from langcenter.storage.models import Payment


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    CHAPA_CARD = "chapa_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CASH = "cash"


CARD_METHODS = frozenset(
    {PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD, PaymentMethod.CHAPA_CARD}
)


class CreatePaymentIntentRequest(BaseModel):
    booking_id: int
    payment_method: PaymentMethod
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    return_url: Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class ProcessRefundRequest(BaseModel):
    approved: bool
    admin_notes: Optional[str] = None


@dataclass
class PaymentIntent:
    payment: Payment
    checkout_url: str
