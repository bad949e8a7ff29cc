"""
Pydantic schemas for the payments API.
"""

from datetime import datetime
from typing import Optional

from pydantic import Field

from telehealth.schemas.consultation_schemas import CamelModel


class CheckoutRequest(CamelModel):
    consultation_id: str = Field(..., min_length=1)


class CheckoutResponse(CamelModel):
    url: str
    payment_id: str


class PaymentStatusResponse(CamelModel):
    paid: bool


class PaymentResponse(CamelModel):
    id: str
    consultation_id: str
    status: str
    amount: int
    currency: str
    provider_checkout_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_payment(cls, payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            consultation_id=payment.consultation_id,
            status=payment.status.value,
            amount=payment.amount,
            currency=payment.currency,
            provider_checkout_id=payment.provider_checkout_id,
            paid_at=payment.paid_at,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )
