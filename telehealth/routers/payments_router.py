"""
Payments Router - Stripe Checkout for consultation fees.
Clients poll /status/{consultationId} after the redirect until paid is true.
"""

import logging

from fastapi import APIRouter, Depends, status

from telehealth.dependencies import get_current_user, get_payment_initiator
from telehealth.models.user import User
from telehealth.schemas.payment_schemas import (
    CheckoutRequest,
    CheckoutResponse,
    PaymentResponse,
    PaymentStatusResponse,
)
from telehealth.services.payment_initiator import PaymentInitiator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def create_checkout(
    request: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    initiator: PaymentInitiator = Depends(get_payment_initiator)
):
    """Start a checkout attempt for a consultation the caller booked."""
    return initiator.initiate(request.consultation_id, current_user)


@router.get("/status/{consultation_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    initiator: PaymentInitiator = Depends(get_payment_initiator)
):
    return initiator.get_status(consultation_id, current_user)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    current_user: User = Depends(get_current_user),
    initiator: PaymentInitiator = Depends(get_payment_initiator)
):
    payment = initiator.get_payment(payment_id, current_user)
    return PaymentResponse.from_payment(payment)
