"""
Stripe Payment Service - Checkout sessions for consultation fees.
"""

import logging
import threading
from typing import Optional, Dict, Any
from dataclasses import dataclass

import stripe

from telehealth.config import settings

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    """Result of a payment operation."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class StripeService:
    """
    Stripe payment service for one-off consultation checkouts.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_API_KEY

        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("[Stripe] Service initialized")
        else:
            logger.warning("[Stripe] API key not configured")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def create_checkout_session(
        self,
        consultation_id: str,
        patient_id: str,
        description: str,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str
    ) -> PaymentResult:
        """
        Create a Checkout session for a consultation fee.

        The idempotency key is forwarded to Stripe so a retried request for the
        same attempt never produces a second session.
        """
        if not self.is_configured:
            return PaymentResult(success=False, error="Stripe not configured")

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_cents,
                        "product_data": {
                            "name": description,
                        }
                    },
                    "quantity": 1
                }],
                metadata={
                    "consultation_id": consultation_id,
                    "patient_id": patient_id,
                    "type": "consultation_fee"
                },
                client_reference_id=consultation_id,
                success_url=success_url,
                cancel_url=cancel_url,
                idempotency_key=idempotency_key
            )

            return PaymentResult(success=True, data={
                "session_id": session.id,
                "url": session.url
            })

        except stripe.StripeError as e:
            logger.error(f"[Stripe] Checkout session creation failed for consultation {consultation_id}: {e}")
            return PaymentResult(success=False, error=str(e))


_stripe_service: Optional[StripeService] = None
_stripe_service_lock = threading.Lock()


def get_stripe_service() -> StripeService:
    """Get singleton Stripe service instance."""
    global _stripe_service
    if _stripe_service is None:
        with _stripe_service_lock:
            if _stripe_service is None:
                _stripe_service = StripeService()
    return _stripe_service
