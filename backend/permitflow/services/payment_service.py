"""
Permit payments through Stripe Connect destination charges.

The applicant is charged the permit fee plus processing fees; the
municipality's connected account receives exactly the permit fee and the
platform keeps the remainder.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional
import stripe

from ..core.config import settings
from ..core.errors import ValidationError
from ..core.logging_config import get_permit_logger

logger = get_permit_logger(__name__)


@dataclass
class PaymentBreakdown:
    """All amounts in cents"""
    permit_fee_cents: int
    platform_fee_cents: int
    processor_fee_cents: int
    total_amount_cents: int

    @property
    def processing_fees_cents(self) -> int:
        return self.platform_fee_cents + self.processor_fee_cents

    def as_dollars(self) -> Dict[str, float]:
        return {
            "permit_fee": self.permit_fee_cents / 100,
            "platform_fee": self.platform_fee_cents / 100,
            "processor_fee": self.processor_fee_cents / 100,
            "processing_fees": self.processing_fees_cents / 100,
            "total_amount": self.total_amount_cents / 100,
        }


def calculate_payment_breakdown(
    permit_fee: float,
    platform_fee_percent: Optional[float] = None,
    processor_percent: Optional[float] = None,
    processor_fixed_cents: Optional[int] = None
) -> PaymentBreakdown:
    """
    Gross up the permit fee so the processor's cut comes out of the
    processing fees, never out of the municipality's transfer.
    """
    platform_fee_percent = settings.PLATFORM_FEE_PERCENT if platform_fee_percent is None else platform_fee_percent
    processor_percent = settings.PROCESSOR_PERCENT if processor_percent is None else processor_percent
    processor_fixed_cents = settings.PROCESSOR_FIXED_CENTS if processor_fixed_cents is None else processor_fixed_cents

    permit_fee_cents = int(round(permit_fee * 100))
    if permit_fee_cents <= 0:
        raise ValidationError("This permit has no fees to pay")

    platform_fee_cents = int(round(permit_fee_cents * platform_fee_percent / 100))
    net_needed = permit_fee_cents + platform_fee_cents + processor_fixed_cents
    total_cents = int(math.ceil(net_needed / (1 - processor_percent / 100)))
    processor_fee_cents = total_cents - permit_fee_cents - platform_fee_cents

    return PaymentBreakdown(
        permit_fee_cents=permit_fee_cents,
        platform_fee_cents=platform_fee_cents,
        processor_fee_cents=processor_fee_cents,
        total_amount_cents=total_cents,
    )


class PaymentGatewayError(Exception):
    pass


class StripeGateway:
    """Payment intents through the Stripe SDK's async client"""

    def __init__(self, api_key: Optional[str] = None, api_base: Optional[str] = None,
                 client: Optional[stripe.StripeClient] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_API_KEY
        self.api_base = api_base or settings.STRIPE_API_BASE
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if not self.api_key:
            raise PaymentGatewayError("Payment processing is not configured")
        if self._client is None:
            self._client = stripe.StripeClient(
                self.api_key,
                base_addresses={"api": self.api_base},
                http_client=stripe.HTTPXClient(timeout=15.0),
            )
        return self._client

    async def create_payment_intent(
        self,
        amount_cents: int,
        destination_account: str,
        transfer_cents: int,
        description: str,
        metadata: Dict[str, str]
    ) -> Dict[str, Any]:
        params = {
            "amount": amount_cents,
            "currency": "usd",
            "payment_method_types": ["card"],
            "transfer_data": {"destination": destination_account, "amount": transfer_cents},
            "description": description,
            "metadata": metadata,
        }
        try:
            intent = await self.client.v1.payment_intents.create_async(params=params)
        except stripe.StripeError as e:
            raise PaymentGatewayError(e.user_message or str(e)) from e
        return intent.to_dict()

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        try:
            intent = await self.client.v1.payment_intents.retrieve_async(payment_intent_id)
        except stripe.StripeError as e:
            raise PaymentGatewayError(e.user_message or str(e)) from e
        return intent.to_dict()


stripe_gateway = StripeGateway()
