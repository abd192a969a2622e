"""Stripe integration for checkout.

The gateway wraps the three provider calls the mobile payment sheet needs
(customer, ephemeral key, payment intent) plus the intent lookup used to
verify a payment before an order is stored. Every provider failure surfaces
as PaymentProviderError; nothing is retried.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

import config

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """The payment provider was unreachable, misconfigured or refused the request."""

    def __init__(self, message: str = "Payment initiation failed"):
        self.message = message
        super().__init__(message)


@dataclass
class PaymentIntentInfo:
    id: str
    status: str
    amount: int
    currency: str
    customer: Optional[str]
    client_secret: Optional[str] = None


def _intent_info(intent) -> PaymentIntentInfo:
    return PaymentIntentInfo(
        id=intent.id,
        status=intent.status,
        amount=intent.amount,
        currency=intent.currency,
        customer=intent.customer,
        client_secret=intent.client_secret,
    )


class StripeGateway:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        publishable_key: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else config.STRIPE_SECRET_KEY
        self.publishable_key = publishable_key if publishable_key is not None else config.STRIPE_PUBLISHABLE_KEY
        self.api_version = api_version or config.STRIPE_API_VERSION

    def _require_key(self) -> str:
        if not self.secret_key:
            logger.error("STRIPE_SECRET_KEY is not set, payments are disabled")
            raise PaymentProviderError()
        return self.secret_key

    def create_customer(self, user_id: str, email: str, name: str) -> str:
        api_key = self._require_key()
        try:
            customer = stripe.Customer.create(
                api_key=api_key,
                email=email,
                name=name,
                metadata={"user_id": user_id},
            )
        except stripe.StripeError as e:
            logger.error("Stripe customer creation failed for user %s: %s", user_id, e)
            raise PaymentProviderError() from e
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    def create_ephemeral_key(self, customer_id: str) -> str:
        api_key = self._require_key()
        try:
            key = stripe.EphemeralKey.create(
                api_key=api_key,
                customer=customer_id,
                stripe_version=self.api_version,
            )
        except stripe.StripeError as e:
            logger.error("Stripe ephemeral key creation failed for %s: %s", customer_id, e)
            raise PaymentProviderError() from e
        return key.secret

    def create_payment_intent(self, amount: int, currency: str, customer_id: str,
                              metadata: Optional[dict] = None) -> PaymentIntentInfo:
        """Create an intent for `amount` minor units of `currency`."""
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=api_key,
                amount=amount,
                currency=currency,
                customer=customer_id,
                automatic_payment_methods={"enabled": True},
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            logger.error("Stripe payment intent creation failed for %s: %s", customer_id, e)
            raise PaymentProviderError() from e
        logger.info("Created payment intent %s (%s %s)", intent.id, amount, currency)
        return _intent_info(intent)

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=api_key)
        except stripe.StripeError as e:
            logger.error("Stripe payment intent lookup failed for %s: %s", intent_id, e)
            raise PaymentProviderError("Payment verification failed") from e
        return _intent_info(intent)


def get_payment_gateway() -> StripeGateway:
    return StripeGateway()
