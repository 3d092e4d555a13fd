from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import stripe
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc
from errors import GatewayError, ValidationError
from log import get_logger
from settings import STRIPE_CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class WebhookSignatureError(Exception):
    """Raised when an incoming webhook cannot be authenticated."""


@dataclass
class PaymentIntent:
    id: str
    client_secret: Optional[str]


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    """
    Thin wrapper over the Stripe SDK: creates payment intents and
    authenticates webhook payloads. Nothing else in the codebase imports stripe.
    """

    def __init__(self, api_key: str = STRIPE_SECRET_KEY, webhook_secret: str = STRIPE_WEBHOOK_SECRET,
                 currency: str = STRIPE_CURRENCY):
        if not api_key or api_key.startswith("sk_test_your"):
            logger.warning("STRIPE_SECRET_KEY is not configured. Card payments will fail.")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def create_payment_intent(self, amount: float) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=self.currency,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent creation failed: {e}")
            raise GatewayError(getattr(e, "user_message", None) or str(e) or "Error creating payment intent")
        return PaymentIntent(id=intent.id, client_secret=intent.client_secret)

    def cancel_payment_intent(self, intent_id: str) -> None:
        try:
            stripe.PaymentIntent.cancel(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Could not cancel payment intent {intent_id}: {e}")
            raise GatewayError(str(e) or "Error cancelling payment intent")

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        try:
            return stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise WebhookSignatureError(str(e))


@lru_cache(maxsize=1)
def get_payment_gateway() -> StripeGateway:
    return StripeGateway()


class PaymentService:
    def __init__(self, db: Database, gateway: StripeGateway):
        self.db = db
        self.gateway = gateway

    def create_intent(self, amount: Optional[float]) -> PaymentIntent:
        if not amount or amount <= 0:
            raise ValidationError("Invalid amount")
        return self.gateway.create_payment_intent(amount)

    def handle_event(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Apply a verified provider event to the matching order.

        Returns the updated order, or None when the event type is ignored or
        no order carries the intent id. Either way the provider gets an ack.

        A payment that succeeds for an order already cancelled does not revive
        it: its stock went back on sale at cancellation. The payment is recorded
        as completed and the order stays cancelled, awaiting a refund.
        """
        event_type = event["type"]
        if event_type not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
            logger.info(f"Unhandled event type {event_type}")
            return None

        intent_id = event["data"]["object"]["id"]
        by_intent = {"paymentInfo.stripePaymentIntentId": intent_id}
        stamp = now_utc()

        if event_type == PAYMENT_SUCCEEDED:
            order = self.db["orders"].find_one_and_update(
                {**by_intent, "status": {"$ne": "cancelled"}},
                {"$set": {
                    "paymentInfo.status": "completed",
                    "paymentInfo.paidAt": stamp,
                    "status": "confirmed",
                    "updatedAt": stamp,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if order:
                logger.info(f"Payment successful for order: {order['orderNumber']}")
                return order

            order = self.db["orders"].find_one_and_update(
                {**by_intent, "status": "cancelled"},
                {"$set": {
                    "paymentInfo.status": "completed",
                    "paymentInfo.paidAt": stamp,
                    "updatedAt": stamp,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if order:
                logger.warning(
                    f"Payment {intent_id} succeeded for cancelled order {order['orderNumber']}; refund required"
                )
                return order
        else:
            # the order is cancelled outright; no retry path is offered
            order = self.db["orders"].find_one_and_update(
                by_intent,
                {"$set": {"paymentInfo.status": "failed", "status": "cancelled", "updatedAt": stamp}},
                return_document=ReturnDocument.AFTER,
            )
            if order:
                logger.info(f"Payment failed for order: {order['orderNumber']}")
                return order

        logger.error(f"Order not found for payment intent: {intent_id}")
        return None
