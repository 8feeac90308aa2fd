import logging
from dataclasses import dataclass

import stripe

from storefront.config import CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from storefront.errors import GatewayError, MismatchError

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY

REUSABLE_STATUSES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
}


@dataclass(frozen=True)
class IntentHandle:
    intent_id: str
    client_secret: str
    status: str = "requires_payment_method"


def create_intent(order, attempt: int = 0, currency: str = CURRENCY) -> IntentHandle:
    """
    Open a PaymentIntent for the stored order total.

    The idempotency key is the order id plus the number of intents already
    recorded for it, so a retried request after a lost response cannot open a
    second charge for the same attempt.
    """
    try:
        intent = stripe.PaymentIntent.create(
            amount=order.total,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata={"order_id": order.id, "user_id": order.user_id},
            idempotency_key=f"order-{order.id}-{attempt}",
        )
    except stripe.StripeError as exc:
        logger.error("PaymentIntent creation failed for order %s: %s", order.id, exc)
        raise GatewayError("Payment processor unavailable, please retry") from exc
    logger.info("PaymentIntent %s created for order %s", intent.id, order.id)
    return IntentHandle(intent_id=intent.id, client_secret=intent.client_secret, status=intent.status)


def retrieve_intent(intent_id: str):
    try:
        return stripe.PaymentIntent.retrieve(intent_id)
    except stripe.StripeError as exc:
        logger.error("PaymentIntent %s lookup failed: %s", intent_id, exc)
        raise GatewayError("Payment processor unavailable, please retry") from exc


def confirm_intent(intent_id: str, order_id: str, expected_amount: int):
    """
    Server-side verification that `intent_id` is a successful charge for
    `order_id`. Nothing here trusts what the client reported.
    """
    intent = retrieve_intent(intent_id)

    bound_order_id = (intent.metadata or {}).get("order_id")
    if bound_order_id != order_id:
        logger.warning(
            "PaymentIntent %s is bound to order %s, not %s", intent_id, bound_order_id, order_id
        )
        raise MismatchError("Payment does not belong to this order")
    if intent.amount != expected_amount:
        logger.warning(
            "PaymentIntent %s amount %s does not match order %s total %s",
            intent_id, intent.amount, order_id, expected_amount,
        )
        raise MismatchError("Payment amount does not match order total")
    if intent.status != "succeeded":
        raise GatewayError(f"Payment not completed (status={intent.status})")
    return intent


def cancel_intent(intent_id: str):
    try:
        return stripe.PaymentIntent.cancel(intent_id)
    except stripe.StripeError as exc:
        logger.error("Cancelling PaymentIntent %s failed: %s", intent_id, exc)
        raise GatewayError("Payment could not be cancelled") from exc


def refund_intent(intent_id: str):
    try:
        return stripe.Refund.create(payment_intent=intent_id)
    except stripe.StripeError as exc:
        logger.error("Refund failed for PaymentIntent %s: %s", intent_id, exc)
        raise GatewayError("Refund could not be processed") from exc


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
