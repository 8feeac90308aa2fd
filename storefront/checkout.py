"""
Checkout reconciliation.

A checkout attempt moves through these states:

    INIT -> ORDER_CREATED -> INTENT_CREATED -> CLIENT_CONFIRMED
         -> SERVER_CONFIRMED (paid) -> CART_CLEARED

with CLIENT_FAILED as a retriable dead end after INTENT_CREATED. The order is
written before any charge exists, an order is only marked paid after Stripe
itself confirms a succeeded intent bound to that order, and the cart is only
emptied once the order is paid. Failures after ORDER_CREATED leave the order
pending so the shopper can retry against it.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from storefront import carts, orders
from storefront import stripe_service as gateway
from storefront.auth import Principal
from storefront.errors import MismatchError, ValidationError
from storefront.models import Cart, Order, OrderStatus, Payment, PaymentStatus

logger = logging.getLogger(__name__)

CAPTURED_STATUSES = (PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value)


class CheckoutState(str, enum.Enum):
    INIT = "init"
    ORDER_CREATED = "order_created"
    INTENT_CREATED = "intent_created"
    CLIENT_CONFIRMED = "client_confirmed"
    CLIENT_FAILED = "client_failed"
    SERVER_CONFIRMED = "server_confirmed"
    CART_CLEARED = "cart_cleared"


@dataclass
class CheckoutResult:
    state: CheckoutState
    order: Order
    intent: Optional[gateway.IntentHandle] = None
    changed: bool = True


def _pending_claim(db, cart: Cart) -> Optional[Order]:
    if not cart.checkout_order_id:
        return None
    order = db.get(Order, cart.checkout_order_id)
    if order is not None and order.status == OrderStatus.PENDING.value and not order.is_paid:
        return order
    return None


def _load_order(db, order_id: str, principal: Optional[Principal]) -> Order:
    if principal is None:
        return orders.find_order(db, order_id)
    return orders.get_order(db, order_id, principal)


def _require_awaiting_payment(order: Order) -> None:
    if order.is_paid:
        raise ValidationError("Order is already paid")
    if order.status != OrderStatus.PENDING.value:
        raise ValidationError(f"Order is not awaiting payment (status={order.status})")


def place_order(db, principal: Principal, shipping_address: dict, payment_method: str = "stripe") -> CheckoutResult:
    """
    INIT -> ORDER_CREATED.

    The cart is claimed by the new order in the same transaction that
    reserves stock and inserts the order. If the cart is already claimed by a
    pending order, that order is returned instead of creating a second one.
    """
    cart = carts.get_cart(db, principal.user_id)

    resumed = _pending_claim(db, cart)
    if resumed is not None:
        logger.info("Resuming pending order %s for user %s", resumed.id, principal.user_id)
        return CheckoutResult(CheckoutState.ORDER_CREATED, resumed, changed=False)

    stale_claim = cart.checkout_order_id
    if stale_claim:
        stale = db.get(Order, stale_claim)
        if stale is not None and stale.is_paid:
            # claim left by a paid order whose cart was never emptied
            carts.clear_for_order(db, principal.user_id, stale_claim)
            db.refresh(cart)

    order = orders.create_order(
        db, principal.user_id, cart.items, shipping_address, payment_method, commit=False
    )
    claimed = (
        db.query(Cart)
        .filter(
            Cart.id == cart.id,
            or_(Cart.checkout_order_id.is_(None), Cart.checkout_order_id == stale_claim),
        )
        .update({Cart.checkout_order_id: order.id}, synchronize_session=False)
    )
    if claimed != 1:
        db.rollback()
        db.refresh(cart)
        resumed = _pending_claim(db, cart)
        if resumed is None:
            raise ValidationError("Checkout already in progress for this cart")
        logger.info("Concurrent checkout for user %s resolved to order %s", principal.user_id, resumed.id)
        return CheckoutResult(CheckoutState.ORDER_CREATED, resumed, changed=False)

    db.commit()
    return CheckoutResult(CheckoutState.ORDER_CREATED, order)


def create_payment_intent(db, principal: Principal, order_id: str) -> CheckoutResult:
    """
    ORDER_CREATED -> INTENT_CREATED.

    The amount always comes from the stored order. An intent already opened
    for this order is handed back while Stripe still accepts payment on it.
    If that intent has in fact succeeded (the shopper paid but the
    confirmation never reached us) the order is confirmed instead, and the
    result carries no intent. A GatewayError leaves the order pending and the
    cart untouched.
    """
    order = orders.get_order(db, order_id, principal)
    _require_awaiting_payment(order)

    existing = (
        db.query(Payment)
        .filter_by(order_id=order.id, status=PaymentStatus.CREATED.value)
        .order_by(Payment.created_at.desc())
        .first()
    )
    if existing is not None:
        intent = gateway.retrieve_intent(existing.id)
        if intent.status == "succeeded":
            logger.info("PaymentIntent %s of order %s already succeeded, confirming it", existing.id, order.id)
            return confirm_payment(db, principal, existing.id, order.id)
        if intent.status in gateway.REUSABLE_STATUSES and intent.amount == order.total:
            handle = gateway.IntentHandle(intent.id, intent.client_secret, intent.status)
            return CheckoutResult(CheckoutState.INTENT_CREATED, order, handle, changed=False)

    attempt = db.query(Payment).filter_by(order_id=order.id).count()
    handle = gateway.create_intent(order, attempt=attempt)

    if db.get(Payment, handle.intent_id) is None:
        db.add(Payment(
            id=handle.intent_id,
            order_id=order.id,
            amount=order.total,
            currency=gateway.CURRENCY,
            status=PaymentStatus.CREATED.value,
        ))
        db.commit()
    return CheckoutResult(CheckoutState.INTENT_CREATED, order, handle)


def _record_capture(db, payment: Optional[Payment], intent_id: str, order: Order, intent) -> Payment:
    if payment is None:
        payment = Payment(
            id=intent_id,
            order_id=order.id,
            amount=intent.amount,
            currency=intent.currency,
        )
        db.add(payment)
    payment.status = PaymentStatus.SUCCEEDED.value
    return payment


def _reject_capture(db, order: Order, intent_id: str) -> None:
    # capture stays recorded as succeeded for an admin refund
    db.commit()
    logger.warning(
        "PaymentIntent %s captured for order %s which is not awaiting payment (status=%s, paid=%s); refund required",
        intent_id, order.id, order.status, order.is_paid,
    )
    if order.is_paid:
        raise ValidationError("Order is already paid")
    raise ValidationError(f"Order is not awaiting payment (status={order.status})")


def confirm_payment(db, principal: Optional[Principal], intent_id: str, order_id: str) -> CheckoutResult:
    """
    CLIENT_CONFIRMED -> SERVER_CONFIRMED -> CART_CLEARED.

    `principal` is None when the confirmation comes from a signed webhook.
    Only a pending order is ever marked paid. A verified capture for an order
    that is paid through another intent, or was cancelled, is recorded as a
    succeeded payment and refused with ValidationError.
    """
    order = _load_order(db, order_id, principal)

    payment = db.get(Payment, intent_id)
    if payment is not None and payment.order_id != order.id:
        logger.warning(
            "Cross-order confirmation rejected: intent %s is bound to order %s, claimed for %s",
            intent_id, payment.order_id, order.id,
        )
        raise MismatchError("Payment does not belong to this order")

    if payment is not None and payment.status in CAPTURED_STATUSES:
        if not order.is_paid:
            raise ValidationError(f"Order is not awaiting payment (status={order.status})")
        cleared = carts.clear_for_order(db, order.user_id, order.id)
        state = CheckoutState.CART_CLEARED if cleared else CheckoutState.SERVER_CONFIRMED
        return CheckoutResult(state, order, changed=False)

    intent = gateway.confirm_intent(intent_id, order.id, order.total)
    _record_capture(db, payment, intent_id, order, intent)
    if order.is_paid or order.status != OrderStatus.PENDING.value:
        _reject_capture(db, order, intent_id)

    changed = orders.mark_paid(db, order.id)
    if not changed:
        db.refresh(order)
        if not order.is_paid:
            # cancelled while Stripe was being asked
            _reject_capture(db, order, intent_id)
    result = CheckoutResult(CheckoutState.SERVER_CONFIRMED, order, changed=changed)

    try:
        if carts.clear_for_order(db, order.user_id, order.id):
            result.state = CheckoutState.CART_CLEARED
    except SQLAlchemyError:
        # order is paid; the stale claim is cleaned up on the next checkout
        db.rollback()
        logger.exception("Clearing cart failed after order %s was paid", order.id)

    db.refresh(order)
    return result


def report_client_failure(db, principal: Principal, order_id: str, intent_id: str, reason: str = "") -> CheckoutResult:
    """INTENT_CREATED -> CLIENT_FAILED. The order stays pending and can be paid later."""
    order = orders.get_order(db, order_id, principal)
    payment = db.get(Payment, intent_id)
    if payment is not None and payment.order_id != order.id:
        raise MismatchError("Payment does not belong to this order")
    if payment is not None and payment.status == PaymentStatus.CREATED.value:
        payment.status = PaymentStatus.FAILED.value
        db.commit()
    logger.info("Client reported payment failure for order %s (intent %s): %s", order.id, intent_id, reason)
    return CheckoutResult(CheckoutState.CLIENT_FAILED, order)


def reconcile_webhook_event(db, event) -> Optional[CheckoutResult]:
    event_type = event["type"]
    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        return None

    intent_id = event["data"]["object"]["id"]
    payment = db.get(Payment, intent_id)
    if payment is None:
        logger.info("Ignoring %s for unknown PaymentIntent %s", event_type, intent_id)
        return None

    if event_type == "payment_intent.succeeded":
        try:
            return confirm_payment(db, None, intent_id, payment.order_id)
        except ValidationError as exc:
            # capture is on record; redelivering the event cannot change the outcome
            logger.warning("Webhook for PaymentIntent %s not applied: %s", intent_id, exc.message)
            return None

    if payment.status == PaymentStatus.CREATED.value:
        payment.status = PaymentStatus.FAILED.value
        db.commit()
    logger.info("PaymentIntent %s failed for order %s", intent_id, payment.order_id)
    return CheckoutResult(CheckoutState.CLIENT_FAILED, payment.order)


def refund_order(db, order_id: str) -> Order:
    """
    Refund every captured payment of an order. A paid order moves to
    refunded; a cancelled order that was charged anyway keeps its status.
    Refunding an already refunded order is a no-op.
    """
    order = orders.find_order(db, order_id)
    if order.status == OrderStatus.REFUNDED.value:
        return order

    captured = (
        db.query(Payment)
        .filter_by(order_id=order.id, status=PaymentStatus.SUCCEEDED.value)
        .all()
    )
    if not captured:
        raise ValidationError("Nothing to refund")

    for payment in captured:
        gateway.refund_intent(payment.id)
        payment.status = PaymentStatus.REFUNDED.value
        db.commit()

    if order.is_paid:
        return orders.mark_refunded(db, order.id)
    logger.info("Refunded %d payment(s) captured for unpaid order %s", len(captured), order.id)
    return order
