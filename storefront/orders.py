"""
Order store.

Orders are snapshots: line prices, quantities and totals are copied from the
cart when the order is created and are never recomputed from live product
prices afterwards. Stock is reserved in the same transaction that inserts the
order and is handed back when an unpaid order is cancelled.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import uuid4

from storefront import pricing
from storefront import stripe_service as gateway
from storefront.auth import Principal
from storefront.config import DEFAULT_PAGE_SIZE
from storefront.errors import AuthorizationError, GatewayError, NotFoundError, ValidationError
from storefront.models import Cart, Order, OrderItem, OrderStatus, Payment, PaymentStatus, Product

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("full_name", "address", "city", "state", "postal_code", "country", "phone")

OPEN_PAYMENT_STATUSES = (PaymentStatus.CREATED.value, PaymentStatus.FAILED.value)


def _reserve_stock(db, product_id: str, quantity: int) -> bool:
    reserved = (
        db.query(Product)
        .filter(Product.id == product_id, Product.stock >= quantity)
        .update({Product.stock: Product.stock - quantity}, synchronize_session=False)
    )
    return reserved == 1


def _restock(db, order: Order) -> None:
    for item in order.items:
        db.query(Product).filter(Product.id == item.product_id).update(
            {Product.stock: Product.stock + item.quantity}, synchronize_session=False
        )


def create_order(db, user_id: str, lines, shipping_address: dict, payment_method: str = "stripe", commit: bool = True) -> Order:
    """
    Snapshot `lines` into a new pending, unpaid order.

    Every line must fit in the product's current stock. Stock is decremented
    with conditional updates, so two checkouts racing for the last unit
    cannot both succeed. On any validation failure the whole transaction is
    rolled back, including whatever the caller had staged in it.
    """
    lines = list(lines)
    if not lines:
        raise ValidationError("Cart is empty")

    try:
        items = []
        for line in lines:
            product = db.get(Product, line.product_id)
            if product is None or not product.is_active:
                raise ValidationError(f"Product {line.product_id} is no longer available")
            if line.quantity < 1:
                raise ValidationError(f"Invalid quantity for {product.name}")
            if line.quantity > product.stock or not _reserve_stock(db, product.id, line.quantity):
                raise ValidationError(f"Insufficient stock for {product.name}")
            items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                image=product.image,
                unit_price=line.unit_price,
                quantity=line.quantity,
            ))
    except ValidationError:
        db.rollback()
        raise

    breakdown = pricing.calculate(lines)
    order = Order(
        id=str(uuid4()),
        user_id=user_id,
        payment_method=payment_method,
        status=OrderStatus.PENDING.value,
        is_paid=False,
        is_delivered=False,
        subtotal=pricing.to_cents(breakdown.subtotal),
        tax=pricing.to_cents(breakdown.tax),
        shipping=pricing.to_cents(breakdown.shipping),
        total=pricing.to_cents(breakdown.total),
        items=items,
        **{field: shipping_address.get(field) for field in ADDRESS_FIELDS},
    )
    db.add(order)
    db.flush()
    if commit:
        db.commit()
    logger.info("Order %s created for user %s (total=%s)", order.id, user_id, breakdown.total)
    return order


def get_order(db, order_id: str, principal: Principal) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if not principal.can_access(order.user_id):
        raise AuthorizationError("Not authorized to access this order")
    return order


def find_order(db, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def mark_paid(db, order_id: str, paid_at: Optional[datetime] = None, commit: bool = True) -> bool:
    """
    Returns True only for the call that actually flipped the order to paid.

    Only a pending order can be paid: an order cancelled while the payment
    was being verified is left untouched and False is returned.
    """
    find_order(db, order_id)
    now = datetime.now(timezone.utc)
    changed = (
        db.query(Order)
        .filter(
            Order.id == order_id,
            Order.is_paid.is_(False),
            Order.status == OrderStatus.PENDING.value,
        )
        .update(
            {
                Order.is_paid: True,
                Order.paid_at: paid_at or now,
                Order.status: OrderStatus.PROCESSING.value,
                Order.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if commit:
        db.commit()
    else:
        db.flush()
        db.expire_all()
    if changed:
        logger.info("Order %s marked paid", order_id)
    return changed == 1


def update_status(db, order_id: str, new_status: OrderStatus) -> Order:
    order = find_order(db, order_id)
    old_status = order.status
    now = datetime.now(timezone.utc)

    if (new_status is OrderStatus.CANCELLED and old_status == OrderStatus.PENDING.value
            and not order.is_paid):
        abandon_order(db, order)
    if new_status is OrderStatus.DELIVERED and not order.is_delivered:
        order.is_delivered = True
        order.delivered_at = now
    order.status = new_status.value
    order.updated_at = now
    db.commit()
    logger.info("Order %s status changed %s -> %s", order_id, old_status, new_status.value)
    return order


def _cancel_open_intents(db, order: Order) -> None:
    open_payments = (
        db.query(Payment)
        .filter(Payment.order_id == order.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
        .all()
    )
    for payment in open_payments:
        try:
            gateway.cancel_intent(payment.id)
        except GatewayError:
            # a capture on it still reaches the webhook and can be refunded
            logger.warning("PaymentIntent %s of abandoned order %s left open", payment.id, order.id)
            continue
        payment.status = PaymentStatus.CANCELLED.value


def abandon_order(db, order: Order) -> None:
    """
    Cancel an unpaid pending order and hand its stock back. Does not commit.

    Open PaymentIntents are cancelled at Stripe first, so the client secret the
    shopper still holds can no longer be paid.
    """
    _cancel_open_intents(db, order)
    _restock(db, order)
    order.status = OrderStatus.CANCELLED.value
    order.updated_at = datetime.now(timezone.utc)
    db.query(Cart).filter(Cart.checkout_order_id == order.id).update(
        {Cart.checkout_order_id: None}, synchronize_session=False
    )
    logger.info("Order %s abandoned, stock released", order.id)


def cancel_order(db, order_id: str, principal: Principal) -> Order:
    order = get_order(db, order_id, principal)
    if order.is_paid:
        raise ValidationError("Paid orders cannot be cancelled")
    if order.status != OrderStatus.PENDING.value:
        raise ValidationError(f"Order cannot be cancelled in status {order.status}")
    abandon_order(db, order)
    db.commit()
    return order


def mark_refunded(db, order_id: str, commit: bool = True) -> Order:
    order = find_order(db, order_id)
    if not order.is_paid:
        raise ValidationError("Only paid orders can be refunded")
    order.status = OrderStatus.REFUNDED.value
    order.updated_at = datetime.now(timezone.utc)
    if commit:
        db.commit()
    logger.info("Order %s refunded", order_id)
    return order


def _paginate(query, page: int, limit: int) -> Tuple[List[Order], int]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total


def list_for_user(db, user_id: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[List[Order], int]:
    return _paginate(db.query(Order).filter_by(user_id=user_id), page, limit)


def list_all(db, page: int = 1, limit: int = DEFAULT_PAGE_SIZE, status: Optional[OrderStatus] = None) -> Tuple[List[Order], int]:
    query = db.query(Order)
    if status is not None:
        query = query.filter_by(status=status.value)
    return _paginate(query, page, limit)
