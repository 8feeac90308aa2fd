"""
Per-user shopping cart.

Every mutation goes through `_mutate`: a pending checkout built from the cart
is abandoned first, then the change is validated and committed. A rejected
change rolls everything back, so the caller only ever sees the stored cart.
"""
import logging

from sqlalchemy.exc import IntegrityError

from storefront import orders
from storefront.errors import NotFoundError, ValidationError
from storefront.models import Cart, CartItem, Order, OrderStatus, Product

logger = logging.getLogger(__name__)


def get_cart(db, user_id: str) -> Cart:
    cart = db.query(Cart).filter_by(user_id=user_id).first()
    if cart:
        return cart
    cart = Cart(user_id=user_id)
    db.add(cart)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by another request
        db.rollback()
        cart = db.query(Cart).filter_by(user_id=user_id).one()
    return cart


def release_checkout(db, cart: Cart) -> None:
    """Drop the cart's claim, cancelling the unpaid order built from it."""
    if not cart.checkout_order_id:
        return
    order = db.get(Order, cart.checkout_order_id)
    if order is not None and order.status == OrderStatus.PENDING.value and not order.is_paid:
        orders.abandon_order(db, order)
    cart.checkout_order_id = None
    db.flush()


def _find_line(cart: Cart, product_id: str):
    for line in cart.items:
        if line.product_id == product_id:
            return line
    return None


def _available_product(db, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None or not product.is_active:
        raise ValidationError(f"Product {product_id} is not available")
    return product


def _mutate(db, user_id: str, change) -> Cart:
    cart = get_cart(db, user_id)
    try:
        release_checkout(db, cart)
        change(cart)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return cart


def add_item(db, user_id: str, product_id: str, quantity: int = 1) -> Cart:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    def change(cart):
        product = _available_product(db, product_id)
        db.refresh(product)
        line = _find_line(cart, product_id)
        wanted = quantity + (line.quantity if line else 0)
        if wanted > product.stock:
            raise ValidationError(f"Only {product.stock} of {product.name} in stock")
        if line is None:
            cart.items.append(CartItem(product_id=product.id, unit_price=product.price, quantity=wanted))
        else:
            line.quantity = wanted
            line.unit_price = product.price

    return _mutate(db, user_id, change)


def update_item(db, user_id: str, product_id: str, quantity: int) -> Cart:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    def change(cart):
        line = _find_line(cart, product_id)
        if line is None:
            raise NotFoundError("Item not in cart")
        product = _available_product(db, product_id)
        db.refresh(product)
        if quantity > product.stock:
            raise ValidationError(f"Only {product.stock} of {product.name} in stock")
        line.quantity = quantity

    return _mutate(db, user_id, change)


def remove_item(db, user_id: str, product_id: str) -> Cart:
    def change(cart):
        line = _find_line(cart, product_id)
        if line is None:
            raise NotFoundError("Item not in cart")
        cart.items.remove(line)

    return _mutate(db, user_id, change)


def clear_cart(db, user_id: str) -> Cart:
    return _mutate(db, user_id, lambda cart: cart.items.clear())


def count_items(db, user_id: str) -> int:
    return sum(line.quantity for line in get_cart(db, user_id).items)


def clear_for_order(db, user_id: str, order_id: str) -> bool:
    """Empty the cart, but only while it is still the one `order_id` was built from."""
    cart = db.query(Cart).filter_by(user_id=user_id, checkout_order_id=order_id).first()
    if cart is None:
        return False
    cart.items.clear()
    cart.checkout_order_id = None
    db.commit()
    logger.info("Cart of user %s cleared after order %s was paid", user_id, order_id)
    return True
