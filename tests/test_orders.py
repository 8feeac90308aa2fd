from types import SimpleNamespace

import pytest

from storefront import orders
from storefront.errors import AuthorizationError, NotFoundError, ValidationError
from storefront.models import Order, OrderStatus, Product


def lines(*pairs):
    return [SimpleNamespace(product_id=pid, unit_price=price, quantity=qty) for pid, price, qty in pairs]


def test_create_order_snapshots_lines_and_totals(db, products, shipping):
    order = orders.create_order(db, "user-1", lines(("lamp", 2000, 2), ("mug", 1500, 1)), shipping)

    assert order.status == OrderStatus.PENDING.value
    assert order.is_paid is False
    assert order.paid_at is None
    assert (order.subtotal, order.tax, order.shipping, order.total) == (5500, 440, 1000, 6940)
    assert [(i.name, i.unit_price, i.quantity) for i in order.items] == [
        ("Desk Lamp", 2000, 2),
        ("Mug", 1500, 1),
    ]
    assert order.city == "London"


def test_create_order_reserves_stock(db, products, shipping):
    orders.create_order(db, "user-1", lines(("lamp", 2000, 2)), shipping)
    assert db.get(Product, "lamp").stock == 3


def test_totals_do_not_follow_live_prices(db, products, shipping):
    order = orders.create_order(db, "user-1", lines(("lamp", 2000, 1)), shipping)

    db.get(Product, "lamp").price = 9900
    db.commit()

    reloaded = db.get(Order, order.id)
    assert reloaded.total == 3160
    assert reloaded.items[0].unit_price == 2000


def test_create_order_rejects_empty_cart(db, shipping):
    with pytest.raises(ValidationError, match="empty"):
        orders.create_order(db, "user-1", [], shipping)


def test_create_order_rejects_quantity_over_stock(db, products, shipping):
    with pytest.raises(ValidationError, match="Insufficient stock"):
        orders.create_order(db, "user-1", lines(("lamp", 2000, 1), ("chair", 8000, 2)), shipping)

    # nothing reserved, nothing written
    assert db.get(Product, "lamp").stock == 5
    assert db.query(Order).count() == 0


def test_last_unit_cannot_be_sold_twice(db, products, shipping):
    orders.create_order(db, "user-1", lines(("chair", 8000, 1)), shipping)
    with pytest.raises(ValidationError):
        orders.create_order(db, "user-2", lines(("chair", 8000, 1)), shipping)
    assert db.get(Product, "chair").stock == 0


def test_get_order_checks_ownership(db, products, shipping, user, other_user, admin):
    order = orders.create_order(db, user.user_id, lines(("lamp", 2000, 1)), shipping)

    assert orders.get_order(db, order.id, user).id == order.id
    assert orders.get_order(db, order.id, admin).id == order.id
    with pytest.raises(AuthorizationError):
        orders.get_order(db, order.id, other_user)
    with pytest.raises(NotFoundError):
        orders.get_order(db, "missing", admin)


def test_mark_paid_is_idempotent(db, products, shipping, caplog):
    order = orders.create_order(db, "user-1", lines(("lamp", 2000, 1)), shipping)

    with caplog.at_level("INFO", logger="storefront.orders"):
        assert orders.mark_paid(db, order.id) is True
        first = db.get(Order, order.id)
        paid_at = first.paid_at
        assert orders.mark_paid(db, order.id) is False

    again = db.get(Order, order.id)
    assert again.is_paid is True
    assert again.status == OrderStatus.PROCESSING.value
    assert again.paid_at == paid_at
    assert sum("marked paid" in r.getMessage() for r in caplog.records) == 1


def test_mark_paid_leaves_cancelled_order_alone(db, products, shipping, user):
    order = orders.create_order(db, user.user_id, lines(("lamp", 2000, 2)), shipping)
    orders.cancel_order(db, order.id, user)

    assert orders.mark_paid(db, order.id) is False

    stored = db.get(Order, order.id)
    assert stored.is_paid is False
    assert stored.status == OrderStatus.CANCELLED.value
    assert db.get(Product, "lamp").stock == 5


def test_update_status_any_transition(db, products, shipping):
    order = orders.create_order(db, "user-1", lines(("lamp", 2000, 1)), shipping)
    orders.mark_paid(db, order.id)

    updated = orders.update_status(db, order.id, OrderStatus.DELIVERED)
    assert updated.is_delivered is True
    assert updated.delivered_at is not None

    updated = orders.update_status(db, order.id, OrderStatus.SHIPPED)
    assert updated.status == OrderStatus.SHIPPED.value


def test_admin_cancelling_pending_order_returns_stock(db, products, shipping):
    order = orders.create_order(db, "user-1", lines(("lamp", 2000, 2)), shipping)
    orders.update_status(db, order.id, OrderStatus.CANCELLED)
    assert db.get(Product, "lamp").stock == 5


def test_cancel_order(db, products, shipping, user, other_user):
    order = orders.create_order(db, user.user_id, lines(("mug", 1500, 2)), shipping)

    with pytest.raises(AuthorizationError):
        orders.cancel_order(db, order.id, other_user)

    cancelled = orders.cancel_order(db, order.id, user)
    assert cancelled.status == OrderStatus.CANCELLED.value
    assert db.get(Product, "mug").stock == 3

    with pytest.raises(ValidationError):
        orders.cancel_order(db, order.id, user)


def test_paid_order_cannot_be_cancelled(db, products, shipping, user):
    order = orders.create_order(db, user.user_id, lines(("mug", 1500, 1)), shipping)
    orders.mark_paid(db, order.id)
    with pytest.raises(ValidationError):
        orders.cancel_order(db, order.id, user)


def test_mark_refunded_requires_payment(db, products, shipping):
    order = orders.create_order(db, "user-1", lines(("mug", 1500, 1)), shipping)
    with pytest.raises(ValidationError):
        orders.mark_refunded(db, order.id)
    orders.mark_paid(db, order.id)
    assert orders.mark_refunded(db, order.id).status == OrderStatus.REFUNDED.value


def test_listing_is_paginated(db, products, shipping):
    for _ in range(3):
        orders.create_order(db, "user-1", lines(("lamp", 2000, 1)), shipping)
    orders.create_order(db, "user-2", lines(("mug", 1500, 1)), shipping)

    page, total = orders.list_for_user(db, "user-1", page=1, limit=2)
    assert total == 3
    assert len(page) == 2

    page, total = orders.list_for_user(db, "user-1", page=2, limit=2)
    assert len(page) == 1

    everything, total = orders.list_all(db)
    assert total == 4

    pending, total = orders.list_all(db, status=OrderStatus.PENDING)
    assert total == 4
    processing, total = orders.list_all(db, status=OrderStatus.PROCESSING)
    assert total == 0
