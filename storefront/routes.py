import math
from typing import Optional

from fastapi import APIRouter, Depends, Query

from storefront import carts, checkout, orders
from storefront.auth import Principal, require_admin, verify_token
from storefront.config import CURRENCY, DEFAULT_PAGE_SIZE, STRIPE_PUBLISHABLE_KEY
from storefront.database import get_db
from storefront.errors import NotFoundError
from storefront.models import Order, OrderStatus, Payment, Product
from storefront.schemas import (
    CartItemRequest,
    CartOut,
    ConfirmRequest,
    FailureRequest,
    IntentRequest,
    OrderCreateRequest,
    OrderOut,
    OrderPage,
    PaymentOut,
    ProductOut,
    RefundRequest,
    StatusUpdateRequest,
)

router = APIRouter(prefix="/api")


def _page(items, total, page, limit):
    return OrderPage(
        orders=[OrderOut.from_model(o) for o in items],
        page=page,
        pages=math.ceil(total / limit) if total else 0,
        total=total,
    )


@router.get("/health")
def health():
    return {"status": "ok"}


# --- Products (read-only) ---

@router.get("/products")
def list_products(db=Depends(get_db)):
    products = db.query(Product).filter_by(is_active=True).order_by(Product.name).all()
    return {"products": [ProductOut.from_model(p) for p in products]}


@router.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    product = db.get(Product, product_id)
    if product is None or not product.is_active:
        raise NotFoundError("Product not found")
    return ProductOut.from_model(product)


# --- Cart ---

@router.get("/cart")
def get_cart(principal: Principal = Depends(verify_token), db=Depends(get_db)):
    return CartOut.from_model(carts.get_cart(db, principal.user_id))


@router.get("/cart/count")
def cart_count(principal: Principal = Depends(verify_token), db=Depends(get_db)):
    return {"count": carts.count_items(db, principal.user_id)}


@router.post("/cart/add")
def add_to_cart(request: CartItemRequest, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    cart = carts.add_item(db, principal.user_id, request.product_id, request.quantity)
    return {"cart": CartOut.from_model(cart)}


@router.put("/cart/update")
def update_cart_item(request: CartItemRequest, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    cart = carts.update_item(db, principal.user_id, request.product_id, request.quantity)
    return {"cart": CartOut.from_model(cart)}


@router.delete("/cart/remove/{product_id}")
def remove_from_cart(product_id: str, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    cart = carts.remove_item(db, principal.user_id, product_id)
    return {"cart": CartOut.from_model(cart)}


@router.delete("/cart/clear")
def clear_cart(principal: Principal = Depends(verify_token), db=Depends(get_db)):
    cart = carts.clear_cart(db, principal.user_id)
    return {"cart": CartOut.from_model(cart)}


# --- Orders ---

@router.post("/orders", status_code=201)
def create_order(request: OrderCreateRequest, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    result = checkout.place_order(
        db, principal, request.shipping_address.model_dump(), request.payment_method
    )
    return {
        "order": OrderOut.from_model(result.order),
        "state": result.state,
        "resumed": not result.changed,
    }


@router.get("/orders/my-orders")
def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    principal: Principal = Depends(verify_token),
    db=Depends(get_db),
):
    items, total = orders.list_for_user(db, principal.user_id, page, limit)
    return _page(items, total, page, limit)


@router.get("/orders")
def all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    admin: Principal = Depends(require_admin),
    db=Depends(get_db),
):
    items, total = orders.list_all(db, page, limit, status)
    return _page(items, total, page, limit)


@router.get("/orders/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    return OrderOut.from_model(orders.get_order(db, order_id, principal))


@router.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    return OrderOut.from_model(orders.cancel_order(db, order_id, principal))


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    admin: Principal = Depends(require_admin),
    db=Depends(get_db),
):
    return OrderOut.from_model(orders.update_status(db, order_id, request.status))


# --- Payment ---

@router.get("/payment/config")
def payment_config(principal: Principal = Depends(verify_token)):
    return {"publishable_key": STRIPE_PUBLISHABLE_KEY, "currency": CURRENCY}


@router.post("/payment/create-intent")
def create_payment_intent(request: IntentRequest, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    result = checkout.create_payment_intent(db, principal, request.order_id)
    if result.intent is None:
        # paid on an earlier intent whose confirmation was lost
        return {
            "client_secret": None,
            "payment_intent_id": None,
            "state": result.state,
            "order": OrderOut.from_model(result.order),
        }
    return {
        "client_secret": result.intent.client_secret,
        "payment_intent_id": result.intent.intent_id,
        "state": result.state,
    }


@router.post("/payment/confirm")
def confirm_payment(request: ConfirmRequest, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    result = checkout.confirm_payment(db, principal, request.payment_intent_id, request.order_id)
    return {
        "order": OrderOut.from_model(result.order),
        "state": result.state,
        "already_paid": not result.changed,
    }


@router.post("/payment/failure")
def report_failure(request: FailureRequest, principal: Principal = Depends(verify_token), db=Depends(get_db)):
    result = checkout.report_client_failure(
        db, principal, request.order_id, request.payment_intent_id, request.reason
    )
    return {"order": OrderOut.from_model(result.order), "state": result.state}


@router.get("/payment/history")
def payment_history(principal: Principal = Depends(verify_token), db=Depends(get_db)):
    payments = (
        db.query(Payment)
        .join(Order, Payment.order_id == Order.id)
        .filter(Order.user_id == principal.user_id)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return {"payments": [PaymentOut.model_validate(p) for p in payments]}


@router.post("/payment/refund")
def refund(request: RefundRequest, admin: Principal = Depends(require_admin), db=Depends(get_db)):
    order = checkout.refund_order(db, request.order_id)
    return {"status": order.status, "order_id": order.id}
