from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront import pricing
from storefront.models import OrderStatus


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = Field(..., min_length=1)
    phone: Optional[str] = None


class OrderCreateRequest(BaseModel):
    # Prices are computed server side; totals sent by the client are rejected
    model_config = ConfigDict(extra="forbid")

    shipping_address: ShippingAddress
    payment_method: str = "stripe"


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class IntentRequest(BaseModel):
    order_id: str


class ConfirmRequest(BaseModel):
    payment_intent_id: str
    order_id: str


class FailureRequest(BaseModel):
    payment_intent_id: str
    order_id: str
    reason: str = ""


class RefundRequest(BaseModel):
    order_id: str


class ProductOut(BaseModel):
    id: str
    name: str
    image: Optional[str]
    price: Decimal
    stock: int

    @classmethod
    def from_model(cls, product):
        return cls(
            id=product.id,
            name=product.name,
            image=product.image,
            price=pricing.from_cents(product.price),
            stock=product.stock,
        )


class Breakdown(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


class CartLineOut(BaseModel):
    product_id: str
    name: str
    image: Optional[str]
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class CartOut(BaseModel):
    items: List[CartLineOut]
    total_items: int
    pricing: Breakdown
    checkout_order_id: Optional[str]

    @classmethod
    def from_model(cls, cart):
        breakdown = pricing.calculate(cart.items)
        return cls(
            items=[
                CartLineOut(
                    product_id=line.product_id,
                    name=line.product.name,
                    image=line.product.image,
                    unit_price=pricing.from_cents(line.unit_price),
                    quantity=line.quantity,
                    line_total=pricing.from_cents(line.unit_price * line.quantity),
                )
                for line in cart.items
            ],
            total_items=sum(line.quantity for line in cart.items),
            pricing=Breakdown(**asdict(breakdown)),
            checkout_order_id=cart.checkout_order_id,
        )


class OrderItemOut(BaseModel):
    product_id: str
    name: str
    image: Optional[str]
    unit_price: Decimal
    quantity: int


class OrderOut(BaseModel):
    id: str
    user_id: str
    items: List[OrderItemOut]
    shipping_address: ShippingAddress
    payment_method: str
    status: OrderStatus
    is_paid: bool
    paid_at: Optional[datetime]
    is_delivered: bool
    delivered_at: Optional[datetime]
    pricing: Breakdown
    created_at: Optional[datetime]

    @classmethod
    def from_model(cls, order):
        return cls(
            id=order.id,
            user_id=order.user_id,
            items=[
                OrderItemOut(
                    product_id=item.product_id,
                    name=item.name,
                    image=item.image,
                    unit_price=pricing.from_cents(item.unit_price),
                    quantity=item.quantity,
                )
                for item in order.items
            ],
            shipping_address=ShippingAddress(
                full_name=order.full_name,
                address=order.address,
                city=order.city,
                state=order.state,
                postal_code=order.postal_code,
                country=order.country,
                phone=order.phone,
            ),
            payment_method=order.payment_method,
            status=OrderStatus(order.status),
            is_paid=order.is_paid,
            paid_at=order.paid_at,
            is_delivered=order.is_delivered,
            delivered_at=order.delivered_at,
            pricing=Breakdown(
                subtotal=pricing.from_cents(order.subtotal),
                tax=pricing.from_cents(order.tax),
                shipping=pricing.from_cents(order.shipping),
                total=pricing.from_cents(order.total),
            ),
            created_at=order.created_at,
        )


class OrderPage(BaseModel):
    orders: List[OrderOut]
    page: int
    pages: int
    total: int


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: int
    currency: str
    status: str
    created_at: Optional[datetime]
