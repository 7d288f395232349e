"""API request/response schemas for the order surface."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from shopcore.common.money import from_minor


class Address(BaseModel):
    name: str | None = None
    line1: str = Field(min_length=1)
    line2: str | None = None
    city: str = Field(min_length=1)
    state: str | None = None
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2, max_length=2)


class CartItem(BaseModel):
    """Priced cart line; amounts are decimals in the cart currency."""

    product_id: str = Field(min_length=1)
    variant_id: str | None = None
    sku: str = Field(min_length=1)
    location: str | None = None
    title: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)


class Cart(BaseModel):
    customer_id: str | None = None
    email: str | None = None
    currency: str = Field(min_length=3, max_length=3)
    items: list[CartItem] = Field(min_length=1)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_address: Address | None = None
    billing_address: Address | None = None


class LinesUpdateRequest(BaseModel):
    items: list[CartItem] = Field(min_length=1)
    expected_version: int | None = None


class PayRequest(BaseModel):
    method: dict[str, Any] = Field(default_factory=lambda: {"type": "card"})
    gateway: str | None = None


class CompleteActionRequest(BaseModel):
    action_result: dict[str, Any]


class CancelRequest(BaseModel):
    reason: str = "customer_request"
    expected_version: int | None = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str | None = None


class HoldRequest(BaseModel):
    ttl_seconds: int = Field(gt=0, le=86400)


class ShipmentRequest(BaseModel):
    carrier: str | None = None
    tracking_number: str | None = None


class StockReceiptRequest(BaseModel):
    sku: str = Field(min_length=1)
    location: str | None = None
    quantity: int = Field(gt=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)


class LineResponse(BaseModel):
    line_id: str
    position: int
    product_id: str
    variant_id: str | None
    sku: str
    location: str
    title: str
    quantity: int
    unit_price: Decimal
    tax: Decimal
    discount: Decimal
    line_total: Decimal


class OrderResponse(BaseModel):
    order_id: str
    customer_id: str
    email: str | None
    currency: str
    status: str
    version: int
    payment_pending_action: bool
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    grand_total: Decimal
    captured: Decimal
    refunded: Decimal
    shipping_address: dict | None
    billing_address: dict | None
    cancel_reason: str | None
    carrier: str | None
    tracking_number: str | None
    lines: list[LineResponse] = Field(default_factory=list)

    @classmethod
    def build(cls, order, lines=()) -> "OrderResponse":
        cur = order.currency
        return cls(
            order_id=order.order_id,
            customer_id=order.customer_id,
            email=order.email,
            currency=cur,
            status=order.status,
            version=order.version,
            payment_pending_action=order.has_pending_action,
            subtotal=from_minor(order.subtotal_minor, cur),
            tax=from_minor(order.tax_minor, cur),
            shipping=from_minor(order.shipping_minor, cur),
            discount=from_minor(order.discount_minor, cur),
            grand_total=from_minor(order.grand_total_minor, cur),
            captured=from_minor(order.captured_minor, cur),
            refunded=from_minor(order.refunded_minor, cur),
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            cancel_reason=order.cancel_reason,
            carrier=order.carrier,
            tracking_number=order.tracking_number,
            lines=[
                LineResponse(
                    line_id=line.line_id,
                    position=line.position,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    sku=line.sku,
                    location=line.location,
                    title=line.title,
                    quantity=line.quantity,
                    unit_price=from_minor(line.unit_price_minor, cur),
                    tax=from_minor(line.tax_minor, cur),
                    discount=from_minor(line.discount_minor, cur),
                    line_total=from_minor(line.line_total_minor, cur),
                )
                for line in lines
            ],
        )


class PaymentOutcomeResponse(BaseModel):
    payment_id: str
    outcome: str
    transaction_ref: str | None = None
    action_type: str | None = None
    action_data: dict[str, Any] | None = None
    action_expires_at: datetime | None = None
    reason: str | None = None
    retry_allowed: bool | None = None


class RefundResponse(BaseModel):
    outcome: str
    refund_id: str | None = None
    amount: Decimal | None = None
    fully_refunded: bool | None = None
    reason: str | None = None


class PaymentMethodResponse(BaseModel):
    gateway: str
    method_type: str
    display_name: str
    requires_redirect: bool
    supports_3ds: bool
    currencies: list[str]
    min_amount: Decimal | None
    max_amount: Decimal | None


class InventoryLevelResponse(BaseModel):
    sku: str
    location: str
    on_hand: int
    reserved: int
    available: int
