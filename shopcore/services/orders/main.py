"""HTTP surface for orders, payments, inventory and webhooks.

The app also owns the background outbox relay and the reservation sweeper.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from shopcore.common.config import settings
from shopcore.common.db import SessionLocal
from shopcore.common.errors import ShopcoreError
from shopcore.common.events import KafkaBus, NotificationSink
from shopcore.common.logging import configure_logging, logger, trace_id_ctx
from shopcore.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from shopcore.common.money import from_minor, to_minor
from shopcore.common.startup import log_startup_config
from shopcore.common.tracing import instrument_app, setup_tracing
from shopcore.services.inventory.ledger import InventoryLedger
from shopcore.services.notifications.relay import OutboxRelay
from shopcore.services.orders.schemas import (
    Cart,
    CancelRequest,
    CompleteActionRequest,
    HoldRequest,
    InventoryLevelResponse,
    LinesUpdateRequest,
    OrderResponse,
    PaymentMethodResponse,
    PaymentOutcomeResponse,
    PayRequest,
    RefundRequest,
    RefundResponse,
    ShipmentRequest,
    StockReceiptRequest,
)
from shopcore.services.orders.service import Caller, OrderService
from shopcore.services.payments.gateways.fake import FakeGateway
from shopcore.services.payments.gateways.registry import GatewayRegistry
from shopcore.services.payments.gateways.remote import RemoteGateway
from shopcore.services.payments.outcomes import Failed, Refunded, RefundFailed, RequiresAction, Success
from shopcore.services.payments.service import PaymentOrchestrator
from shopcore.services.reservations.service import InsufficientStock, ReservationManager
from shopcore.services.reservations.sweeper import ReservationSweeper
from shopcore.services.webhooks.carriers import CarrierWebhookSource
from shopcore.services.webhooks.reconciler import Ack, WebhookReconciler

FULFILLMENT_STEPS = {
    "processing": "start_processing",
    "shipped": "mark_shipped",
    "delivered": "mark_delivered",
    "completed": "complete_order",
}


@dataclass
class Container:
    """Wired services for one process."""

    session_factory: object
    sink: NotificationSink
    ledger: InventoryLedger
    reservations: ReservationManager
    registry: GatewayRegistry
    payments: PaymentOrchestrator
    orders: OrderService
    webhooks: WebhookReconciler
    sweeper: ReservationSweeper
    relay: OutboxRelay


def build_container(session_factory=None, sink: NotificationSink | None = None, gateways=None, carriers=None) -> Container:
    session_factory = session_factory or SessionLocal
    sink = sink or KafkaBus()
    registry = GatewayRegistry(settings.default_gateway)
    if gateways is None:
        gateways = [
            FakeGateway(webhook_secret=settings.provider_webhook_secret or "fake-secret"),
            RemoteGateway(),
        ]
    for gateway in gateways:
        registry.register(gateway)
    if carriers is None:
        carriers = [CarrierWebhookSource("carrier", settings.carrier_webhook_secret)]

    reservations = ReservationManager(session_factory)
    payments = PaymentOrchestrator(registry)
    orders = OrderService(session_factory, reservations, payments)
    return Container(
        session_factory=session_factory,
        sink=sink,
        ledger=InventoryLedger(session_factory),
        reservations=reservations,
        registry=registry,
        payments=payments,
        orders=orders,
        webhooks=WebhookReconciler(session_factory, orders, registry, carriers),
        sweeper=ReservationSweeper(reservations, orders.expire_holds),
        relay=OutboxRelay(session_factory, sink),
    )


def _outcome_response(outcome) -> PaymentOutcomeResponse:
    if isinstance(outcome, Success):
        return PaymentOutcomeResponse(
            payment_id=outcome.payment_id, outcome="succeeded", transaction_ref=outcome.transaction_ref
        )
    if isinstance(outcome, RequiresAction):
        return PaymentOutcomeResponse(
            payment_id=outcome.payment_id,
            outcome="requires_action",
            action_type=outcome.action_type,
            action_data=outcome.action_data,
            action_expires_at=outcome.expires_at,
        )
    if isinstance(outcome, Failed):
        return PaymentOutcomeResponse(
            payment_id=outcome.payment_id,
            outcome="failed",
            reason=outcome.reason,
            retry_allowed=outcome.retry_allowed,
        )
    raise TypeError(f"unexpected payment outcome {outcome!r}")


def resolve_caller(x_api_key: str | None, x_customer_id: str | None) -> Caller:
    """System callers present the API key; customers identify themselves."""

    if x_api_key is not None:
        if x_api_key != settings.api_key:
            raise HTTPException(status_code=401, detail="invalid API key")
        return Caller.system()
    if x_customer_id:
        return Caller(customer_id=x_customer_id)
    raise HTTPException(status_code=401, detail="missing credentials")


def build_app(container: Container, run_workers: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the outbox relay and reservation sweeper with the app lifecycle."""

        tasks = []
        if run_workers:
            tasks.append(asyncio.create_task(container.relay.run_forever()))
            tasks.append(asyncio.create_task(container.sweeper.run_forever()))
        yield
        for task in tasks:
            task.cancel()
        await container.sink.close()

    app = FastAPI(title="ShopCore Orders", lifespan=lifespan)
    instrument_app(app)
    orders = container.orders

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(ShopcoreError)
    async def shopcore_error_handler(_: Request, exc: ShopcoreError):
        if exc.http_status >= 500:
            logger.error("request failed code=%s detail=%s", exc.code, exc.detail)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.post("/orders", status_code=201)
    async def create_order(
        cart: Cart, x_api_key: str | None = Header(default=None), x_customer_id: str | None = Header(default=None)
    ):
        caller = resolve_caller(x_api_key, x_customer_id)
        result = await orders.create_order(cart, caller)
        if isinstance(result, InsufficientStock):
            return JSONResponse(status_code=409, content=result.to_dict())
        view = await orders.get_order(result.order_id, caller)
        return OrderResponse.build(view.order, view.lines)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    async def get_order(
        order_id: str, x_api_key: str | None = Header(default=None), x_customer_id: str | None = Header(default=None)
    ):
        view = await orders.get_order(order_id, resolve_caller(x_api_key, x_customer_id))
        return OrderResponse.build(view.order, view.lines)

    @app.put("/orders/{order_id}/lines", response_model=OrderResponse)
    async def update_lines(
        order_id: str,
        req: LinesUpdateRequest,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        caller = resolve_caller(x_api_key, x_customer_id)
        await orders.update_lines(order_id, req.items, caller, req.expected_version)
        view = await orders.get_order(order_id, caller)
        return OrderResponse.build(view.order, view.lines)

    @app.post("/orders/{order_id}/place")
    async def place_order(
        order_id: str, x_api_key: str | None = Header(default=None), x_customer_id: str | None = Header(default=None)
    ):
        caller = resolve_caller(x_api_key, x_customer_id)
        result = await orders.place_order(order_id, caller)
        if isinstance(result, InsufficientStock):
            return JSONResponse(status_code=409, content=result.to_dict())
        view = await orders.get_order(order_id, caller)
        return OrderResponse.build(view.order, view.lines)

    @app.post("/orders/{order_id}/pay", response_model=PaymentOutcomeResponse)
    async def pay(
        order_id: str,
        req: PayRequest,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        outcome = await orders.pay(order_id, req.method, resolve_caller(x_api_key, x_customer_id), req.gateway)
        return _outcome_response(outcome)

    @app.post("/payments/{payment_id}/complete", response_model=PaymentOutcomeResponse)
    async def complete_payment_action(
        payment_id: str,
        req: CompleteActionRequest,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        outcome = await orders.complete_payment_action(
            payment_id, req.action_result, resolve_caller(x_api_key, x_customer_id)
        )
        return _outcome_response(outcome)

    @app.post("/orders/{order_id}/cancel", response_model=OrderResponse)
    async def cancel_order(
        order_id: str,
        req: CancelRequest,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        caller = resolve_caller(x_api_key, x_customer_id)
        await orders.cancel_order(order_id, caller, req.reason, req.expected_version)
        view = await orders.get_order(order_id, caller)
        return OrderResponse.build(view.order, view.lines)

    @app.post("/orders/{order_id}/refunds", response_model=RefundResponse)
    async def refund_order(
        order_id: str,
        req: RefundRequest,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        caller = resolve_caller(x_api_key, x_customer_id)
        result = await orders.refund_order(order_id, req.amount, req.reason, caller)
        view = await orders.get_order(order_id, caller)
        currency = view.order.currency
        if isinstance(result, Refunded):
            return RefundResponse(
                outcome="refunded",
                refund_id=result.refund_id,
                amount=from_minor(result.amount_minor, currency),
                fully_refunded=result.fully_refunded,
            )
        if isinstance(result, RefundFailed):
            return JSONResponse(
                status_code=502,
                content=RefundResponse(outcome="failed", refund_id=result.refund_id, reason=result.reason).model_dump(
                    mode="json"
                ),
            )
        return RefundResponse(
            outcome="pending", refund_id=result.refund_id, amount=from_minor(result.amount_minor, currency)
        )

    @app.post("/orders/{order_id}/hold")
    async def extend_hold(
        order_id: str,
        req: HoldRequest,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        extended = await orders.extend_hold(order_id, req.ttl_seconds, resolve_caller(x_api_key, x_customer_id))
        return {"order_id": order_id, "extended": extended}

    @app.post("/orders/{order_id}/fulfillment/{step}", response_model=OrderResponse)
    async def fulfillment(
        order_id: str,
        step: str,
        req: ShipmentRequest | None = None,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        caller = resolve_caller(x_api_key, x_customer_id)
        if step not in FULFILLMENT_STEPS:
            raise HTTPException(status_code=404, detail="unknown fulfillment step")
        if step == "shipped":
            req = req or ShipmentRequest()
            await orders.mark_shipped(order_id, caller, req.carrier, req.tracking_number)
        else:
            await getattr(orders, FULFILLMENT_STEPS[step])(order_id, caller)
        view = await orders.get_order(order_id, caller)
        return OrderResponse.build(view.order, view.lines)

    @app.get("/payment-methods", response_model=list[PaymentMethodResponse])
    async def payment_methods(currency: str, amount: Decimal):
        currency = currency.upper()
        methods = await container.payments.get_methods(currency, to_minor(amount, currency))
        return [
            PaymentMethodResponse(
                gateway=m.gateway,
                method_type=m.method_type,
                display_name=m.display_name,
                requires_redirect=m.requires_redirect,
                supports_3ds=m.supports_3ds,
                currencies=m.currencies,
                min_amount=from_minor(m.min_amount_minor, currency) if m.min_amount_minor is not None else None,
                max_amount=from_minor(m.max_amount_minor, currency) if m.max_amount_minor is not None else None,
            )
            for m in methods
        ]

    @app.post("/inventory/receive", response_model=InventoryLevelResponse)
    async def receive_stock(req: StockReceiptRequest, x_api_key: str | None = Header(default=None)):
        caller = resolve_caller(x_api_key, None)
        if not caller.is_system:
            raise HTTPException(status_code=403, detail="system caller required")
        level = await container.ledger.receive_stock(
            req.sku,
            req.location or settings.default_location,
            req.quantity,
            low_stock_threshold=req.low_stock_threshold,
        )
        return InventoryLevelResponse(
            sku=level.sku, location=level.location, on_hand=level.on_hand, reserved=level.reserved, available=level.available
        )

    @app.get("/inventory/{sku}/{location}", response_model=InventoryLevelResponse)
    async def inventory_level(
        sku: str,
        location: str,
        x_api_key: str | None = Header(default=None),
        x_customer_id: str | None = Header(default=None),
    ):
        resolve_caller(x_api_key, x_customer_id)
        level = await container.ledger.get_level(sku, location)
        if level is None:
            raise HTTPException(status_code=404, detail="inventory level not found")
        return InventoryLevelResponse(
            sku=level.sku, location=level.location, on_hand=level.on_hand, reserved=level.reserved, available=level.available
        )

    @app.post("/webhooks/{source}")
    async def webhook(source: str, request: Request):
        raw = await request.body()
        result = await container.webhooks.handle_webhook(source, raw, dict(request.headers))
        if isinstance(result, Ack):
            return {"status": "ok", "duplicate": result.duplicate}
        status_code = 409 if result.reason == "in_progress" else 400
        return JSONResponse(status_code=status_code, content={"status": "rejected", "reason": result.reason})

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "provider_url",
        "provider_api_key",
        "default_gateway",
        "reservation_ttl_seconds",
        "sweep_interval_seconds",
    ],
)
app = build_app(build_container())
