"""Order state machine and the operations exposed to API callers.

Each operation is a unit of work: read the order and its version, validate
the edge, apply the effects on reservations and payments, then a conditional
UPDATE on `(order_id, version)`, a timeline row and an outbox event, all in
one transaction. Gateway calls sit between units, never inside one.
"""

from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from shopcore.common import clock
from shopcore.common.config import settings
from shopcore.common.errors import (
    ConcurrentModification,
    Forbidden,
    GatewayError,
    InvariantViolation,
    NotFound,
    StalePaymentAction,
    ValidationError,
)
from shopcore.common.logging import log_context, logger
from shopcore.common.metrics import late_outcomes_discarded_total, order_conflicts_total, order_transitions_total
from shopcore.common.money import from_minor, to_minor
from shopcore.common.state_machine import PAYMENT_SETTLED, validate_transition
from shopcore.services.notifications.relay import enqueue_event
from shopcore.services.orders.models import Order, OrderLineItem, OrderTimeline
from shopcore.services.orders.totals import compute_totals, line_total, order_level_discount, reconcile
from shopcore.services.payments.outcomes import (
    Failed,
    Refunded,
    RefundFailed,
    RefundPending,
    RequiresAction,
    Success,
)
from shopcore.services.payments.service import PaymentOrchestrator
from shopcore.services.reservations.service import (
    InsufficientStock,
    ReservationConflict,
    ReservationLine,
    ReservationManager,
)

orders = Order.__table__


@dataclass(frozen=True)
class Caller:
    """Authenticated principal; system callers may act on any order."""

    customer_id: str | None = None
    is_system: bool = False

    @classmethod
    def system(cls) -> "Caller":
        return cls(is_system=True)


@dataclass(frozen=True)
class OrderView:
    order: Order
    lines: list[OrderLineItem]


class _Abort(Exception):
    """Roll the unit back and hand `result` to the caller."""

    def __init__(self, result) -> None:
        super().__init__("unit aborted")
        self.result = result


def _order_payload(order: Order) -> dict:
    return {
        "order_id": order.order_id,
        "customer_id": order.customer_id,
        "status": order.status,
        "version": order.version,
        "currency": order.currency,
        "grand_total": str(from_minor(order.grand_total_minor, order.currency)),
    }


class OrderService:
    def __init__(
        self,
        session_factory,
        reservations: ReservationManager,
        payments: PaymentOrchestrator,
        max_conflict_retries: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.reservations = reservations
        self.payments = payments
        self.max_conflict_retries = (
            settings.max_conflict_retries if max_conflict_retries is None else max_conflict_retries
        )

    # -- unit of work ---------------------------------------------------------

    async def run_unit(self, operation: str, unit, order_id: str | None = None, expected_version: int | None = None):
        """Run `unit(db)` in its own transaction, retrying lost races.

        A caller-pinned `expected_version` is never retried: the mismatch is
        the answer.
        """

        attempts = 1 if expected_version is not None else max(self.max_conflict_retries, 1)
        with log_context(order_id=order_id):
            for attempt in range(1, attempts + 1):
                try:
                    async with self.session_factory() as db:
                        try:
                            result = await unit(db)
                        except _Abort as abort:
                            await db.rollback()
                            return abort.result
                        await db.commit()
                        return result
                except (ConcurrentModification, IntegrityError) as exc:
                    if attempt == attempts:
                        order_conflicts_total.labels(operation=operation, outcome="surfaced").inc()
                        if isinstance(exc, IntegrityError):
                            raise ConcurrentModification(
                                "concurrent write conflict", operation=operation, order_id=order_id
                            ) from exc
                        raise
                    order_conflicts_total.labels(operation=operation, outcome="retried").inc()
                    logger.info("conflict retry operation=%s order_id=%s attempt=%s", operation, order_id, attempt)
                except InvariantViolation as exc:
                    logger.critical(
                        "invariant violated operation=%s order_id=%s detail=%s", operation, order_id, exc.to_dict()
                    )
                    raise

    async def _load_in(
        self, db, order_id: str, caller: Caller | None = None, expected_version: int | None = None
    ) -> Order:
        order = (
            await db.execute(
                select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if order is None:
            raise NotFound("order not found", order_id=order_id)
        if caller is not None and not caller.is_system and caller.customer_id != order.customer_id:
            raise Forbidden("order belongs to another customer", order_id=order_id)
        if expected_version is not None and order.version != expected_version:
            raise ConcurrentModification(
                "order version changed", order_id=order_id, expected=expected_version, actual=order.version
            )
        return order

    async def _lines_in(self, db, order_id: str) -> list[OrderLineItem]:
        return list(
            (
                await db.execute(
                    select(OrderLineItem).where(OrderLineItem.order_id == order_id).order_by(OrderLineItem.position)
                )
            ).scalars()
        )

    async def _write_in(self, db, order: Order, **values) -> None:
        """Compare-and-write on the order version; bumps the version by one."""

        values["updated_at"] = clock.utcnow()
        result = await db.execute(
            update(orders)
            .where(orders.c.order_id == order.order_id, orders.c.version == order.version)
            .values(version=orders.c.version + 1, **values)
        )
        if result.rowcount != 1:
            raise ConcurrentModification("order changed concurrently", order_id=order.order_id, version=order.version)
        for key, value in values.items():
            set_committed_value(order, key, value)
        set_committed_value(order, "version", order.version + 1)

    async def _transition_in(
        self, db, order: Order, new_status: str, reason: str | None = None, source_ref: str | None = None, **values
    ) -> None:
        current = order.status
        validate_transition(current, new_status)
        await self._write_in(db, order, status=new_status, **values)
        db.add(
            OrderTimeline(
                order_id=order.order_id,
                from_status=current,
                to_status=new_status,
                reason=reason,
                source_ref=source_ref,
            )
        )
        enqueue_event(db, "order", order.order_id, f"order.{new_status}", {**_order_payload(order), "reason": reason})
        order_transitions_total.labels(from_status=current, to_status=new_status).inc()
        logger.info(
            "order transition order_id=%s from=%s to=%s reason=%s", order.order_id, current, new_status, reason
        )

    def _require_system(self, caller: Caller) -> None:
        if not caller.is_system:
            raise Forbidden("operation requires a system caller")

    def _build_lines(self, order_id: str, items, currency: str) -> list[OrderLineItem]:
        lines = []
        for position, item in enumerate(items, start=1):
            unit_price = to_minor(item.unit_price, currency, "unit_price")
            lines.append(
                OrderLineItem(
                    order_id=order_id,
                    position=position,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    sku=item.sku,
                    location=item.location or settings.default_location,
                    title=item.title,
                    quantity=item.quantity,
                    unit_price_minor=unit_price,
                    tax_minor=to_minor(item.tax, currency, "tax"),
                    discount_minor=to_minor(item.discount, currency, "discount"),
                    line_total_minor=line_total(unit_price, item.quantity),
                )
            )
        return lines

    # -- order lifecycle ------------------------------------------------------

    async def create_order(self, cart, caller: Caller):
        """Persist the cart as a draft order, then place it.

        Returns the order, or InsufficientStock (carrying the order id) when a
        line cannot be held; the draft is kept so the cart can be fixed.
        """

        if caller.is_system:
            if not cart.customer_id:
                raise ValidationError("customer_id is required", field="customer_id")
            customer_id = cart.customer_id
        else:
            if cart.customer_id and cart.customer_id != caller.customer_id:
                raise Forbidden("cannot create orders for another customer")
            customer_id = caller.customer_id
        currency = cart.currency.upper()
        if not currency.isalpha():
            raise ValidationError("currency must be an ISO 4217 code", field="currency")

        order_id = str(uuid4())
        lines = self._build_lines(order_id, cart.items, currency)
        totals = compute_totals(
            lines,
            shipping_minor=to_minor(cart.shipping, currency, "shipping"),
            order_discount_minor=to_minor(cart.discount, currency, "discount"),
        )

        async def unit(db):
            order = Order(
                order_id=order_id,
                customer_id=customer_id,
                email=cart.email,
                currency=currency,
                status="draft",
                version=0,
                captured_minor=0,
                refunded_minor=0,
                has_pending_action=False,
                payment_attempts=0,
                shipping_address=cart.shipping_address.model_dump() if cart.shipping_address else None,
                billing_address=cart.billing_address.model_dump() if cart.billing_address else None,
                **totals.as_columns(),
            )
            db.add(order)
            db.add_all(lines)
            db.add(OrderTimeline(order_id=order_id, from_status=None, to_status="draft", reason="created"))
            enqueue_event(db, "order", order_id, "order.created", _order_payload(order))
            return order

        await self.run_unit("create_order", unit, order_id)
        logger.info("order created order_id=%s customer_id=%s lines=%s", order_id, customer_id, len(lines))
        return await self.place_order(order_id, caller)

    async def update_lines(self, order_id: str, items, caller: Caller, expected_version: int | None = None) -> Order:
        async def unit(db):
            order = await self._load_in(db, order_id, caller, expected_version)
            if order.status != "draft":
                raise ValidationError("lines can only change while the order is a draft", status=order.status)
            old_lines = await self._lines_in(db, order_id)
            discount = order_level_discount(order, old_lines)
            new_lines = self._build_lines(order_id, items, order.currency)
            totals = compute_totals(new_lines, order.shipping_minor, discount)
            await db.execute(delete(OrderLineItem).where(OrderLineItem.order_id == order_id))
            db.add_all(new_lines)
            await self._write_in(db, order, **totals.as_columns())
            return order

        return await self.run_unit("update_lines", unit, order_id, expected_version)

    async def place_order(self, order_id: str, caller: Caller, expected_version: int | None = None):
        """Reserve every line and move the order to pending_payment."""

        async def unit(db):
            order = await self._load_in(db, order_id, caller, expected_version)
            if order.status == "pending_payment":
                return order
            validate_transition(order.status, "pending_payment")
            lines = await self._lines_in(db, order_id)
            result = await self.reservations.reserve_in(
                db, order_id, [ReservationLine(line.sku, line.location, line.quantity) for line in lines]
            )
            if isinstance(result, InsufficientStock):
                raise _Abort(result)
            await self._transition_in(
                db, order, "pending_payment", reason="stock_reserved", has_pending_action=False
            )
            return order

        return await self.run_unit("place_order", unit, order_id, expected_version)

    async def get_order(self, order_id: str, caller: Caller) -> OrderView:
        async with self.session_factory() as db:
            order = await self._load_in(db, order_id, caller)
            return OrderView(order=order, lines=await self._lines_in(db, order_id))

    async def audit_totals(self) -> list[dict]:
        """Orders whose stored totals or captured amounts do not reconcile."""

        problems = []
        async with self.session_factory() as db:
            for order in (await db.execute(select(Order).order_by(Order.created_at))).scalars():
                try:
                    reconcile(order, await self._lines_in(db, order.order_id))
                except InvariantViolation as exc:
                    problems.append({"order_id": order.order_id, **exc.to_dict()})
                    continue
                if not 0 <= order.refunded_minor <= order.captured_minor <= order.grand_total_minor:
                    problems.append(
                        {
                            "order_id": order.order_id,
                            "code": "capture_out_of_range",
                            "captured_minor": order.captured_minor,
                            "refunded_minor": order.refunded_minor,
                        }
                    )
        return problems

    async def extend_hold(self, order_id: str, ttl_seconds: int, caller: Caller) -> int:
        async def unit(db):
            order = await self._load_in(db, order_id, caller)
            if order.status != "pending_payment":
                raise ValidationError("only orders awaiting payment hold stock", status=order.status)
            extended = await self.reservations.extend_order_in(db, order_id, ttl_seconds)
            if extended == 0:
                raise ValidationError("no live reservations to extend", order_id=order_id)
            return extended

        return await self.run_unit("extend_hold", unit, order_id)

    # -- payments -------------------------------------------------------------

    async def pay(self, order_id: str, method_payload: dict, caller: Caller, gateway: str | None = None):
        """Start (or resume) a payment attempt and drive it to an outcome.

        A retried call while an attempt is open reuses that attempt and its
        idempotency key, so the gateway never sees a second charge.
        """

        await self.expire_holds(order_id)

        async def start(db):
            order = await self._load_in(db, order_id, caller)
            if order.status != "pending_payment":
                raise ValidationError("order is not awaiting payment", status=order.status)
            attempt, created = await self.payments.start_attempt_in(db, order, method_payload, gateway)
            if created:
                await self._write_in(db, order, payment_attempts=order.payment_attempts + 1)
            return order, attempt

        order, attempt = await self.run_unit("pay", start, order_id)
        with log_context(payment_id=attempt.payment_id):
            if attempt.status == "requires_action":
                return self.payments.outcome_of(attempt)
            outcome = await self.payments.initiate(
                attempt, method_payload, customer_id=order.customer_id, email=order.email
            )
            return await self.apply_payment_outcome(
                attempt.payment_id, outcome, source_ref=f"pay:{attempt.idempotency_key}"
            )

    async def complete_payment_action(self, payment_id: str, action_result: dict, caller: Caller):
        async def check(db):
            attempt = await self.payments.get_attempt_in(db, payment_id)
            order = await self._load_in(db, attempt.order_id, caller)
            if attempt.status == "failed":
                return attempt, "failed"
            if attempt.status in PAYMENT_SETTLED:
                return attempt, "settled"
            if attempt.status != "requires_action":
                raise ValidationError("payment has no pending action", status=attempt.status)
            if await self.reservations.has_overdue_in(db, order.order_id):
                return attempt, "holds_expired"
            if attempt.action_expires_at and clock.as_utc(attempt.action_expires_at) <= clock.utcnow():
                return attempt, "action_expired"
            return attempt, "ok"

        attempt, state = await self.run_unit("complete_payment_action", check)
        if state == "settled":
            return self.payments.outcome_of(attempt)
        if state == "holds_expired":
            await self.expire_holds(attempt.order_id)
        elif state == "action_expired":
            await self.apply_payment_outcome(
                payment_id, Failed(payment_id, "action_expired", True), source_ref="action_expired"
            )
        if state != "ok":
            logger.info("stale payment action rejected payment_id=%s state=%s", payment_id, state)
            raise StalePaymentAction("payment action is no longer valid", payment_id=payment_id, state=state)

        outcome = await self.payments.complete_action(attempt, action_result)
        return await self.apply_payment_outcome(payment_id, outcome, source_ref=f"action:{payment_id}")

    async def apply_payment_outcome(self, payment_id: str, outcome, source_ref: str, source: str = "sync"):
        async def unit(db):
            return await self.apply_payment_outcome_in(db, payment_id, outcome, source_ref, source)

        return await self.run_unit("apply_payment_outcome", unit)

    async def apply_payment_outcome_in(self, db, payment_id: str, outcome, source_ref: str, source: str = "sync"):
        """Converge payment, reservations and order on one outcome.

        Shared by the synchronous path, completed actions and webhooks.
        Returns the outcome now in effect for the payment.
        """

        attempt = await self.payments.get_attempt_in(db, payment_id)
        order = await self._load_in(db, attempt.order_id)

        if isinstance(outcome, Success) and attempt.status not in PAYMENT_SETTLED and order.status != "pending_payment":
            self._discard_late_success(db, attempt, outcome, source, order.status)
            return self.payments.outcome_of(attempt)

        verdict = await self.payments.record_outcome_in(db, attempt, outcome)
        if verdict == "discarded":
            if isinstance(outcome, Success):
                self._discard_late_success(db, attempt, outcome, source, attempt.status)
            else:
                late_outcomes_discarded_total.labels(source=source).inc()
            return self.payments.outcome_of(attempt)
        if verdict == "unchanged":
            return self.payments.outcome_of(attempt)

        payment_payload = {
            "payment_id": attempt.payment_id,
            "order_id": order.order_id,
            "gateway": attempt.gateway,
            "amount": str(from_minor(attempt.amount_minor, attempt.currency)),
            "currency": attempt.currency,
        }
        if isinstance(outcome, Success):
            committed = await self.reservations.commit_in(db, order.order_id)
            if isinstance(committed, ReservationConflict):
                raise ConcurrentModification(
                    "reservation changed while confirming", order_id=order.order_id, reason=committed.reason
                )
            reconcile(order, await self._lines_in(db, order.order_id))
            captured = order.captured_minor + attempt.amount_minor
            if captured > order.grand_total_minor:
                raise InvariantViolation(
                    "capture exceeds order total", order_id=order.order_id, captured=captured
                )
            await self._transition_in(
                db,
                order,
                "confirmed",
                reason="payment_succeeded",
                source_ref=source_ref,
                captured_minor=captured,
                has_pending_action=False,
            )
            enqueue_event(db, "payment", attempt.payment_id, "payment.succeeded", payment_payload)
        elif isinstance(outcome, RequiresAction):
            if order.status == "pending_payment" and not order.has_pending_action:
                await self._write_in(db, order, has_pending_action=True)
            enqueue_event(
                db,
                "payment",
                attempt.payment_id,
                "payment.requires_action",
                {**payment_payload, "action_type": outcome.action_type},
            )
        else:
            enqueue_event(db, "payment", attempt.payment_id, "payment.failed", {**payment_payload, "reason": outcome.reason})
            if order.status == "pending_payment":
                await self.reservations.release_in(db, order.order_id)
                await self._transition_in(
                    db, order, "payment_failed", reason=outcome.reason, source_ref=source_ref, has_pending_action=False
                )
        return self.payments.outcome_of(attempt)

    def _discard_late_success(self, db, attempt, outcome, source: str, status: str) -> None:
        """Record a capture the order no longer accepts.

        The gateway holds the money but the order never books it, so the
        emitted event is the only trace: its consumer owns returning the
        capture through the gateway dashboard or a manual refund.
        """

        late_outcomes_discarded_total.labels(source=source).inc()
        logger.warning(
            "late payment success discarded payment_id=%s order_id=%s status=%s",
            attempt.payment_id,
            attempt.order_id,
            status,
        )
        enqueue_event(
            db,
            "payment",
            attempt.payment_id,
            "payment.late_success_discarded",
            {
                "payment_id": attempt.payment_id,
                "order_id": attempt.order_id,
                "gateway": attempt.gateway,
                "transaction_ref": outcome.transaction_ref,
                "amount": str(from_minor(attempt.amount_minor, attempt.currency)),
                "currency": attempt.currency,
                "needs_refund": True,
            },
        )

    async def expire_holds(self, order_id: str) -> int:
        """Expire the order's overdue holds and fail its payment if it was waiting."""

        async def unit(db):
            order = await self._load_in(db, order_id)
            expired = await self.reservations.expire_order_in(db, order_id)
            if expired and order.status == "pending_payment":
                attempt = await self.payments.open_attempt_in(db, order_id)
                if attempt is not None:
                    await self.payments.record_outcome_in(
                        db, attempt, Failed(attempt.payment_id, "reservation_expired", True)
                    )
                    enqueue_event(
                        db,
                        "payment",
                        attempt.payment_id,
                        "payment.failed",
                        {"payment_id": attempt.payment_id, "order_id": order_id, "reason": "reservation_expired"},
                    )
                await self.reservations.release_in(db, order_id)
                await self._transition_in(
                    db,
                    order,
                    "payment_failed",
                    reason="reservation_expired",
                    source_ref="reservation_expiry",
                    has_pending_action=False,
                )
            return expired

        return await self.run_unit("expire_holds", unit, order_id)

    # -- cancellation and refunds ---------------------------------------------

    async def _refunds_for_balance_in(self, db, order: Order, reason: str | None) -> list:
        refunds = []
        for attempt in await self.payments.captured_attempts_in(db, order.order_id):
            pending = await self.payments.pending_refund_total_in(db, order.order_id, attempt.payment_id)
            remaining = attempt.amount_minor - attempt.refunded_minor - pending
            if remaining > 0:
                refund = await self.payments.begin_refund_in(db, attempt, remaining, reason)
                refunds.append((attempt, refund))
        return refunds

    async def cancel_order(
        self, order_id: str, caller: Caller, reason: str = "customer_request", expected_version: int | None = None
    ) -> Order:
        """Cancel the order; captured money is refunded and stock goes back on hand.

        Cancelling an already-cancelled order returns it unchanged, and so
        does cancelling again while the cancel refund is still pending.
        """

        async def prepare(db):
            order = await self._load_in(db, order_id, caller, expected_version)
            if order.status == "cancelled":
                return order, []
            validate_transition(order.status, "cancelled")
            # A cancel finishes only after its refunds settle.
            if await self.payments.pending_refund_total_in(db, order_id) > 0:
                if order.cancel_reason is not None:
                    return order, []
                raise ValidationError("a refund is still settling; cancel once it completes", order_id=order_id)
            open_attempt = await self.payments.open_attempt_in(db, order_id)
            if open_attempt is not None:
                await self.payments.record_outcome_in(
                    db, open_attempt, Failed(open_attempt.payment_id, "cancelled", False)
                )
            await self.reservations.release_in(db, order_id)
            refunds = await self._refunds_for_balance_in(db, order, reason)
            if refunds:
                await self._write_in(db, order, cancel_reason=reason)
            else:
                await self.reservations.restock_in(db, order_id)
                await self._transition_in(
                    db, order, "cancelled", reason=reason, cancel_reason=reason, has_pending_action=False
                )
            return order, refunds

        order, refunds = await self.run_unit("cancel_order", prepare, order_id, expected_version)
        for attempt, refund in refunds:
            result = await self._send_refund(attempt, refund, cancelling=True)
            if isinstance(result, RefundFailed):
                raise GatewayError("refund failed; order was not cancelled", retryable=True, order_id=order_id)
        if refunds:
            return (await self.get_order(order_id, Caller.system())).order
        return order

    async def refund_order(self, order_id: str, amount, reason: str | None, caller: Caller):
        """Refund part or all of the captured balance.

        Over-refunds are rejected before anything changes. A refund that
        brings the refunded total up to the captured total moves a confirmed
        or processing order to refunded and restocks it.
        """

        async def prepare(db):
            order = await self._load_in(db, order_id, caller)
            amount_minor = to_minor(amount, order.currency, "amount")
            if amount_minor <= 0:
                raise ValidationError("refund amount must be positive", field="amount")
            pending = await self.payments.pending_refund_total_in(db, order_id)
            refundable = order.captured_minor - order.refunded_minor - pending
            if amount_minor > refundable:
                raise ValidationError(
                    "refund exceeds the captured balance",
                    field="amount",
                    requested=str(from_minor(amount_minor, order.currency)),
                    refundable=str(from_minor(max(refundable, 0), order.currency)),
                )
            for attempt in await self.payments.captured_attempts_in(db, order_id):
                attempt_pending = await self.payments.pending_refund_total_in(db, order_id, attempt.payment_id)
                if attempt.amount_minor - attempt.refunded_minor - attempt_pending >= amount_minor:
                    refund = await self.payments.begin_refund_in(db, attempt, amount_minor, reason)
                    await self._write_in(db, order)
                    return attempt, refund
            raise ValidationError("no single payment covers the refund amount", field="amount")

        attempt, refund = await self.run_unit("refund_order", prepare, order_id)
        return await self._send_refund(attempt, refund, cancelling=False)

    async def _send_refund(self, attempt, refund, cancelling: bool):
        with log_context(payment_id=attempt.payment_id):
            result = await self.payments.refund(attempt, refund)

            async def settle(db):
                current = await self.payments.get_refund_in(db, refund_id=refund.refund_id)
                return await self.settle_refund_in(
                    db, current, result.status, result.refund_ref, f"refund:{refund.refund_id}", cancelling
                )

            return await self.run_unit("settle_refund", settle, attempt.order_id)

    async def settle_refund_in(
        self, db, refund, status: str, refund_ref: str | None, source_ref: str, cancelling: bool | None = None
    ):
        """Book a gateway refund result against the payment and the order."""

        if status not in ("succeeded", "failed"):
            await self.payments.mark_refund_ref_in(db, refund, refund_ref)
            return RefundPending(refund_id=refund.refund_id, amount_minor=refund.amount_minor)

        order = await self._load_in(db, refund.order_id)
        if cancelling is None:
            cancelling = order.cancel_reason is not None and order.status != "cancelled"
        if not await self.payments.finish_refund_in(db, refund, status, refund_ref):
            refund = await self.payments.get_refund_in(db, refund_id=refund.refund_id)
            if refund.status == "succeeded":
                return Refunded(refund.refund_id, refund.amount_minor, order.refunded_minor >= order.captured_minor)
            return RefundFailed(reason="gateway_declined", refund_id=refund.refund_id)

        if status == "failed":
            logger.warning("refund declined refund_id=%s order_id=%s", refund.refund_id, order.order_id)
            if cancelling and order.status != "cancelled":
                await self._write_in(db, order, cancel_reason=None)
            return RefundFailed(reason="gateway_declined", refund_id=refund.refund_id)

        refunded = order.refunded_minor + refund.amount_minor
        fully_refunded = refunded >= order.captured_minor
        enqueue_event(
            db,
            "payment",
            refund.payment_id,
            "payment.refunded",
            {
                "payment_id": refund.payment_id,
                "order_id": order.order_id,
                "refund_id": refund.refund_id,
                "amount": str(from_minor(refund.amount_minor, order.currency)),
                "currency": order.currency,
                "fully_refunded": fully_refunded,
            },
        )
        if fully_refunded and order.status in ("confirmed", "processing"):
            await self.reservations.restock_in(db, order.order_id)
            await self._transition_in(
                db,
                order,
                "cancelled" if cancelling else "refunded",
                reason=order.cancel_reason if cancelling else (refund.reason or "refunded"),
                source_ref=source_ref,
                refunded_minor=refunded,
            )
        else:
            await self._write_in(db, order, refunded_minor=refunded)
        return Refunded(refund_id=refund.refund_id, amount_minor=refund.amount_minor, fully_refunded=fully_refunded)

    # -- fulfillment ----------------------------------------------------------

    async def _fulfill(self, order_id: str, new_status: str, caller: Caller, reason: str, **values) -> Order:
        self._require_system(caller)

        async def unit(db):
            return await self.fulfill_in(db, order_id, new_status, reason, **values)

        return await self.run_unit(f"fulfill_{new_status}", unit, order_id)

    async def fulfill_in(
        self, db, order_id: str, new_status: str, reason: str, source_ref: str | None = None, **values
    ) -> Order:
        """Advance fulfillment; repeating the step the order is already at is a no-op."""

        order = await self._load_in(db, order_id)
        if order.status == new_status:
            return order
        if new_status == "processing" and order.status == "confirmed":
            reconcile(order, await self._lines_in(db, order_id))
        await self._transition_in(db, order, new_status, reason=reason, source_ref=source_ref, **values)
        return order

    async def start_processing(self, order_id: str, caller: Caller) -> Order:
        return await self._fulfill(order_id, "processing", caller, "fulfillment_started")

    async def mark_shipped(
        self, order_id: str, caller: Caller, carrier: str | None = None, tracking_number: str | None = None
    ) -> Order:
        return await self._fulfill(
            order_id, "shipped", caller, "shipped", carrier=carrier, tracking_number=tracking_number
        )

    async def mark_delivered(self, order_id: str, caller: Caller) -> Order:
        return await self._fulfill(order_id, "delivered", caller, "delivered")

    async def complete_order(self, order_id: str, caller: Caller) -> Order:
        return await self._fulfill(order_id, "completed", caller, "completed")
