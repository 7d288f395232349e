"""Payment Orchestrator: attempts, gateway calls and outcome bookkeeping.

Database work happens in the `*_in` methods inside the caller's session.
Gateway calls happen outside any transaction: an attempt row is committed
first, the gateway is called, and the outcome is recorded in a fresh unit.
"""

import asyncio
from time import perf_counter

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from shopcore.common import clock
from shopcore.common.config import settings
from shopcore.common.errors import ConcurrentModification, GatewayError, GatewayTimeout, NotFound
from shopcore.common.logging import logger
from shopcore.common.metrics import gateway_latency_seconds, payment_outcomes_total, retries_total
from shopcore.common.state_machine import PAYMENT_OPEN, validate_transition
from shopcore.common.tracing import tracer
from shopcore.services.payments.gateways.port import GatewayRefund, GatewayResult, InitiateRequest
from shopcore.services.payments.gateways.registry import GatewayRegistry
from shopcore.services.payments.models import PaymentAttempt, PaymentRefund
from shopcore.services.payments.outcomes import (
    Failed,
    PaymentMethodDescriptor,
    RequiresAction,
    Success,
    outcome_name,
)

attempts_table = PaymentAttempt.__table__
refunds_table = PaymentRefund.__table__

# Outcomes that repeat what a settled payment already says.
_SAME_OUTCOME = {
    "succeeded": {"succeeded", "partially_refunded", "refunded"},
    "failed": {"failed"},
}


class PaymentOrchestrator:
    def __init__(
        self,
        registry: GatewayRegistry,
        timeout_seconds: float | None = None,
        retry_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
    ) -> None:
        self.registry = registry
        self.timeout_seconds = settings.gateway_timeout_seconds if timeout_seconds is None else timeout_seconds
        # One call at minimum; retries come on top of it.
        self.retry_attempts = max(1, settings.gateway_retry_attempts if retry_attempts is None else retry_attempts)
        self.retry_backoff_seconds = (
            settings.gateway_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )

    async def get_methods(self, currency: str, amount_minor: int) -> list[PaymentMethodDescriptor]:
        """Methods of every registered gateway that accept this currency and amount."""

        methods = []
        for adapter in self.registry.all():
            try:
                offered = await self._call(adapter, "get_methods", lambda: adapter.get_methods(currency, amount_minor))
            except GatewayError as exc:
                logger.warning("payment methods unavailable gateway=%s error=%s", adapter.gateway_id, exc)
                continue
            methods.extend(m for m in offered if m.accepts(currency, amount_minor))
        return methods

    # -- attempts -------------------------------------------------------------

    async def get_attempt_in(self, db, payment_id: str) -> PaymentAttempt:
        attempt = (
            await db.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.payment_id == payment_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if attempt is None:
            raise NotFound("payment not found", payment_id=payment_id)
        return attempt

    async def find_attempt_in(
        self, db, gateway_ref: str | None = None, idempotency_key: str | None = None
    ) -> PaymentAttempt | None:
        if idempotency_key:
            clause = PaymentAttempt.idempotency_key == idempotency_key
        elif gateway_ref:
            clause = PaymentAttempt.gateway_ref == gateway_ref
        else:
            return None
        return (
            await db.execute(select(PaymentAttempt).where(clause).execution_options(populate_existing=True))
        ).scalar_one_or_none()

    async def open_attempt_in(self, db, order_id: str) -> PaymentAttempt | None:
        return (
            await db.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.order_id == order_id, PaymentAttempt.status.in_(PAYMENT_OPEN))
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

    async def captured_attempts_in(self, db, order_id: str) -> list[PaymentAttempt]:
        return list(
            (
                await db.execute(
                    select(PaymentAttempt)
                    .where(
                        PaymentAttempt.order_id == order_id,
                        PaymentAttempt.status.in_(("succeeded", "partially_refunded")),
                    )
                    .order_by(PaymentAttempt.attempt_number)
                    .execution_options(populate_existing=True)
                )
            ).scalars()
        )

    async def start_attempt_in(
        self, db, order, method_payload: dict, gateway_id: str | None = None
    ) -> tuple[PaymentAttempt, bool]:
        """Return the order's open attempt, or create attempt N+1.

        The boolean is True when a new row was created. A concurrent creator
        trips the open-attempt unique index; the caller rolls back and retries,
        at which point this finds the winner.
        """

        existing = await self.open_attempt_in(db, order.order_id)
        if existing is not None:
            return existing, False
        adapter = self.registry.get(gateway_id)
        number = order.payment_attempts + 1
        attempt = PaymentAttempt(
            order_id=order.order_id,
            attempt_number=number,
            gateway=adapter.gateway_id,
            method_type=str(method_payload.get("type", "card")),
            amount_minor=order.grand_total_minor,
            currency=order.currency,
            status="initiated",
            idempotency_key=f"{order.order_id}:{number}",
            refunded_minor=0,
        )
        db.add(attempt)
        await db.flush()
        logger.info(
            "payment attempt started order_id=%s payment_id=%s attempt=%s gateway=%s",
            order.order_id,
            attempt.payment_id,
            number,
            adapter.gateway_id,
        )
        return attempt, True

    def outcome_of(self, attempt: PaymentAttempt):
        """Current state of an attempt expressed as a normalized outcome."""

        if attempt.status == "requires_action":
            return RequiresAction(
                payment_id=attempt.payment_id,
                action_type=attempt.action_type or "redirect",
                action_data=attempt.action_data or {},
                expires_at=clock.as_utc(attempt.action_expires_at) if attempt.action_expires_at else None,
                transaction_ref=attempt.gateway_ref,
            )
        if attempt.status in ("succeeded", "partially_refunded", "refunded"):
            return Success(payment_id=attempt.payment_id, transaction_ref=attempt.gateway_ref)
        if attempt.status == "failed":
            return Failed(payment_id=attempt.payment_id, reason=attempt.failure_reason or "failed", retry_allowed=True)
        return None

    # -- gateway calls --------------------------------------------------------

    async def _call(self, adapter, operation: str, call):
        """Run one adapter call under the gateway timeout, inside a span."""

        start = perf_counter()
        with tracer.start_as_current_span(f"gateway.{operation}") as span:
            span.set_attribute("gateway", adapter.gateway_id)
            try:
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise GatewayTimeout(f"{operation} timed out", gateway=adapter.gateway_id) from exc
            finally:
                gateway_latency_seconds.labels(gateway=adapter.gateway_id, operation=operation).observe(
                    max(0.0, perf_counter() - start)
                )

    def normalize(self, attempt: PaymentAttempt, result: GatewayResult, fallback_reason: str):
        if result.status == "succeeded":
            return Success(payment_id=attempt.payment_id, transaction_ref=result.gateway_ref)
        if result.status == "requires_action":
            return RequiresAction(
                payment_id=attempt.payment_id,
                action_type=result.action_type or "redirect",
                action_data=result.action_data,
                expires_at=result.action_expires_at,
                transaction_ref=result.gateway_ref,
            )
        if result.status == "failed":
            return Failed(
                payment_id=attempt.payment_id,
                reason=result.failure_reason or "declined",
                retry_allowed=result.retry_allowed,
            )
        return Failed(payment_id=attempt.payment_id, reason=fallback_reason, retry_allowed=True)

    async def _resolve_ambiguous(self, adapter, attempt: PaymentAttempt, reason: str):
        """The gateway may or may not have acted; ask it before failing the attempt."""

        try:
            result = await self._call(adapter, "query_status", lambda: adapter.query_status(attempt.idempotency_key))
        except GatewayError as exc:
            logger.warning(
                "payment status unresolved payment_id=%s gateway=%s error=%s",
                attempt.payment_id,
                adapter.gateway_id,
                exc,
            )
            return Failed(payment_id=attempt.payment_id, reason=reason, retry_allowed=True)
        return self.normalize(attempt, result, reason)

    async def initiate(self, attempt: PaymentAttempt, method_payload: dict, customer_id=None, email=None):
        adapter = self.registry.get(attempt.gateway)
        request = InitiateRequest(
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            amount_minor=attempt.amount_minor,
            currency=attempt.currency,
            method_type=attempt.method_type,
            method_data=method_payload,
            idempotency_key=attempt.idempotency_key,
            customer_id=customer_id,
            email=email,
        )
        try:
            result = await self._call(adapter, "initiate", lambda: adapter.initiate(request))
        except GatewayError as exc:
            reason = "timeout" if isinstance(exc, GatewayTimeout) else "gateway_error"
            logger.warning("payment initiate %s payment_id=%s error=%s", reason, attempt.payment_id, exc)
            outcome = await self._resolve_ambiguous(adapter, attempt, reason)
        else:
            outcome = self.normalize(attempt, result, "gateway_error")
        payment_outcomes_total.labels(gateway=adapter.gateway_id, outcome=outcome_name(outcome)).inc()
        return outcome

    async def complete_action(self, attempt: PaymentAttempt, action_result: dict):
        adapter = self.registry.get(attempt.gateway)
        try:
            result = await self._call(
                adapter, "complete_action", lambda: adapter.complete_action(attempt.gateway_ref, action_result)
            )
        except GatewayError as exc:
            reason = "timeout" if isinstance(exc, GatewayTimeout) else "gateway_error"
            logger.warning("payment action %s payment_id=%s error=%s", reason, attempt.payment_id, exc)
            outcome = await self._resolve_ambiguous(adapter, attempt, reason)
        else:
            outcome = self.normalize(attempt, result, "gateway_error")
        payment_outcomes_total.labels(gateway=adapter.gateway_id, outcome=outcome_name(outcome)).inc()
        return outcome

    # -- outcome bookkeeping --------------------------------------------------

    async def record_outcome_in(self, db, attempt: PaymentAttempt, outcome) -> str:
        """Move the attempt to the outcome's status.

        Returns "applied", "unchanged" when the attempt already says the same
        thing, or "discarded" when a settled attempt is contradicted.
        """

        new = outcome_name(outcome)
        current = attempt.status
        if current not in PAYMENT_OPEN:
            if current in _SAME_OUTCOME.get(new, set()):
                return "unchanged"
            logger.warning(
                "contradicting payment outcome discarded payment_id=%s status=%s outcome=%s",
                attempt.payment_id,
                current,
                new,
            )
            return "discarded"
        validate_transition(current, new, entity="payment")

        values = {"status": new, "updated_at": clock.utcnow()}
        if isinstance(outcome, Success):
            values.update(gateway_ref=outcome.transaction_ref or attempt.gateway_ref)
        elif isinstance(outcome, RequiresAction):
            values.update(
                action_type=outcome.action_type,
                action_data=outcome.action_data,
                action_expires_at=outcome.expires_at,
                gateway_ref=outcome.transaction_ref or attempt.gateway_ref,
            )
        else:
            values.update(failure_reason=outcome.reason)
        result = await db.execute(
            update(attempts_table)
            .where(attempts_table.c.payment_id == attempt.payment_id, attempts_table.c.status == current)
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConcurrentModification("payment changed concurrently", payment_id=attempt.payment_id)
        for key, value in values.items():
            set_committed_value(attempt, key, value)
        return "applied"

    # -- refunds --------------------------------------------------------------

    async def pending_refund_total_in(self, db, order_id: str, payment_id: str | None = None) -> int:
        """Refunds sent but not settled; they count against the refundable balance."""

        query = select(func.coalesce(func.sum(refunds_table.c.amount_minor), 0)).where(
            refunds_table.c.order_id == order_id, refunds_table.c.status == "pending"
        )
        if payment_id is not None:
            query = query.where(refunds_table.c.payment_id == payment_id)
        return (await db.execute(query)).scalar_one()

    async def begin_refund_in(self, db, attempt: PaymentAttempt, amount_minor: int, reason: str | None) -> PaymentRefund:
        count = (
            await db.execute(
                select(func.count()).select_from(refunds_table).where(refunds_table.c.payment_id == attempt.payment_id)
            )
        ).scalar_one()
        refund = PaymentRefund(
            payment_id=attempt.payment_id,
            order_id=attempt.order_id,
            amount_minor=amount_minor,
            reason=reason,
            status="pending",
            idempotency_key=f"{attempt.payment_id}:refund:{count + 1}",
        )
        db.add(refund)
        await db.flush()
        return refund

    async def refund(self, attempt: PaymentAttempt, refund: PaymentRefund) -> GatewayRefund:
        """Send a refund, retrying transient errors with exponential backoff."""

        adapter = self.registry.get(attempt.gateway)
        for n in range(1, self.retry_attempts + 1):
            try:
                return await self._call(
                    adapter,
                    "refund",
                    lambda: adapter.refund(
                        attempt.gateway_ref, refund.amount_minor, attempt.currency, refund.reason, refund.idempotency_key
                    ),
                )
            except GatewayError as exc:
                if not exc.retryable or n == self.retry_attempts:
                    logger.error("refund failed refund_id=%s attempts=%s error=%s", refund.refund_id, n, exc)
                    return GatewayRefund(status="failed", failure_reason="gateway_error")
                retries_total.labels(service=settings.service_name, dependency=adapter.gateway_id).inc()
                logger.warning("refund retry refund_id=%s attempt=%s error=%s", refund.refund_id, n, exc)
                await asyncio.sleep(self.retry_backoff_seconds * 2 ** (n - 1))

    async def get_refund_in(self, db, refund_id: str | None = None, gateway_refund_ref: str | None = None):
        clause = (
            PaymentRefund.refund_id == refund_id if refund_id else PaymentRefund.gateway_refund_ref == gateway_refund_ref
        )
        return (
            await db.execute(select(PaymentRefund).where(clause).execution_options(populate_existing=True))
        ).scalar_one_or_none()

    async def finish_refund_in(
        self, db, refund: PaymentRefund, status: str, refund_ref: str | None = None
    ) -> bool:
        """Settle a pending refund; returns False if it was already settled."""

        result = await db.execute(
            update(refunds_table)
            .where(refunds_table.c.refund_id == refund.refund_id, refunds_table.c.status == "pending")
            .values(status=status, gateway_refund_ref=refund_ref or refund.gateway_refund_ref, updated_at=clock.utcnow())
        )
        if result.rowcount != 1:
            return False
        set_committed_value(refund, "status", status)
        if status != "succeeded":
            return True

        attempt = await self.get_attempt_in(db, refund.payment_id)
        refunded = attempt.refunded_minor + refund.amount_minor
        new_status = "refunded" if refunded >= attempt.amount_minor else "partially_refunded"
        validate_transition(attempt.status, new_status, entity="payment")
        result = await db.execute(
            update(attempts_table)
            .where(attempts_table.c.payment_id == attempt.payment_id, attempts_table.c.status == attempt.status)
            .values(status=new_status, refunded_minor=refunded, updated_at=clock.utcnow())
        )
        if result.rowcount != 1:
            raise ConcurrentModification("payment changed concurrently", payment_id=attempt.payment_id)
        return True

    async def mark_refund_ref_in(self, db, refund: PaymentRefund, refund_ref: str | None) -> None:
        if refund_ref:
            await db.execute(
                update(refunds_table)
                .where(refunds_table.c.refund_id == refund.refund_id)
                .values(gateway_refund_ref=refund_ref, updated_at=clock.utcnow())
            )
            set_committed_value(refund, "gateway_refund_ref", refund_ref)
