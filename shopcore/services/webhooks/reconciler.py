"""Webhook Reconciler: verify, dedupe and apply asynchronous callbacks.

Payment events converge through the same `apply_payment_outcome_in` as the
synchronous path. The dedup record is marked processed in the transaction
that applies the event, so a crash in between leaves the event retryable.
"""

import hashlib
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from shopcore.common import clock
from shopcore.common.config import settings
from shopcore.common.errors import NotFound
from shopcore.common.logging import log_context, logger
from shopcore.common.metrics import webhook_events_total
from shopcore.services.orders.service import OrderService
from shopcore.services.payments.gateways.port import GatewayEvent, WebhookSource
from shopcore.services.payments.gateways.registry import GatewayRegistry
from shopcore.services.payments.outcomes import Failed, RequiresAction, Success, outcome_name
from shopcore.services.webhooks.models import WebhookEventRecord

records = WebhookEventRecord.__table__


@dataclass(frozen=True)
class Ack:
    duplicate: bool = False
    note: str | None = None


@dataclass(frozen=True)
class Rejected:
    reason: str


class _ClaimLost(Exception):
    pass


class WebhookReconciler:
    def __init__(
        self,
        session_factory,
        orders: OrderService,
        registry: GatewayRegistry,
        carriers=(),
        claim_timeout_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.orders = orders
        self.payments = orders.payments
        self.registry = registry
        self.carriers: dict[str, WebhookSource] = {carrier.source_id: carrier for carrier in carriers}
        self.claim_timeout_seconds = (
            settings.webhook_claim_timeout_seconds if claim_timeout_seconds is None else claim_timeout_seconds
        )

    def _resolve(self, source: str) -> WebhookSource | None:
        return self.registry.find(source) or self.carriers.get(source)

    async def handle_webhook(self, source: str, raw_payload: bytes, headers: dict[str, str]) -> Ack | Rejected:
        result = await self._handle(source, raw_payload, headers)
        label = "duplicate" if isinstance(result, Ack) and result.duplicate else (
            "ack" if isinstance(result, Ack) else result.reason
        )
        webhook_events_total.labels(source=source, result=label).inc()
        return result

    async def _handle(self, source: str, raw_payload: bytes, headers: dict[str, str]) -> Ack | Rejected:
        adapter = self._resolve(source)
        if adapter is None:
            logger.warning("webhook from unknown source=%s", source)
            return Rejected("unknown_source")
        if not await adapter.verify_webhook(raw_payload, headers):
            logger.warning("webhook signature rejected source=%s", source)
            return Rejected("invalid_signature")
        try:
            event = await adapter.parse_webhook(raw_payload, headers)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("webhook payload rejected source=%s error=%s", source, exc)
            return Rejected("malformed_payload")

        with log_context(event_id=event.event_id):
            digest = hashlib.sha256(raw_payload).hexdigest()
            claim = await self._claim(source, event, digest)
            if claim == "processed":
                logger.info("duplicate webhook skipped source=%s event_id=%s", source, event.event_id)
                return Ack(duplicate=True)
            if claim is None:
                return Rejected("in_progress")

            async def unit(db):
                note = await self._apply_in(db, source, event)
                result = await db.execute(
                    update(records)
                    .where(
                        records.c.source == source,
                        records.c.event_id == event.event_id,
                        records.c.status == "processing",
                        records.c.attempts == claim,
                    )
                    .values(status="processed", processed_at=clock.utcnow(), note=note)
                )
                if result.rowcount != 1:
                    raise _ClaimLost()
                return note

            try:
                note = await self.orders.run_unit(f"webhook:{event.event_type}", unit, event.order_id)
            except _ClaimLost:
                logger.warning("webhook claim lost source=%s event_id=%s", source, event.event_id)
                return Rejected("in_progress")
            except Exception as exc:
                logger.exception("webhook processing failed source=%s event_id=%s error=%s", source, event.event_id, exc)
                await self._mark_failed(source, event.event_id, claim, type(exc).__name__)
                return Rejected("processing_failed")
            logger.info("webhook applied source=%s event_id=%s type=%s note=%s", source, event.event_id, event.event_type, note)
            return Ack(duplicate=False, note=note)

    async def _claim(self, source: str, event: GatewayEvent, digest: str) -> int | str | None:
        """Take the dedup record for processing.

        Returns the claim token, "processed" for a delivery already applied, or
        None when another worker holds a fresh claim.
        """

        now = clock.utcnow()
        async with self.session_factory() as db:
            try:
                async with db.begin_nested():
                    db.add(
                        WebhookEventRecord(
                            source=source,
                            event_id=event.event_id,
                            event_type=event.event_type,
                            status="processing",
                            payload_digest=digest,
                            attempts=1,
                            received_at=now,
                            claimed_at=now,
                        )
                    )
                await db.commit()
                return 1
            except IntegrityError:
                pass

            record = (
                await db.execute(
                    select(WebhookEventRecord)
                    .where(WebhookEventRecord.source == source, WebhookEventRecord.event_id == event.event_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            if record.payload_digest != digest:
                logger.warning("webhook redelivered with different body source=%s event_id=%s", source, event.event_id)
            if record.status == "processed":
                return "processed"
            stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
            if record.status == "processing" and clock.as_utc(record.claimed_at) > stale_before:
                return None
            result = await db.execute(
                update(records)
                .where(
                    records.c.source == source,
                    records.c.event_id == event.event_id,
                    records.c.status == record.status,
                    records.c.attempts == record.attempts,
                )
                .values(status="processing", attempts=record.attempts + 1, claimed_at=now)
            )
            if result.rowcount != 1:
                return None
            await db.commit()
            logger.info(
                "webhook reclaimed source=%s event_id=%s previous=%s attempt=%s",
                source,
                event.event_id,
                record.status,
                record.attempts + 1,
            )
            return record.attempts + 1

    async def _mark_failed(self, source: str, event_id: str, claim: int, note: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(records)
                .where(
                    records.c.source == source,
                    records.c.event_id == event_id,
                    records.c.status == "processing",
                    records.c.attempts == claim,
                )
                .values(status="failed", note=note)
            )
            await db.commit()

    async def _apply_in(self, db, source: str, event: GatewayEvent) -> str:
        source_ref = f"webhook:{source}:{event.event_id}"
        if event.event_type.startswith("payment."):
            attempt = await self.payments.find_attempt_in(
                db, gateway_ref=event.gateway_ref, idempotency_key=event.idempotency_key
            )
            if attempt is None:
                raise NotFound("payment not found for webhook", gateway_ref=event.gateway_ref)
            if event.event_type == "payment.succeeded":
                outcome = Success(attempt.payment_id, event.gateway_ref or attempt.gateway_ref)
            elif event.event_type == "payment.failed":
                outcome = Failed(attempt.payment_id, event.failure_reason or "declined", True)
            elif event.event_type == "payment.requires_action":
                outcome = RequiresAction(
                    attempt.payment_id,
                    event.action_type or "redirect",
                    event.action_data,
                    None,
                    event.gateway_ref,
                )
            else:
                return "ignored"
            effective = await self.orders.apply_payment_outcome_in(
                db, attempt.payment_id, outcome, source_ref, source="webhook"
            )
            return outcome_name(effective)

        if event.event_type.startswith("refund."):
            refund = await self.payments.get_refund_in(db, gateway_refund_ref=event.refund_ref)
            if refund is None:
                raise NotFound("refund not found for webhook", refund_ref=event.refund_ref)
            status = "succeeded" if event.event_type == "refund.succeeded" else "failed"
            result = await self.orders.settle_refund_in(db, refund, status, event.refund_ref, source_ref)
            return type(result).__name__.lower()

        if event.event_type == "shipment.shipped":
            await self.orders.fulfill_in(
                db,
                event.order_id,
                "shipped",
                "carrier_update",
                source_ref=source_ref,
                carrier=event.carrier,
                tracking_number=event.tracking_number,
            )
            return "shipped"
        if event.event_type == "shipment.delivered":
            await self.orders.fulfill_in(db, event.order_id, "delivered", "carrier_update", source_ref=source_ref)
            return "delivered"
        return "ignored"
