"""Outbox enqueue helper and the relay loop that drains it into a sink."""

import asyncio

from shopcore.common.config import settings
from shopcore.common.events import EventEnvelope, NotificationSink
from shopcore.common.logging import logger, trace_id_ctx
from shopcore.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from shopcore.services.notifications.models import OutboxEvent


def enqueue_event(db, aggregate_type: str, aggregate_id: str, event_type: str, payload: dict) -> EventEnvelope:
    """Stage one event in the caller's transaction; topic is the event type."""

    envelope = EventEnvelope(
        event_type=event_type,
        aggregate_id=aggregate_id,
        trace_id=trace_id_ctx.get(),
        payload=payload,
    )
    db.add(
        OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            topic=event_type,
            payload=envelope.model_dump(),
        )
    )
    return envelope


class OutboxRelay:
    """Publishes committed outbox rows to the notification sink."""

    def __init__(self, session_factory, sink: NotificationSink, service_name: str | None = None) -> None:
        self.session_factory = session_factory
        self.sink = sink
        self.service_name = service_name or settings.service_name

    async def publish_pending(self, limit: int = 100) -> int:
        """Claim one batch, publish it and return the number delivered."""

        async with self.session_factory() as db:
            rows = await claim_outbox_batch(db, OutboxEvent, limit=limit)
            await update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            await db.commit()
        sent = 0
        for row in rows:
            try:
                await self.sink.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s error=%s", row["id"], exc)
                async with self.session_factory() as db:
                    await requeue_outbox_event(db, OutboxEvent, row["id"])
                    await db.commit()
                continue
            async with self.session_factory() as db:
                await mark_outbox_sent(db, OutboxEvent, row["id"])
                await db.commit()
            sent += 1
        return sent

    async def run_forever(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox relay loop error=%s", exc)
            await asyncio.sleep(settings.outbox_poll_seconds)
