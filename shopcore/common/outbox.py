"""Reusable helpers for transactional outbox publishing.

These utilities are model-agnostic: they operate on the table behind whatever
outbox model is passed in, so the claim/requeue/mark logic stays in one place.
"""

from datetime import timedelta

from sqlalchemy import func, or_, select, update

from shopcore.common import clock
from shopcore.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


async def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = clock.utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = (
        await db.execute(
            update(table)
            .where(table.c.id.in_(select(claim_ids.c.id)))
            .values(status="PROCESSING", sent_at=now)
            .returning(table.c.id, table.c.topic, table.c.payload, table.c.created_at)
        )
    ).all()
    rows = sorted(rows, key=lambda row: row.created_at)
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


async def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    await db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=clock.utcnow())
    )


async def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    await db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


async def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        await db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses)))
    ).scalar_one()
    oldest_pending = (
        await db.execute(select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses)))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (clock.utcnow() - clock.as_utc(oldest_pending)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
