"""Outbox relay delivery to the notification sink."""

from sqlalchemy import select

from conftest import CUSTOMER
from shopcore.services.notifications.models import OutboxEvent


async def test_state_changes_reach_the_sink_after_commit(container, checkout, sink):
    order = await checkout(("SKU-A", 1, "10.00"))
    await container.orders.pay(order.order_id, {"type": "card"}, CUSTOMER)

    sent = await container.relay.publish_pending()

    assert sent == len(sink.published)
    topics = sink.topics()
    assert topics[:2] == ["order.created", "order.pending_payment"]
    assert sorted(topics[2:]) == ["order.confirmed", "payment.succeeded"]
    confirmed = next(event for topic, event in sink.published if topic == "order.confirmed")
    assert confirmed.aggregate_id == order.order_id
    assert confirmed.payload["status"] == "confirmed"
    assert confirmed.payload["grand_total"] == "10.00"
    assert await container.relay.publish_pending() == 0


async def test_failed_publish_is_requeued(container, checkout, sink, session_factory):
    await checkout(("SKU-A", 1, "10.00"))
    sink.fail = True

    assert await container.relay.publish_pending() == 0
    async with session_factory() as db:
        statuses = set((await db.execute(select(OutboxEvent.status))).scalars())
    assert statuses == {"PENDING"}

    sink.fail = False
    assert await container.relay.publish_pending() == 2
    assert sink.topics() == ["order.created", "order.pending_payment"]


async def test_rolled_back_units_publish_nothing(container, checkout, sink):
    """A short order keeps its draft event but never announces pending_payment."""

    await checkout(("SKU-A", 3, "10.00"), stock_each=None)

    await container.relay.publish_pending()

    assert sink.topics() == ["order.created"]
