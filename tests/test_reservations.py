"""Reservation holds, commits and expiry against the inventory ledger."""

import asyncio

from sqlalchemy import select

from conftest import SYSTEM
from shopcore.services.inventory.models import StockMovement
from shopcore.services.notifications.models import OutboxEvent
from shopcore.services.reservations.service import (
    AlreadyCommitted,
    Committed,
    InsufficientStock,
    ReservationConflict,
    ReservationLine,
    Reserved,
)


async def test_concurrent_reservations_never_oversell(container, stock):
    """Five buyers race for three units; exactly three holds win."""

    await stock("SKU-A", 3)
    results = await asyncio.gather(
        *(container.reservations.reserve(f"order-{n}", [ReservationLine("SKU-A", "main", 1)]) for n in range(5))
    )
    assert sum(isinstance(r, Reserved) for r in results) == 3
    assert sum(isinstance(r, InsufficientStock) for r in results) == 2

    level = await container.ledger.get_level("SKU-A", "main")
    assert level.reserved == 3
    assert level.available == 0
    assert await container.reservations.audit() == []


async def test_multi_line_reservation_is_all_or_nothing(container, stock):
    await stock("SKU-A", 5)
    await stock("SKU-B", 1)

    result = await container.reservations.reserve(
        "order-1", [ReservationLine("SKU-A", "main", 2), ReservationLine("SKU-B", "main", 2)]
    )

    assert result == InsufficientStock(sku="SKU-B", location="main", requested=2, available=1, order_id="order-1")
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 0
    assert await container.reservations.active_for_order("order-1") == []


async def test_duplicate_lines_are_merged_before_holding(container, stock):
    await stock("SKU-A", 3)
    result = await container.reservations.reserve(
        "order-1", [ReservationLine("SKU-A", "main", 2), ReservationLine("SKU-A", "main", 2)]
    )
    assert isinstance(result, InsufficientStock)
    assert result.requested == 4


async def test_unknown_sku_reports_zero_available(container):
    result = await container.reservations.reserve("order-1", [ReservationLine("NOPE", "main", 1)])
    assert isinstance(result, InsufficientStock)
    assert result.available == 0


async def test_commit_is_idempotent(container, stock, session_factory):
    await stock("SKU-A", 4)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 3)])

    first = await container.reservations.commit("order-1")
    second = await container.reservations.commit("order-1")

    assert isinstance(first, Committed)
    assert first.quantity == 3
    assert second == AlreadyCommitted(order_id="order-1")
    level = await container.ledger.get_level("SKU-A", "main")
    assert (level.on_hand, level.reserved) == (1, 0)

    async with session_factory() as db:
        movements = (
            await db.execute(select(StockMovement).where(StockMovement.kind == "commit"))
        ).scalars().all()
    assert [m.delta for m in movements] == [-3]


async def test_commit_after_release_is_a_conflict(container, stock):
    await stock("SKU-A", 2)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 1)])

    assert await container.reservations.release("order-1") == 1
    assert await container.reservations.release("order-1") == 0
    result = await container.reservations.commit("order-1")

    assert result == ReservationConflict(order_id="order-1", reason="no_active_reservations")
    level = await container.ledger.get_level("SKU-A", "main")
    assert (level.on_hand, level.reserved) == (2, 0)


async def test_expiry_and_commit_race_has_one_winner(container, stock, frozen_clock):
    await stock("SKU-A", 2)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 2)], ttl_seconds=60)
    frozen_clock.advance(61)

    (reservation,) = await container.reservations.find_expired()
    expired, committed = await asyncio.gather(
        container.reservations.expire(reservation), container.reservations.commit("order-1")
    )

    level = await container.ledger.get_level("SKU-A", "main")
    if expired:
        assert isinstance(committed, ReservationConflict)
        assert (level.on_hand, level.reserved) == (2, 0)
    else:
        assert isinstance(committed, Committed)
        assert (level.on_hand, level.reserved) == (0, 0)
    assert await container.reservations.audit() == []


async def test_expire_ignores_holds_that_are_not_overdue(container, stock, frozen_clock):
    await stock("SKU-A", 1)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 1)], ttl_seconds=60)
    (reservation,) = await container.reservations.active_for_order("order-1")

    assert await container.reservations.expire(reservation) is False
    assert await container.reservations.find_expired() == []


async def test_extend_pushes_out_expiry_of_live_holds_only(container, stock, frozen_clock):
    await stock("SKU-A", 2)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 1)], ttl_seconds=60)
    await container.reservations.reserve("order-2", [ReservationLine("SKU-A", "main", 1)], ttl_seconds=10)
    (live,) = await container.reservations.active_for_order("order-1")
    (stale,) = await container.reservations.active_for_order("order-2")
    frozen_clock.advance(30)

    extended = await container.reservations.extend(live.reservation_id, 600)
    conflict = await container.reservations.extend(stale.reservation_id, 600)

    assert extended.reservation_id == live.reservation_id
    assert conflict == ReservationConflict(order_id="order-2", reason="not_active")
    frozen_clock.advance(120)
    assert [r.order_id for r in await container.reservations.find_expired()] == ["order-2"]


async def test_restock_returns_committed_units_once(container, stock):
    await stock("SKU-A", 3)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 2)])
    await container.reservations.commit("order-1")

    assert await container.reservations.restock("order-1") == 2
    assert await container.reservations.restock("order-1") == 0
    level = await container.ledger.get_level("SKU-A", "main")
    assert (level.on_hand, level.reserved) == (3, 0)


async def test_low_stock_event_is_staged_on_commit(container, stock, session_factory):
    await stock("SKU-A", 5, threshold=3)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 2)])

    result = await container.reservations.commit("order-1")

    assert result.low_stock == [("SKU-A", "main")]
    async with session_factory() as db:
        events = (
            await db.execute(select(OutboxEvent).where(OutboxEvent.event_type == "inventory.low_stock"))
        ).scalars().all()
    assert len(events) == 1
    assert events[0].payload["payload"] == {"sku": "SKU-A", "location": "main", "available": 3, "threshold": 3}


async def test_receive_stock_creates_then_tops_up_row(container):
    first = await container.ledger.receive_stock("SKU-NEW", "main", 4)
    second = await container.ledger.receive_stock("SKU-NEW", "main", 6)
    assert first.on_hand == 4
    assert second.on_hand == 10
    assert await container.ledger.available("SKU-NEW", "main") == 10


async def test_sweeper_expires_orders_and_skips_failures(container, checkout, frozen_clock):
    order = await checkout(("SKU-A", 1, "10.00"))
    # A hold with no order behind it cannot be expired through the order service.
    await container.reservations.reserve("ghost-order", [ReservationLine("SKU-A", "main", 1)])
    frozen_clock.advance(1801)

    assert await container.sweeper.sweep_once() == 1

    view = await container.orders.get_order(order.order_id, SYSTEM)
    assert view.order.status == "payment_failed"
    assert [r.order_id for r in await container.reservations.find_expired()] == ["ghost-order"]
    assert (await container.ledger.get_level("SKU-A", "main")).reserved == 1


async def test_zero_ttl_hold_is_due_immediately(container, stock, frozen_clock):
    await stock("SKU-A", 1)
    await container.reservations.reserve("order-1", [ReservationLine("SKU-A", "main", 1)], ttl_seconds=0)

    assert [r.order_id for r in await container.reservations.find_expired()] == ["order-1"]
