"""Reservation Manager: all-or-nothing holds against the inventory ledger.

Every state change is a compare-and-transition on `reservations.state` paired
with a conditional write on the matching `inventory_levels` row, so two
workers racing on the same hold always produce exactly one winner.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select, update

from shopcore.common import clock
from shopcore.common.config import settings
from shopcore.common.errors import ValidationError
from shopcore.common.logging import logger
from shopcore.common.metrics import reservation_requests_total, reservations_expired_total
from shopcore.services.inventory import ledger
from shopcore.services.inventory.models import InventoryLevel
from shopcore.services.notifications.relay import enqueue_event
from shopcore.services.reservations.models import Reservation

reservations = Reservation.__table__


@dataclass(frozen=True)
class ReservationLine:
    sku: str
    location: str
    quantity: int


@dataclass(frozen=True)
class Reserved:
    order_id: str
    reservation_ids: list[str]
    expires_at: datetime


@dataclass(frozen=True)
class InsufficientStock:
    """A line could not be held; nothing was reserved for the order."""

    sku: str
    location: str
    requested: int
    available: int
    order_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "code": "insufficient_stock",
            "order_id": self.order_id,
            "sku": self.sku,
            "location": self.location,
            "requested": self.requested,
            "available": self.available,
        }


@dataclass(frozen=True)
class Committed:
    order_id: str
    quantity: int
    low_stock: list[tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class AlreadyCommitted:
    order_id: str


@dataclass(frozen=True)
class ReservationConflict:
    """A hold the caller relied on was taken by someone else (usually expiry)."""

    order_id: str
    reason: str


def merge_lines(lines) -> list[ReservationLine]:
    """Collapse duplicate (sku, location) lines and order them by key.

    Ordering keeps concurrent multi-line reservations taking row locks in the
    same sequence.
    """

    totals: dict[tuple[str, str], int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError("quantity must be positive", sku=line.sku, field="quantity")
        key = (line.sku, line.location)
        totals[key] = totals.get(key, 0) + line.quantity
    return [ReservationLine(sku=sku, location=location, quantity=qty) for (sku, location), qty in sorted(totals.items())]


class ReservationManager:
    """Holds, commits and releases stock for orders.

    The `*_in` methods run inside the caller's session and never commit; the
    plain methods open their own unit of work.
    """

    def __init__(self, session_factory, ttl_seconds: int | None = None) -> None:
        self.session_factory = session_factory
        self.ttl_seconds = settings.reservation_ttl_seconds if ttl_seconds is None else ttl_seconds

    async def reserve_in(
        self, db, order_id: str, lines, ttl_seconds: int | None = None
    ) -> Reserved | InsufficientStock:
        """Hold every line or none; on InsufficientStock the caller must roll back."""

        merged = merge_lines(lines)
        if not merged:
            raise ValidationError("nothing to reserve", order_id=order_id)
        expires_at = clock.utcnow() + timedelta(seconds=self.ttl_seconds if ttl_seconds is None else ttl_seconds)
        ids = []
        for line in merged:
            if not await ledger.hold(db, line.sku, line.location, line.quantity):
                available = await ledger.available(db, line.sku, line.location)
                reservation_requests_total.labels(result="insufficient_stock").inc()
                logger.info(
                    "reservation short order_id=%s sku=%s location=%s requested=%s available=%s",
                    order_id,
                    line.sku,
                    line.location,
                    line.quantity,
                    available,
                )
                return InsufficientStock(
                    sku=line.sku,
                    location=line.location,
                    requested=line.quantity,
                    available=max(available, 0),
                    order_id=order_id,
                )
            reservation = Reservation(
                order_id=order_id,
                sku=line.sku,
                location=line.location,
                quantity=line.quantity,
                expires_at=expires_at,
                state="active",
            )
            db.add(reservation)
            await db.flush()
            ids.append(reservation.reservation_id)
        reservation_requests_total.labels(result="reserved").inc()
        return Reserved(order_id=order_id, reservation_ids=ids, expires_at=expires_at)

    async def reserve(self, order_id: str, lines, ttl_seconds: int | None = None) -> Reserved | InsufficientStock:
        async with self.session_factory() as db:
            result = await self.reserve_in(db, order_id, lines, ttl_seconds)
            if isinstance(result, InsufficientStock):
                await db.rollback()
            else:
                await db.commit()
            return result

    async def extend_in(self, db, reservation_id: str, ttl_seconds: int) -> Reservation | ReservationConflict:
        now = clock.utcnow()
        result = await db.execute(
            update(reservations)
            .where(
                reservations.c.reservation_id == reservation_id,
                reservations.c.state == "active",
                reservations.c.expires_at > now,
            )
            .values(expires_at=now + timedelta(seconds=ttl_seconds), updated_at=now)
        )
        reservation = (
            await db.execute(
                select(Reservation)
                .where(Reservation.reservation_id == reservation_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if result.rowcount != 1:
            return ReservationConflict(
                order_id=reservation.order_id if reservation else "",
                reason="not_active",
            )
        return reservation

    async def extend(self, reservation_id: str, ttl_seconds: int) -> Reservation | ReservationConflict:
        async with self.session_factory() as db:
            result = await self.extend_in(db, reservation_id, ttl_seconds)
            await db.commit()
            return result

    async def extend_order_in(self, db, order_id: str, ttl_seconds: int) -> int:
        """Push out the expiry of every live hold of the order; returns the count."""

        now = clock.utcnow()
        result = await db.execute(
            update(reservations)
            .where(
                reservations.c.order_id == order_id,
                reservations.c.state == "active",
                reservations.c.expires_at > now,
            )
            .values(expires_at=now + timedelta(seconds=ttl_seconds), updated_at=now)
        )
        return result.rowcount

    async def extend_order(self, order_id: str, ttl_seconds: int) -> int:
        async with self.session_factory() as db:
            count = await self.extend_order_in(db, order_id, ttl_seconds)
            await db.commit()
            return count

    async def _for_order(self, db, order_id: str, states) -> list[Reservation]:
        return list(
            (
                await db.execute(
                    select(Reservation)
                    .where(Reservation.order_id == order_id, Reservation.state.in_(states))
                    .order_by(Reservation.sku, Reservation.location)
                    .execution_options(populate_existing=True)
                )
            ).scalars()
        )

    async def _transition(self, db, reservation_id: str, expected: str, new: str, *conditions) -> bool:
        result = await db.execute(
            update(reservations)
            .where(reservations.c.reservation_id == reservation_id, reservations.c.state == expected, *conditions)
            .values(state=new, updated_at=clock.utcnow())
        )
        return result.rowcount == 1

    async def commit_in(self, db, order_id: str) -> Committed | AlreadyCommitted | ReservationConflict:
        """Turn the order's active holds into on-hand decrements.

        On ReservationConflict the caller must roll back so partial commits
        never persist.
        """

        held = await self._for_order(db, order_id, ("active", "committed"))
        active = [r for r in held if r.state == "active"]
        if not active:
            if held:
                return AlreadyCommitted(order_id=order_id)
            return ReservationConflict(order_id=order_id, reason="no_active_reservations")

        quantity = 0
        low_stock = []
        for reservation in active:
            if not await self._transition(db, reservation.reservation_id, "active", "committed"):
                logger.warning(
                    "commit lost hold order_id=%s reservation_id=%s", order_id, reservation.reservation_id
                )
                return ReservationConflict(order_id=order_id, reason="hold_lost")
            remaining = await ledger.deduct(db, reservation.sku, reservation.location, reservation.quantity, order_id)
            quantity += reservation.quantity
            threshold = await ledger.low_stock_threshold(db, reservation.sku, reservation.location)
            if remaining <= threshold:
                low_stock.append((reservation.sku, reservation.location))
                enqueue_event(
                    db,
                    "inventory",
                    f"{reservation.sku}@{reservation.location}",
                    "inventory.low_stock",
                    {
                        "sku": reservation.sku,
                        "location": reservation.location,
                        "available": remaining,
                        "threshold": threshold,
                    },
                )
        return Committed(order_id=order_id, quantity=quantity, low_stock=low_stock)

    async def commit(self, order_id: str) -> Committed | AlreadyCommitted | ReservationConflict:
        async with self.session_factory() as db:
            result = await self.commit_in(db, order_id)
            if isinstance(result, ReservationConflict):
                await db.rollback()
            else:
                await db.commit()
            return result

    async def release_in(self, db, order_id: str) -> int:
        """Release active holds; holds already taken by another path are skipped."""

        released = 0
        for reservation in await self._for_order(db, order_id, ("active",)):
            if await self._transition(db, reservation.reservation_id, "active", "released"):
                await ledger.unhold(db, reservation.sku, reservation.location, reservation.quantity)
                released += reservation.quantity
        return released

    async def release(self, order_id: str) -> int:
        async with self.session_factory() as db:
            released = await self.release_in(db, order_id)
            await db.commit()
            return released

    async def restock_in(self, db, order_id: str) -> int:
        """Return committed quantities to on-hand after a cancellation or refund."""

        restocked = 0
        for reservation in await self._for_order(db, order_id, ("committed",)):
            if await self._transition(db, reservation.reservation_id, "committed", "released"):
                await ledger.restock(db, reservation.sku, reservation.location, reservation.quantity, order_id)
                restocked += reservation.quantity
        return restocked

    async def restock(self, order_id: str) -> int:
        async with self.session_factory() as db:
            restocked = await self.restock_in(db, order_id)
            await db.commit()
            return restocked

    async def expire_in(self, db, reservation: Reservation, now: datetime | None = None) -> bool:
        """Expire one overdue hold; False when commit or release got there first."""

        now = now or clock.utcnow()
        if not await self._transition(
            db, reservation.reservation_id, "active", "expired", reservations.c.expires_at <= now
        ):
            return False
        await ledger.unhold(db, reservation.sku, reservation.location, reservation.quantity)
        reservations_expired_total.inc()
        logger.info(
            "reservation expired order_id=%s reservation_id=%s sku=%s quantity=%s",
            reservation.order_id,
            reservation.reservation_id,
            reservation.sku,
            reservation.quantity,
        )
        return True

    async def expire(self, reservation: Reservation) -> bool:
        async with self.session_factory() as db:
            expired = await self.expire_in(db, reservation)
            await db.commit()
            return expired

    async def expire_order_in(self, db, order_id: str) -> int:
        now = clock.utcnow()
        count = 0
        for reservation in await self._for_order(db, order_id, ("active",)):
            if clock.as_utc(reservation.expires_at) <= now and await self.expire_in(db, reservation, now):
                count += 1
        return count

    async def has_overdue_in(self, db, order_id: str) -> bool:
        """True when an active hold of the order is already past its expiry."""

        overdue = (
            await db.execute(
                select(func.count())
                .select_from(reservations)
                .where(
                    reservations.c.order_id == order_id,
                    reservations.c.state == "active",
                    reservations.c.expires_at <= clock.utcnow(),
                )
            )
        ).scalar_one()
        return overdue > 0

    async def active_for_order(self, order_id: str) -> list[Reservation]:
        async with self.session_factory() as db:
            return await self._for_order(db, order_id, ("active",))

    async def find_expired(self, limit: int | None = None) -> list[Reservation]:
        async with self.session_factory() as db:
            return list(
                (
                    await db.execute(
                        select(Reservation)
                        .where(Reservation.state == "active", Reservation.expires_at <= clock.utcnow())
                        .order_by(Reservation.expires_at)
                        .limit(settings.sweep_batch_size if limit is None else limit)
                    )
                ).scalars()
            )

    async def audit(self) -> list[dict]:
        """Inventory rows whose `reserved` disagrees with their active holds."""

        async with self.session_factory() as db:
            held = {
                (row.sku, row.location): row.quantity
                for row in (
                    await db.execute(
                        select(
                            reservations.c.sku,
                            reservations.c.location,
                            func.sum(reservations.c.quantity).label("quantity"),
                        )
                        .where(reservations.c.state == "active")
                        .group_by(reservations.c.sku, reservations.c.location)
                    )
                ).all()
            }
            drift = []
            for level in (await db.execute(select(InventoryLevel))).scalars():
                expected = held.pop((level.sku, level.location), 0)
                if level.reserved != expected:
                    drift.append(
                        {"sku": level.sku, "location": level.location, "reserved": level.reserved, "held": expected}
                    )
            for (sku, location), quantity in held.items():
                drift.append({"sku": sku, "location": location, "reserved": 0, "held": quantity})
            return drift
