"""Inventory ledger: per-SKU/location rows changed only by conditional writes.

The module-level primitives take the caller's session so that a reservation,
commit or restock lands in the same transaction as the state change that
caused it. Nothing here keeps counters in process memory.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from shopcore.common import clock
from shopcore.common.config import settings
from shopcore.common.errors import InvariantViolation, ValidationError
from shopcore.common.logging import logger
from shopcore.services.inventory.models import InventoryLevel, StockMovement

levels = InventoryLevel.__table__


async def hold(db, sku: str, location: str, quantity: int) -> bool:
    """Add `quantity` to `reserved` if it is still available; False otherwise."""

    result = await db.execute(
        update(levels)
        .where(
            levels.c.sku == sku,
            levels.c.location == location,
            levels.c.on_hand - levels.c.reserved >= quantity,
        )
        .values(reserved=levels.c.reserved + quantity, updated_at=clock.utcnow())
    )
    return result.rowcount == 1


async def unhold(db, sku: str, location: str, quantity: int) -> None:
    """Return held quantity to availability."""

    result = await db.execute(
        update(levels)
        .where(levels.c.sku == sku, levels.c.location == location, levels.c.reserved >= quantity)
        .values(reserved=levels.c.reserved - quantity, updated_at=clock.utcnow())
    )
    if result.rowcount != 1:
        raise InvariantViolation(
            "release exceeds reserved quantity", sku=sku, location=location, quantity=quantity
        )


async def deduct(db, sku: str, location: str, quantity: int, reference: str) -> int:
    """Turn held quantity into a permanent on-hand decrement.

    Returns the availability left on the row afterwards.
    """

    result = await db.execute(
        update(levels)
        .where(
            levels.c.sku == sku,
            levels.c.location == location,
            levels.c.reserved >= quantity,
            levels.c.on_hand >= quantity,
        )
        .values(
            on_hand=levels.c.on_hand - quantity,
            reserved=levels.c.reserved - quantity,
            updated_at=clock.utcnow(),
        )
    )
    if result.rowcount != 1:
        raise InvariantViolation("commit exceeds held quantity", sku=sku, location=location, quantity=quantity)
    db.add(StockMovement(sku=sku, location=location, delta=-quantity, kind="commit", reference=reference))
    return await available(db, sku, location)


async def restock(db, sku: str, location: str, quantity: int, reference: str) -> None:
    result = await db.execute(
        update(levels)
        .where(levels.c.sku == sku, levels.c.location == location)
        .values(on_hand=levels.c.on_hand + quantity, updated_at=clock.utcnow())
    )
    if result.rowcount != 1:
        raise InvariantViolation("restock target row missing", sku=sku, location=location)
    db.add(StockMovement(sku=sku, location=location, delta=quantity, kind="restock", reference=reference))


async def available(db, sku: str, location: str) -> int:
    row = (
        await db.execute(
            select(levels.c.on_hand, levels.c.reserved).where(levels.c.sku == sku, levels.c.location == location)
        )
    ).first()
    if row is None:
        return 0
    return row.on_hand - row.reserved


async def low_stock_threshold(db, sku: str, location: str) -> int:
    value = (
        await db.execute(
            select(levels.c.low_stock_threshold).where(levels.c.sku == sku, levels.c.location == location)
        )
    ).scalar_one_or_none()
    return settings.low_stock_threshold if value is None else value


class InventoryLedger:
    """Read side of the ledger plus stock intake."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def get_level(self, sku: str, location: str) -> InventoryLevel | None:
        async with self.session_factory() as db:
            return await db.get(InventoryLevel, (sku, location))

    async def available(self, sku: str, location: str) -> int:
        async with self.session_factory() as db:
            return await available(db, sku, location)

    async def receive_stock(
        self,
        sku: str,
        location: str,
        quantity: int,
        reference: str = "stock_receipt",
        low_stock_threshold: int | None = None,
    ) -> InventoryLevel:
        """Add received units to on-hand, creating the row on first receipt."""

        if quantity <= 0:
            raise ValidationError("quantity must be positive", field="quantity")
        async with self.session_factory() as db:
            values = {"on_hand": levels.c.on_hand + quantity, "updated_at": clock.utcnow()}
            if low_stock_threshold is not None:
                values["low_stock_threshold"] = low_stock_threshold
            result = await db.execute(
                update(levels).where(levels.c.sku == sku, levels.c.location == location).values(**values)
            )
            if result.rowcount == 0:
                try:
                    async with db.begin_nested():
                        db.add(
                            InventoryLevel(
                                sku=sku,
                                location=location,
                                on_hand=quantity,
                                reserved=0,
                                low_stock_threshold=low_stock_threshold,
                            )
                        )
                except IntegrityError:
                    # Another intake created the row first; add on top of it.
                    await db.execute(
                        update(levels).where(levels.c.sku == sku, levels.c.location == location).values(**values)
                    )
            db.add(StockMovement(sku=sku, location=location, delta=quantity, kind="receive", reference=reference))
            await db.commit()
            level = (
                await db.execute(
                    select(InventoryLevel)
                    .where(InventoryLevel.sku == sku, InventoryLevel.location == location)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            logger.info("stock received sku=%s location=%s quantity=%s on_hand=%s", sku, location, quantity, level.on_hand)
            return level
