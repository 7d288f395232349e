"""Inventory ledger tables: one row per SKU/location plus a movement audit."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from shopcore.common import clock
from shopcore.common.db import Base


class InventoryLevel(Base):
    """Stock row for one SKU at one location.

    `reserved` mirrors the sum of active reservations against the row, so
    availability is `on_hand - reserved` and can be checked in one UPDATE.
    """

    __tablename__ = "inventory_levels"
    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_reserved_within_on_hand"),
    )

    sku: Mapped[str] = mapped_column(String, primary_key=True)
    location: Mapped[str] = mapped_column(String, primary_key=True)
    on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_stock_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: clock.utcnow(), onupdate=lambda: clock.utcnow()
    )

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


class StockMovement(Base):
    """Append-only record of every on-hand change."""

    __tablename__ = "stock_movements"

    movement_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    sku: Mapped[str] = mapped_column(String, index=True)
    location: Mapped[str] = mapped_column(String)
    delta: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String)
    reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: clock.utcnow())
