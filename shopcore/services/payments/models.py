"""Payment attempt and refund tables."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from shopcore.common import clock
from shopcore.common.db import Base, JSONType


class PaymentAttempt(Base):
    """One attempt to collect an order's grand total through a gateway."""

    __tablename__ = "payment_attempts"
    __table_args__ = (
        UniqueConstraint("order_id", "attempt_number", name="uq_payment_attempts_order_attempt"),
        # One open attempt per order; a retried `pay` finds it instead of charging again.
        Index(
            "uq_payment_attempts_open_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('initiated', 'requires_action')"),
            sqlite_where=text("status IN ('initiated', 'requires_action')"),
        ),
    )

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(String, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    gateway: Mapped[str] = mapped_column(String)
    gateway_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    method_type: Mapped[str] = mapped_column(String)
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, default="initiated")
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    action_type: Mapped[str | None] = mapped_column(String, nullable=True)
    action_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    action_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    refunded_minor: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: clock.utcnow())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: clock.utcnow(), onupdate=lambda: clock.utcnow()
    )


class PaymentRefund(Base):
    """Refund against a succeeded attempt; `pending` rows reserve refundable balance."""

    __tablename__ = "payment_refunds"

    refund_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(String, index=True)
    order_id: Mapped[str] = mapped_column(String, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    gateway_refund_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: clock.utcnow())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: clock.utcnow(), onupdate=lambda: clock.utcnow()
    )
