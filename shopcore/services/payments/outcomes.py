"""Normalized payment results returned to callers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Success:
    payment_id: str
    transaction_ref: str | None


@dataclass(frozen=True)
class RequiresAction:
    payment_id: str
    action_type: str
    action_data: dict[str, Any]
    expires_at: datetime | None
    transaction_ref: str | None = None


@dataclass(frozen=True)
class Failed:
    payment_id: str
    reason: str
    retry_allowed: bool


PaymentOutcome = Success | RequiresAction | Failed


@dataclass(frozen=True)
class Refunded:
    refund_id: str
    amount_minor: int
    fully_refunded: bool


@dataclass(frozen=True)
class RefundFailed:
    reason: str
    refund_id: str | None = None


@dataclass(frozen=True)
class RefundPending:
    """Gateway accepted the refund but settles it later by webhook."""

    refund_id: str
    amount_minor: int


RefundOutcome = Refunded | RefundFailed | RefundPending


@dataclass(frozen=True)
class PaymentMethodDescriptor:
    gateway: str
    method_type: str
    display_name: str
    requires_redirect: bool = False
    supports_3ds: bool = False
    currencies: list[str] = field(default_factory=list)
    min_amount_minor: int | None = None
    max_amount_minor: int | None = None

    def accepts(self, currency: str, amount_minor: int) -> bool:
        if self.currencies and currency.upper() not in self.currencies:
            return False
        if self.min_amount_minor is not None and amount_minor < self.min_amount_minor:
            return False
        if self.max_amount_minor is not None and amount_minor > self.max_amount_minor:
            return False
        return True


def outcome_name(outcome) -> str:
    return {Success: "succeeded", RequiresAction: "requires_action", Failed: "failed"}[type(outcome)]
