"""Gateway adapter contract.

Adapters speak in raw `GatewayResult`s; the orchestrator turns those into the
normalized outcomes. Business code never looks at which adapter it holds.
"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from shopcore.services.payments.outcomes import PaymentMethodDescriptor

SIGNATURE_HEADER = "x-signature"


@dataclass(frozen=True)
class InitiateRequest:
    payment_id: str
    order_id: str
    amount_minor: int
    currency: str
    method_type: str
    method_data: dict[str, Any]
    idempotency_key: str
    customer_id: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class GatewayResult:
    """Adapter-level answer; `status` is succeeded, requires_action, failed, pending or not_found."""

    status: str
    gateway_ref: str | None = None
    action_type: str | None = None
    action_data: dict[str, Any] = field(default_factory=dict)
    action_expires_at: datetime | None = None
    failure_reason: str | None = None
    retry_allowed: bool = False


@dataclass(frozen=True)
class GatewayRefund:
    status: str
    refund_ref: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class GatewayEvent:
    """A verified, parsed webhook delivery."""

    event_id: str
    event_type: str
    gateway_ref: str | None = None
    idempotency_key: str | None = None
    amount_minor: int | None = None
    refund_ref: str | None = None
    failure_reason: str | None = None
    action_type: str | None = None
    action_data: dict[str, Any] = field(default_factory=dict)
    order_id: str | None = None
    carrier: str | None = None
    tracking_number: str | None = None


class WebhookSource(Protocol):
    """Anything that can authenticate and parse inbound webhooks."""

    source_id: str

    async def verify_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> bool: ...

    async def parse_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> GatewayEvent: ...


class GatewayAdapter(ABC):
    gateway_id: str

    @property
    def source_id(self) -> str:
        return self.gateway_id

    @abstractmethod
    async def get_methods(self, currency: str, amount_minor: int) -> list[PaymentMethodDescriptor]: ...

    @abstractmethod
    async def initiate(self, request: InitiateRequest) -> GatewayResult: ...

    @abstractmethod
    async def complete_action(self, gateway_ref: str, action_result: dict[str, Any]) -> GatewayResult: ...

    @abstractmethod
    async def query_status(self, idempotency_key: str) -> GatewayResult: ...

    @abstractmethod
    async def refund(
        self, gateway_ref: str, amount_minor: int, currency: str, reason: str | None, idempotency_key: str
    ) -> GatewayRefund: ...

    @abstractmethod
    async def verify_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> bool: ...

    @abstractmethod
    async def parse_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> GatewayEvent: ...


def sign_payload(secret: str, raw_payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_payload: bytes, headers: dict[str, str]) -> bool:
    if not secret:
        return False
    provided = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER, "")
    return hmac.compare_digest(sign_payload(secret, raw_payload), provided)


def parse_event_body(raw_payload: bytes) -> dict[str, Any]:
    """Decode a JSON webhook body; raises ValueError for anything unusable."""

    body = json.loads(raw_payload)
    if not isinstance(body, dict):
        raise ValueError("webhook body must be an object")
    if not isinstance(body.get("event_id"), str) or not body["event_id"]:
        raise ValueError("event_id missing")
    if not isinstance(body.get("type"), str) or not body["type"]:
        raise ValueError("type missing")
    return body


def parse_payment_event(raw_payload: bytes) -> GatewayEvent:
    """Parse the neutral payment webhook contract shared by shipped adapters."""

    body = parse_event_body(raw_payload)
    event_type = body["type"]
    if not event_type.startswith(("payment.", "refund.")):
        raise ValueError(f"unsupported event type {event_type}")
    if not body.get("gateway_ref") and not body.get("idempotency_key"):
        raise ValueError("event does not identify a payment")
    amount = body.get("amount_minor")
    if amount is not None and (not isinstance(amount, int) or amount < 0):
        raise ValueError("amount_minor must be a non-negative integer")
    action = body.get("action") or {}
    return GatewayEvent(
        event_id=body["event_id"],
        event_type=event_type,
        gateway_ref=body.get("gateway_ref"),
        idempotency_key=body.get("idempotency_key"),
        amount_minor=amount,
        refund_ref=body.get("refund_ref"),
        failure_reason=body.get("failure_reason"),
        action_type=action.get("type"),
        action_data=action.get("data") or {},
    )
