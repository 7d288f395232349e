"""In-process gateway used for local runs and tests.

Behaviour is chosen per payment by the `token` in the method data:

- anything else: captured immediately
- `tok_decline`: declined
- `tok_3ds`: needs a `three_d_secure` action; `{"result": "approved"}` completes it
- `tok_hang`: charge is recorded, then the response never arrives in time
- `tok_unreachable`: transport error before the charge is recorded

Like a real provider it keys charges by idempotency key, so replaying an
`initiate` never charges twice.
"""

import asyncio
import json
from datetime import timedelta
from typing import Any
from uuid import uuid4

from shopcore.common import clock
from shopcore.common.errors import GatewayError
from shopcore.services.payments.gateways.port import (
    SIGNATURE_HEADER,
    GatewayAdapter,
    GatewayEvent,
    GatewayRefund,
    GatewayResult,
    InitiateRequest,
    parse_payment_event,
    sign_payload,
    verify_signature,
)
from shopcore.services.payments.outcomes import PaymentMethodDescriptor


class FakeGateway(GatewayAdapter):
    def __init__(
        self,
        gateway_id: str = "fake",
        webhook_secret: str = "fake-secret",
        hang_seconds: float = 3600.0,
        action_ttl_seconds: int = 900,
    ) -> None:
        self.gateway_id = gateway_id
        self.webhook_secret = webhook_secret
        self.hang_seconds = hang_seconds
        self.action_ttl_seconds = action_ttl_seconds
        self.payments: dict[str, dict[str, Any]] = {}
        self.refunds: dict[str, GatewayRefund] = {}
        self.refund_failures_remaining = 0
        self.settle_refunds_async = False
        self.status_unavailable = False
        self.calls: list[str] = []

    @property
    def captures(self) -> int:
        """Number of distinct charges that ended up captured."""

        return sum(1 for p in self.payments.values() if p["status"] == "succeeded")

    def _by_ref(self, gateway_ref: str) -> dict[str, Any] | None:
        return next((p for p in self.payments.values() if p["gateway_ref"] == gateway_ref), None)

    def _result(self, payment: dict[str, Any]) -> GatewayResult:
        return GatewayResult(
            status=payment["status"],
            gateway_ref=payment["gateway_ref"],
            action_type=payment.get("action_type"),
            action_data=payment.get("action_data", {}),
            action_expires_at=payment.get("action_expires_at"),
            failure_reason=payment.get("failure_reason"),
            retry_allowed=payment["status"] == "failed",
        )

    async def get_methods(self, currency: str, amount_minor: int) -> list[PaymentMethodDescriptor]:
        return [
            PaymentMethodDescriptor(
                gateway=self.gateway_id,
                method_type="card",
                display_name="Credit / Debit Card",
                supports_3ds=True,
                currencies=["USD", "EUR", "GBP", "JPY"],
                min_amount_minor=50,
            ),
            PaymentMethodDescriptor(
                gateway=self.gateway_id,
                method_type="bank_transfer",
                display_name="Bank Transfer",
                requires_redirect=True,
                currencies=["EUR"],
                min_amount_minor=100,
                max_amount_minor=5_000_000,
            ),
        ]

    async def initiate(self, request: InitiateRequest) -> GatewayResult:
        self.calls.append("initiate")
        existing = self.payments.get(request.idempotency_key)
        if existing is not None:
            return self._result(existing)

        token = request.method_data.get("token", "tok_visa")
        if token == "tok_unreachable":
            raise GatewayError("connection refused")

        payment = {"gateway_ref": f"fake_{uuid4().hex[:16]}", "amount_minor": request.amount_minor, "refunded": 0}
        if token == "tok_decline":
            payment.update(status="failed", failure_reason="card_declined")
        elif token == "tok_3ds":
            payment.update(
                status="requires_action",
                action_type="three_d_secure",
                action_data={"redirect_url": f"https://fake.example/3ds/{payment['gateway_ref']}"},
                action_expires_at=clock.utcnow() + timedelta(seconds=self.action_ttl_seconds),
            )
        else:
            payment.update(status="succeeded")
        self.payments[request.idempotency_key] = payment

        if token == "tok_hang":
            await asyncio.sleep(self.hang_seconds)
        return self._result(payment)

    async def complete_action(self, gateway_ref: str, action_result: dict[str, Any]) -> GatewayResult:
        self.calls.append("complete_action")
        payment = self._by_ref(gateway_ref)
        if payment is None:
            return GatewayResult(status="not_found", gateway_ref=gateway_ref)
        if payment["status"] == "requires_action":
            if action_result.get("result") == "approved":
                payment.update(status="succeeded")
            else:
                payment.update(status="failed", failure_reason="authentication_failed")
        return self._result(payment)

    async def query_status(self, idempotency_key: str) -> GatewayResult:
        self.calls.append("query_status")
        if self.status_unavailable:
            raise GatewayError("status endpoint unavailable")
        payment = self.payments.get(idempotency_key)
        if payment is None:
            return GatewayResult(status="not_found")
        return self._result(payment)

    async def refund(
        self, gateway_ref: str, amount_minor: int, currency: str, reason: str | None, idempotency_key: str
    ) -> GatewayRefund:
        self.calls.append("refund")
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]
        if self.refund_failures_remaining > 0:
            self.refund_failures_remaining -= 1
            raise GatewayError("refund backend busy")
        payment = self._by_ref(gateway_ref)
        if payment is None or payment["status"] != "succeeded":
            result = GatewayRefund(status="failed", failure_reason="not_refundable")
        elif payment["refunded"] + amount_minor > payment["amount_minor"]:
            result = GatewayRefund(status="failed", failure_reason="amount_exceeds_capture")
        else:
            payment["refunded"] += amount_minor
            status = "pending" if self.settle_refunds_async else "succeeded"
            result = GatewayRefund(status=status, refund_ref=f"fake_re_{uuid4().hex[:12]}")
        self.refunds[idempotency_key] = result
        return result

    async def verify_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> bool:
        return verify_signature(self.webhook_secret, raw_payload, headers)

    async def parse_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> GatewayEvent:
        return parse_payment_event(raw_payload)

    def webhook(self, event_type: str, gateway_ref: str, event_id: str | None = None, **fields) -> tuple[bytes, dict]:
        """Build a signed delivery as the provider would send it."""

        body = {"event_id": event_id or f"evt_{uuid4().hex[:12]}", "type": event_type, "gateway_ref": gateway_ref}
        key = next((k for k, p in self.payments.items() if p["gateway_ref"] == gateway_ref), None)
        if key is not None:
            body["idempotency_key"] = key
        body.update(fields)
        raw = json.dumps(body).encode("utf-8")
        return raw, {SIGNATURE_HEADER: sign_payload(self.webhook_secret, raw)}
