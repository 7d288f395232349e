"""Adapter for a provider sidecar that speaks a neutral JSON contract over HTTP.

Endpoints (relative to `provider_url`):

    GET  /methods?currency=&amount_minor=
    POST /payments                         body: InitiateRequest fields
    POST /payments/{ref}/actions           body: action result
    GET  /payments/by-key/{idempotency_key}
    POST /payments/{ref}/refunds           header: Idempotency-Key

Payment responses look like
`{"status", "gateway_ref", "action": {"type", "data", "expires_at"}, "failure_reason", "retry_allowed"}`.
"""

from datetime import datetime
from typing import Any

import httpx

from shopcore.common.config import settings
from shopcore.common.errors import GatewayError, GatewayTimeout
from shopcore.common.logging import logger
from shopcore.services.payments.gateways.port import (
    GatewayAdapter,
    GatewayEvent,
    GatewayRefund,
    GatewayResult,
    InitiateRequest,
    parse_payment_event,
    verify_signature,
)
from shopcore.services.payments.outcomes import PaymentMethodDescriptor

_STATUS_MAP = {
    "succeeded": "succeeded",
    "captured": "succeeded",
    "requires_action": "requires_action",
    "pending_action": "requires_action",
    "failed": "failed",
    "declined": "failed",
    "pending": "pending",
    "processing": "pending",
}


class RemoteGateway(GatewayAdapter):
    def __init__(
        self,
        gateway_id: str = "remote",
        base_url: str | None = None,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.gateway_id = gateway_id
        self.webhook_secret = settings.provider_webhook_secret if webhook_secret is None else webhook_secret
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.provider_url,
            headers={"Authorization": f"Bearer {api_key if api_key is not None else settings.provider_api_key}"},
            timeout=settings.gateway_timeout_seconds if timeout_seconds is None else timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout("provider timed out", gateway=self.gateway_id) from exc
        except httpx.HTTPError as exc:
            raise GatewayError("provider unreachable", gateway=self.gateway_id) from exc
        if response.status_code >= 500:
            logger.warning("provider error gateway=%s status=%s body=%s", self.gateway_id, response.status_code, response.text)
            raise GatewayError("provider error", gateway=self.gateway_id)
        return response

    def _payment_result(self, response: httpx.Response) -> GatewayResult:
        if response.status_code == 404:
            return GatewayResult(status="not_found")
        if response.status_code >= 400:
            logger.warning("provider rejected gateway=%s status=%s body=%s", self.gateway_id, response.status_code, response.text)
            return GatewayResult(status="failed", failure_reason="provider_rejected")
        body = response.json()
        action = body.get("action") or {}
        expires_at = action.get("expires_at")
        return GatewayResult(
            status=_STATUS_MAP.get(body.get("status"), "pending"),
            gateway_ref=body.get("gateway_ref"),
            action_type=action.get("type"),
            action_data=action.get("data") or {},
            action_expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            failure_reason=body.get("failure_reason"),
            retry_allowed=bool(body.get("retry_allowed", False)),
        )

    async def get_methods(self, currency: str, amount_minor: int) -> list[PaymentMethodDescriptor]:
        response = await self._request("GET", "/methods", params={"currency": currency, "amount_minor": amount_minor})
        return [
            PaymentMethodDescriptor(
                gateway=self.gateway_id,
                method_type=item["method_type"],
                display_name=item.get("display_name", item["method_type"]),
                requires_redirect=bool(item.get("requires_redirect", False)),
                supports_3ds=bool(item.get("supports_3ds", False)),
                currencies=[c.upper() for c in item.get("currencies", [])],
                min_amount_minor=item.get("min_amount_minor"),
                max_amount_minor=item.get("max_amount_minor"),
            )
            for item in response.json()
        ]

    async def initiate(self, request: InitiateRequest) -> GatewayResult:
        payload: dict[str, Any] = {
            "payment_id": request.payment_id,
            "order_id": request.order_id,
            "amount_minor": request.amount_minor,
            "currency": request.currency,
            "method_type": request.method_type,
            "method_data": request.method_data,
            "idempotency_key": request.idempotency_key,
            "customer_id": request.customer_id,
            "email": request.email,
        }
        response = await self._request(
            "POST", "/payments", json=payload, headers={"Idempotency-Key": request.idempotency_key}
        )
        return self._payment_result(response)

    async def complete_action(self, gateway_ref: str, action_result: dict[str, Any]) -> GatewayResult:
        response = await self._request("POST", f"/payments/{gateway_ref}/actions", json=action_result)
        return self._payment_result(response)

    async def query_status(self, idempotency_key: str) -> GatewayResult:
        response = await self._request("GET", f"/payments/by-key/{idempotency_key}")
        return self._payment_result(response)

    async def refund(
        self, gateway_ref: str, amount_minor: int, currency: str, reason: str | None, idempotency_key: str
    ) -> GatewayRefund:
        response = await self._request(
            "POST",
            f"/payments/{gateway_ref}/refunds",
            json={"amount_minor": amount_minor, "currency": currency, "reason": reason},
            headers={"Idempotency-Key": idempotency_key},
        )
        if response.status_code >= 400:
            logger.warning("refund rejected gateway=%s status=%s body=%s", self.gateway_id, response.status_code, response.text)
            return GatewayRefund(status="failed", failure_reason="provider_rejected")
        body = response.json()
        return GatewayRefund(
            status=_STATUS_MAP.get(body.get("status"), "pending"),
            refund_ref=body.get("refund_ref"),
            failure_reason=body.get("failure_reason"),
        )

    async def verify_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> bool:
        return verify_signature(self.webhook_secret, raw_payload, headers)

    async def parse_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> GatewayEvent:
        return parse_payment_event(raw_payload)
