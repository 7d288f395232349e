"""Shipment webhooks from carriers.

Body: `{"event_id", "type": "shipment.shipped" | "shipment.delivered",
"order_id", "carrier", "tracking_number"}`, HMAC-SHA256 signed in
`x-signature`.
"""

import json
from uuid import uuid4

from shopcore.services.payments.gateways.port import (
    SIGNATURE_HEADER,
    GatewayEvent,
    parse_event_body,
    sign_payload,
    verify_signature,
)

SHIPMENT_EVENTS = ("shipment.shipped", "shipment.delivered")


class CarrierWebhookSource:
    def __init__(self, source_id: str, webhook_secret: str) -> None:
        self.source_id = source_id
        self.webhook_secret = webhook_secret

    async def verify_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> bool:
        return verify_signature(self.webhook_secret, raw_payload, headers)

    async def parse_webhook(self, raw_payload: bytes, headers: dict[str, str]) -> GatewayEvent:
        body = parse_event_body(raw_payload)
        if body["type"] not in SHIPMENT_EVENTS:
            raise ValueError(f"unsupported event type {body['type']}")
        if not isinstance(body.get("order_id"), str) or not body["order_id"]:
            raise ValueError("order_id missing")
        return GatewayEvent(
            event_id=body["event_id"],
            event_type=body["type"],
            order_id=body["order_id"],
            carrier=body.get("carrier") or self.source_id,
            tracking_number=body.get("tracking_number"),
        )

    def webhook(self, event_type: str, order_id: str, event_id: str | None = None, **fields) -> tuple[bytes, dict]:
        body = {"event_id": event_id or f"shp_{uuid4().hex[:12]}", "type": event_type, "order_id": order_id}
        body.update(fields)
        raw = json.dumps(body).encode("utf-8")
        return raw, {SIGNATURE_HEADER: sign_payload(self.webhook_secret, raw)}
