"""Gateway lookup by id."""

from shopcore.common.config import settings
from shopcore.common.errors import ValidationError
from shopcore.services.payments.gateways.port import GatewayAdapter


class GatewayRegistry:
    def __init__(self, default_gateway: str | None = None) -> None:
        self.default_gateway = default_gateway or settings.default_gateway
        self._gateways: dict[str, GatewayAdapter] = {}

    def register(self, adapter: GatewayAdapter) -> GatewayAdapter:
        self._gateways[adapter.gateway_id] = adapter
        return adapter

    def get(self, gateway_id: str | None = None) -> GatewayAdapter:
        key = gateway_id or self.default_gateway
        adapter = self._gateways.get(key)
        if adapter is None:
            raise ValidationError(f"unknown gateway {key}", field="gateway")
        return adapter

    def find(self, gateway_id: str) -> GatewayAdapter | None:
        return self._gateways.get(gateway_id)

    def all(self) -> list[GatewayAdapter]:
        return list(self._gateways.values())
