from typing import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from .adapters import ADAPTER_CLASSES, GatewayConfig, GatewayProvider, PaymentGatewayAdapter
from .repository import PaymentRepository

logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[GatewayProvider, GatewayConfig], PaymentGatewayAdapter]


def default_adapter_factory(provider: GatewayProvider, config: GatewayConfig) -> PaymentGatewayAdapter:
    return ADAPTER_CLASSES[provider](config)


class PaymentGatewayManager:
    """Owns one adapter per active gateway configuration for the process."""

    def __init__(self, adapter_factory: AdapterFactory = default_adapter_factory):
        self.adapter_factory = adapter_factory
        self._gateways: dict[str, PaymentGatewayAdapter] = {}

    def _build(self, config: GatewayConfig) -> PaymentGatewayAdapter | None:
        try:
            provider = GatewayProvider(config.provider)
        except ValueError:
            logger.warning("unknown_gateway_provider", gateway_id=config.id, provider=config.provider)
            return None
        return self.adapter_factory(provider, config)

    async def initialize(self, db: AsyncSession) -> int:
        """(Re)load every active gateway. Unknown providers are skipped."""
        self._gateways.clear()
        for row in await PaymentRepository.list_active_gateways(db):
            adapter = self._build(GatewayConfig.from_model(row))
            if adapter is not None:
                self._gateways[row.id] = adapter

        logger.info("payment_gateways_initialized", count=len(self._gateways))
        return len(self._gateways)

    def register(self, gateway_id: str, adapter: PaymentGatewayAdapter) -> None:
        self._gateways[gateway_id] = adapter

    def get_gateway(self, gateway_id: str) -> PaymentGatewayAdapter | None:
        return self._gateways.get(gateway_id)

    async def resolve_gateway(self, db: AsyncSession, gateway_id: str) -> PaymentGatewayAdapter | None:
        """Like get_gateway, but loads a gateway activated after startup."""
        adapter = self._gateways.get(gateway_id)
        if adapter is not None:
            return adapter

        row = await PaymentRepository.get_gateway(db, gateway_id)
        if row is None or not row.is_active:
            return None
        adapter = self._build(GatewayConfig.from_model(row))
        if adapter is not None:
            self._gateways[gateway_id] = adapter
        return adapter

    @staticmethod
    async def get_available_gateways(db: AsyncSession, currency: str = settings.HOME_CURRENCY):
        """Active gateways for a currency. Gateways that take the home currency
        always qualify."""
        gateways = await PaymentRepository.list_active_gateways(db)
        return [
            gateway for gateway in gateways
            if currency in (gateway.supported_currencies or [])
            or settings.HOME_CURRENCY in (gateway.supported_currencies or [])
        ]


gateway_manager = PaymentGatewayManager()
