from __future__ import annotations

from typing import Optional

from loguru import logger

from ..core.config import Settings
from ..core.domain import PricingConfiguration


class ConfigurationProvider:
    """Devuelve la PricingConfiguration por negocio/ubicación."""

    async def load(self, location_id: str) -> PricingConfiguration:
        raise NotImplementedError


class StaticConfigurationProvider(ConfigurationProvider):
    def __init__(self, config: PricingConfiguration):
        self._config = config

    @classmethod
    def from_settings(cls, s: Settings) -> "StaticConfigurationProvider":
        return cls(
            PricingConfiguration(
                tax_rate=s.tax_rate,
                tax_services=s.tax_services,
                tax_products=s.tax_products,
                pricing_model=s.pricing_model,
                card_surcharge_type=s.card_surcharge_type,
                card_surcharge=s.card_surcharge,
                tip_enabled=s.tip_enabled,
                tip_type=s.tip_type,
                tip_suggestions=tuple(s.tip_suggestions),
            )
        )

    async def load(self, location_id: str) -> PricingConfiguration:
        return self._config


async def load_configuration(provider: ConfigurationProvider, location_id: str) -> Optional[PricingConfiguration]:
    """Si el proveedor falla, se sigue sin configuración (tasa de impuesto por defecto)."""
    try:
        return await provider.load(location_id)
    except Exception as exc:
        logger.bind(location_id=location_id).warning("configuration unavailable, using default tax rate: {}", exc)
        return None
