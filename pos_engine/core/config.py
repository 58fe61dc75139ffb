from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    app_name: str = Field(default="ERP POS", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    app_version: str = Field(default="0.2.0", alias="APP_VERSION")
    database_url: str = Field(default="sqlite:///./erp.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    location_id: str = Field(default="main", alias="LOCATION_ID")
    register_id: str = Field(default="T1", alias="REGISTER_ID")

    # Precios / impuestos (fuente: proveedor de configuración)
    tax_rate: float = Field(default=0.08, alias="TAX_RATE")
    tax_services: bool = Field(default=True, alias="TAX_SERVICES")
    tax_products: bool = Field(default=True, alias="TAX_PRODUCTS")
    pricing_model: str = Field(default="STANDARD", alias="PRICING_MODEL")
    card_surcharge_type: str = Field(default="PERCENTAGE", alias="CARD_SURCHARGE_TYPE")
    card_surcharge: float = Field(default=0.0, alias="CARD_SURCHARGE")

    tip_enabled: bool = Field(default=True, alias="TIP_ENABLED")
    tip_type: str = Field(default="PERCENT", alias="TIP_TYPE")
    tip_suggestions: List[float] = Field(default_factory=lambda: [15, 20, 25], alias="TIP_SUGGESTIONS")

    # Pantalla cliente / propina
    display_debounce_seconds: float = Field(default=0.3, alias="DISPLAY_DEBOUNCE_SECONDS")
    tip_poll_interval_seconds: float = Field(default=1.0, alias="TIP_POLL_INTERVAL_SECONDS")
    tip_poll_max_attempts: int = Field(default=120, alias="TIP_POLL_MAX_ATTEMPTS")

    # Tolerancias
    split_tolerance: float = Field(default=0.01, alias="SPLIT_TOLERANCE")
    variance_tolerance: float = Field(default=0.005, alias="VARIANCE_TOLERANCE")

    # Registro de transacciones / terminal
    recorder_max_attempts: int = Field(default=3, alias="RECORDER_MAX_ATTEMPTS")
    recorder_retry_seconds: float = Field(default=0.5, alias="RECORDER_RETRY_SECONDS")
    terminal_url: str = Field(default="", alias="TERMINAL_URL")
    terminal_timeout_seconds: float = Field(default=120.0, alias="TERMINAL_TIMEOUT_SECONDS")
    reconciliation_log: str = Field(default="data/reconciliation.jsonl", alias="RECONCILIATION_LOG")


settings = Settings()
