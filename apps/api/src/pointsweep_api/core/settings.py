from datetime import date
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "test", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./pointsweep.db"

    # Tracing; spans go to OTLP when an endpoint is set, else to the console if asked
    tracing_enabled: bool = True
    tracing_console_export: bool = False
    otel_exporter_otlp_endpoint: str = ""
    otel_exporter_otlp_headers: Annotated[dict[str, str], NoDecode] = Field(default_factory=dict)

    # Internal API security
    admin_api_key: str = ""

    # Outbound webhooks
    webhook_timeout_seconds: float = 20.0
    webhook_connect_timeout_seconds: float = 8.0
    webhook_user_agent: str = "pointsweep-webhooks/0.1"

    # Inbound broker callbacks
    broker_webhook_signature_required: bool = False
    # Confirmations received without fill data before a placed order is failed.
    # Unset means the order is held in placed until fills arrive.
    broker_confirmation_retry_budget: int | None = None

    # Sweep orchestration
    sweep_claim_ttl_seconds: int = 15 * 60
    default_conversion_rate: float = 0.01

    # Batch preparation
    drilldown_page_size: int = 50
    batch_list_limit: int = 50

    # Market calendar
    market_exchange: str = "XNYS"
    # Extra closures on top of the exchange calendar.
    market_holidays: Annotated[list[date], NoDecode] = Field(default_factory=list)

    @field_validator("market_holidays", mode="before")
    @classmethod
    def _parse_holidays(cls, value: object) -> list[date]:
        if value is None:
            return []
        if isinstance(value, str):
            return [date.fromisoformat(item.strip()) for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            parsed: list[date] = []
            for item in value:
                parsed.append(item if isinstance(item, date) else date.fromisoformat(str(item).strip()))
            return parsed
        return []

    @field_validator("otel_exporter_otlp_headers", mode="before")
    @classmethod
    def _parse_otlp_headers(cls, value: object) -> dict[str, str]:
        if isinstance(value, dict):
            return {str(key): str(item) for key, item in value.items()}
        headers: dict[str, str] = {}
        for pair in str(value or "").split(","):
            if "=" not in pair:
                continue
            key, item = pair.split("=", 1)
            headers[key.strip()] = item.strip()
        return headers

    # Settlement
    merchant_settlement_notifications_enabled: bool = True
    bank_transfer_url: str | None = None
    bank_transfer_api_key: str | None = None
    bank_transfer_timeout_seconds: float = 15.0


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
