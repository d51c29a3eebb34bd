"""Engine configuration and environment helpers."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DISPLAY_CURRENCY = "USD"
DEFAULT_TRADING_DAYS_PER_YEAR = 252


class EngineSettings(BaseSettings):
    """Configuration options for the portfolio performance engine."""

    model_config = SettingsConfigDict(
        env_prefix="PORTFOLIO_PERF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    display_currency: str = Field(default=DEFAULT_DISPLAY_CURRENCY)
    trading_days_per_year: int = Field(
        default=DEFAULT_TRADING_DAYS_PER_YEAR,
        gt=0,
        description="Periods per year used to annualize Sharpe ratio and alpha.",
    )
    log_level: str = Field(default="INFO")

    telemetry_enabled: bool = Field(default=False)
    telemetry_service_name: str = Field(default="portfolio-perf")
    telemetry_otlp_endpoint: str | None = Field(default=None)
    telemetry_otlp_insecure: bool = Field(default=True)
    telemetry_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)

    def dict_for_logging(self) -> dict[str, Any]:
        """Return a sanitized dict for logging purposes."""

        hidden = {"telemetry_otlp_endpoint"}
        return {k: ("***" if k in hidden and v else v) for k, v in self.model_dump().items()}


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> EngineSettings:
    """Return cached engine settings with optional overrides."""

    if overrides:
        return EngineSettings(**overrides)
    return EngineSettings()


__all__ = [
    "DEFAULT_DISPLAY_CURRENCY",
    "DEFAULT_TRADING_DAYS_PER_YEAR",
    "EngineSettings",
    "get_settings",
]
