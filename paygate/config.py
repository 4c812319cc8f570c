"""Settings loader for the payment-gated API gateway."""
from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .lnurl import well_known_url
from .rates import DEFAULT_SOURCE


class GatewaySettings(BaseSettings):
    endpoint: str = Field(default="http://localhost:6969")
    ln_address: Optional[str] = Field(default=None)
    profit_margin_pct: Decimal = Field(default=Decimal("0"), ge=0)

    gpt_usd: Decimal = Field(default=Decimal("0.05"), ge=0)
    stable_usd: Decimal = Field(default=Decimal("0.10"), ge=0)

    chat_gpt_api_key: Optional[str] = Field(default=None, repr=False)
    stable_diffusion_api_key: Optional[str] = Field(default=None, repr=False)
    openai_url: str = Field(default="https://api.openai.com/v1/chat/completions")
    stable_diffusion_url: str = Field(default="https://stablediffusionapi.com/api/v4/dreambooth")
    stable_diffusion_fetch_url: str = Field(default="https://stablediffusionapi.com/api/v4/dreambooth/fetch")

    btc_price_url: str = Field(default=DEFAULT_SOURCE)
    btc_price_cache_seconds: float = Field(default=60.0, ge=0)

    invoice_expiry_seconds: int = Field(default=3600)
    poll_interval_seconds: float = Field(default=3.0)
    poll_deadline_seconds: float = Field(default=600.0)
    http_timeout_seconds: float = Field(default=60.0)

    jobs_path: Path = Field(default=Path("/app/data/jobs.json"))

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=6969)
    api_root_path: str = Field(default="")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("endpoint")
    @classmethod
    def strip_endpoint(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("ENDPOINT must be an http(s) URL")
        return value

    @field_validator("ln_address")
    @classmethod
    def validate_ln_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if not candidate:
            return None
        well_known_url(candidate)
        return candidate

    @field_validator("invoice_expiry_seconds", "api_port")
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("poll_interval_seconds", "poll_deadline_seconds", "http_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value


settings = GatewaySettings()
