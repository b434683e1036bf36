from __future__ import annotations

"""
Configuration loader for StealthMax services.

- Reads environment variables (optionally from `.env`) via pydantic-settings.
- Groups settings for the name registry, the chain watcher and the INTMAX
  settlement network.
- Exposes a cached `get_settings()` accessor (and the `load_config()` alias
  used by the app factory and the CLI).

Environment variables (high-level):
    PRIVATE_KEY                  (hex, required)   : root secret; master identity + derivation input
    NAMESTONE_API_KEY            (str, required)   : name registry API key
    NAMESTONE_URL                (str)             : registry base URL
    MAIN_DOMAIN                  (str)             : parent ENS domain (default "stealthmax.eth")

Chain watcher:
    ALCHEMY_KEY                  (str)             : used to build the default websocket URL
    ETH_WS_URL                   (str)             : explicit websocket endpoint (wins over ALCHEMY_KEY)
    ADDRESS_REFRESH_SECONDS      (float, 300)      : monitored-address refresh period
    WATCH_RESTART_DELAY_SECONDS  (float, 10)       : delay before resubscribing after a transport error
    WATCH_MAX_RESTARTS           (int, 0)          : consecutive restart cap, 0 = unlimited
    SETTLEMENT_TIMEOUT_SECONDS   (float, unset)    : optional upper bound for one settlement cycle

Settlement network:
    INTMAX_GATEWAY_URL           (str)             : INTMAX SDK gateway endpoint
    INTMAX_ENVIRONMENT           (str, "testnet")
    INTMAX_L1_RPC_URL            (str)

Notes
-----
- TEXT_RECORDS accepts a JSON object and replaces the default profile records.
- The secret and the registry key are optional at load time so the CLI can run
  `derive` without a registry key; `require_secret()` / `require_namestone_key()`
  raise ConfigurationError where they are needed.
"""

import json
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

DEFAULT_TEXT_RECORDS: Dict[str, str] = {
    "com.twitter": "substream",
    "com.github": "substream",
    "url": "https://www.substream.xyz",
    "avatar": "https://imagedelivery.net/UJ5oN2ajUBrk2SVxlns2Aw/e52988ee-9840-48a2-d8d9-8a92594ab200/public",
}


class Settings(BaseSettings):
    # Secrets
    private_key: Optional[str] = Field(default=None, description="Root secret (32-byte hex)")
    namestone_api_key: Optional[str] = Field(default=None, description="Name registry API key")

    # Name registry
    namestone_url: str = Field("https://namestone.com/api/public_v1", description="Registry base URL")
    main_domain: str = Field("stealthmax.eth", description="Parent domain for subnames")
    text_records: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TEXT_RECORDS))

    # Chain
    alchemy_key: Optional[str] = None
    eth_ws_url: Optional[str] = None
    network_name: str = "sepolia"
    explorer_url: str = "https://sepolia.etherscan.io"

    # Settlement network
    intmax_gateway_url: str = "http://127.0.0.1:8790"
    intmax_environment: str = "testnet"
    intmax_l1_rpc_url: str = "https://sepolia.gateway.tenderly.co"
    intmax_timeout_s: float = Field(30.0, gt=0)

    # Watcher / orchestration
    enable_watcher: bool = True
    watch_start_delay_seconds: float = Field(2.0, ge=0)
    address_refresh_seconds: float = Field(300.0, gt=0)
    watch_restart_delay_seconds: float = Field(10.0, ge=0)
    watch_max_restarts: int = Field(0, ge=0)
    settlement_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    rotation_retries: int = Field(3, ge=1)

    # Process
    log_level: str = "INFO"
    log_format: str = "json"
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("private_key", "namestone_api_key", "alchemy_key", "eth_ws_url", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("text_records", mode="before")
    @classmethod
    def _parse_text_records(cls, v):
        if v is None or v == "":
            return dict(DEFAULT_TEXT_RECORDS)
        if isinstance(v, str):
            try:
                data = json.loads(v)
            except ValueError as e:
                raise ValueError("TEXT_RECORDS must be a JSON object") from e
            if not isinstance(data, dict):
                raise ValueError("TEXT_RECORDS must be a JSON object")
            return {str(k): str(val) for k, val in data.items()}
        return v

    # --- accessors ----------------------------------------------------------

    @property
    def ws_url(self) -> Optional[str]:
        if self.eth_ws_url:
            return self.eth_ws_url
        if self.alchemy_key:
            return f"wss://eth-{self.network_name}.g.alchemy.com/v2/{self.alchemy_key}"
        return None

    def require_secret(self) -> str:
        if not self.private_key:
            raise ConfigurationError("PRIVATE_KEY environment variable is required")
        return self.private_key

    def require_namestone_key(self) -> str:
        if not self.namestone_api_key:
            raise ConfigurationError("NAMESTONE_API_KEY environment variable is required")
        return self.namestone_api_key

    def require_ws_url(self) -> str:
        url = self.ws_url
        if not url:
            raise ConfigurationError("ALCHEMY_KEY or ETH_WS_URL environment variable is required")
        return url

    def explorer_address_url(self, address: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/address/{address}"


# Name used by the app factory and CLI
Config = Settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # pydantic-settings reads .env automatically


def load_config() -> Settings:
    return get_settings()


__all__ = [
    "DEFAULT_TEXT_RECORDS",
    "Settings",
    "Config",
    "get_settings",
    "load_config",
]
