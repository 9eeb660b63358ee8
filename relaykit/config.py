from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

MAINNET_RELAY_API = "https://api.relay.link"
TESTNET_RELAY_API = "https://api.testnets.relay.link"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Normalise base URLs so endpoint paths can be appended directly."""

        super().model_post_init(__context)

        object.__setattr__(self, "relay_base_url", self.relay_base_url.rstrip("/"))
        object.__setattr__(self, "relay_testnet_base_url", self.relay_testnet_base_url.rstrip("/"))

    log_level: str = Field(default="INFO", description="Logging level")

    # Relay API
    relay_base_url: str = Field(
        default=MAINNET_RELAY_API,
        description="Base URL of the Relay API used for status checks, fast-fill and batch relay",
    )
    relay_testnet_base_url: str = Field(
        default=TESTNET_RELAY_API,
        description="Base URL of the Relay testnet API",
    )
    relay_api_key: str = Field(
        default="",
        description="Relay API key (required for fast-fill and gasless batch relay)",
        validation_alias=AliasChoices("relay_api_key", "RELAY_API_KEY", "RELAYKIT_API_KEY"),
    )
    relay_source: str = Field(default="", description="Referrer attached to posted orders and relayed batches")
    sdk_version: str = Field(default="0.1.0", description="Value sent in the relay-sdk-version header")
    request_timeout_seconds: float = Field(default=20.0, description="HTTP request timeout")

    # Solver status polling
    polling_interval_seconds: float = Field(
        default=1.5,
        gt=0,
        description="Fixed delay between solver status checks",
    )
    max_polling_attempts: int = Field(
        default=40,
        ge=1,
        description="Attempt budget for solver status checks before timing out",
    )
    relay_websocket_url: str = Field(
        default="wss://ws.relay.link",
        description="Relay WebSocket endpoint for request status events",
    )
    websocket_open_timeout_seconds: float = Field(default=5.0, gt=0, description="WebSocket handshake timeout")
    websocket_failure_grace_seconds: float = Field(
        default=2.0,
        ge=0,
        description="How long a failure reported over WebSocket may still turn into a refund",
    )

    # On-chain confirmation (used by the bundled wallet adapters)
    confirmation_polling_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Delay between receipt lookups while waiting for a transaction",
    )
    confirmation_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Wall-clock budget for a single transaction confirmation",
    )

    # Request metadata enrichment after a successful execution
    request_metadata_polling_interval_seconds: float = Field(default=5.0, gt=0)
    request_metadata_max_attempts: int = Field(default=30, ge=1)

    # Diagnostic trace lookup
    enable_trace_lookup: bool = Field(
        default=True,
        description="Look up revert reasons on Tenderly when an EVM confirmation fails",
    )
    tenderly_base_url: str = Field(default="https://api.tenderly.co", description="Tenderly API base URL")
    tenderly_timeout_seconds: float = Field(default=5.0, description="Tenderly trace lookup timeout")

    # Transaction building
    use_gas_fee_estimations: bool = Field(
        default=True,
        description="Honour gas and fee hints that come with quoted transaction items",
    )
    batch_origin_gas_overhead: int = Field(
        default=80_000,
        ge=0,
        description="Gas added on top of summed call gas for batch executor dispatch",
    )

    # RPC endpoints
    rpc_urls: Dict[int, str] = Field(
        default_factory=dict,
        description="HTTP RPC URL per EVM chain id",
    )
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC URL",
    )
    tron_full_host: str = Field(default="https://api.trongrid.io", description="TronGrid full node host")

    @property
    def has_api_key(self) -> bool:
        return bool(self.relay_api_key)

    @property
    def solver_timeout_seconds(self) -> float:
        """Hard timeout implied by the polling cadence and attempt budget."""
        return self.polling_interval_seconds * self.max_polling_attempts

    def get_rpc_url(self, chain_id: int) -> Optional[str]:
        return self.rpc_urls.get(int(chain_id))

    def is_relay_api_url(self, url: str) -> bool:
        known = {MAINNET_RELAY_API, TESTNET_RELAY_API, self.relay_base_url, self.relay_testnet_base_url}
        return any(url.startswith(base) for base in known if base)


# Global settings instance
settings = Settings()
