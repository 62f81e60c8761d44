"""
Configuration management for the EVVM Fisher relay.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Deployed EVVM instance on Ethereum Sepolia
DEFAULT_EVVM_ADDRESS = "0x9486f6C9d28ECdd95aba5bfa6188Bbc104d89C3e"
DEFAULT_STAKING_ADDRESS = "0x64A47d84dE05B9Efda4F63Fbca2Fc8cEb96E6816"

# Principal token of the EVVM instance
MATE_TOKEN = "0x0000000000000000000000000000000000000001"

GOLDEN_SIGNATURE_POLICIES = ("auto", "required", "exempt")


class ConfigurationError(Exception):
    """Fatal configuration problem detected at startup."""


class Settings(BaseSettings):
    """
    Environment-based settings.

    Variable names follow the fisher bot's historical `.env` layout
    (`FISHER_*`), so an existing deployment file keeps working.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    enabled: bool = Field(default=False, alias="FISHER_ENABLED")

    # Relay wallet
    private_key: str = Field(default="", alias="FISHER_PRIVATE_KEY")

    # EVM Network
    rpc_url: str = Field(
        default="https://rpc.sepolia.org",
        validation_alias=AliasChoices("FISHER_RPC_URL", "NEXT_PUBLIC_RPC_URL", "RPC_URL"),
    )
    ws_url: Optional[str] = Field(
        default=None,
        alias="FISHER_WS_URL",
        description="WebSocket endpoint override (derived from rpc_url when unset)",
    )
    websocket_enabled: bool = Field(default=True, alias="FISHER_WEBSOCKET_ENABLED")
    chain_id: int = Field(default=11155111, alias="CHAIN_ID")

    # Contract addresses
    evvm_address: str = Field(default=DEFAULT_EVVM_ADDRESS, alias="EVVM_ADDRESS")
    staking_address: str = Field(default=DEFAULT_STAKING_ADDRESS, alias="STAKING_ADDRESS")
    evvm_id: Optional[int] = Field(
        default=None,
        alias="EVVM_ID",
        description="EVVM instance id used in signed messages (read from chain when unset)",
    )

    # Economics
    min_priority_fee: int = Field(default=0, ge=0, alias="FISHER_MIN_PRIORITY_FEE")
    gas_limit: int = Field(default=500_000, gt=0, alias="FISHER_GAS_LIMIT")

    # Timing
    receipt_timeout_seconds: float = Field(default=120.0, gt=0, alias="FISHER_RECEIPT_TIMEOUT")
    poll_interval_seconds: float = Field(default=2.0, gt=0, alias="FISHER_POLL_INTERVAL")
    resubscribe_interval_seconds: float = Field(
        default=60.0, gt=0, alias="FISHER_RESUBSCRIBE_INTERVAL"
    )

    # 0 = unbounded
    max_concurrent_pipelines: int = Field(default=0, ge=0, alias="FISHER_MAX_CONCURRENCY")

    # Statistics persistence (empty string disables)
    database_url: str = Field(default="sqlite:///./fisher.db", alias="FISHER_DATABASE_URL")

    golden_signature_policy: str = Field(
        default="auto",
        alias="FISHER_GOLDEN_SIGNATURE_POLICY",
        description="Whether the golden fisher is exempt from payment signatures: auto, required, exempt",
    )


@dataclass
class FisherConfig:
    """Full fisher configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "FisherConfig":
        """Load configuration from environment."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        return cls(settings=settings)

    @property
    def websocket_url(self) -> str:
        """Streaming endpoint, derived from the HTTP RPC URL unless overridden."""
        if self.settings.ws_url:
            return self.settings.ws_url
        return (
            self.settings.rpc_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        )

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.settings.database_url)

    def load_account(self) -> LocalAccount:
        """
        Load the relay's signing key.

        Raises:
            ConfigurationError: if the key is absent or malformed.
        """
        key = self.settings.private_key.strip()
        if not key:
            raise ConfigurationError("FISHER_PRIVATE_KEY not configured")
        if not key.startswith("0x"):
            raise ConfigurationError("FISHER_PRIVATE_KEY must be 0x-prefixed hex")
        try:
            return Account.from_key(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"FISHER_PRIVATE_KEY is malformed: {e}") from e

    def validate(self) -> None:
        """Check cross-field constraints that pydantic does not cover."""
        policy = self.settings.golden_signature_policy
        if policy not in GOLDEN_SIGNATURE_POLICIES:
            raise ConfigurationError(
                f"FISHER_GOLDEN_SIGNATURE_POLICY must be one of {', '.join(GOLDEN_SIGNATURE_POLICIES)}"
            )
