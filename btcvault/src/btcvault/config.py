"""
Configuration management using pydantic-settings.

Values come from BTCVAULT_* environment variables or a .env file.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from btcvault.constants import DUST_THRESHOLD
from btcvault.models import NetworkType, get_default_mempool_url
from btcvault.utxo import SelectionMode


class VaultSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BTCVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: NetworkType = NetworkType.MAINNET
    mempool_api_url: str | None = None
    vault_provider_url: str | None = None
    rpc_timeout_sec: float = Field(default=30.0, gt=0)

    fee_target_blocks: int = Field(default=3, ge=1, le=144)
    dust_threshold: int = Field(default=DUST_THRESHOLD, ge=0)
    selection_mode: SelectionMode = SelectionMode.ITERATIVE

    # Sort liquidator keys when the vault provider does not publish its order.
    # The provider sorts keys when building the payout script; turn this off
    # to fail instead of relying on that.
    allow_sorted_liquidator_fallback: bool = True
    # Raise instead of warning when a payout signature fails self-verification
    strict_signature_verification: bool = False

    log_level: str = "INFO"

    @property
    def resolved_mempool_url(self) -> str:
        return self.mempool_api_url or get_default_mempool_url(self.network)


def get_settings() -> VaultSettings:
    return VaultSettings()
