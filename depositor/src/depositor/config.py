"""
Configuration for the vault depositor.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from vaultcore.constants import (
    CONTRACT_CONFIRMATIONS,
    DUST_THRESHOLD,
    MAX_DEPOSIT,
    MAX_PENDING_AGE_SEC,
    MIN_DEPOSIT,
)
from vaultcore.models import NetworkType
from vaultcore.retry import RetryPolicy
from vaultcore.rpc import is_not_ready_error, is_terminal_error, is_transient_error


class PollSettings(BaseModel):
    """Fixed-interval polling limits for one step."""

    interval_sec: float = Field(default=10.0, ge=0.0)
    max_attempts: int = Field(default=120, ge=1)

    def policy(self, **kwargs) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, interval=self.interval_sec, **kwargs)


class DepositorConfig(BaseModel):
    """Configuration for the deposit flow."""

    network: NetworkType = NetworkType.MAINNET
    contract_chain_id: int = Field(default=1, ge=1)

    # Amount limits
    min_deposit: int = Field(default=MIN_DEPOSIT, ge=1)
    max_deposit: int = Field(default=MAX_DEPOSIT, ge=1)
    min_vault_amount: int = Field(
        default=MIN_DEPOSIT, ge=1, description="Provider minimum per vault in sats"
    )
    dust_threshold: int = Field(default=DUST_THRESHOLD, ge=0)
    min_utxo_confirmations: int = Field(default=1, ge=0)

    # Contract confirmation is fixed at one block
    contract_confirmations: int = Field(
        default=CONTRACT_CONFIRMATIONS, ge=CONTRACT_CONFIRMATIONS, le=CONTRACT_CONFIRMATIONS
    )
    confirmation_timeout_sec: float = Field(default=120.0, gt=0.0)

    # Provider polling: providers can take 15-20 minutes to prepare transactions
    provider_poll: PollSettings = Field(
        default_factory=lambda: PollSettings(interval_sec=10.0, max_attempts=120)
    )
    # Contract verification polling before Bitcoin broadcast
    verification_poll: PollSettings = Field(
        default_factory=lambda: PollSettings(interval_sec=10.0, max_attempts=60)
    )
    rpc_timeout_sec: float = Field(default=60.0, gt=0.0)

    # Pending-deposit store
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".vault-depositor")
    max_pending_age_sec: int = Field(default=MAX_PENDING_AGE_SEC, ge=60)

    @model_validator(mode="after")
    def check_limits(self) -> DepositorConfig:
        if self.min_deposit > self.max_deposit:
            raise ValueError("min_deposit must not exceed max_deposit")
        if self.min_vault_amount <= self.dust_threshold:
            raise ValueError("min_vault_amount must be above the dust threshold")
        return self

    def provider_poll_policy(self) -> RetryPolicy:
        return self.provider_poll.policy(
            is_retryable=is_not_ready_error, is_terminal=is_terminal_error
        )

    def verification_poll_policy(self) -> RetryPolicy:
        return self.verification_poll.policy(is_retryable=is_transient_error)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="DEPOSITOR_",
    )

    network: NetworkType = NetworkType.MAINNET
    contract_chain_id: int = 1
    min_vault_amount: int = MIN_DEPOSIT
    provider_poll_interval: float = 10.0
    provider_poll_attempts: int = 120
    verification_poll_interval: float = 10.0
    verification_poll_attempts: int = 60
    rpc_timeout: float = 60.0
    confirmation_timeout: float = 120.0
    data_dir: Path = Path.home() / ".vault-depositor"

    bitcoin_rpc_url: str = "http://127.0.0.1:8332"
    bitcoin_rpc_user: str = ""
    bitcoin_rpc_password: str = ""
    mempool_api_url: str = ""

    log_level: str = "INFO"

    def to_config(self) -> DepositorConfig:
        return DepositorConfig(
            network=self.network,
            contract_chain_id=self.contract_chain_id,
            min_vault_amount=self.min_vault_amount,
            provider_poll=PollSettings(
                interval_sec=self.provider_poll_interval,
                max_attempts=self.provider_poll_attempts,
            ),
            verification_poll=PollSettings(
                interval_sec=self.verification_poll_interval,
                max_attempts=self.verification_poll_attempts,
            ),
            rpc_timeout_sec=self.rpc_timeout,
            confirmation_timeout_sec=self.confirmation_timeout,
            data_dir=self.data_dir,
        )


def get_settings() -> Settings:
    return Settings()
