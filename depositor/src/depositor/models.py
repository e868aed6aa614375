"""
Data models for deposit planning and flow results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from vaultcore.constants import MAX_VAULTS_PER_DEPOSIT
from vaultcore.errors import InvariantViolationError
from vaultwallet.backends.base import UTXO


class DepositRequest(BaseModel):
    """User-selected deposit parameters. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    amount: int = Field(..., gt=0, description="Total deposit in sats")
    fee_rate: float = Field(..., gt=0, description="Bitcoin fee rate in sat/vB")
    depositor_eth_address: str
    application_id: str
    vault_provider_id: str
    vault_provider_url: str
    vault_provider_btc_pubkey: str
    vault_keeper_btc_pubkeys: tuple[str, ...] = ()
    universal_challenger_btc_pubkeys: tuple[str, ...] = ()
    partial_liquidation: bool = False


class AllocationStrategy(str, Enum):
    SINGLE = "SINGLE"
    MULTI_INPUT = "MULTI_INPUT"
    SPLIT = "SPLIT"


@dataclass(frozen=True)
class SplitOutput:
    """An output of the split transaction."""

    vout: int
    address: str
    value: int
    is_change: bool = False
    scriptpubkey: str = ""


@dataclass(frozen=True)
class SplitTransaction:
    """Unsigned transaction that creates one funding output per vault."""

    inputs: tuple[UTXO, ...]
    outputs: tuple[SplitOutput, ...]
    tx_hex: str
    txid: str
    fee: int

    @property
    def vault_outputs(self) -> tuple[SplitOutput, ...]:
        return tuple(o for o in self.outputs if not o.is_change)

    @property
    def change_output(self) -> SplitOutput | None:
        return next((o for o in self.outputs if o.is_change), None)


@dataclass(frozen=True)
class VaultAllocation:
    """Funding of one vault."""

    vault_index: int
    amount: int
    pegin_fee: int
    utxos: tuple[UTXO, ...] = ()
    split_output: SplitOutput | None = None
    split_txid: str | None = None

    @property
    def vault_value(self) -> int:
        """Value locked in the vault. Split shares pay their own peg-in fee."""
        if self.split_output is not None:
            return self.amount - self.pegin_fee
        return self.amount

    def funding_utxos(self) -> tuple[UTXO, ...]:
        """Outputs the peg-in transaction spends."""
        if self.split_output is None:
            return self.utxos
        return (
            UTXO(
                txid=self.split_txid or "",
                vout=self.split_output.vout,
                value=self.split_output.value,
                address=self.split_output.address,
                confirmations=0,
                scriptpubkey=self.split_output.scriptpubkey,
            ),
        )


@dataclass(frozen=True)
class AllocationPlan:
    strategy: AllocationStrategy
    allocations: tuple[VaultAllocation, ...]
    split_transaction: SplitTransaction | None = None
    fallback_reason: str | None = None

    def __post_init__(self) -> None:
        if not 1 <= len(self.allocations) <= MAX_VAULTS_PER_DEPOSIT:
            raise InvariantViolationError(
                f"Plan must have 1 to {MAX_VAULTS_PER_DEPOSIT} vaults, got {len(self.allocations)}"
            )
        if (self.strategy == AllocationStrategy.SPLIT) != (self.split_transaction is not None):
            raise InvariantViolationError("Split transaction must be present exactly for SPLIT")
        if self.strategy == AllocationStrategy.SINGLE and len(self.allocations) != 1:
            raise InvariantViolationError("SINGLE plans have exactly one vault")

    @property
    def needs_split(self) -> bool:
        return self.strategy == AllocationStrategy.SPLIT

    @property
    def split_fee(self) -> int:
        return self.split_transaction.fee if self.split_transaction else 0

    @property
    def total_allocated(self) -> int:
        return sum(a.amount for a in self.allocations)


@dataclass
class VaultResult:
    """Outcome of one vault in a deposit batch."""

    vault_index: int
    amount: int
    pegin_txid: str | None = None
    contract_tx_hash: str | None = None
    btc_txid: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.btc_txid is not None


@dataclass
class DepositFlowResult:
    strategy: AllocationStrategy
    vaults: list[VaultResult] = field(default_factory=list)
    batch_id: str | None = None
    split_txid: str | None = None
    aborted: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> list[VaultResult]:
        return [v for v in self.vaults if v.success]

    @property
    def failed(self) -> list[VaultResult]:
        return [v for v in self.vaults if not v.success]
