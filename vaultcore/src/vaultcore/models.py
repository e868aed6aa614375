"""
Core data models using Pydantic for validation and serialization.

Covers the vault provider wire format, on-chain and provider-side status
enums, and the persisted pending peg-in record.
"""

from __future__ import annotations

import time
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class ContractStatus(IntEnum):
    """Vault status recorded by the vault manager contract."""

    PENDING = 0  # Request submitted, waiting for ACKs
    VERIFIED = 1  # ACKs collected, ready for Bitcoin broadcast
    ACTIVE = 2  # Inclusion proof verified, vault usable
    REDEEMED = 3
    LIQUIDATED = 4
    INVALID = 5  # Funding outputs spent elsewhere
    DEPOSITOR_WITHDRAWN = 6


class PendingPeginStatus(str, Enum):
    """Local lifecycle of a pending peg-in. Only moves forward."""

    PENDING = "pending"
    PAYOUT_SIGNED = "payout_signed"
    CONFIRMING = "confirming"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    PendingPeginStatus.PENDING,
    PendingPeginStatus.PAYOUT_SIGNED,
    PendingPeginStatus.CONFIRMING,
]


class DaemonStatus(str, Enum):
    """Peg-in status reported by the vault provider daemon."""

    PENDING_DEPOSITOR_LAMPORT_PK = "PendingDepositorLamportPK"
    PENDING_BABE_SETUP = "PendingBabeSetup"
    PENDING_CHALLENGER_PRESIGNING = "PendingChallengerPresigning"
    PENDING_DEPOSITOR_SIGNATURES = "PendingDepositorSignatures"
    PENDING_ACKS = "PendingACKs"
    PENDING_ACTIVATION = "PendingActivation"
    ACTIVATED = "Activated"
    EXPIRED = "Expired"
    CLAIM_POSTED = "ClaimPosted"
    PEGGED_OUT = "PeggedOut"


# Provider states that precede the depositor signing step
PRE_DEPOSITOR_SIGNATURES_STATES = (
    DaemonStatus.PENDING_BABE_SETUP,
    DaemonStatus.PENDING_DEPOSITOR_LAMPORT_PK,
    DaemonStatus.PENDING_CHALLENGER_PRESIGNING,
)


class SigningStep(str, Enum):
    """Signature types collected per claimer, in signing order."""

    PAYOUT_OPTIMISTIC = "payout_optimistic"
    PAYOUT = "payout"


class TransactionData(BaseModel):
    """A raw transaction with optional sighash."""

    tx_hex: str
    sighash: str | None = None


class ClaimerTransactions(BaseModel):
    """Transactions the depositor pre-signs for one claimer."""

    claimer_pubkey: str
    claim_tx: TransactionData
    assert_tx: TransactionData
    payout_tx: TransactionData
    payout_optimistic_tx: TransactionData


class PresignTransactionsResponse(BaseModel):
    """Response of requestDepositorPresignTransactions."""

    txs: list[ClaimerTransactions] = Field(default_factory=list)
    depositor_graph: dict[str, Any] | None = None


class PeginStatusResponse(BaseModel):
    """Response of getPeginStatus."""

    status: str
    progress: dict[str, Any] | None = None


class ClaimerSignatures(BaseModel):
    """Both payout signatures for one claimer."""

    payout_optimistic_signature: str
    payout_signature: str


def transactions_ready(txs: list[ClaimerTransactions]) -> bool:
    """Check that every claimer bundle carries claim and payout transactions."""
    if not txs:
        return False
    return all(tx.claim_tx.tx_hex and tx.payout_tx.tx_hex for tx in txs)


class StoredUtxo(BaseModel):
    """An input recorded with a pending peg-in."""

    txid: str
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    script_pubkey: str = ""

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class VaultSigningKeys(BaseModel):
    """Public keys that parameterize the vault payout scripts."""

    vault_provider_btc_pubkey: str
    vault_keeper_btc_pubkeys: list[str] = Field(default_factory=list)
    universal_challenger_btc_pubkeys: list[str] = Field(default_factory=list)


class PendingPeginRecord(BaseModel):
    """
    Durable record of an in-flight deposit.

    Created as soon as the contract submission succeeds and updated in place
    as payout signing and broadcast complete. Multi-vault deposits share a
    batch_id; only split deposits carry split_txid.
    """

    id: str
    timestamp: float = Field(default_factory=time.time)
    depositor_eth_address: str = ""
    amount: int = Field(..., ge=0)
    provider_ids: list[str] = Field(default_factory=list)
    provider_url: str = ""
    application_id: str = ""
    status: PendingPeginStatus = PendingPeginStatus.PENDING

    unsigned_tx_hex: str = ""
    selected_utxos: list[StoredUtxo] = Field(default_factory=list)
    depositor_btc_pubkey: str = ""
    contract_tx_hash: str = ""
    btc_tx_hash: str | None = None
    signing_keys: VaultSigningKeys | None = None

    batch_id: str | None = None
    batch_index: int | None = Field(default=None, ge=0)
    batch_total: int | None = Field(default=None, ge=1, le=2)
    split_txid: str | None = None

    @field_validator("id")
    @classmethod
    def normalize_id(cls, v: str) -> str:
        return normalize_pegin_id(v)

    @property
    def pegin_txid(self) -> str:
        """Bitcoin transaction id without the 0x prefix."""
        return strip_hex_prefix(self.id)


def strip_hex_prefix(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def normalize_pegin_id(value: str) -> str:
    """Normalize a peg-in id to lowercase 0x-prefixed hex."""
    if not value:
        raise ValueError("Peg-in id must not be empty")
    return "0x" + strip_hex_prefix(value).lower()
