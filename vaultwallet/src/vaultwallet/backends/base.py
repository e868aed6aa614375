"""
Bitcoin chain access used by the depositor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class UTXO:
    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    scriptpubkey: str
    height: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class Transaction:
    txid: str
    raw: str
    confirmations: int
    block_height: int | None = None


class BlockchainBackend(ABC):
    """Source of wallet outputs and sink for signed transactions."""

    @abstractmethod
    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        """Unspent outputs paying to any of addresses."""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Relay a signed transaction and return its txid."""

    @abstractmethod
    async def get_transaction(self, txid: str) -> Transaction | None:
        """Raw transaction with confirmation depth, or None if unknown."""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> float:
        """Fee rate in sat/vB for confirmation within target_blocks."""

    @abstractmethod
    async def get_utxo(self, txid: str, vout: int) -> UTXO | None:
        """Get a specific unspent output, or None if spent or unknown."""

    async def get_confirmed_utxos(
        self, addresses: list[str], min_confirmations: int = 1
    ) -> list[UTXO]:
        """UTXOs with at least min_confirmations confirmations."""
        utxos = await self.get_utxos(addresses)
        return [u for u in utxos if u.confirmations >= min_confirmations]

    async def close(self) -> None:
        """Release HTTP clients."""
