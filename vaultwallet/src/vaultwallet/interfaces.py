"""
Interfaces of the external actors the deposit flow drives.

The Bitcoin wallet, the contract-chain wallet and node, and the transaction
building library are supplied by the host application. All calls are async
and may raise UserRejectedError when the user declines a prompt.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from vaultcore.models import ClaimerTransactions, ContractStatus, SigningStep

from vaultwallet.backends.base import UTXO


class BitcoinWallet(ABC):
    """Connected Bitcoin wallet."""

    @abstractmethod
    async def get_public_key_hex(self) -> str:
        """Public key of the deposit address (x-only or compressed)."""

    @abstractmethod
    async def get_address(self) -> str:
        """Address holding the deposit funds and receiving change."""

    @abstractmethod
    async def sign_message(self, message: str, scheme: str) -> str:
        """Sign a message; returns base64 or hex signature."""

    @abstractmethod
    async def sign_psbt(self, psbt_hex: str) -> str:
        """Sign a PSBT; returns the signed PSBT hex."""


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    success: bool
    block_number: int | None = None
    confirmations: int = 0


@dataclass(frozen=True)
class PeginSubmission:
    """Arguments of the vault manager's submitPeginRequest call."""

    depositor_eth_address: str
    depositor_btc_pubkey: str
    pop_signature: str
    unsigned_pegin_tx_hex: str
    vault_provider: str
    application_id: str


class ContractWalletClient(ABC):
    """Contract-chain wallet bound to one chain and account."""

    @abstractmethod
    async def submit_pegin_request(self, submission: PeginSubmission) -> str:
        """Send the peg-in request; returns the transaction hash."""


class ContractChainClient(ABC):
    """Contract-chain wallet connection plus node access."""

    @abstractmethod
    async def get_chain_id(self) -> int:
        """Chain the wallet is connected to."""

    @abstractmethod
    async def switch_chain(self, chain_id: int) -> None:
        """Ask the wallet to switch chain. Raises UserRejectedError if declined."""

    @abstractmethod
    async def get_wallet_client(self, chain_id: int, account: str) -> ContractWalletClient:
        """Wallet client that signs as account on chain_id."""

    @abstractmethod
    async def wait_for_transaction_receipt(
        self, tx_hash: str, confirmations: int
    ) -> TransactionReceipt:
        """
        Block until tx_hash has the given confirmations.

        Raises TransactionDroppedError if the transaction was dropped or
        replaced, ConfirmationTimeoutError if it does not confirm in time.
        """

    @abstractmethod
    async def get_vault_status(self, vault_id: str) -> ContractStatus | None:
        """On-chain status of a vault, or None if unknown to the contract."""


@dataclass(frozen=True)
class PeginParams:
    """Inputs to peg-in transaction construction for one vault."""

    amount: int
    fee_rate: float
    depositor_btc_pubkey: str
    vault_provider_btc_pubkey: str
    vault_keeper_btc_pubkeys: tuple[str, ...]
    universal_challenger_btc_pubkeys: tuple[str, ...]
    funding_utxos: tuple[UTXO, ...]
    change_address: str
    network: str


@dataclass(frozen=True)
class UnsignedPegin:
    tx_hex: str
    txid: str
    vault_value: int
    fee: int
    change_value: int = 0


@dataclass(frozen=True)
class SigningContext:
    """Data shared by every payout signature of one vault."""

    pegin_tx_hex: str
    vault_provider_btc_pubkey: str
    vault_keeper_btc_pubkeys: tuple[str, ...]
    universal_challenger_btc_pubkeys: tuple[str, ...]
    depositor_btc_pubkey: str
    network: str


@dataclass(frozen=True)
class PreparedTransaction:
    """One claimer's transactions, keyed by the claimer's x-only pubkey."""

    claimer_pubkey_xonly: str
    payout_optimistic_tx_hex: str
    payout_tx_hex: str
    claim_tx_hex: str
    assert_tx_hex: str
    source: ClaimerTransactions | None = field(default=None, compare=False)


class TransactionBuilder(ABC):
    """Transaction construction library (scripts, PSBTs, sighashes)."""

    @abstractmethod
    def build_pegin(self, params: PeginParams) -> UnsignedPegin:
        """Build the unsigned peg-in transaction for one vault."""

    @abstractmethod
    def build_psbt(self, unsigned_tx_hex: str, inputs: list[UTXO]) -> str:
        """Wrap an unsigned transaction spending inputs into a PSBT."""

    @abstractmethod
    def finalize_psbt(self, signed_psbt_hex: str) -> str:
        """Finalize a signed PSBT and extract the network transaction hex."""

    @abstractmethod
    def build_payout_psbt(
        self, context: SigningContext, transaction: PreparedTransaction, step: SigningStep
    ) -> str:
        """PSBT for one payout signature."""

    @abstractmethod
    def extract_payout_signature(self, signed_psbt_hex: str, depositor_btc_pubkey: str) -> str:
        """64-byte Schnorr signature hex from a signed payout PSBT."""
