"""
Test configuration for depositor tests.

The fakes below stand in for the host application's wallets, transaction
library and vault provider. Signatures and transaction ids are derived
deterministically from their inputs so separate runs can be compared.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
from vaultcore.crypto import sha256
from vaultcore.errors import UserRejectedError
from vaultcore.models import (
    ClaimerTransactions,
    ContractStatus,
    NetworkType,
    PeginStatusResponse,
    PresignTransactionsResponse,
    SigningStep,
)
from vaultcore.transaction import compute_txid
from vaultwallet.backends.base import UTXO, BlockchainBackend, Transaction
from vaultwallet.interfaces import (
    BitcoinWallet,
    ContractChainClient,
    ContractWalletClient,
    PeginParams,
    PeginSubmission,
    PreparedTransaction,
    SigningContext,
    TransactionBuilder,
    TransactionReceipt,
    UnsignedPegin,
)

from depositor.config import DepositorConfig
from depositor.flow import DepositFlow
from depositor.models import DepositRequest
from depositor.planner import estimate_pegin_fee
from depositor.storage import PendingPeginStore

ADDRESS = "bcrt1qw508d6qejxtdg4y5r3zarvary0c5xw7kygt080"
ETH_ADDRESS = "0x" + "Ab" * 20
CHAIN_ID = 31337
PROVIDER_URL = "http://provider.test/rpc"

# x coordinates of 1G..7G on secp256k1
POINTS = (
    "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798",
    "c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5",
    "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9",
    "e493dbf1c10d80f3581e4904930b1404cc6c13900ee0758474fa94abe8c4cd13",
    "2f8bde4d1a07209355b4a7250a5c5128e88b84bddc619ab7cba8d569b240efe4",
    "fff97bd5755eeea420453a14355235d382f6472f8568a18b2f057a1460297556",
    "5cbdf0646e5db4eaa398f365f2ea7a0e3d419b7e0330e39ce92bddedcac4f9bc",
)
DEPOSITOR_XONLY = POINTS[0]


class FakeSleep:
    """Records requested sleeps instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeWallet(BitcoinWallet):
    """Bitcoin wallet that signs by hashing and records every prompt."""

    def __init__(self) -> None:
        self.pubkey = "02" + DEPOSITOR_XONLY
        self.address = ADDRESS
        self.prompts: list[str] = []
        self.reject_psbt = False
        self.message_signature: str | None = None

    async def get_public_key_hex(self) -> str:
        return self.pubkey

    async def get_address(self) -> str:
        return self.address

    async def sign_message(self, message: str, scheme: str) -> str:
        self.prompts.append(f"message:{scheme}:{message}")
        if self.message_signature is not None:
            return self.message_signature
        return sha256(message.encode()).hex() + "01"

    async def sign_psbt(self, psbt_hex: str) -> str:
        self.prompts.append(psbt_hex)
        if self.reject_psbt:
            raise UserRejectedError("User rejected the signing request")
        return "signed:" + psbt_hex


class FakeBuilder(TransactionBuilder):
    """Transaction library whose outputs depend only on their inputs."""

    def __init__(self) -> None:
        self.pegin_params: list[PeginParams] = []

    def build_pegin(self, params: PeginParams) -> UnsignedPegin:
        self.pegin_params.append(params)
        body = f"{params.amount}:" + ",".join(u.outpoint for u in params.funding_utxos)
        tx_hex = "02000000" + sha256(body.encode()).hex() + "00000000"
        return UnsignedPegin(
            tx_hex=tx_hex,
            txid=compute_txid(bytes.fromhex(tx_hex)),
            vault_value=params.amount,
            fee=estimate_pegin_fee(len(params.funding_utxos), params.fee_rate),
        )

    def build_psbt(self, unsigned_tx_hex: str, inputs: list[UTXO]) -> str:
        return "psbt:" + unsigned_tx_hex

    def finalize_psbt(self, signed_psbt_hex: str) -> str:
        return signed_psbt_hex.removeprefix("signed:psbt:")

    def build_payout_psbt(
        self, context: SigningContext, transaction: PreparedTransaction, step: SigningStep
    ) -> str:
        return f"payout:{context.pegin_tx_hex}:{transaction.claimer_pubkey_xonly}:{step.value}"

    def extract_payout_signature(self, signed_psbt_hex: str, depositor_btc_pubkey: str) -> str:
        return (sha256(signed_psbt_hex.encode()) + sha256(depositor_btc_pubkey.encode())).hex()


class FakeBackend(BlockchainBackend):
    """
    Backend serving a fixed UTXO set; broadcast returns the real txid.

    Any outpoint not listed in spent counts as unspent.
    """

    def __init__(self) -> None:
        self.utxos: list[UTXO] = []
        self.spent: set[str] = set()
        self.lookups: list[str] = []
        self.broadcasts: list[str] = []
        self.txid_override: str | None = None
        self.transactions: dict[str, Transaction] = {}
        self.fee_rate = 1.0
        self.queried_addresses: list[str] = []
        self.closed = False

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        self.queried_addresses.extend(addresses)
        return list(self.utxos)

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        return self.txid_override or compute_txid(bytes.fromhex(tx_hex))

    async def get_transaction(self, txid: str) -> Transaction | None:
        return self.transactions.get(txid)

    async def estimate_fee(self, target_blocks: int) -> float:
        return self.fee_rate

    async def get_utxo(self, txid: str, vout: int) -> UTXO | None:
        outpoint = f"{txid}:{vout}"
        self.lookups.append(outpoint)
        if outpoint in self.spent:
            return None
        known = next((u for u in self.utxos if u.outpoint == outpoint), None)
        return known or UTXO(
            txid=txid, vout=vout, value=0, address=ADDRESS, confirmations=0, scriptpubkey=""
        )

    async def close(self) -> None:
        self.closed = True


class FakeContractWallet(ContractWalletClient):
    def __init__(self, chain: FakeContractClient, account: str) -> None:
        self.chain = chain
        self.account = account

    async def submit_pegin_request(self, submission: PeginSubmission) -> str:
        self.chain.submissions.append(submission)
        if len(self.chain.submissions) in self.chain.fail_submissions:
            raise RuntimeError("execution reverted: vault provider at capacity")
        return "0x" + sha256(submission.unsigned_pegin_tx_hex.encode()).hex()


class FakeContractClient(ContractChainClient):
    """Contract chain whose vaults verify immediately unless scripted otherwise."""

    def __init__(self) -> None:
        self.chain_id = CHAIN_ID
        self.switches: list[int] = []
        self.reject_switch = False
        self.submissions: list[PeginSubmission] = []
        self.fail_submissions: set[int] = set()  # 1-based submission numbers
        self.receipt_success = True
        self.receipt_delay = 0.0
        self.receipt_confirmations: list[int] = []
        self.vault_statuses: dict[str, list[ContractStatus | None]] = {}
        self.default_status: ContractStatus | None = ContractStatus.VERIFIED

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def switch_chain(self, chain_id: int) -> None:
        if self.reject_switch:
            raise UserRejectedError("User rejected the request")
        self.switches.append(chain_id)
        self.chain_id = chain_id

    async def get_wallet_client(self, chain_id: int, account: str) -> ContractWalletClient:
        return FakeContractWallet(self, account)

    async def wait_for_transaction_receipt(
        self, tx_hash: str, confirmations: int
    ) -> TransactionReceipt:
        self.receipt_confirmations.append(confirmations)
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        return TransactionReceipt(
            tx_hash=tx_hash,
            success=self.receipt_success,
            block_number=100,
            confirmations=confirmations,
        )

    async def get_vault_status(self, vault_id: str) -> ContractStatus | None:
        scripted = self.vault_statuses.get(vault_id)
        if scripted:
            return scripted.pop(0)
        return self.default_status


class FakeProvider:
    """
    Vault provider client stand-in.

    presign_script is consumed before the bundles are served: an exception
    is raised, None answers with an empty (not ready) transaction list.
    """

    def __init__(self, bundles: list[ClaimerTransactions]) -> None:
        self.bundles = bundles
        self.presign_script: list[Exception | None] = []
        self.presign_calls = 0
        self.submit_errors: list[Exception] = []
        self.submissions: list[tuple[str, str, dict]] = []
        self.lamport_keys: list[tuple[str, str, dict]] = []
        self.statuses: dict[str, str | Exception] = {}
        self.opened = 0
        self.closed = 0

    async def __aenter__(self) -> FakeProvider:
        self.opened += 1
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.closed += 1

    async def request_depositor_presign_transactions(
        self, pegin_txid: str, depositor_pk: str
    ) -> PresignTransactionsResponse:
        self.presign_calls += 1
        if self.presign_script:
            item = self.presign_script.pop(0)
            if isinstance(item, Exception):
                raise item
            return PresignTransactionsResponse(txs=[])
        return PresignTransactionsResponse(txs=self.bundles)

    async def submit_payout_signatures(
        self, pegin_txid: str, depositor_pk: str, signatures: dict
    ) -> None:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submissions.append((pegin_txid, depositor_pk, signatures))

    async def submit_depositor_lamport_key(
        self, pegin_txid: str, depositor_pk: str, lamport_public_key: dict
    ) -> None:
        self.lamport_keys.append((pegin_txid, depositor_pk, lamport_public_key))

    async def get_pegin_status(self, pegin_txid: str) -> PeginStatusResponse:
        status = self.statuses.get(pegin_txid, "PendingDepositorSignatures")
        if isinstance(status, Exception):
            raise status
        return PeginStatusResponse(status=status)


def claimer_bundle(claimer_xonly: str) -> ClaimerTransactions:
    return ClaimerTransactions.model_validate(
        {
            "claimer_pubkey": "02" + claimer_xonly,
            "claim_tx": {"tx_hex": "c1" + claimer_xonly[:8]},
            "assert_tx": {"tx_hex": "a1" + claimer_xonly[:8]},
            "payout_tx": {"tx_hex": "b1" + claimer_xonly[:8]},
            "payout_optimistic_tx": {"tx_hex": "d1" + claimer_xonly[:8]},
        }
    )


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def points() -> tuple[str, ...]:
    """x-only public keys of 1G..7G."""
    return POINTS


@pytest.fixture
def make_utxo() -> Callable[..., UTXO]:
    def factory(value: int, seed: str = "", vout: int = 0, confirmations: int = 6) -> UTXO:
        return UTXO(
            txid=sha256(f"{seed or value}".encode()).hex(),
            vout=vout,
            value=value,
            address=ADDRESS,
            confirmations=confirmations,
            scriptpubkey="0014751e76e8199196d454941c45d1b3a323f1433bd6",
        )

    return factory


@pytest.fixture
def make_bundle() -> Callable[[str], ClaimerTransactions]:
    return claimer_bundle


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def contract() -> FakeContractClient:
    return FakeContractClient()


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    def factory(*claimers: str) -> FakeProvider:
        return FakeProvider([claimer_bundle(c) for c in claimers])

    return factory


@pytest.fixture
def provider(make_provider) -> FakeProvider:
    """Provider with two claimers (2G and 3G)."""
    return make_provider(POINTS[1], POINTS[2])


@pytest.fixture
def store(tmp_path: Path) -> PendingPeginStore:
    return PendingPeginStore(tmp_path / "store")


@pytest.fixture
def config(tmp_path: Path) -> DepositorConfig:
    return DepositorConfig(
        network=NetworkType.REGTEST, contract_chain_id=CHAIN_ID, data_dir=tmp_path / "store"
    )


@pytest.fixture
def make_request() -> Callable[..., DepositRequest]:
    def factory(amount: int = 1_000_000, **overrides: object) -> DepositRequest:
        fields: dict[str, object] = {
            "amount": amount,
            "fee_rate": 1.0,
            "depositor_eth_address": ETH_ADDRESS,
            "application_id": "app-1",
            "vault_provider_id": "0x" + "11" * 20,
            "vault_provider_url": PROVIDER_URL,
            "vault_provider_btc_pubkey": "02" + POINTS[3],
            "vault_keeper_btc_pubkeys": ("02" + POINTS[4],),
            "universal_challenger_btc_pubkeys": (POINTS[6], POINTS[5]),
        }
        fields.update(overrides)
        return DepositRequest(**fields)

    return factory


@pytest.fixture
def make_flow(wallet, contract, backend, builder, store, config, provider, fake_sleep):
    """Build a DepositFlow wired to the fakes; keyword arguments override them."""

    def factory(**overrides: object) -> DepositFlow:
        args: dict[str, object] = {
            "btc_wallet": wallet,
            "contract_client": contract,
            "backend": backend,
            "tx_builder": builder,
            "store": store,
            "config": config,
            "provider_client_factory": lambda url: provider,
            "sleep": fake_sleep,
        }
        args.update(overrides)
        return DepositFlow(**args)

    return factory


@pytest.fixture
def flow(make_flow) -> DepositFlow:
    return make_flow()


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )
