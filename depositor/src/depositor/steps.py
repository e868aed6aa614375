"""
Cross-chain submission and verification steps.

Each helper performs one external step of a deposit and either returns its
result or raises a typed DepositError. Retrying is the caller's choice
through the RetryPolicy passed in.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Sequence

from loguru import logger
from vaultcore.constants import CONTRACT_CONFIRMATIONS, POP_SIGNATURE_SCHEME
from vaultcore.crypto import CryptoError, signature_to_hex
from vaultcore.errors import (
    ChainSwitchRejectedError,
    ConfirmationTimeoutError,
    FatalError,
    MalformedResponseError,
    TerminalProviderError,
    UserRejectedError,
    UtxoNotAvailableError,
)
from vaultcore.models import (
    ClaimerTransactions,
    ContractStatus,
    PeginStatusResponse,
    PendingPeginRecord,
    StoredUtxo,
    transactions_ready,
)
from vaultcore.retry import RetryPolicy
from vaultcore.rpc import JsonRpcError, VaultProviderClient, is_terminal_error
from vaultwallet.backends.base import UTXO, BlockchainBackend
from vaultwallet.interfaces import (
    BitcoinWallet,
    ContractChainClient,
    PeginSubmission,
    TransactionBuilder,
    TransactionReceipt,
)

ProviderClientFactory = Callable[[str], VaultProviderClient]


async def sign_proof_of_possession(
    wallet: BitcoinWallet, depositor_eth_address: str, signing_lock: asyncio.Lock
) -> str:
    """
    Sign the depositor's contract-chain address with the Bitcoin key.

    Returns:
        0x-prefixed hex signature
    """
    message = depositor_eth_address.lower()
    async with signing_lock:
        signature = await wallet.sign_message(message, POP_SIGNATURE_SCHEME)
    try:
        return signature_to_hex(signature)
    except CryptoError as e:
        raise MalformedResponseError(f"Wallet returned an unusable signature: {e}") from e


async def ensure_chain(client: ContractChainClient, chain_id: int) -> None:
    """Switch the contract wallet to chain_id if it is elsewhere."""
    current = await client.get_chain_id()
    if current == chain_id:
        return

    logger.info(f"Switching contract wallet from chain {current} to {chain_id}")
    try:
        await client.switch_chain(chain_id)
    except ChainSwitchRejectedError:
        raise
    except UserRejectedError as e:
        raise ChainSwitchRejectedError(chain_id, str(e)) from e


async def submit_pegin(
    client: ContractChainClient, chain_id: int, submission: PeginSubmission
) -> str:
    """
    Submit the peg-in request to the vault manager contract.

    Returns:
        Contract transaction hash
    """
    await ensure_chain(client, chain_id)
    wallet_client = await client.get_wallet_client(chain_id, submission.depositor_eth_address)
    tx_hash = await wallet_client.submit_pegin_request(submission)
    logger.info(f"Peg-in request submitted: {tx_hash}")
    return tx_hash


async def wait_for_confirmation(
    client: ContractChainClient,
    tx_hash: str,
    timeout: float,
    confirmations: int = CONTRACT_CONFIRMATIONS,
) -> TransactionReceipt:
    """
    Block until the contract transaction is mined.

    Raises:
        ConfirmationTimeoutError: If it is not mined within timeout seconds
        TransactionDroppedError: If the client reports it dropped or replaced
        FatalError: If it was mined but reverted
    """
    logger.info(f"Waiting for {confirmations} confirmation(s) of {tx_hash}")
    try:
        receipt = await asyncio.wait_for(
            client.wait_for_transaction_receipt(tx_hash, confirmations), timeout
        )
    except asyncio.TimeoutError as e:
        raise ConfirmationTimeoutError(
            f"Transaction {tx_hash} not confirmed within {timeout:.0f}s"
        ) from e

    if not receipt.success:
        raise FatalError(f"Transaction {tx_hash} reverted")
    logger.info(f"Transaction {tx_hash} confirmed in block {receipt.block_number}")
    return receipt


async def poll_claimer_transactions(
    client: VaultProviderClient,
    pegin_txid: str,
    depositor_btc_pubkey: str,
    policy: RetryPolicy,
) -> list[ClaimerTransactions]:
    """
    Poll the provider until it publishes the claimer transactions.

    Not-ready responses are retried by the policy; other errors propagate.

    Raises:
        TerminalProviderError: If the provider will never serve this depositor
        RetryExhaustedError: If the provider stays not ready
    """

    async def fetch() -> list[ClaimerTransactions] | None:
        response = await client.request_depositor_presign_transactions(
            pegin_txid, depositor_btc_pubkey
        )
        return response.txs if transactions_ready(response.txs) else None

    try:
        txs = await policy.poll_until(fetch, f"claimer transactions for {pegin_txid[:16]}...")
    except JsonRpcError as e:
        if is_terminal_error(e):
            raise TerminalProviderError(e.message) from e
        raise

    logger.info(f"Provider published transactions for {len(txs)} claimer(s)")
    return txs


async def wait_for_contract_verification(
    client: ContractChainClient, vault_id: str, policy: RetryPolicy
) -> ContractStatus:
    """
    Poll the contract until the vault is verified.

    Raises:
        FatalError: If the contract marked the vault invalid
        RetryExhaustedError: If it is not verified in time
    """

    async def check() -> ContractStatus | None:
        status = await client.get_vault_status(vault_id)
        if status == ContractStatus.INVALID:
            raise FatalError(f"Vault {vault_id} was marked invalid by the contract")
        if status is not None and status >= ContractStatus.VERIFIED:
            return status
        return None

    status = await policy.poll_until(check, f"contract verification of {vault_id[:18]}...")
    logger.info(f"Vault {vault_id} verified on contract ({status.name})")
    return status


def stored_to_utxo(stored: StoredUtxo) -> UTXO:
    return UTXO(
        txid=stored.txid,
        vout=stored.vout,
        value=stored.value,
        address="",
        confirmations=0,
        scriptpubkey=stored.script_pubkey,
    )


async def ensure_inputs_unspent(backend: BlockchainBackend, inputs: Sequence[UTXO]) -> None:
    """
    Check every input is still unspent before the wallet is asked to sign.

    Raises:
        UtxoNotAvailableError: Naming each spent or unknown outpoint
    """
    found = await asyncio.gather(*(backend.get_utxo(u.txid, u.vout) for u in inputs))
    missing = [u.outpoint for u, utxo in zip(inputs, found) if utxo is None]
    if missing:
        logger.error(f"Inputs spent before signing: {missing}")
        raise UtxoNotAvailableError(missing)


async def sign_and_broadcast(
    wallet: BitcoinWallet,
    builder: TransactionBuilder,
    backend: BlockchainBackend,
    unsigned_tx_hex: str,
    inputs: Sequence[UTXO],
    signing_lock: asyncio.Lock,
) -> str:
    """
    Sign an unsigned transaction with the wallet and broadcast it.

    Raises:
        UtxoNotAvailableError: If an input was spent in the meantime

    Returns:
        Broadcast txid
    """
    await ensure_inputs_unspent(backend, inputs)
    psbt = builder.build_psbt(unsigned_tx_hex, list(inputs))
    async with signing_lock:
        signed = await wallet.sign_psbt(psbt)
    tx_hex = builder.finalize_psbt(signed)
    txid = await backend.broadcast_transaction(tx_hex)
    logger.info(f"Broadcast transaction {txid}")
    return txid


async def broadcast_pegin(
    wallet: BitcoinWallet,
    builder: TransactionBuilder,
    backend: BlockchainBackend,
    record: PendingPeginRecord,
    signing_lock: asyncio.Lock,
) -> str:
    """Sign and broadcast the peg-in stored in record."""
    if not record.unsigned_tx_hex:
        raise MalformedResponseError(f"Record {record.id} has no unsigned transaction")
    inputs = [stored_to_utxo(u) for u in record.selected_utxos]
    return await sign_and_broadcast(
        wallet, builder, backend, record.unsigned_tx_hex, inputs, signing_lock
    )


async def fetch_pegin_statuses(
    records: Sequence[PendingPeginRecord], client_factory: ProviderClientFactory
) -> dict[str, PeginStatusResponse | None]:
    """
    Ask each record's provider for its view of the peg-in.

    One task per distinct provider URL runs concurrently; records sharing a
    provider are queried one after another. A record whose query fails maps
    to None.
    """
    by_provider: dict[str, list[PendingPeginRecord]] = defaultdict(list)
    for record in records:
        if record.provider_url:
            by_provider[record.provider_url].append(record)

    async def query(
        url: str, group: list[PendingPeginRecord]
    ) -> dict[str, PeginStatusResponse | None]:
        results: dict[str, PeginStatusResponse | None] = {}
        async with client_factory(url) as client:
            for record in group:
                try:
                    results[record.id] = await client.get_pegin_status(record.pegin_txid)
                except (JsonRpcError, MalformedResponseError) as e:
                    logger.warning(f"Status query for {record.id} at {url} failed: {e}")
                    results[record.id] = None
        return results

    merged: dict[str, PeginStatusResponse | None] = {}
    for partial in await asyncio.gather(*(query(u, g) for u, g in by_provider.items())):
        merged.update(partial)
    return merged
