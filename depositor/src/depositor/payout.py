"""
Payout signature coordination.

For every claimer returned by the vault provider the depositor signs two
transactions, payout_optimistic then payout. Claimers are processed in the
order the provider returned them and never concurrently: wallets show one
signing prompt at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from loguru import logger
from vaultcore.crypto import CryptoError, sorted_xonly_pubkeys, to_xonly_pubkey
from vaultcore.errors import MalformedResponseError, ProviderNotReadyError
from vaultcore.models import (
    ClaimerSignatures,
    ClaimerTransactions,
    SigningStep,
    VaultSigningKeys,
    transactions_ready,
)
from vaultcore.rpc import JsonRpcError, VaultProviderClient, is_not_ready_error
from vaultwallet.interfaces import (
    BitcoinWallet,
    PreparedTransaction,
    SigningContext,
    TransactionBuilder,
)

SIGNING_STEPS = (SigningStep.PAYOUT_OPTIMISTIC, SigningStep.PAYOUT)


@dataclass(frozen=True)
class PayoutSigningProgress:
    """Snapshot of a signing pass. current_claimer is 1-based."""

    completed: int
    total: int
    current_step: SigningStep | None = None
    current_claimer: int = 0
    total_claimers: int = 0

    @property
    def done(self) -> bool:
        return self.completed >= self.total


ProgressCallback = Callable[[PayoutSigningProgress], None]


def prepare_transactions(txs: Sequence[ClaimerTransactions]) -> list[PreparedTransaction]:
    """
    Normalize provider claimer bundles for signing.

    Keeps the provider's order. Claimer keys become x-only so they match the
    keys used in the signature map.

    Raises:
        MalformedResponseError: On empty bundles, bad keys or duplicate claimers
    """
    if not transactions_ready(list(txs)):
        raise MalformedResponseError("Claimer transactions are missing claim or payout data")

    prepared: list[PreparedTransaction] = []
    seen: set[str] = set()
    for tx in txs:
        try:
            claimer = to_xonly_pubkey(tx.claimer_pubkey)
        except CryptoError as e:
            raise MalformedResponseError(f"Invalid claimer public key: {e}") from e
        if claimer in seen:
            raise MalformedResponseError(f"Duplicate claimer {claimer[:16]}... in response")
        seen.add(claimer)
        prepared.append(
            PreparedTransaction(
                claimer_pubkey_xonly=claimer,
                payout_optimistic_tx_hex=tx.payout_optimistic_tx.tx_hex,
                payout_tx_hex=tx.payout_tx.tx_hex,
                claim_tx_hex=tx.claim_tx.tx_hex,
                assert_tx_hex=tx.assert_tx.tx_hex,
                source=tx,
            )
        )
    return prepared


def build_signing_context(
    pegin_tx_hex: str,
    signing_keys: VaultSigningKeys,
    depositor_btc_pubkey: str,
    network: str,
) -> SigningContext:
    """Signing context with every key in x-only form; keeper and challenger keys sorted."""
    try:
        return SigningContext(
            pegin_tx_hex=pegin_tx_hex,
            vault_provider_btc_pubkey=to_xonly_pubkey(signing_keys.vault_provider_btc_pubkey),
            vault_keeper_btc_pubkeys=tuple(
                sorted_xonly_pubkeys(signing_keys.vault_keeper_btc_pubkeys)
            ),
            universal_challenger_btc_pubkeys=tuple(
                sorted_xonly_pubkeys(signing_keys.universal_challenger_btc_pubkeys)
            ),
            depositor_btc_pubkey=to_xonly_pubkey(depositor_btc_pubkey),
            network=network,
        )
    except CryptoError as e:
        raise MalformedResponseError(f"Invalid signing key: {e}") from e


class PayoutSignatureCoordinator:
    """Signs and submits payout signatures for one vault."""

    def __init__(
        self,
        wallet: BitcoinWallet,
        builder: TransactionBuilder,
        signing_lock: asyncio.Lock | None = None,
    ):
        """
        Args:
            wallet: Depositor's Bitcoin wallet
            builder: Transaction library that builds payout PSBTs
            signing_lock: Lock shared by everything that prompts the wallet
        """
        self.wallet = wallet
        self.builder = builder
        self.signing_lock = signing_lock or asyncio.Lock()

    async def sign_one(
        self, context: SigningContext, transaction: PreparedTransaction, step: SigningStep
    ) -> str:
        """Produce one payout signature."""
        psbt = self.builder.build_payout_psbt(context, transaction, step)
        async with self.signing_lock:
            signed = await self.wallet.sign_psbt(psbt)
        return self.builder.extract_payout_signature(signed, context.depositor_btc_pubkey)

    async def sign_all(
        self,
        context: SigningContext,
        transactions: Sequence[PreparedTransaction],
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, ClaimerSignatures]:
        """
        Sign payout_optimistic then payout for every claimer.

        on_progress receives one snapshot before each sub-step and a final
        snapshot once everything is signed, so completed runs 0..total.

        Returns:
            Signatures keyed by x-only claimer pubkey, in claimer order
        """
        total_claimers = len(transactions)
        total = total_claimers * len(SIGNING_STEPS)
        completed = 0
        signatures: dict[str, ClaimerSignatures] = {}

        def report(step: SigningStep | None, claimer: int) -> None:
            if on_progress is not None:
                on_progress(
                    PayoutSigningProgress(
                        completed=completed,
                        total=total,
                        current_step=step,
                        current_claimer=claimer,
                        total_claimers=total_claimers,
                    )
                )

        logger.info(f"Signing payouts for {total_claimers} claimer(s)")
        for claimer_index, transaction in enumerate(transactions, start=1):
            collected: dict[SigningStep, str] = {}
            for step in SIGNING_STEPS:
                report(step, claimer_index)
                collected[step] = await self.sign_one(context, transaction, step)
                completed += 1
                logger.debug(
                    f"Signed {step.value} for claimer {claimer_index}/{total_claimers} "
                    f"({completed}/{total})"
                )
            signatures[transaction.claimer_pubkey_xonly] = ClaimerSignatures(
                payout_optimistic_signature=collected[SigningStep.PAYOUT_OPTIMISTIC],
                payout_signature=collected[SigningStep.PAYOUT],
            )

        report(None, total_claimers)
        return signatures

    async def submit(
        self,
        client: VaultProviderClient,
        pegin_txid: str,
        depositor_btc_pubkey: str,
        signatures: dict[str, ClaimerSignatures],
    ) -> None:
        """
        Send every claimer's signatures to the provider in one call.

        Raises:
            ProviderNotReadyError: If the provider is still assembling the
                transactions; callers poll and retry
        """
        try:
            await client.submit_payout_signatures(pegin_txid, depositor_btc_pubkey, signatures)
        except JsonRpcError as e:
            if is_not_ready_error(e):
                raise ProviderNotReadyError(
                    f"Provider not ready for signatures: {e.message}"
                ) from e
            raise
        logger.info(
            f"Submitted {len(signatures)} claimer signature set(s) for {pegin_txid[:16]}..."
        )
