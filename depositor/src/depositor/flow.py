"""
Deposit flow state machine.

Sequences one deposit across the Bitcoin wallet, the contract chain and the
vault provider:

0. SIGN_SPLIT_TX (split deposits only, once per batch)
1. SIGN_PROOF_OF_POSSESSION
2. SUBMIT_PEGIN: contract request, pending record stored, one confirmation
3. SIGN_PAYOUTS: poll provider, sign payouts, submit signatures
4. BROADCAST_BITCOIN: wait for contract verification, broadcast peg-in
5. COMPLETED

Vaults of a batch run one after another. Every step after the contract
submission can be resumed from the stored PendingPeginRecord alone.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from loguru import logger
from vaultcore.crypto import CryptoError, to_xonly_pubkey
from vaultcore.errors import (
    DepositError,
    FatalError,
    FlowAbortedError,
    InvariantViolationError,
    ValidationError,
)
from vaultcore.lamport import derive_lamport_keypair, mnemonic_to_seed
from vaultcore.models import (
    ClaimerSignatures,
    ClaimerTransactions,
    PendingPeginRecord,
    PendingPeginStatus,
    StoredUtxo,
    VaultSigningKeys,
)
from vaultcore.retry import RetryPolicy, SleepFn
from vaultcore.rpc import VaultProviderClient
from vaultwallet.backends.base import BlockchainBackend
from vaultwallet.interfaces import (
    BitcoinWallet,
    ContractChainClient,
    PeginParams,
    PeginSubmission,
    TransactionBuilder,
)

from depositor.config import DepositorConfig
from depositor.models import (
    AllocationPlan,
    AllocationStrategy,
    DepositFlowResult,
    DepositRequest,
    VaultAllocation,
    VaultResult,
)
from depositor.payout import (
    PayoutSignatureCoordinator,
    PayoutSigningProgress,
    build_signing_context,
    prepare_transactions,
)
from depositor.planner import plan_allocation
from depositor.steps import (
    ProviderClientFactory,
    broadcast_pegin,
    poll_claimer_transactions,
    sign_and_broadcast,
    sign_proof_of_possession,
    submit_pegin,
    wait_for_confirmation,
    wait_for_contract_verification,
)
from depositor.storage import PendingPeginStore, filter_reserved_utxos


class DepositStep(str, Enum):
    """Flow steps in execution order."""

    SIGN_SPLIT_TX = "sign_split_tx"
    SIGN_PROOF_OF_POSSESSION = "sign_proof_of_possession"
    SUBMIT_PEGIN = "submit_pegin"
    SIGN_PAYOUTS = "sign_payouts"
    BROADCAST_BITCOIN = "broadcast_bitcoin"
    COMPLETED = "completed"

    @property
    def order(self) -> int:
        return list(DepositStep).index(self)


VAULT_STEPS = tuple(s for s in DepositStep if s != DepositStep.SIGN_SPLIT_TX)

_RESUME_STEP = {
    PendingPeginStatus.PENDING: DepositStep.SIGN_PAYOUTS,
    PendingPeginStatus.PAYOUT_SIGNED: DepositStep.BROADCAST_BITCOIN,
    PendingPeginStatus.CONFIRMING: DepositStep.COMPLETED,
}


@dataclass
class DepositFlowState:
    """
    Observable state of a running flow.

    processing is set while any call is outstanding; is_waiting additionally
    marks that the call is on an external system rather than a wallet prompt.
    """

    step: DepositStep = DepositStep.SIGN_PROOF_OF_POSSESSION
    processing: bool = False
    is_waiting: bool = False
    error: str | None = None
    strategy: AllocationStrategy | None = None
    current_vault: int = 0
    total_vaults: int = 1
    btc_txid: str | None = None
    contract_tx_hash: str | None = None
    depositor_btc_pubkey: str | None = None
    signatures: dict[str, ClaimerSignatures] = field(default_factory=dict)
    payout_progress: PayoutSigningProgress | None = None
    vault_results: list[VaultResult] = field(default_factory=list)

    def copy(self) -> DepositFlowState:
        return replace(
            self,
            signatures=dict(self.signatures),
            vault_results=[replace(v) for v in self.vault_results],
        )


def rehydrate_state(record: PendingPeginRecord) -> DepositFlowState:
    """Flow state at which a stored deposit resumes."""
    return DepositFlowState(
        step=_RESUME_STEP[record.status],
        current_vault=record.batch_index or 0,
        total_vaults=record.batch_total or 1,
        btc_txid=record.id,
        contract_tx_hash=record.contract_tx_hash or None,
        depositor_btc_pubkey=record.depositor_btc_pubkey or None,
    )


FlowObserver = Callable[[DepositFlowState], None]


@dataclass
class _Batch:
    """Values shared by every vault of one execute() call."""

    request: DepositRequest
    plan: AllocationPlan
    depositor_btc_pubkey: str
    btc_address: str
    batch_id: str | None
    split_txid: str | None = None


def _describe(error: BaseException) -> str:
    if isinstance(error, DepositError):
        return error.display_message()
    return str(error) or error.__class__.__name__


class DepositFlow:
    """
    Runs deposits and resumes stored ones.

    One instance drives one deposit at a time. Readers observe it through
    snapshot() or subscribe(); only the flow itself mutates its state.
    """

    def __init__(
        self,
        btc_wallet: BitcoinWallet | None,
        contract_client: ContractChainClient | None,
        backend: BlockchainBackend,
        tx_builder: TransactionBuilder,
        store: PendingPeginStore,
        config: DepositorConfig,
        provider_client_factory: ProviderClientFactory | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        """
        Args:
            btc_wallet: Connected Bitcoin wallet, None if not connected
            contract_client: Connected contract-chain client, None if not connected
            backend: Blockchain backend for UTXO discovery and broadcast
            tx_builder: Transaction construction library
            store: Pending-deposit store
            config: Depositor configuration
            provider_client_factory: Builds a provider client for a URL
            sleep: Sleep used between polls
        """
        self.btc_wallet = btc_wallet
        self.contract_client = contract_client
        self.backend = backend
        self.tx_builder = tx_builder
        self.store = store
        self.config = config
        self._sleep = sleep
        self.provider_client_factory = provider_client_factory or self._default_client

        self.state = DepositFlowState()
        self._observers: list[FlowObserver] = []
        self._abort_requested = False
        # Wallets show one prompt at a time
        self._signing_lock = asyncio.Lock()
        self.coordinator: PayoutSignatureCoordinator | None = None
        if btc_wallet is not None:
            self.coordinator = PayoutSignatureCoordinator(
                btc_wallet, tx_builder, self._signing_lock
            )

    def _default_client(self, url: str) -> VaultProviderClient:
        return VaultProviderClient(url, timeout=self.config.rpc_timeout_sec, sleep=self._sleep)

    # State and observers

    def snapshot(self) -> DepositFlowState:
        return self.state.copy()

    def subscribe(self, observer: FlowObserver) -> Callable[[], None]:
        """Register observer for state snapshots. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer(self.snapshot())

    def _update(self, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self.state, name, value)
        self._notify()

    def _enter(self, step: DepositStep, **changes: Any) -> None:
        self._check_abort()
        logger.info(f"Deposit step: {step.value}")
        self._update(step=step, error=None, **changes)

    def _record_error(self, error: BaseException) -> None:
        self._update(processing=False, is_waiting=False, error=_describe(error))

    @contextmanager
    def _busy(self, waiting: bool) -> Iterator[None]:
        self._update(processing=True, is_waiting=waiting)
        try:
            yield
        finally:
            self._update(processing=False, is_waiting=False)

    # Cancellation

    def abort(self) -> bool:
        """
        Request cancellation before the next step.

        Refused while waiting on an external system: a submitted transaction
        or a pending confirmation cannot be interrupted.

        Returns:
            True if the request was accepted
        """
        if self.state.is_waiting:
            logger.warning("Cannot abort while waiting on an external system")
            return False
        logger.info("Abort requested")
        self._abort_requested = True
        return True

    def _check_abort(self) -> None:
        if self._abort_requested:
            raise FlowAbortedError("Deposit cancelled by user")

    def _provider_policy(self) -> RetryPolicy:
        return self.config.provider_poll_policy().with_sleep(self._sleep)

    def _verification_policy(self) -> RetryPolicy:
        return self.config.verification_poll_policy().with_sleep(self._sleep)

    # Full flow

    async def execute(self, request: DepositRequest) -> DepositFlowResult:
        """
        Run a deposit from planning to broadcast.

        Errors before the first vault (validation, planning, split
        transaction) are raised. From then on each vault's outcome is
        reported in the result; a fatal error or an abort stops the batch.

        Raises:
            ValidationError: If preconditions fail
            DepositError: If the split transaction cannot be signed or sent
        """
        self._abort_requested = False
        # Nothing is published until planning has picked the first step
        self.state = DepositFlowState()

        try:
            batch = await self._prepare(request)
            if batch.plan.needs_split:
                await self._sign_split(batch)
        except Exception as e:
            logger.error(f"Deposit failed before vault processing: {_describe(e)}")
            self._record_error(e)
            raise

        result = DepositFlowResult(
            strategy=batch.plan.strategy, batch_id=batch.batch_id, split_txid=batch.split_txid
        )
        total = len(batch.plan.allocations)

        for allocation in batch.plan.allocations:
            vault = VaultResult(vault_index=allocation.vault_index, amount=allocation.vault_value)
            result.vaults.append(vault)
            self._update(vault_results=list(result.vaults))
            try:
                await self._process_vault(batch, allocation, vault)
            except FlowAbortedError as e:
                vault.error = _describe(e)
                result.aborted = True
                result.error = vault.error
                self._record_error(e)
                break
            except FatalError as e:
                logger.error(f"Fatal error on vault {allocation.vault_index + 1}/{total}: {e}")
                vault.error = _describe(e)
                result.error = vault.error
                self._record_error(e)
                break
            except Exception as e:
                logger.error(f"Vault {allocation.vault_index + 1}/{total} failed: {e}")
                vault.error = _describe(e)
                self._record_error(e)
            finally:
                self._update(vault_results=list(result.vaults))

        logger.info(
            f"Deposit finished: {len(result.succeeded)}/{total} vault(s) broadcast"
            + (" (aborted)" if result.aborted else "")
        )
        return result

    async def _prepare(self, request: DepositRequest) -> _Batch:
        if self.btc_wallet is None:
            raise ValidationError("Bitcoin wallet is not connected")
        if self.contract_client is None:
            raise ValidationError("Contract-chain wallet is not connected")
        if not request.vault_provider_url:
            raise ValidationError("No vault provider selected")
        if not request.vault_keeper_btc_pubkeys:
            raise ValidationError("At least one vault keeper is required")
        if not request.universal_challenger_btc_pubkeys:
            raise ValidationError("At least one universal challenger is required")
        if not self.config.min_deposit <= request.amount <= self.config.max_deposit:
            raise ValidationError(
                f"Deposit must be between {self.config.min_deposit:,} and "
                f"{self.config.max_deposit:,} sats"
            )

        try:
            depositor_pubkey = to_xonly_pubkey(await self.btc_wallet.get_public_key_hex())
        except CryptoError as e:
            raise ValidationError(f"Wallet returned an invalid public key: {e}") from e
        address = await self.btc_wallet.get_address()

        utxos = await self.backend.get_utxos([address])
        pending = self.store.get_pending_pegins(request.depositor_eth_address)
        available = filter_reserved_utxos(utxos, pending)

        plan = plan_allocation(
            request.amount,
            available,
            request.fee_rate,
            request.partial_liquidation,
            min_vault_amount=self.config.min_vault_amount,
            change_address=address,
            dust_threshold=self.config.dust_threshold,
            min_confirmations=self.config.min_utxo_confirmations,
        )
        batch_id = uuid.uuid4().hex if len(plan.allocations) > 1 else None
        first_step = (
            DepositStep.SIGN_SPLIT_TX if plan.needs_split else DepositStep.SIGN_PROOF_OF_POSSESSION
        )
        self._update(
            step=first_step,
            strategy=plan.strategy,
            total_vaults=len(plan.allocations),
            depositor_btc_pubkey=depositor_pubkey,
        )
        return _Batch(
            request=request,
            plan=plan,
            depositor_btc_pubkey=depositor_pubkey,
            btc_address=address,
            batch_id=batch_id,
        )

    async def _sign_split(self, batch: _Batch) -> None:
        split = batch.plan.split_transaction
        assert split is not None and self.btc_wallet is not None

        self._enter(DepositStep.SIGN_SPLIT_TX)
        with self._busy(waiting=False):
            txid = await sign_and_broadcast(
                self.btc_wallet,
                self.tx_builder,
                self.backend,
                split.tx_hex,
                split.inputs,
                self._signing_lock,
            )
        if txid.lower() != split.txid.lower():
            raise InvariantViolationError(
                f"Broadcast split transaction {txid} differs from planned {split.txid}"
            )
        batch.split_txid = txid
        logger.info(f"Split transaction {txid} broadcast")

    async def _process_vault(
        self, batch: _Batch, allocation: VaultAllocation, vault: VaultResult
    ) -> None:
        assert self.btc_wallet is not None and self.contract_client is not None
        request = batch.request
        label = f"vault {allocation.vault_index + 1}/{len(batch.plan.allocations)}"

        self._enter(
            DepositStep.SIGN_PROOF_OF_POSSESSION,
            current_vault=allocation.vault_index,
            btc_txid=None,
            contract_tx_hash=None,
            signatures={},
            payout_progress=None,
        )
        with self._busy(waiting=False):
            pop_signature = await sign_proof_of_possession(
                self.btc_wallet, request.depositor_eth_address, self._signing_lock
            )

        funding = allocation.funding_utxos()
        unsigned = self.tx_builder.build_pegin(
            PeginParams(
                amount=allocation.vault_value,
                fee_rate=request.fee_rate,
                depositor_btc_pubkey=batch.depositor_btc_pubkey,
                vault_provider_btc_pubkey=request.vault_provider_btc_pubkey,
                vault_keeper_btc_pubkeys=request.vault_keeper_btc_pubkeys,
                universal_challenger_btc_pubkeys=request.universal_challenger_btc_pubkeys,
                funding_utxos=funding,
                change_address=batch.btc_address,
                network=self.config.network.value,
            )
        )
        vault.pegin_txid = unsigned.txid
        logger.info(f"Built peg-in {unsigned.txid} for {label} ({unsigned.vault_value:,} sats)")

        self._enter(DepositStep.SUBMIT_PEGIN, btc_txid=unsigned.txid)
        with self._busy(waiting=False):
            contract_tx_hash = await submit_pegin(
                self.contract_client,
                self.config.contract_chain_id,
                PeginSubmission(
                    depositor_eth_address=request.depositor_eth_address,
                    depositor_btc_pubkey=batch.depositor_btc_pubkey,
                    pop_signature=pop_signature,
                    unsigned_pegin_tx_hex=unsigned.tx_hex,
                    vault_provider=request.vault_provider_id,
                    application_id=request.application_id,
                ),
            )
        vault.contract_tx_hash = contract_tx_hash
        self._update(contract_tx_hash=contract_tx_hash)

        record = self.store.add_pending_pegin(
            request.depositor_eth_address,
            PendingPeginRecord(
                id=unsigned.txid,
                depositor_eth_address=request.depositor_eth_address,
                amount=unsigned.vault_value,
                provider_ids=[request.vault_provider_id],
                provider_url=request.vault_provider_url,
                application_id=request.application_id,
                unsigned_tx_hex=unsigned.tx_hex,
                selected_utxos=[
                    StoredUtxo(
                        txid=u.txid, vout=u.vout, value=u.value, script_pubkey=u.scriptpubkey
                    )
                    for u in funding
                ],
                depositor_btc_pubkey=batch.depositor_btc_pubkey,
                contract_tx_hash=contract_tx_hash,
                signing_keys=VaultSigningKeys(
                    vault_provider_btc_pubkey=request.vault_provider_btc_pubkey,
                    vault_keeper_btc_pubkeys=list(request.vault_keeper_btc_pubkeys),
                    universal_challenger_btc_pubkeys=list(
                        request.universal_challenger_btc_pubkeys
                    ),
                ),
                batch_id=batch.batch_id,
                batch_index=allocation.vault_index if batch.batch_id else None,
                batch_total=len(batch.plan.allocations) if batch.batch_id else None,
                split_txid=batch.split_txid,
            ),
        )

        with self._busy(waiting=True):
            await wait_for_confirmation(
                self.contract_client,
                contract_tx_hash,
                self.config.confirmation_timeout_sec,
                confirmations=self.config.contract_confirmations,
            )

        record = await self._sign_payouts(record)
        record = await self._broadcast(record)
        vault.btc_txid = record.btc_tx_hash
        logger.info(f"Completed {label}: {record.btc_tx_hash}")

    async def _sign_payouts(
        self,
        record: PendingPeginRecord,
        claimer_transactions: list[ClaimerTransactions] | None = None,
    ) -> PendingPeginRecord:
        coordinator = self.coordinator
        if coordinator is None:
            raise ValidationError("Bitcoin wallet is not connected")
        if record.signing_keys is None or not record.depositor_btc_pubkey:
            raise ValidationError(f"Record {record.id} lacks the keys needed to sign payouts")

        self._enter(
            DepositStep.SIGN_PAYOUTS,
            btc_txid=record.id,
            depositor_btc_pubkey=record.depositor_btc_pubkey,
            payout_progress=None,
        )
        async with self.provider_client_factory(record.provider_url) as client:
            if claimer_transactions is None:
                with self._busy(waiting=True):
                    claimer_transactions = await poll_claimer_transactions(
                        client, record.id, record.depositor_btc_pubkey, self._provider_policy()
                    )

            prepared = prepare_transactions(claimer_transactions)
            context = build_signing_context(
                record.unsigned_tx_hex,
                record.signing_keys,
                record.depositor_btc_pubkey,
                self.config.network.value,
            )

            self._check_abort()
            with self._busy(waiting=False):
                signatures = await coordinator.sign_all(
                    context, prepared, on_progress=lambda p: self._update(payout_progress=p)
                )
            self._update(signatures=signatures)

            self._check_abort()
            with self._busy(waiting=True):
                await self._provider_policy().run(
                    lambda: coordinator.submit(
                        client, record.id, record.depositor_btc_pubkey, signatures
                    ),
                    f"payout submission for {record.id[:18]}...",
                )

        return self.store.update_pending_pegin_status(
            record.depositor_eth_address, record.id, PendingPeginStatus.PAYOUT_SIGNED
        )

    async def _broadcast(self, record: PendingPeginRecord) -> PendingPeginRecord:
        if self.btc_wallet is None or self.contract_client is None:
            raise ValidationError("Wallets are not connected")

        self._enter(DepositStep.BROADCAST_BITCOIN, btc_txid=record.id)
        with self._busy(waiting=True):
            await wait_for_contract_verification(
                self.contract_client, record.id, self._verification_policy()
            )

        self._check_abort()
        with self._busy(waiting=False):
            txid = await broadcast_pegin(
                self.btc_wallet, self.tx_builder, self.backend, record, self._signing_lock
            )
        if txid.lower() != record.pegin_txid:
            logger.warning(f"Broadcast txid {txid} differs from peg-in id {record.id}")

        record = self.store.update_pending_pegin_status(
            record.depositor_eth_address,
            record.id,
            PendingPeginStatus.CONFIRMING,
            btc_tx_hash=txid,
        )
        self._update(step=DepositStep.COMPLETED)
        return record

    # Resume entry points

    async def _resume(
        self,
        record: PendingPeginRecord,
        expected: DepositStep,
        action: Callable[[], Awaitable[PendingPeginRecord]],
    ) -> PendingPeginRecord:
        self._abort_requested = False
        self.state = rehydrate_state(record)
        self._notify()
        try:
            if self.state.step != expected:
                raise ValidationError(
                    f"Deposit {record.id} is {record.status.value}; "
                    f"cannot resume at {expected.value}"
                )
            return await action()
        except Exception as e:
            logger.error(f"Resume of {record.id} failed: {_describe(e)}")
            self._record_error(e)
            raise

    async def resume_sign_payouts(
        self,
        record: PendingPeginRecord,
        claimer_transactions: list[ClaimerTransactions] | None = None,
    ) -> PendingPeginRecord:
        """
        Sign and submit payouts for a stored PENDING deposit.

        Args:
            record: Stored record
            claimer_transactions: Previously fetched claimer transactions;
                polled from the provider when omitted
        """
        return await self._resume(
            record,
            DepositStep.SIGN_PAYOUTS,
            lambda: self._sign_payouts(record, claimer_transactions),
        )

    async def resume_broadcast(self, record: PendingPeginRecord) -> PendingPeginRecord:
        """Broadcast a stored deposit whose payouts are signed."""
        return await self._resume(
            record, DepositStep.BROADCAST_BITCOIN, lambda: self._broadcast(record)
        )

    async def submit_lamport_key(self, record: PendingPeginRecord, mnemonic: str) -> None:
        """
        Re-derive the depositor's Lamport key from the recovery phrase and send
        its public half to the provider.
        """

        async def send() -> PendingPeginRecord:
            seed = mnemonic_to_seed(mnemonic)
            keypair = derive_lamport_keypair(
                seed, record.pegin_txid, record.depositor_btc_pubkey, record.application_id
            )
            async with self.provider_client_factory(record.provider_url) as client:
                with self._busy(waiting=True):
                    await client.submit_depositor_lamport_key(
                        record.id, record.depositor_btc_pubkey, keypair.to_wire()
                    )
            logger.info(f"Submitted Lamport public key for {record.id}")
            return record

        await self._resume(record, DepositStep.SIGN_PAYOUTS, send)
