"""
Allocation planner.

Decides how a deposit is funded:
- SINGLE: one vault funded directly from wallet outputs
- MULTI_INPUT: two vaults, each funded by a disjoint subset of wallet outputs
- SPLIT: two vaults funded by the outputs of a splitting transaction

Partial liquidation halves exposure per liquidation event, so a plan never
holds more than two vaults. The planner is deterministic: identical inputs
give an identical plan.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from loguru import logger
from vaultcore.constants import (
    DUST_THRESHOLD,
    MAX_NON_LEGACY_OUTPUT_SIZE,
    MIN_DEPOSIT,
    P2TR_INPUT_SIZE,
    PEGIN_OUTPUT_COUNT,
    SPLIT_OUTPUT_COUNT,
    TX_BUFFER_SIZE_OVERHEAD,
)
from vaultcore.errors import (
    InsufficientFundsError,
    NonPositiveOutputError,
    SplitUnreachableError,
    ValidationError,
)
from vaultcore.transaction import TxInput, TxOutput, address_to_scriptpubkey, build_unsigned_tx
from vaultwallet.backends.base import UTXO

from depositor.models import (
    AllocationPlan,
    AllocationStrategy,
    SplitOutput,
    SplitTransaction,
    VaultAllocation,
)


def estimate_tx_fee(num_inputs: int, num_outputs: int, fee_rate: float) -> int:
    """Fee for a transaction of P2TR inputs and non-legacy outputs."""
    vsize = (
        num_inputs * P2TR_INPUT_SIZE
        + num_outputs * MAX_NON_LEGACY_OUTPUT_SIZE
        + TX_BUFFER_SIZE_OVERHEAD
    )
    return math.ceil(vsize * fee_rate)


def estimate_pegin_fee(num_inputs: int, fee_rate: float) -> int:
    """Fee for a peg-in spending num_inputs outputs (vault output plus change)."""
    return estimate_tx_fee(num_inputs, PEGIN_OUTPUT_COUNT, fee_rate)


def estimate_split_fee(num_inputs: int, fee_rate: float) -> int:
    """Fee for a split transaction with two vault shares and change."""
    return estimate_tx_fee(num_inputs, SPLIT_OUTPUT_COUNT, fee_rate)


def sort_utxos(utxos: Sequence[UTXO]) -> list[UTXO]:
    """Largest first; ties broken by outpoint so ordering is stable."""
    return sorted(utxos, key=lambda u: (-u.value, u.txid, u.vout))


def select_funding(utxos: Sequence[UTXO], amount: int, fee_rate: float) -> tuple[UTXO, ...] | None:
    """
    Select outputs covering amount plus the peg-in fee.

    Prefers the smallest single output that covers everything, which keeps
    large outputs free for a second vault. Otherwise accumulates largest
    first. Expects utxos sorted with sort_utxos.
    """
    single_fee = estimate_pegin_fee(1, fee_rate)
    covering = [u for u in utxos if u.value >= amount + single_fee]
    if covering:
        return (covering[-1],)

    selected: list[UTXO] = []
    total = 0
    for utxo in utxos:
        selected.append(utxo)
        total += utxo.value
        if total >= amount + estimate_pegin_fee(len(selected), fee_rate):
            return tuple(selected)
    return None


def halve(amount: int) -> tuple[int, int]:
    """Split amount in two; the first share takes the odd satoshi."""
    return amount - amount // 2, amount // 2


def plan_allocation(
    amount: int,
    utxos: Sequence[UTXO],
    fee_rate: float,
    partial_liquidation: bool,
    *,
    min_vault_amount: int = MIN_DEPOSIT,
    change_address: str = "",
    dust_threshold: int = DUST_THRESHOLD,
    min_confirmations: int = 1,
) -> AllocationPlan:
    """
    Plan how a deposit is split across vaults.

    Args:
        amount: Total deposit in sats
        utxos: Wallet outputs available for funding
        fee_rate: Fee rate in sat/vB
        partial_liquidation: Whether the user asked for two vaults
        min_vault_amount: Provider minimum for a single vault
        change_address: Destination of split shares and change (SPLIT only)
        dust_threshold: Change at or below this value goes to fees
        min_confirmations: Outputs with fewer confirmations are ignored

    Raises:
        ValidationError: On non-positive amount or fee rate
        InsufficientFundsError: If confirmed outputs do not cover the deposit
        NonPositiveOutputError: If fees consume a vault share
        SplitUnreachableError: If split shares fall below the provider minimum
    """
    if amount <= 0:
        raise ValidationError(f"Deposit amount must be positive, got {amount}")
    if fee_rate <= 0:
        raise ValidationError(f"Fee rate must be positive, got {fee_rate}")

    confirmed = sort_utxos([u for u in utxos if u.confirmations >= min_confirmations])

    if not partial_liquidation:
        return _plan_single(amount, confirmed, fee_rate)

    _, second_share = halve(amount)
    if second_share < min_vault_amount:
        reason = (
            f"{amount:,} sats cannot be halved into two vaults of at least "
            f"{min_vault_amount:,} sats"
        )
        logger.warning(f"Partial liquidation not possible: {reason}; using a single vault")
        return _plan_single(amount, confirmed, fee_rate, fallback_reason=reason)

    plan = _plan_multi_input(amount, confirmed, fee_rate)
    if plan is not None:
        return plan

    return _plan_split(
        amount,
        confirmed,
        fee_rate,
        min_vault_amount=min_vault_amount,
        change_address=change_address,
        dust_threshold=dust_threshold,
    )


def _plan_single(
    amount: int,
    utxos: list[UTXO],
    fee_rate: float,
    fallback_reason: str | None = None,
) -> AllocationPlan:
    selected = select_funding(utxos, amount, fee_rate)
    if selected is None:
        available = sum(u.value for u in utxos)
        required = amount + estimate_pegin_fee(max(len(utxos), 1), fee_rate)
        raise InsufficientFundsError(required, available)

    logger.info(f"Planned single vault of {amount:,} sats from {len(selected)} input(s)")
    allocation = VaultAllocation(
        vault_index=0,
        amount=amount,
        pegin_fee=estimate_pegin_fee(len(selected), fee_rate),
        utxos=selected,
    )
    return AllocationPlan(
        strategy=AllocationStrategy.SINGLE,
        allocations=(allocation,),
        fallback_reason=fallback_reason,
    )


def _plan_multi_input(amount: int, utxos: list[UTXO], fee_rate: float) -> AllocationPlan | None:
    if len(utxos) < 2:
        return None

    shares = halve(amount)
    remaining = list(utxos)
    allocations: list[VaultAllocation] = []

    for index, share in enumerate(shares):
        selected = select_funding(remaining, share, fee_rate)
        if selected is None:
            logger.debug(f"No disjoint output subset covers vault {index} ({share:,} sats)")
            return None
        remaining = [u for u in remaining if u not in selected]
        allocations.append(
            VaultAllocation(
                vault_index=index,
                amount=share,
                pegin_fee=estimate_pegin_fee(len(selected), fee_rate),
                utxos=selected,
            )
        )

    logger.info(
        f"Planned two vaults ({shares[0]:,} + {shares[1]:,} sats) from existing outputs"
    )
    return AllocationPlan(strategy=AllocationStrategy.MULTI_INPUT, allocations=tuple(allocations))


def _plan_split(
    amount: int,
    utxos: list[UTXO],
    fee_rate: float,
    *,
    min_vault_amount: int,
    change_address: str,
    dust_threshold: int,
) -> AllocationPlan:
    if not change_address:
        raise ValidationError("A change address is required to build a split transaction")
    try:
        script = address_to_scriptpubkey(change_address).hex()
    except ValueError as e:
        raise ValidationError(f"Invalid change address {change_address}: {e}") from e

    selected: list[UTXO] = []
    total = 0
    for utxo in utxos:
        if total >= amount:
            break
        selected.append(utxo)
        total += utxo.value

    if total < amount:
        raise InsufficientFundsError(amount, total)

    split_fee = estimate_split_fee(len(selected), fee_rate)
    net = amount - split_fee
    if net <= 0:
        raise NonPositiveOutputError(
            f"Split fee of {split_fee:,} sats exceeds the deposit of {amount:,} sats"
        )

    shares = halve(net)
    pegin_fee = estimate_pegin_fee(1, fee_rate)
    if shares[1] - pegin_fee <= 0:
        raise NonPositiveOutputError(
            f"Peg-in fee of {pegin_fee:,} sats leaves nothing of a {shares[1]:,} sat vault share"
        )
    if shares[1] < min_vault_amount:
        raise SplitUnreachableError(
            f"After a split fee of {split_fee:,} sats each vault share would be "
            f"{shares[1]:,} sats, below the provider minimum of {min_vault_amount:,} sats"
        )

    outputs = [
        SplitOutput(vout=0, address=change_address, value=shares[0], scriptpubkey=script),
        SplitOutput(vout=1, address=change_address, value=shares[1], scriptpubkey=script),
    ]
    change = total - amount
    if change > dust_threshold:
        outputs.append(
            SplitOutput(
                vout=2, address=change_address, value=change, is_change=True, scriptpubkey=script
            )
        )
    elif change > 0:
        logger.warning(f"Dropping {change} sats of dust change to fees")

    tx_hex, txid = build_unsigned_tx(
        [
            TxInput(txid=u.txid, vout=u.vout, value=u.value, scriptpubkey=u.scriptpubkey)
            for u in selected
        ],
        [TxOutput(address=o.address, value=o.value, scriptpubkey=o.scriptpubkey) for o in outputs],
    )
    split_tx = SplitTransaction(
        inputs=tuple(selected),
        outputs=tuple(outputs),
        tx_hex=tx_hex,
        txid=txid,
        fee=split_fee,
    )

    allocations = tuple(
        VaultAllocation(
            vault_index=index,
            amount=output.value,
            pegin_fee=pegin_fee,
            split_output=output,
            split_txid=txid,
        )
        for index, output in enumerate(split_tx.vault_outputs)
    )

    logger.info(
        f"Planned split transaction {txid[:16]}... into {shares[0]:,} + {shares[1]:,} sats "
        f"(fee {split_fee:,} sats)"
    )
    return AllocationPlan(
        strategy=AllocationStrategy.SPLIT,
        allocations=allocations,
        split_transaction=split_tx,
    )
