"""
Command-line interface for the vault depositor.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Annotated

import httpx
import typer
from loguru import logger
from vaultcore.errors import DepositError
from vaultcore.models import ContractStatus, PendingPeginRecord
from vaultcore.rpc import JsonRpcError, VaultProviderClient
from vaultwallet.backends.base import UTXO, BlockchainBackend
from vaultwallet.backends.bitcoin_core import BitcoinCoreBackend
from vaultwallet.backends.mempool import MempoolBackend

from depositor.config import DepositorConfig, Settings, get_settings
from depositor.models import AllocationPlan
from depositor.planner import plan_allocation
from depositor.steps import fetch_pegin_statuses
from depositor.storage import PendingPeginStore, filter_reserved_utxos, filter_stale_records

app = typer.Typer(
    name="vault-depositor",
    help="Vault depositor - plan and track bitcoin vault deposits",
    add_completion=False,
)

# Confirmation target used when no fee rate is given
FEE_TARGET_BLOCKS = 3


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def create_backend(settings: Settings) -> BlockchainBackend:
    """Mempool REST backend when an API URL is set, otherwise Bitcoin Core RPC."""
    if settings.mempool_api_url:
        return MempoolBackend(settings.mempool_api_url)
    return BitcoinCoreBackend(
        rpc_url=settings.bitcoin_rpc_url,
        rpc_user=settings.bitcoin_rpc_user,
        rpc_password=settings.bitcoin_rpc_password,
    )


def create_provider_client(url: str, timeout: float) -> VaultProviderClient:
    return VaultProviderClient(url, timeout=timeout)


def load_utxos(path: Path) -> list[UTXO]:
    """
    Load wallet outputs from a JSON list.

    Each entry needs txid, vout and value; address, confirmations and
    scriptpubkey are optional.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of outputs")
    return [
        UTXO(
            txid=item["txid"],
            vout=int(item["vout"]),
            value=int(item["value"]),
            address=item.get("address", ""),
            confirmations=int(item.get("confirmations", 1)),
            scriptpubkey=item.get("scriptpubkey", ""),
        )
        for item in raw
    ]


def load_contract_statuses(path: Path) -> dict[str, ContractStatus]:
    """Load a {pegin_id: status} JSON map; statuses are integers or names."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    statuses: dict[str, ContractStatus] = {}
    for pegin_id, value in raw.items():
        if isinstance(value, str) and not value.isdigit():
            statuses[pegin_id] = ContractStatus[value.upper()]
        else:
            statuses[pegin_id] = ContractStatus(int(value))
    return statuses


def format_plan(plan: AllocationPlan) -> str:
    lines = [f"Strategy: {plan.strategy.value}"]
    if plan.fallback_reason:
        lines.append(f"Note: {plan.fallback_reason}")
    if plan.split_transaction is not None:
        split = plan.split_transaction
        lines.append(f"Split transaction: {split.txid} (fee {split.fee:,} sats)")
        change = split.change_output
        if change is not None:
            lines.append(f"  Change: {change.value:,} sats -> {change.address}")
    for allocation in plan.allocations:
        lines.append(
            f"Vault {allocation.vault_index + 1}: {allocation.amount:,} sats "
            f"(peg-in fee {allocation.pegin_fee:,} sats)"
        )
        if allocation.split_output is not None:
            lines.append(f"  Funded by split output {allocation.split_output.vout}")
        for utxo in allocation.utxos:
            lines.append(f"  Input {utxo.outpoint} ({utxo.value:,} sats)")
    return "\n".join(lines)


async def _load_funding(
    settings: Settings,
    config: DepositorConfig,
    utxos_file: Path | None,
    addresses: list[str],
    fee_rate: float | None,
) -> tuple[list[UTXO], float]:
    """Read outputs from a file or the backend and estimate a fee rate if none was given."""
    utxos = load_utxos(utxos_file) if utxos_file else []
    if utxos_file and fee_rate is not None:
        return utxos, fee_rate

    backend = create_backend(settings)
    try:
        if not utxos_file:
            utxos = await backend.get_confirmed_utxos(addresses, config.min_utxo_confirmations)
            logger.info(f"Found {len(utxos)} confirmed output(s) for {len(addresses)} address(es)")
        if fee_rate is None:
            fee_rate = await backend.estimate_fee(FEE_TARGET_BLOCKS)
            logger.info(f"Using estimated fee rate {fee_rate:.2f} sat/vB")
    finally:
        await backend.close()
    return utxos, fee_rate


@app.command()
def plan(
    amount: Annotated[int, typer.Option("--amount", "-a", help="Deposit amount in sats")],
    utxos_file: Annotated[
        Path | None, typer.Option("--utxos", "-u", help="JSON file listing wallet outputs")
    ] = None,
    addresses: Annotated[
        list[str] | None,
        typer.Option("--address", help="Fetch outputs of this address from the backend"),
    ] = None,
    fee_rate: Annotated[
        float | None,
        typer.Option("--fee-rate", help="Fee rate in sat/vB (estimated when omitted)"),
    ] = None,
    partial_liquidation: Annotated[
        bool,
        typer.Option("--partial-liquidation/--no-partial-liquidation", help="Use two vaults"),
    ] = False,
    change_address: Annotated[
        str, typer.Option("--change-address", help="Address for split outputs and change")
    ] = "",
    owner: Annotated[
        str | None,
        typer.Option("--owner", help="Skip outputs reserved by this owner's pending deposits"),
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Plan how a deposit is split across vaults."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    config = settings.to_config()

    if utxos_file is None and not addresses:
        logger.error("Outputs required. Use --utxos or --address")
        raise typer.Exit(1)

    try:
        utxos, rate = asyncio.run(
            _load_funding(settings, config, utxos_file, addresses or [], fee_rate)
        )
        if owner:
            store = PendingPeginStore(config.data_dir)
            utxos = filter_reserved_utxos(utxos, store.get_pending_pegins(owner))
        result = plan_allocation(
            amount,
            utxos,
            rate,
            partial_liquidation,
            min_vault_amount=config.min_vault_amount,
            change_address=change_address,
            dust_threshold=config.dust_threshold,
            min_confirmations=config.min_utxo_confirmations,
        )
    except DepositError as e:
        logger.error(e.display_message())
        raise typer.Exit(1) from e
    except (httpx.HTTPError, JsonRpcError) as e:
        logger.error(f"Backend request failed: {e}")
        raise typer.Exit(1) from e
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Cannot read outputs: {e}")
        raise typer.Exit(1) from e

    typer.echo(format_plan(result))


@app.command()
def pending(
    owner: Annotated[str, typer.Argument(help="Contract-chain address of the depositor")],
    data_dir: Annotated[
        Path | None, typer.Option("--data-dir", "-d", help="Store directory")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """List pending deposits for an owner."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    store = PendingPeginStore(data_dir or settings.to_config().data_dir)
    records = store.get_pending_pegins(owner)

    if not records:
        typer.echo("No pending deposits")
        return

    for record in records:
        batch = ""
        if record.batch_id:
            position = (record.batch_index or 0) + 1
            batch = f" batch {record.batch_id[:8]} [{position}/{record.batch_total}]"
        typer.echo(f"{record.id} {record.status.value:<14} {record.amount:>14,} sats{batch}")


async def _fetch_status(
    settings: Settings, config: DepositorConfig, records: list[PendingPeginRecord]
) -> tuple[dict[str, str], dict[str, int | None]]:
    """Provider status per record and Bitcoin confirmations per broadcast record."""
    responses = await fetch_pegin_statuses(
        records, lambda url: create_provider_client(url, config.rpc_timeout_sec)
    )
    provider_status = {
        record_id: response.status if response else "unreachable"
        for record_id, response in responses.items()
    }

    broadcast = [r for r in records if r.btc_tx_hash]
    if not broadcast:
        return provider_status, {}

    backend = create_backend(settings)
    try:
        txs = await asyncio.gather(*(backend.get_transaction(r.btc_tx_hash) for r in broadcast))
    finally:
        await backend.close()
    confirmations = {
        record.id: tx.confirmations if tx else None for record, tx in zip(broadcast, txs)
    }
    return provider_status, confirmations


@app.command()
def status(
    owner: Annotated[str, typer.Argument(help="Contract-chain address of the depositor")],
    data_dir: Annotated[
        Path | None, typer.Option("--data-dir", "-d", help="Store directory")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Ask providers and the Bitcoin backend how pending deposits are progressing."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    config = settings.to_config()
    records = PendingPeginStore(data_dir or config.data_dir).get_pending_pegins(owner)

    if not records:
        typer.echo("No pending deposits")
        return

    try:
        provider_status, confirmations = asyncio.run(_fetch_status(settings, config, records))
    except (httpx.HTTPError, JsonRpcError) as e:
        logger.error(f"Backend request failed: {e}")
        raise typer.Exit(1) from e

    for record in records:
        if not record.btc_tx_hash:
            bitcoin = "not broadcast"
        elif confirmations[record.id] is None:
            bitcoin = "not found"
        else:
            bitcoin = f"{confirmations[record.id]} confirmation(s)"
        typer.echo(
            f"{record.id} {record.status.value:<14} "
            f"provider: {provider_status.get(record.id, '-')}  bitcoin: {bitcoin}"
        )


@app.command()
def prune(
    owner: Annotated[str, typer.Argument(help="Contract-chain address of the depositor")],
    statuses_file: Annotated[
        Path | None,
        typer.Option("--statuses", "-s", help="JSON map of peg-in id to contract status"),
    ] = None,
    data_dir: Annotated[
        Path | None, typer.Option("--data-dir", "-d", help="Store directory")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Drop pending deposits that are stale or superseded on chain."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    config = settings.to_config()
    store = PendingPeginStore(data_dir or config.data_dir)

    try:
        statuses = load_contract_statuses(statuses_file) if statuses_file else {}
    except (OSError, ValueError, KeyError, AttributeError) as e:
        logger.error(f"Cannot read contract statuses: {e}")
        raise typer.Exit(1) from e

    records = store.get_pending_pegins(owner)
    kept = filter_stale_records(records, statuses, max_age=config.max_pending_age_sec)
    store.replace_all(owner, kept)
    typer.echo(f"Removed {len(records) - len(kept)} of {len(records)} pending deposit(s)")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
