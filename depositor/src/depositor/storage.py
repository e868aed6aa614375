"""
Pending-deposit store.

Keeps one JSON file per owner address under the data directory. Records are
added the moment a contract submission succeeds and updated in place as the
deposit progresses. Status only ever moves forward:

    pending -> payout_signed -> confirming

Records are never deleted automatically; filter_stale_records() decides which
ones the on-chain state has superseded.
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Iterable, Mapping
from pathlib import Path

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from vaultcore.constants import MAX_PENDING_AGE_SEC
from vaultcore.errors import StatusRegressionError, StoreError
from vaultcore.models import (
    ContractStatus,
    PendingPeginRecord,
    PendingPeginStatus,
    normalize_pegin_id,
)
from vaultwallet.backends.base import UTXO

STORE_FILE_PREFIX = "pending-pegins"


class PendingPeginStore:
    """File-backed store of pending peg-ins keyed by owner address."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def _path(self, owner: str) -> Path:
        if not owner:
            raise StoreError("Owner address is required")
        return self.data_dir / f"{STORE_FILE_PREFIX}-{owner.lower()}.json"

    def get_pending_pegins(self, owner: str) -> list[PendingPeginRecord]:
        """All records for owner, oldest first."""
        path = self._path(owner)
        if not path.exists():
            return []

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [PendingPeginRecord.model_validate(item) for item in raw]
        except (json.JSONDecodeError, PydanticValidationError, TypeError) as e:
            # Move the unreadable file aside so the owner is not stuck
            corrupt = path.with_suffix(".corrupt")
            logger.error(f"Corrupted pending store {path.name}: {e}; moved to {corrupt.name}")
            os.replace(path, corrupt)
            return []

    def get(self, owner: str, pegin_id: str) -> PendingPeginRecord | None:
        wanted = normalize_pegin_id(pegin_id)
        return next((r for r in self.get_pending_pegins(owner) if r.id == wanted), None)

    def add_pending_pegin(self, owner: str, record: PendingPeginRecord) -> PendingPeginRecord:
        """
        Add a record, replacing an existing record with the same id.

        Raises:
            StatusRegressionError: If the existing record is further along
        """
        records = self.get_pending_pegins(owner)
        existing = next((r for r in records if r.id == record.id), None)
        if existing is not None and existing.status.rank > record.status.rank:
            raise StatusRegressionError(
                f"Record {record.id} is already {existing.status.value}, "
                f"cannot reset to {record.status.value}"
            )

        records = [r for r in records if r.id != record.id]
        records.append(record)
        self._save(owner, records)
        logger.info(f"Stored pending peg-in {record.id} ({record.status.value})")
        return record

    def update_pending_pegin_status(
        self,
        owner: str,
        pegin_id: str,
        status: PendingPeginStatus,
        btc_tx_hash: str | None = None,
    ) -> PendingPeginRecord:
        """
        Move a record forward to status.

        Setting the current status again is a no-op apart from btc_tx_hash.

        Raises:
            StoreError: If the record does not exist
            StatusRegressionError: If status is behind the stored status
        """
        wanted = normalize_pegin_id(pegin_id)
        records = self.get_pending_pegins(owner)

        for i, record in enumerate(records):
            if record.id != wanted:
                continue
            if status.rank < record.status.rank:
                raise StatusRegressionError(
                    f"Record {wanted} is {record.status.value}, cannot move back to {status.value}"
                )
            update: dict[str, object] = {"status": status}
            if btc_tx_hash:
                update["btc_tx_hash"] = btc_tx_hash
            records[i] = record.model_copy(update=update)
            self._save(owner, records)
            if status != record.status:
                logger.info(f"Peg-in {wanted}: {record.status.value} -> {status.value}")
            return records[i]

        raise StoreError(f"No pending peg-in {wanted} for {owner}")

    def remove_pending_pegin(self, owner: str, pegin_id: str) -> None:
        wanted = normalize_pegin_id(pegin_id)
        records = [r for r in self.get_pending_pegins(owner) if r.id != wanted]
        self._save(owner, records)

    def replace_all(self, owner: str, records: list[PendingPeginRecord]) -> None:
        """Overwrite owner's records, e.g. after filter_stale_records()."""
        self._save(owner, records)

    def clear(self, owner: str) -> None:
        self._path(owner).unlink(missing_ok=True)

    def _save(self, owner: str, records: list[PendingPeginRecord]) -> None:
        path = self._path(owner)
        if not records:
            path.unlink(missing_ok=True)
            return

        self.data_dir.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([r.model_dump(mode="json") for r in records], indent=2)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, path)


def should_remove_record(contract_status: ContractStatus, local_status: PendingPeginStatus) -> bool:
    """Whether the on-chain status makes a local record redundant."""
    if contract_status >= ContractStatus.ACTIVE:
        return True
    # A PENDING record adds nothing once the contract has verified the vault
    return (
        local_status == PendingPeginStatus.PENDING and contract_status == ContractStatus.VERIFIED
    )


def filter_stale_records(
    records: Iterable[PendingPeginRecord],
    contract_statuses: Mapping[str, ContractStatus],
    now: float | None = None,
    max_age: float = MAX_PENDING_AGE_SEC,
) -> list[PendingPeginRecord]:
    """
    Drop records that are too old or superseded on chain.

    Args:
        records: Stored records
        contract_statuses: On-chain status by peg-in id (ids in any hex form)
        now: Current unix time
        max_age: Maximum record age in seconds
    """
    now = time.time() if now is None else now
    statuses = {normalize_pegin_id(k): v for k, v in contract_statuses.items()}

    kept: list[PendingPeginRecord] = []
    for record in records:
        if now - record.timestamp > max_age:
            logger.debug(f"Dropping stale record {record.id} (older than {max_age:.0f}s)")
            continue
        status = statuses.get(record.id)
        if status is not None and should_remove_record(status, record.status):
            logger.debug(f"Dropping record {record.id}: contract status {status.name}")
            continue
        kept.append(record)
    return kept


def reserved_outpoints(records: Iterable[PendingPeginRecord]) -> set[str]:
    """Outpoints committed to stored deposits, as lowercase txid:vout."""
    return {utxo.outpoint.lower() for record in records for utxo in record.selected_utxos}


def filter_reserved_utxos(
    utxos: Iterable[UTXO], records: Iterable[PendingPeginRecord]
) -> list[UTXO]:
    """Remove outputs already committed to a pending deposit."""
    reserved = reserved_outpoints(records)
    candidates = list(utxos)
    available = [u for u in candidates if u.outpoint.lower() not in reserved]
    skipped = len(candidates) - len(available)
    if skipped:
        logger.info(f"Excluding {skipped} output(s) reserved by pending deposits")
    return available
