"""
Mempool.space-style REST backend.

Endpoints used:
- GET  /address/{address}/utxo
- GET  /blocks/tip/height
- GET  /tx/{txid}/hex, /tx/{txid}/status
- GET  /tx/{txid}/outspend/{vout}
- GET  /v1/fees/recommended
- POST /tx (raw hex body, returns txid)
"""

from __future__ import annotations

import httpx
from loguru import logger

from vaultwallet.backends.base import UTXO, BlockchainBackend, Transaction

DEFAULT_TIMEOUT = 30.0

# fastestFee / halfHourFee / hourFee / economyFee
FEE_TARGETS = ((1, "fastestFee"), (3, "halfHourFee"), (6, "hourFee"))


class MempoolBackend(BlockchainBackend):
    """Blockchain backend using a mempool.space compatible REST API."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    async def _get(self, path: str) -> httpx.Response:
        response = await self.client.get(f"{self.base_url}{path}")
        response.raise_for_status()
        return response

    async def get_block_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        return int(response.text.strip())

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        if not addresses:
            return []

        tip_height = await self.get_block_height()
        utxos: list[UTXO] = []
        for address in addresses:
            response = await self._get(f"/address/{address}/utxo")
            for entry in response.json():
                status = entry.get("status", {})
                height = status.get("block_height") if status.get("confirmed") else None
                confirmations = tip_height - height + 1 if height else 0
                utxos.append(
                    UTXO(
                        txid=entry["txid"],
                        vout=entry["vout"],
                        value=int(entry["value"]),
                        address=address,
                        confirmations=confirmations,
                        scriptpubkey=entry.get("scriptpubkey", ""),
                        height=height,
                    )
                )
        logger.debug(f"Fetched {len(utxos)} UTXOs for {len(addresses)} addresses")
        return utxos

    async def broadcast_transaction(self, tx_hex: str) -> str:
        response = await self.client.post(
            f"{self.base_url}/tx", content=tx_hex, headers={"Content-Type": "text/plain"}
        )
        if response.status_code != 200:
            logger.error(f"Failed to broadcast transaction: {response.text}")
            raise ValueError(f"Broadcast failed: {response.text}")
        txid = response.text.strip()
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def get_transaction(self, txid: str) -> Transaction | None:
        try:
            raw = (await self._get(f"/tx/{txid}/hex")).text.strip()
            status = (await self._get(f"/tx/{txid}/status")).json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

        height = status.get("block_height") if status.get("confirmed") else None
        confirmations = 0
        if height:
            confirmations = await self.get_block_height() - height + 1
        return Transaction(txid=txid, raw=raw, confirmations=confirmations, block_height=height)

    async def estimate_fee(self, target_blocks: int) -> float:
        fees = (await self._get("/v1/fees/recommended")).json()
        for max_target, key in FEE_TARGETS:
            if target_blocks <= max_target:
                return float(fees[key])
        return float(fees.get("economyFee", fees["hourFee"]))

    async def get_utxo(self, txid: str, vout: int) -> UTXO | None:
        outspend = (await self._get(f"/tx/{txid}/outspend/{vout}")).json()
        if outspend.get("spent"):
            return None

        try:
            tx = (await self._get(f"/tx/{txid}")).json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

        outputs = tx.get("vout", [])
        if vout >= len(outputs):
            return None
        output = outputs[vout]
        status = tx.get("status", {})
        height = status.get("block_height") if status.get("confirmed") else None
        confirmations = await self.get_block_height() - height + 1 if height else 0
        return UTXO(
            txid=txid,
            vout=vout,
            value=int(output["value"]),
            address=output.get("scriptpubkey_address", ""),
            confirmations=confirmations,
            scriptpubkey=output.get("scriptpubkey", ""),
            height=height,
        )

    async def close(self) -> None:
        await self.client.aclose()
