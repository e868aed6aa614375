"""
Bitcoin Core backend for output discovery and peg-in broadcast.
Uses non-wallet RPC methods only (scantxoutset, gettxout, sendrawtransaction).
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger
from vaultcore.rpc import JsonRpcError

from vaultwallet.backends.base import UTXO, BlockchainBackend, Transaction

RPC_TIMEOUT = 30.0

# scantxoutset over the whole UTXO set takes minutes on mainnet
SCAN_RPC_TIMEOUT = 300.0
SCAN_MAX_RETRIES = 10
SCAN_RETRY_DELAY = 5.0

# Bitcoin Core error code for "Scan already in progress"
RPC_INVALID_PARAMETER = -8

FALLBACK_FEE_RATE = 10.0  # sat/vB


class BitcoinCoreBackend(BlockchainBackend):
    """Blockchain backend using Bitcoin Core JSON-RPC."""

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        scan_timeout: float = SCAN_RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=RPC_TIMEOUT, auth=(rpc_user, rpc_password)
        )
        self.scan_timeout = scan_timeout
        self._request_id = 0

    async def _rpc_call(
        self, method: str, params: list | None = None, timeout: float | None = None
    ) -> Any:
        """
        Call a node RPC method and return its result.

        Raises:
            JsonRpcError: On RPC errors
            httpx.HTTPError: If the node is unreachable or times out
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(
                self.rpc_url, json=payload, timeout=timeout or httpx.USE_CLIENT_DEFAULT
            )
            # Bitcoin Core answers RPC errors with HTTP 500 and a JSON body
            data = response.json() if response.content else {}
            if data.get("error"):
                err = data["error"]
                raise JsonRpcError(
                    err.get("code", 0), err.get("message", str(err))
                )
            response.raise_for_status()
            return data.get("result")

        except httpx.HTTPError as e:
            logger.error(f"Node RPC {method} failed: {e}")
            raise

    async def _scan(self, descriptors: list[str]) -> dict[str, Any] | None:
        """Run scantxoutset, waiting while another scan holds the slot."""
        for attempt in range(SCAN_MAX_RETRIES):
            try:
                return await self._rpc_call(
                    "scantxoutset", ["start", descriptors], timeout=self.scan_timeout
                )
            except JsonRpcError as e:
                if e.code != RPC_INVALID_PARAMETER or "in progress" not in e.message:
                    raise
                logger.debug(
                    f"Another scan in progress, retrying in {SCAN_RETRY_DELAY}s "
                    f"(attempt {attempt + 1}/{SCAN_MAX_RETRIES})"
                )
                await asyncio.sleep(SCAN_RETRY_DELAY)

        logger.warning(f"scantxoutset slot not available after {SCAN_MAX_RETRIES} attempts")
        return None

    async def get_block_height(self) -> int:
        info = await self._rpc_call("getblockchaininfo")
        return int(info.get("blocks", 0))

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        if not addresses:
            return []

        tip = await self.get_block_height()
        result = await self._scan([f"addr({addr})" for addr in addresses])
        if not result:
            return []

        utxos: list[UTXO] = []
        for entry in result.get("unspents", []):
            height = entry.get("height", 0)
            confirmations = tip - height + 1 if height > 0 else 0

            desc = entry.get("desc", "").split("#")[0]
            address = desc[5:-1] if desc.startswith("addr(") and desc.endswith(")") else ""

            utxos.append(
                UTXO(
                    txid=entry["txid"],
                    vout=entry["vout"],
                    value=round(entry["amount"] * 100_000_000),
                    address=address,
                    confirmations=confirmations,
                    scriptpubkey=entry.get("scriptPubKey", ""),
                    height=height or None,
                )
            )

        logger.debug(f"Scanned {len(addresses)} addresses, found {len(utxos)} UTXOs")
        return utxos

    async def broadcast_transaction(self, tx_hex: str) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [tx_hex])
        except JsonRpcError as e:
            logger.error(f"Node rejected transaction: {e}")
            raise ValueError(f"Broadcast failed: {e.message}") from e
        logger.info(f"Node accepted transaction {txid}")
        return txid

    async def get_transaction(self, txid: str) -> Transaction | None:
        try:
            raw = await self._rpc_call("getrawtransaction", [txid, True])
        except JsonRpcError as e:
            logger.debug(f"Transaction {txid} not found: {e.message}")
            return None

        if not raw:
            return None

        height = None
        if raw.get("blockhash"):
            header = await self._rpc_call("getblockheader", [raw["blockhash"]])
            height = header.get("height")

        return Transaction(
            txid=txid,
            raw=raw.get("hex", ""),
            confirmations=raw.get("confirmations", 0),
            block_height=height,
        )

    async def estimate_fee(self, target_blocks: int) -> float:
        estimate = await self._rpc_call("estimatesmartfee", [target_blocks])
        if not estimate or "feerate" not in estimate:
            logger.warning(f"Node has no fee estimate, assuming {FALLBACK_FEE_RATE} sat/vB")
            return FALLBACK_FEE_RATE
        # BTC/kvB -> sat/vB
        sat_per_vbyte = estimate["feerate"] * 100_000_000 / 1000
        logger.debug(f"Estimated fee for {target_blocks} blocks: {sat_per_vbyte:.2f} sat/vB")
        return sat_per_vbyte

    async def get_utxo(self, txid: str, vout: int) -> UTXO | None:
        txout = await self._rpc_call("gettxout", [txid, vout, True])
        if txout is None:
            logger.debug(f"Output {txid}:{vout} is spent or unknown")
            return None

        script = txout.get("scriptPubKey", {})
        return UTXO(
            txid=txid,
            vout=vout,
            value=round(txout.get("value", 0) * 100_000_000),
            address=script.get("address", ""),
            confirmations=txout.get("confirmations", 0),
            scriptpubkey=script.get("hex", ""),
        )

    async def close(self) -> None:
        await self.client.aclose()
