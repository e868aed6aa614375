"""
JSON-RPC client for vault provider daemons.

Transport failures (timeouts, connection errors, 408/429/5xx responses) are
retried with exponential backoff. JSON-RPC error objects are business errors
and are raised immediately as JsonRpcError; callers decide whether a given
error means "not ready yet" using the classifiers at the bottom of this module.
"""

from __future__ import annotations

import asyncio
from enum import IntEnum
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from vaultcore.errors import (
    MalformedResponseError,
    ProviderNotReadyError,
    TerminalProviderError,
    TransientError,
)
from vaultcore.models import (
    PRE_DEPOSITOR_SIGNATURES_STATES,
    ClaimerSignatures,
    PeginStatusResponse,
    PresignTransactionsResponse,
    strip_hex_prefix,
)
from vaultcore.retry import SleepFn

DEFAULT_RPC_TIMEOUT = 60.0
DEFAULT_RPC_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Messages meaning the provider is still preparing the peg-in
NOT_READY_PATTERNS = (
    "PegIn not found",
    "No transaction graphs found",
    "Vault or pegin transaction not found",
)

# Messages that will never resolve by waiting
TERMINAL_PATTERNS = ("Unauthorized depositor",)


class RpcErrorCode(IntEnum):
    DATABASE_ERROR = -32005
    PRESIGN_ERROR = -32006
    JSON_SERIALIZATION_ERROR = -32007
    TX_GRAPH_ERROR = -32008
    INVALID_GRAPH = -32009
    VALIDATION_ERROR = -32010
    NOT_FOUND = -32011
    INTERNAL_ERROR = -32603


class JsonRpcError(ValueError):
    """Error object returned by a JSON-RPC server."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


class VaultProviderClient:
    """Async JSON-RPC 2.0 client for a single vault provider."""

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        retries: int = DEFAULT_RPC_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.url = url.rstrip("/")
        self.retries = retries
        self.retry_delay = retry_delay
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep
        self._request_id = 0

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> VaultProviderClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _rpc_call(self, method: str, params: Any) -> Any:
        """
        Make a JSON-RPC call with retry on transport errors.

        Raises:
            JsonRpcError: On JSON-RPC error responses (never retried)
            httpx.HTTPError: When transport retries are exhausted
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        for attempt in range(self.retries + 1):
            try:
                response = await self.client.post(self.url, json=payload)
                if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.retries:
                    delay = self.retry_delay * 2**attempt
                    logger.warning(
                        f"HTTP {response.status_code} for {method}, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.retries})"
                    )
                    await self._sleep(delay)
                    continue
                response.raise_for_status()
                data = response.json()
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if attempt >= self.retries:
                    logger.error(f"RPC call failed: {method} - {e}")
                    raise
                delay = self.retry_delay * 2**attempt
                logger.warning(f"Network error for {method}: {e}, retrying in {delay:.1f}s")
                await self._sleep(delay)
                continue

            if not isinstance(data, dict):
                raise MalformedResponseError(f"Non-object JSON-RPC response for {method}")

            if data.get("error"):
                error_info = data["error"]
                if isinstance(error_info, dict):
                    raise JsonRpcError(
                        error_info.get("code", 0),
                        error_info.get("message", str(error_info)),
                        error_info.get("data"),
                    )
                raise JsonRpcError(0, str(error_info))

            logger.debug(f"RPC {method} ok")
            return data.get("result")

        raise AssertionError("unreachable")

    async def request_depositor_presign_transactions(
        self, pegin_txid: str, depositor_pk: str
    ) -> PresignTransactionsResponse:
        """Fetch the claimer transactions the depositor must pre-sign."""
        result = await self._rpc_call(
            "vaultProvider_requestDepositorPresignTransactions",
            {"pegin_txid": strip_hex_prefix(pegin_txid), "depositor_pk": depositor_pk},
        )
        try:
            return PresignTransactionsResponse.model_validate(result or {})
        except PydanticValidationError as e:
            raise MalformedResponseError(f"Malformed presign transactions response: {e}") from e

    async def submit_payout_signatures(
        self,
        pegin_txid: str,
        depositor_pk: str,
        signatures: dict[str, ClaimerSignatures],
    ) -> None:
        """Submit payout signatures for every claimer in one call."""
        await self._rpc_call(
            "vaultProvider_submitPayoutSignatures",
            {
                "pegin_txid": strip_hex_prefix(pegin_txid),
                "depositor_pk": depositor_pk,
                "signatures": {k: v.model_dump() for k, v in signatures.items()},
            },
        )

    async def submit_depositor_lamport_key(
        self,
        pegin_txid: str,
        depositor_pk: str,
        lamport_public_key: dict[str, list[str]],
    ) -> None:
        """Submit the depositor's Lamport public key."""
        await self._rpc_call(
            "vaultProvider_submitDepositorLamportKey",
            {
                "pegin_txid": strip_hex_prefix(pegin_txid),
                "depositor_pk": depositor_pk,
                "lamport_public_key": lamport_public_key,
            },
        )

    async def get_pegin_status(self, pegin_txid: str) -> PeginStatusResponse:
        """Query the provider daemon's view of a peg-in."""
        result = await self._rpc_call(
            "vaultProvider_getPeginStatus", {"pegin_txid": strip_hex_prefix(pegin_txid)}
        )
        try:
            return PeginStatusResponse.model_validate(result)
        except PydanticValidationError as e:
            raise MalformedResponseError(f"Malformed pegin status response: {e}") from e


def is_pre_depositor_signatures_error(error: BaseException) -> bool:
    """Provider reports a state that precedes depositor signing."""
    msg = str(error)
    return "Invalid state" in msg and any(s.value in msg for s in PRE_DEPOSITOR_SIGNATURES_STATES)


def is_not_ready_error(error: BaseException) -> bool:
    """Provider is still processing; polling should continue."""
    if isinstance(error, ProviderNotReadyError):
        return True
    if not isinstance(error, JsonRpcError):
        return False
    if is_pre_depositor_signatures_error(error):
        return True
    return any(pattern in error.message for pattern in NOT_READY_PATTERNS)


def is_terminal_error(error: BaseException) -> bool:
    """Error will never resolve; polling should stop immediately."""
    if isinstance(error, TerminalProviderError):
        return True
    return any(pattern in str(error) for pattern in TERMINAL_PATTERNS)


def is_transient_error(error: BaseException) -> bool:
    """Network hiccup or not-ready condition worth another attempt."""
    return isinstance(error, (TransientError, httpx.TransportError)) or is_not_ready_error(error)
