"""
vaultcore - Core library for vault deposit components

Provides shared models, errors, retry policy, Bitcoin helpers and the
vault provider RPC client.
"""

__version__ = "0.3.0"

from vaultcore.constants import (
    CONTRACT_CONFIRMATIONS,
    DUST_THRESHOLD,
    MAX_DEPOSIT,
    MAX_VAULTS_PER_DEPOSIT,
    MIN_DEPOSIT,
)
from vaultcore.errors import (
    DepositError,
    FatalError,
    TransientError,
    UserRejectedError,
    ValidationError,
)
from vaultcore.models import (
    ClaimerSignatures,
    ClaimerTransactions,
    ContractStatus,
    DaemonStatus,
    NetworkType,
    PendingPeginRecord,
    PendingPeginStatus,
)
from vaultcore.retry import RetryPolicy
from vaultcore.rpc import JsonRpcError, VaultProviderClient

__all__ = [
    "CONTRACT_CONFIRMATIONS",
    "ClaimerSignatures",
    "ClaimerTransactions",
    "ContractStatus",
    "DaemonStatus",
    "DepositError",
    "DUST_THRESHOLD",
    "FatalError",
    "JsonRpcError",
    "MAX_DEPOSIT",
    "MAX_VAULTS_PER_DEPOSIT",
    "MIN_DEPOSIT",
    "NetworkType",
    "PendingPeginRecord",
    "PendingPeginStatus",
    "RetryPolicy",
    "TransientError",
    "UserRejectedError",
    "ValidationError",
    "VaultProviderClient",
]
