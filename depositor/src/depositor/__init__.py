"""
depositor - Deposit orchestration for bitcoin vaults.

Plans allocations, drives the cross-chain deposit flow, coordinates payout
signing and keeps the pending-deposit store.
"""

__version__ = "0.3.0"

from depositor.config import DepositorConfig, Settings
from depositor.flow import DepositFlow, DepositFlowState, DepositStep, rehydrate_state
from depositor.models import AllocationPlan, AllocationStrategy, DepositFlowResult, DepositRequest
from depositor.payout import PayoutSignatureCoordinator, PayoutSigningProgress
from depositor.planner import plan_allocation
from depositor.progress import MultiVaultProgress, SingleVaultProgress, progress_view
from depositor.storage import PendingPeginStore

__all__ = [
    "AllocationPlan",
    "AllocationStrategy",
    "DepositFlow",
    "DepositFlowResult",
    "DepositFlowState",
    "DepositRequest",
    "DepositStep",
    "DepositorConfig",
    "MultiVaultProgress",
    "PayoutSignatureCoordinator",
    "PayoutSigningProgress",
    "PendingPeginStore",
    "Settings",
    "SingleVaultProgress",
    "plan_allocation",
    "progress_view",
    "rehydrate_state",
]
