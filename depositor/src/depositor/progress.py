"""
Read-only progress views derived from DepositFlowState.

A single-vault deposit and a multi-vault batch render differently, so the
view is one of two variants carrying only the fields that variant needs.
"""

from __future__ import annotations

from dataclasses import dataclass

from depositor.flow import VAULT_STEPS, DepositFlowState, DepositStep
from depositor.models import AllocationStrategy
from depositor.payout import PayoutSigningProgress


@dataclass(frozen=True)
class SingleVaultProgress:
    step: DepositStep
    step_number: int  # 1-based position in VAULT_STEPS
    total_steps: int
    processing: bool
    is_waiting: bool
    payout_progress: PayoutSigningProgress | None = None
    error: str | None = None


@dataclass(frozen=True)
class MultiVaultProgress:
    step: DepositStep
    current_vault: int  # 1-based
    total_vaults: int
    vault_steps: tuple[DepositStep, ...]
    vault_errors: tuple[str | None, ...]
    split_broadcast: bool
    processing: bool
    is_waiting: bool
    payout_progress: PayoutSigningProgress | None = None
    error: str | None = None


VaultProgress = SingleVaultProgress | MultiVaultProgress


def progress_view(state: DepositFlowState) -> VaultProgress:
    """Build the view matching the number of vaults in state."""
    if state.total_vaults <= 1:
        return SingleVaultProgress(
            step=state.step,
            step_number=VAULT_STEPS.index(state.step) + 1 if state.step in VAULT_STEPS else 0,
            total_steps=len(VAULT_STEPS),
            processing=state.processing,
            is_waiting=state.is_waiting,
            payout_progress=state.payout_progress,
            error=state.error,
        )

    vault_steps: list[DepositStep] = []
    vault_errors: list[str | None] = []
    for index in range(state.total_vaults):
        result = next((v for v in state.vault_results if v.vault_index == index), None)
        vault_errors.append(result.error if result else None)
        if result is not None and result.success:
            vault_steps.append(DepositStep.COMPLETED)
        elif index == state.current_vault and state.step != DepositStep.SIGN_SPLIT_TX:
            vault_steps.append(state.step)
        else:
            vault_steps.append(DepositStep.SIGN_PROOF_OF_POSSESSION)

    return MultiVaultProgress(
        step=state.step,
        current_vault=state.current_vault + 1,
        total_vaults=state.total_vaults,
        vault_steps=tuple(vault_steps),
        vault_errors=tuple(vault_errors),
        split_broadcast=(
            state.strategy == AllocationStrategy.SPLIT
            and state.step != DepositStep.SIGN_SPLIT_TX
        ),
        processing=state.processing,
        is_waiting=state.is_waiting,
        payout_progress=state.payout_progress,
        error=state.error,
    )


def describe_progress(view: VaultProgress) -> str:
    """One-line text rendering of a progress view."""
    if isinstance(view, SingleVaultProgress):
        text = f"Step {view.step_number}/{view.total_steps}: {view.step.value}"
    elif isinstance(view, MultiVaultProgress):
        text = f"Vault {view.current_vault}/{view.total_vaults}: {view.step.value}"
    else:
        raise TypeError(f"Unknown progress view {type(view).__name__}")

    if view.payout_progress is not None and view.step == DepositStep.SIGN_PAYOUTS:
        p = view.payout_progress
        text += f" ({p.completed}/{p.total} signatures)"
    if view.is_waiting:
        text += " - waiting"
    if view.error:
        text += f" - error: {view.error}"
    return text
