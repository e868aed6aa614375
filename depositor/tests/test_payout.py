"""
Tests for payout signature coordination.
"""

from __future__ import annotations

import asyncio

import pytest
from vaultcore.errors import MalformedResponseError, ProviderNotReadyError, UserRejectedError
from vaultcore.models import ClaimerSignatures, SigningStep, VaultSigningKeys
from vaultcore.rpc import JsonRpcError, RpcErrorCode

from depositor.payout import (
    PayoutSignatureCoordinator,
    PayoutSigningProgress,
    build_signing_context,
    prepare_transactions,
)

PEGIN_TX_HEX = "02000000" + "ee" * 32 + "00000000"
PEGIN_TXID = "0x" + "ab" * 32


def _sigs() -> ClaimerSignatures:
    return ClaimerSignatures(payout_optimistic_signature="01" * 64, payout_signature="02" * 64)


@pytest.fixture
def signing_keys(points) -> VaultSigningKeys:
    return VaultSigningKeys(
        vault_provider_btc_pubkey="02" + points[3],
        vault_keeper_btc_pubkeys=["03" + points[4]],
        universal_challenger_btc_pubkeys=[points[6], points[5]],
    )


@pytest.fixture
def context(signing_keys, points):
    return build_signing_context(PEGIN_TX_HEX, signing_keys, "02" + points[0], "regtest")


@pytest.fixture
def coordinator(wallet, builder) -> PayoutSignatureCoordinator:
    return PayoutSignatureCoordinator(wallet, builder)


class TestPrepareTransactions:
    """Tests for prepare_transactions."""

    def test_keeps_order_and_normalizes_keys(self, make_bundle, points) -> None:
        """Test provider order is kept and claimer keys become x-only."""
        prepared = prepare_transactions([make_bundle(points[2]), make_bundle(points[1])])
        assert [p.claimer_pubkey_xonly for p in prepared] == [points[2], points[1]]
        assert prepared[0].payout_tx_hex == "b1" + points[2][:8]
        assert prepared[0].payout_optimistic_tx_hex == "d1" + points[2][:8]
        assert prepared[0].source is not None

    def test_not_ready_rejected(self, make_bundle, points) -> None:
        """Test bundles missing payout data are rejected."""
        bundle = make_bundle(points[1])
        payout = bundle.payout_tx.model_copy(update={"tx_hex": ""})
        incomplete = bundle.model_copy(update={"payout_tx": payout})
        with pytest.raises(MalformedResponseError):
            prepare_transactions([incomplete])

    def test_empty_rejected(self) -> None:
        """Test an empty claimer list is rejected."""
        with pytest.raises(MalformedResponseError):
            prepare_transactions([])

    def test_duplicate_claimer(self, make_bundle, points) -> None:
        """Test the same claimer in two key encodings is a duplicate."""
        first = make_bundle(points[1])
        second = first.model_copy(update={"claimer_pubkey": points[1]})
        with pytest.raises(MalformedResponseError, match="Duplicate"):
            prepare_transactions([first, second])

    def test_invalid_claimer_key(self, make_bundle, points) -> None:
        """Test an off-curve claimer key is malformed."""
        bundle = make_bundle(points[1]).model_copy(update={"claimer_pubkey": "ff" * 32})
        with pytest.raises(MalformedResponseError, match="claimer"):
            prepare_transactions([bundle])


class TestSigningContext:
    """Tests for build_signing_context."""

    def test_keys_xonly_and_sorted(self, context, points) -> None:
        """Test every key is x-only; keepers and challengers are sorted."""
        assert context.vault_provider_btc_pubkey == points[3]
        assert context.depositor_btc_pubkey == points[0]
        assert context.vault_keeper_btc_pubkeys == (points[4],)
        assert context.universal_challenger_btc_pubkeys == tuple(sorted([points[5], points[6]]))
        assert context.network == "regtest"

    def test_invalid_key(self, signing_keys, points) -> None:
        """Test a bad key surfaces as a malformed response."""
        keys = signing_keys.model_copy(update={"vault_keeper_btc_pubkeys": ["zz"]})
        with pytest.raises(MalformedResponseError):
            build_signing_context(PEGIN_TX_HEX, keys, points[0], "regtest")


class TestPayoutSignatureCoordinator:
    """Tests for PayoutSignatureCoordinator."""

    @pytest.mark.asyncio
    async def test_sign_all(self, coordinator, context, wallet, make_bundle, points) -> None:
        """Test each claimer gets payout_optimistic then payout, in claimer order."""
        prepared = prepare_transactions([make_bundle(points[1]), make_bundle(points[2])])

        signatures = await coordinator.sign_all(context, prepared)

        assert list(signatures) == [points[1], points[2]]
        assert len(wallet.prompts) == 4
        assert wallet.prompts[0].endswith(f"{points[1]}:{SigningStep.PAYOUT_OPTIMISTIC.value}")
        assert wallet.prompts[1].endswith(f"{points[1]}:{SigningStep.PAYOUT.value}")
        assert wallet.prompts[2].endswith(f"{points[2]}:{SigningStep.PAYOUT_OPTIMISTIC.value}")
        first = signatures[points[1]]
        assert len(bytes.fromhex(first.payout_signature)) == 64
        assert first.payout_signature != first.payout_optimistic_signature

    @pytest.mark.asyncio
    async def test_signatures_deterministic(
        self, wallet, builder, context, make_bundle, points
    ) -> None:
        """Test a second pass over the same inputs yields the same signatures."""
        prepared = prepare_transactions([make_bundle(points[1]), make_bundle(points[2])])
        first = await PayoutSignatureCoordinator(wallet, builder).sign_all(context, prepared)
        second = await PayoutSignatureCoordinator(wallet, builder).sign_all(context, prepared)
        assert first == second

    @pytest.mark.asyncio
    async def test_progress(self, coordinator, context, make_bundle, points) -> None:
        """Test progress runs 0..total without decreasing."""
        prepared = prepare_transactions([make_bundle(points[1]), make_bundle(points[2])])
        seen: list[PayoutSigningProgress] = []

        await coordinator.sign_all(context, prepared, on_progress=seen.append)

        assert [p.completed for p in seen] == [0, 1, 2, 3, 4]
        assert all(p.total == 4 for p in seen)
        assert [p.current_claimer for p in seen] == [1, 1, 2, 2, 2]
        assert seen[0].current_step == SigningStep.PAYOUT_OPTIMISTIC
        assert seen[1].current_step == SigningStep.PAYOUT
        assert seen[-1].current_step is None
        assert seen[-1].done
        assert not seen[-2].done

    @pytest.mark.asyncio
    async def test_rejection_propagates(
        self, coordinator, context, wallet, make_bundle, points
    ) -> None:
        """Test a declined wallet prompt stops signing."""
        wallet.reject_psbt = True
        prepared = prepare_transactions([make_bundle(points[1])])
        with pytest.raises(UserRejectedError):
            await coordinator.sign_all(context, prepared)
        assert len(wallet.prompts) == 1

    @pytest.mark.asyncio
    async def test_signing_is_serialized(
        self, wallet, builder, context, make_bundle, points
    ) -> None:
        """Test concurrent passes sharing a lock never prompt the wallet at once."""
        active = 0
        peak = 0
        sign = wallet.sign_psbt

        async def tracked(psbt_hex: str) -> str:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1
            return await sign(psbt_hex)

        wallet.sign_psbt = tracked
        lock = asyncio.Lock()
        prepared = prepare_transactions([make_bundle(points[1]), make_bundle(points[2])])
        await asyncio.gather(
            PayoutSignatureCoordinator(wallet, builder, lock).sign_all(context, prepared),
            PayoutSignatureCoordinator(wallet, builder, lock).sign_all(context, prepared),
        )
        assert peak == 1

    @pytest.mark.asyncio
    async def test_submit(self, coordinator, provider, points) -> None:
        """Test signatures go to the provider in one call."""
        signatures = {points[1]: _sigs()}
        await coordinator.submit(provider, PEGIN_TXID, points[0], signatures)
        assert provider.submissions == [(PEGIN_TXID, points[0], signatures)]

    @pytest.mark.asyncio
    async def test_submit_not_ready(self, coordinator, provider, points) -> None:
        """Test a not-ready provider answer becomes ProviderNotReadyError."""
        provider.submit_errors.append(
            JsonRpcError(RpcErrorCode.VALIDATION_ERROR, "Invalid state: PendingBabeSetup")
        )
        with pytest.raises(ProviderNotReadyError):
            await coordinator.submit(provider, PEGIN_TXID, points[0], {points[1]: _sigs()})

    @pytest.mark.asyncio
    async def test_submit_other_error(self, coordinator, provider, points) -> None:
        """Test other provider errors propagate unchanged."""
        provider.submit_errors.append(JsonRpcError(RpcErrorCode.PRESIGN_ERROR, "bad signature"))
        with pytest.raises(JsonRpcError):
            await coordinator.submit(provider, PEGIN_TXID, points[0], {points[1]: _sigs()})