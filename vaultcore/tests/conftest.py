"""
Test configuration for vaultcore tests.
"""

from __future__ import annotations

import pytest

# secp256k1 generator point
G_XONLY = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
G_COMPRESSED = "02" + G_XONLY
G_UNCOMPRESSED = (
    "04" + G_XONLY + "483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8"
)


class FakeSleep:
    """Records requested sleeps instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def generator_pubkeys() -> dict[str, str]:
    """Generator point in x-only, compressed and uncompressed form."""
    return {
        "xonly": G_XONLY,
        "compressed": G_COMPRESSED,
        "uncompressed": G_UNCOMPRESSED,
    }


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )
