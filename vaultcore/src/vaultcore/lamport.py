"""
Lamport one-time key derivation.

The vault provider needs a Lamport public key from the depositor before it
can finish preparing the payout graph. The keypair is derived
deterministically from the depositor's recovery phrase so it can be
re-derived later on another device:

    seed     = PBKDF2-HMAC-SHA512(mnemonic, "mnemonic" + passphrase, 2048)
    context  = HMAC-SHA512(seed, "lamport/" + vault_id + "/" + depositor_pk + "/" + app)
    secret_i = HMAC-SHA256(context, i)[:16]      for i in 0..511
    public_i = HASH160(secret_i)

Slots 0..255 sign a zero bit, slots 256..511 sign a one bit.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from dataclasses import dataclass

from vaultcore.crypto import hash160
from vaultcore.models import strip_hex_prefix

LAMPORT_BITS = 256
LAMPORT_SLOTS = 2 * LAMPORT_BITS
LAMPORT_SECRET_SIZE = 16
LAMPORT_HASH_SIZE = 20


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a BIP39 mnemonic to a 64-byte seed."""
    normalized = " ".join(mnemonic.split())
    if not normalized:
        raise ValueError("Mnemonic must not be empty")
    salt = ("mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", normalized.encode("utf-8"), salt, 2048, dklen=64)


@dataclass(frozen=True)
class LamportKeypair:
    private_key: tuple[bytes, ...]
    public_key: tuple[bytes, ...]

    def public_key_hex(self) -> list[str]:
        return [h.hex() for h in self.public_key]

    def to_wire(self) -> dict[str, list[str]]:
        """Public half in the shape the vault provider expects."""
        hashes = self.public_key_hex()
        return {
            "false_list": hashes[:LAMPORT_BITS],
            "true_list": hashes[LAMPORT_BITS:],
        }


def derive_lamport_keypair(
    seed: bytes,
    vault_id: str,
    depositor_pk: str,
    application_id: str,
) -> LamportKeypair:
    """Derive the Lamport keypair bound to one vault."""
    if len(seed) != 64:
        raise ValueError(f"Seed must be 64 bytes, got {len(seed)}")

    label = "/".join(
        [
            "lamport",
            strip_hex_prefix(vault_id).lower(),
            strip_hex_prefix(depositor_pk).lower(),
            application_id.lower(),
        ]
    )
    context = hmac.new(seed, label.encode("utf-8"), hashlib.sha512).digest()

    secrets: list[bytes] = []
    hashes: list[bytes] = []
    for i in range(LAMPORT_SLOTS):
        secret = hmac.new(context, struct.pack(">I", i), hashlib.sha256).digest()
        secret = secret[:LAMPORT_SECRET_SIZE]
        secrets.append(secret)
        hashes.append(hash160(secret))

    return LamportKeypair(private_key=tuple(secrets), public_key=tuple(hashes))
