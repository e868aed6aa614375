"""
Cryptographic helpers for vault deposits.
"""

from __future__ import annotations

import base64
import binascii
import hashlib

from coincurve import PublicKey

from vaultcore.models import strip_hex_prefix


class CryptoError(Exception):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA256."""
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return hashlib.new("ripemd160", sha256(data)).digest()


def to_xonly_pubkey(pubkey_hex: str) -> str:
    """
    Normalize a public key to 32-byte x-only hex.

    Accepts x-only (32 bytes), compressed (33 bytes) and uncompressed
    (65 bytes) keys, with or without a 0x prefix. The point is checked to be
    on the curve.

    Raises:
        CryptoError: If the key is malformed
    """
    try:
        raw = bytes.fromhex(strip_hex_prefix(pubkey_hex))
    except ValueError as e:
        raise CryptoError(f"Public key is not hex: {pubkey_hex!r}") from e

    if len(raw) == 32:
        candidate = b"\x02" + raw
    elif len(raw) in (33, 65):
        candidate = raw
    else:
        raise CryptoError(f"Invalid public key length: {len(raw)} bytes")

    try:
        point = PublicKey(candidate)
    except ValueError as e:
        raise CryptoError(f"Public key is not a valid secp256k1 point: {e}") from e

    return point.format(compressed=True)[1:].hex()


def sorted_xonly_pubkeys(pubkeys: list[str]) -> list[str]:
    """Normalize keys to x-only and sort them lexicographically."""
    return sorted(to_xonly_pubkey(pk) for pk in pubkeys)


def signature_to_hex(signature: str) -> str:
    """
    Convert a wallet message signature to 0x-prefixed hex.

    Wallets return either hex (optionally 0x-prefixed) or base64.
    """
    stripped = strip_hex_prefix(signature)
    try:
        raw = bytes.fromhex(stripped)
    except ValueError:
        try:
            raw = base64.b64decode(signature, validate=True)
        except binascii.Error as e:
            raise CryptoError("Signature is neither hex nor base64") from e
    if not raw:
        raise CryptoError("Empty signature")
    return "0x" + raw.hex()
