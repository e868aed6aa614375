"""
Unsigned transaction encoding.

Serializes the split transaction that funds two vaults from one or more
wallet outputs. Signing and PSBT handling belong to the wallet; this module
only produces the unsigned (non-witness) encoding and its txid.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

import base58
import bech32

from vaultcore.crypto import hash256


@dataclass
class TxInput:
    """Transaction input."""

    txid: str
    vout: int
    value: int
    scriptpubkey: str = ""
    sequence: int = 0xFFFFFFFD  # RBF signalling


@dataclass
class TxOutput:
    """Transaction output."""

    address: str
    value: int
    scriptpubkey: str = ""

    def script_bytes(self) -> bytes:
        if self.scriptpubkey:
            return bytes.fromhex(self.scriptpubkey)
        return address_to_scriptpubkey(self.address)


SEGWIT_HRPS = ("bc", "tb", "bcrt")

# base58 version byte -> (script prefix, script suffix)
BASE58_TEMPLATES = {
    0x00: (b"\x76\xa9\x14", b"\x88\xac"),  # P2PKH mainnet
    0x6F: (b"\x76\xa9\x14", b"\x88\xac"),  # P2PKH testnet/regtest
    0x05: (b"\xa9\x14", b"\x87"),  # P2SH mainnet
    0xC4: (b"\xa9\x14", b"\x87"),  # P2SH testnet/regtest
}


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Output script for a split-transaction destination.

    Segwit v0 (P2WPKH/P2WSH) and v1 (P2TR) addresses are bech32 decoded for
    every network prefix; anything else is treated as base58 P2PKH or P2SH.
    """
    lowered = address.lower()
    hrp = lowered.rsplit("1", 1)[0] if "1" in lowered else ""
    if hrp in SEGWIT_HRPS:
        witver, program = bech32.decode(hrp, lowered)
        if witver is None or program is None:
            raise ValueError(f"Not a valid segwit address: {address}")

        witprog = bytes(program)
        if (witver, len(witprog)) in ((0, 20), (0, 32), (1, 32)):
            opcode = 0x00 if witver == 0 else 0x50 + witver
            return bytes([opcode, len(witprog)]) + witprog
        raise ValueError(f"Witness v{witver} program of {len(witprog)} bytes not supported")

    decoded = base58.b58decode_check(address)
    template = BASE58_TEMPLATES.get(decoded[0])
    if template is None:
        raise ValueError(f"Address version byte {decoded[0]:#04x} not supported")
    prefix, suffix = template
    return prefix + decoded[1:] + suffix


def varint(n: int) -> bytes:
    """CompactSize length prefix."""
    if n < 0xFD:
        return bytes([n])
    for marker, fmt, limit in ((0xFD, "<H", 0xFFFF), (0xFE, "<I", 0xFFFFFFFF)):
        if n <= limit:
            return bytes([marker]) + struct.pack(fmt, n)
    return b"\xff" + struct.pack("<Q", n)


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """36-byte outpoint; the displayed txid is byte-reversed on the wire."""
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


def serialize_input(inp: TxInput) -> bytes:
    """Serialize an input with an empty scriptSig."""
    return serialize_outpoint(inp.txid, inp.vout) + bytes([0x00]) + struct.pack("<I", inp.sequence)


def serialize_output(out: TxOutput) -> bytes:
    """Amount, script length and script of one output."""
    if out.value < 0:
        raise ValueError(f"Output value must not be negative: {out.value}")
    script = out.script_bytes()
    return struct.pack("<Q", out.value) + varint(len(script)) + script


def serialize_unsigned_tx(
    inputs: list[TxInput],
    outputs: list[TxOutput],
    version: int = 2,
    locktime: int = 0,
) -> bytes:
    """Serialize a transaction without witness data."""
    if not inputs:
        raise ValueError("Transaction needs at least one input")
    if not outputs:
        raise ValueError("Transaction needs at least one output")

    result = struct.pack("<I", version)
    result += varint(len(inputs))
    for inp in inputs:
        result += serialize_input(inp)
    result += varint(len(outputs))
    for out in outputs:
        result += serialize_output(out)
    result += struct.pack("<I", locktime)
    return result


def compute_txid(tx_bytes: bytes) -> str:
    """Txid of a non-witness serialization, in RPC byte order."""
    return hash256(tx_bytes)[::-1].hex()


def build_unsigned_tx(inputs: list[TxInput], outputs: list[TxOutput]) -> tuple[str, str]:
    """
    Build an unsigned transaction.

    Returns:
        (tx_hex, txid)
    """
    tx_bytes = serialize_unsigned_tx(inputs, outputs)
    return tx_bytes.hex(), compute_txid(tx_bytes)
