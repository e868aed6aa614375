"""
Bitcoin and vault deposit protocol constants.

Virtual sizes follow the estimates used when funding peg-in transactions:
- P2TR key-path inputs are 58 vB (outpoint, sequence and a 64-byte signature)
- Non-legacy outputs are at most 43 vB (P2TR output)
- Fixed transaction overhead (version, locktime, counts, segwit marker) is 11 vB
"""

from __future__ import annotations

# Per-input virtual size of a P2TR key-path spend
P2TR_INPUT_SIZE = 58  # vbytes

# Upper bound for a segwit v0/v1 output
MAX_NON_LEGACY_OUTPUT_SIZE = 43  # vbytes

# Version, locktime, input/output counts and segwit marker
TX_BUFFER_SIZE_OVERHEAD = 11  # vbytes

# A peg-in transaction has the vault output and a change output
PEGIN_OUTPUT_COUNT = 2

# A split transaction has two vault shares and change
SPLIT_OUTPUT_COUNT = 3

# Standard dust limit in Bitcoin Core
DUST_THRESHOLD = 546  # satoshis

# Deposit limits
MIN_DEPOSIT = 10_000  # satoshis
MAX_DEPOSIT = 21_000_000 * 100_000_000  # 21M BTC

# Partial liquidation halves exposure; it never fragments further
MAX_VAULTS_PER_DEPOSIT = 2

# Contract submission waits for exactly one confirmation
CONTRACT_CONFIRMATIONS = 1

# Pending records older than this are considered stale
MAX_PENDING_AGE_SEC = 24 * 60 * 60

# Proof-of-possession message signing scheme
POP_SIGNATURE_SCHEME = "ecdsa"
