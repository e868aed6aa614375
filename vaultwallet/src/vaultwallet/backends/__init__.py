"""
Blockchain backends for UTXO discovery and broadcast.
"""

from vaultwallet.backends.base import UTXO, BlockchainBackend, Transaction
from vaultwallet.backends.bitcoin_core import BitcoinCoreBackend
from vaultwallet.backends.mempool import MempoolBackend

__all__ = [
    "UTXO",
    "BitcoinCoreBackend",
    "BlockchainBackend",
    "MempoolBackend",
    "Transaction",
]
