"""
vaultwallet - Wallet, contract-chain and blockchain backend interfaces.
"""

__version__ = "0.3.0"
