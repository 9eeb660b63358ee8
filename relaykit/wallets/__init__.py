from .evm import EvmWallet
from .svm import SOLANA_CHAIN_ID, SolanaWallet
from .tvm import TRON_CHAIN_ID, TronGridClient, TronWallet

__all__ = [
    "EvmWallet",
    "SolanaWallet",
    "SOLANA_CHAIN_ID",
    "TronWallet",
    "TronGridClient",
    "TRON_CHAIN_ID",
]
