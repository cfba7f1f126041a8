"""
btcwallet - Bitcoin HD wallet transaction engine

Derives HD accounts, selects coins under a fee rate, and builds, signs,
verifies and finalizes PSBTs into broadcastable transactions.
"""

__version__ = "0.1.0"

from btcwallet.config import WalletConfig
from btcwallet.constants import DUST_LIMITS, MAX_STANDARD_TX_WEIGHT, STANDARD_DUST_LIMIT
from btcwallet.models import NetworkType, ScriptType, SelectionResult, SpendTarget, TxInfo, Utxo

__all__ = [
    "DUST_LIMITS",
    "MAX_STANDARD_TX_WEIGHT",
    "NetworkType",
    "STANDARD_DUST_LIMIT",
    "ScriptType",
    "SelectionResult",
    "SpendTarget",
    "TxInfo",
    "Utxo",
    "WalletConfig",
]
