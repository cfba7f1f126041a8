"""
UTXO and fee-rate providers.

Available providers:
- StaticUtxoProvider: UTXOs and fee rates from a JSON file
"""

from btcwallet.backends.base import FeeRates, UtxoProvider
from btcwallet.backends.static import StaticUtxoProvider

__all__ = [
    "FeeRates",
    "StaticUtxoProvider",
    "UtxoProvider",
]
