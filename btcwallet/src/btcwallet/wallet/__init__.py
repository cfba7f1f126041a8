"""
Key derivation, accounts, coin selection and PSBT handling.
"""

from btcwallet.wallet.account import Account
from btcwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from btcwallet.wallet.coin_selection import CoinSelector, InsufficientFundsError, UtxoServiceError
from btcwallet.wallet.deriver import (
    Bip32Deriver,
    Bip44Deriver,
    DeriverError,
    HostEntropyProvider,
    SeedEntropyProvider,
)
from btcwallet.wallet.manager import (
    AccountMgrError,
    CreatedTransaction,
    TransactionValidationError,
    WalletError,
    WalletManager,
    create_wallet_manager,
)
from btcwallet.wallet.psbt import PsbtBuilder, PsbtServiceError, PsbtState
from btcwallet.wallet.signer import AccountSigner

__all__ = [
    "Account",
    "AccountMgrError",
    "AccountSigner",
    "Bip32Deriver",
    "Bip44Deriver",
    "CoinSelector",
    "CreatedTransaction",
    "DeriverError",
    "HDKey",
    "HostEntropyProvider",
    "InsufficientFundsError",
    "PsbtBuilder",
    "PsbtServiceError",
    "PsbtState",
    "SeedEntropyProvider",
    "TransactionValidationError",
    "UtxoServiceError",
    "WalletError",
    "WalletManager",
    "create_wallet_manager",
    "mnemonic_to_seed",
]
