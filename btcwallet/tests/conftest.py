"""
Test configuration for btcwallet tests.
"""

from __future__ import annotations

import pytest

from btcwallet.models import NetworkType, ScriptType, Utxo
from btcwallet.wallet.account import ACCOUNT_DEFINITIONS, Account, create_account
from btcwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from btcwallet.wallet.deriver import SeedEntropyProvider
from btcwallet.wallet.signer import AccountSigner

# BIP173 example P2WPKH address
RECIPIENT_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def sample_seed(sample_mnemonic: str) -> bytes:
    return mnemonic_to_seed(sample_mnemonic)


@pytest.fixture
def entropy_provider(sample_seed: bytes) -> SeedEntropyProvider:
    return SeedEntropyProvider(sample_seed)


@pytest.fixture
def account_root(sample_seed: bytes) -> HDKey:
    """BIP84 mainnet account root m/84'/0'"""
    return HDKey.from_seed(sample_seed).derive("m/84'/0'")


@pytest.fixture
def p2wpkh_account(account_root: HDKey) -> Account:
    child = account_root.derive("m/0'/0/0")
    return create_account(
        ACCOUNT_DEFINITIONS[ScriptType.P2WPKH],
        master_fingerprint=account_root.fingerprint,
        index=0,
        hd_path="m/0'/0/0",
        pubkey=child.get_public_key_bytes(),
        network=NetworkType.MAINNET,
        signer=AccountSigner(account_root, account_root.fingerprint),
    )


@pytest.fixture
def recipient_address() -> str:
    return RECIPIENT_ADDRESS


@pytest.fixture
def funding_utxo() -> Utxo:
    return Utxo(block_height=800_000, tx_hash="aa" * 32, output_index=0, value=100_000)
