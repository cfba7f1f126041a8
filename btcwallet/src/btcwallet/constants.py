"""
Bitcoin consensus and relay policy constants used by the wallet engine.

Dust limits follow Bitcoin Core's dustRelayFee (3000 sat/kvB):
- A typical P2PKH output is 34 bytes and needs a 148 byte input to spend,
  so anything below 182 * 3 = 546 sats is dust.
- A P2WPKH output is 31 bytes and needs a 67 vbyte input: 98 * 3 = 294 sats.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

DUST_LIMITS: dict[str, int] = {
    "p2pkh": STANDARD_DUST_LIMIT,
    "p2sh-p2wpkh": 540,
    "p2wpkh": 294,
    "p2wsh": 330,
    "p2tr": 330,
}

# Maximum weight of a standard transaction (MAX_STANDARD_TX_WEIGHT in policy.h)
MAX_STANDARD_TX_WEIGHT = 400_000

# nSequence values
DEFAULT_SEQUENCE = 0xFFFFFFFF
# BIP125: any input below 0xfffffffe signals replaceability. We use max - 2
# so the value never collides with the nLockTime-enabling 0xfffffffe.
REPLACEABLE_SEQUENCE = DEFAULT_SEQUENCE - 2

TX_VERSION = 2
SIGHASH_ALL = 0x01

HARDENED_OFFSET = 0x80000000

# Fee rate floor in sat/vbyte; a zero fee rate is never accepted
DEFAULT_MIN_FEE_RATE = 1

# Capability tag namespace for accounts (CAIP-2 "bip122" chains)
ACCOUNT_TYPE_NAMESPACE = "bip122"
