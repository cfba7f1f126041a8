"""
Wallet data models.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

SATS_PER_BTC = 100_000_000


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def bech32_hrp(self) -> str:
        return {"mainnet": "bc", "testnet": "tb", "signet": "tb", "regtest": "bcrt"}[self.value]

    @property
    def p2pkh_version(self) -> int:
        return 0x00 if self is NetworkType.MAINNET else 0x6F

    @property
    def p2sh_version(self) -> int:
        return 0x05 if self is NetworkType.MAINNET else 0xC4

    @property
    def coin_type(self) -> int:
        """BIP44 coin type: 0 for mainnet, 1 for every test network."""
        return 0 if self is NetworkType.MAINNET else 1


class ScriptType(str, Enum):
    P2PKH = "p2pkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"

    @classmethod
    def parse(cls, value: str | ScriptType) -> ScriptType:
        """
        Parse a script type, accepting capability tags such as ``bip122:p2wpkh``.

        Raises:
            ValueError: If the value names no known script type
        """
        if isinstance(value, ScriptType):
            return value
        name = value.split(":", 1)[1] if ":" in value else value
        return cls(name.strip().lower())

    @property
    def is_segwit(self) -> bool:
        return self is not ScriptType.P2PKH


@dataclass(frozen=True)
class Utxo:
    """Unspent output as reported by the external UTXO provider."""

    block_height: int
    tx_hash: str
    output_index: int
    value: int  # satoshis

    @property
    def outpoint(self) -> str:
        return f"{self.tx_hash}:{self.output_index}"

    @property
    def utxo_id(self) -> str:
        """Stable identifier used to map selection results back to this record."""
        key = f"{self.tx_hash},{self.block_height},{self.output_index},{self.value}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Utxo:
        try:
            return cls(
                block_height=int(data.get("block_height", data.get("block", 0))),
                tx_hash=str(data.get("tx_hash", data.get("txid", ""))),
                output_index=int(data.get("output_index", data.get("vout", 0))),
                value=int(data["value"]),
            )
        except KeyError as e:
            raise ValueError(f"UTXO entry is missing {e}") from e
        except (AttributeError, TypeError) as e:
            raise ValueError(f"Invalid UTXO entry: {data!r}") from e


@dataclass
class SpendTarget:
    address: str
    value: int  # satoshis


@dataclass
class SelectionResult:
    """Result of coin selection"""

    inputs: list[Utxo]
    outputs: list[SpendTarget]  # payments, followed by change when present
    fee: int
    change: SpendTarget | None = None

    @property
    def input_total(self) -> int:
        return sum(utxo.value for utxo in self.inputs)

    @property
    def output_total(self) -> int:
        return sum(output.value for output in self.outputs)


def sats_to_btc(value: int) -> str:
    """Format satoshis as a BTC amount string with 8 decimals."""
    return f"{Decimal(value) / SATS_PER_BTC:.8f}"


@dataclass
class TxInfo:
    """JSON-describable summary of a built transaction."""

    sender: str
    fee_rate: int
    recipients: list[SpendTarget] = field(default_factory=list)
    change: SpendTarget | None = None
    tx_fee: int = 0

    def add_recipient(self, output: SpendTarget) -> None:
        self.recipients.append(output)

    @property
    def total(self) -> int:
        change = self.change.value if self.change else 0
        return sum(r.value for r in self.recipients) + change + self.tx_fee

    def to_json(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "recipients": [
                {"address": r.address, "value": r.value, "amount": sats_to_btc(r.value)}
                for r in self.recipients
            ],
            "change": (
                {
                    "address": self.change.address,
                    "value": self.change.value,
                    "amount": sats_to_btc(self.change.value),
                }
                if self.change
                else None
            ),
            "fee_rate": self.fee_rate,
            "tx_fee": self.tx_fee,
            "total": self.total,
            "total_btc": sats_to_btc(self.total),
        }
