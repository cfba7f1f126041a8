"""
UTXO provider backed by a JSON file.

File format:

    {
        "fee_rates": {"fast": 20, "medium": 10, "slow": 2},
        "utxos": {
            "<address>": [
                {"tx_hash": "<hex>", "output_index": 0, "value": 50000, "block_height": 800000}
            ]
        }
    }

``txid``/``vout``/``block`` are accepted as aliases for the UTXO fields.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger

from btcwallet.backends.base import FeeRates, UtxoProvider
from btcwallet.models import Utxo


class StaticUtxoProvider(UtxoProvider):
    def __init__(self, data: dict[str, Any]):
        self._utxos: dict[str, list[Utxo]] = {
            address: [Utxo.from_dict(entry) for entry in entries]
            for address, entries in data.get("utxos", {}).items()
        }
        rates = data.get("fee_rates", {})
        medium = int(rates.get("medium", 1))
        self._fee_rates = FeeRates(
            fast=int(rates.get("fast", medium)),
            medium=medium,
            slow=int(rates.get("slow", medium)),
        )

    @classmethod
    def from_file(cls, path: Path | str) -> StaticUtxoProvider:
        with open(path) as f:
            data = json.load(f)
        logger.debug(f"Loaded UTXO data from {path}")
        return cls(data)

    async def get_utxos(self, address: str) -> list[Utxo]:
        return list(self._utxos.get(address, []))

    async def get_fee_rates(self) -> FeeRates:
        return self._fee_rates
