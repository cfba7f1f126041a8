"""
Base UTXO provider interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from btcwallet.models import Utxo


@dataclass
class FeeRates:
    """Fee rate estimates in sat/vbyte."""

    fast: int
    medium: int
    slow: int

    def for_speed(self, speed: str) -> int:
        try:
            return {"fast": self.fast, "medium": self.medium, "slow": self.slow}[speed]
        except KeyError as e:
            raise ValueError(f"Unknown fee speed: {speed}") from e


class UtxoProvider(ABC):
    """
    Source of spendable outputs and fee estimates.

    The wallet engine never decides which outputs exist on-chain; it spends
    whatever the provider reports.
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[Utxo]:
        """Get unspent outputs paying to ``address``"""

    @abstractmethod
    async def get_fee_rates(self) -> FeeRates:
        """Get current fee rate estimates"""

    async def close(self) -> None:
        """Release provider resources"""
