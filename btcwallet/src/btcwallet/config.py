"""
Configuration for the wallet engine.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from btcwallet.constants import DEFAULT_MIN_FEE_RATE, DUST_LIMITS
from btcwallet.models import NetworkType, ScriptType


class WalletConfig(BaseModel):
    """Configuration for WalletManager."""

    network: NetworkType = NetworkType.MAINNET
    # How account roots are obtained from the host: "BIP32" or "BIP44"
    deriver: str = "BIP32"
    default_script_type: ScriptType = ScriptType.P2WPKH

    # Fee settings
    min_fee_rate: int = Field(
        default=DEFAULT_MIN_FEE_RATE, ge=1, description="Fee rate floor in sat/vbyte"
    )
    replaceable: bool = False  # Signal BIP125 replaceability on every input

    # Per script type dust limit overrides, e.g. {"p2wpkh": 330}
    dust_limits: dict[str, int] = Field(default_factory=dict)

    @field_validator("network", mode="before")
    @classmethod
    def normalize_network(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("deriver")
    @classmethod
    def validate_deriver(cls, v: str) -> str:
        v = v.upper()
        if v not in ("BIP32", "BIP44"):
            raise ValueError("Deriver must be BIP32 or BIP44")
        return v

    @field_validator("default_script_type", mode="before")
    @classmethod
    def parse_script_type(cls, v: Any) -> Any:
        return ScriptType.parse(v) if isinstance(v, str) else v

    @field_validator("dust_limits")
    @classmethod
    def validate_dust_limits(cls, v: dict[str, int]) -> dict[str, int]:
        limits = {}
        for name, value in v.items():
            if value < 0:
                raise ValueError(f"Dust limit for {name} must not be negative")
            limits[ScriptType.parse(name).value] = value
        return limits

    def dust_limit(self, script_type: ScriptType | str) -> int:
        name = ScriptType.parse(script_type).value
        return self.dust_limits.get(name, DUST_LIMITS[name])

    @classmethod
    def from_file(cls, path: Path | str) -> WalletConfig:
        """Load configuration from a JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.model_validate(data)
