"""
Wallet accounts.

One Account type covers every script type; the per-type differences (BIP
purpose and output script construction) live in ACCOUNT_DEFINITIONS.

Derivation path of an account root: m/{purpose}'/{coin_type}'
- purpose: 84 (P2WPKH), 49 (P2SH-P2WPKH), 44 (P2PKH)
- coin_type: 0 on mainnet, 1 on test networks
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from btcwallet.constants import ACCOUNT_TYPE_NAMESPACE
from btcwallet.models import NetworkType, ScriptType
from btcwallet.wallet.address import (
    p2pkh_script,
    p2sh_p2wpkh_script,
    p2wpkh_script,
    scriptpubkey_to_address,
)
from btcwallet.wallet.signer import AccountSigner


@dataclass(frozen=True)
class AccountDefinition:
    purpose: int
    script_type: ScriptType
    build_script: Callable[[bytes], bytes]

    def path(self, network: NetworkType | str = NetworkType.MAINNET) -> list[str]:
        """Account root path segments, e.g. ["m", "84'", "0'"]"""
        return ["m", f"{self.purpose}'", f"{NetworkType(network).coin_type}'"]

    @property
    def type(self) -> str:
        return f"{ACCOUNT_TYPE_NAMESPACE}:{self.script_type.value}"


ACCOUNT_DEFINITIONS: dict[ScriptType, AccountDefinition] = {
    ScriptType.P2WPKH: AccountDefinition(84, ScriptType.P2WPKH, p2wpkh_script),
    ScriptType.P2SH_P2WPKH: AccountDefinition(49, ScriptType.P2SH_P2WPKH, p2sh_p2wpkh_script),
    ScriptType.P2PKH: AccountDefinition(44, ScriptType.P2PKH, p2pkh_script),
}


def get_account_definition(script_type: ScriptType | str) -> AccountDefinition:
    """
    Look up the account definition for a script type or capability tag.

    Raises:
        ValueError: If no account can be built for the script type
    """
    parsed = ScriptType.parse(script_type)
    definition = ACCOUNT_DEFINITIONS.get(parsed)
    if definition is None:
        raise ValueError(f"No account definition for script type {parsed.value}")
    return definition


def build_address(pubkey: bytes, script_type: ScriptType, network: NetworkType) -> str:
    script = get_account_definition(script_type).build_script(pubkey)
    address = scriptpubkey_to_address(script, network)
    if not address:
        raise ValueError("Payment address is missing")
    return address


class Account:
    """
    A derived keypair bound to a script type, network and HD path.

    The output script and address are computed on first access and cached;
    they depend only on (pubkey, script_type, network).
    """

    def __init__(
        self,
        master_fingerprint: str,
        index: int,
        hd_path: str,
        pubkey: str,
        network: NetworkType | str,
        script_type: ScriptType | str,
        type: str,
        signer: AccountSigner,
    ):
        self.master_fingerprint = master_fingerprint
        self.index = index
        self.hd_path = hd_path
        self.pubkey = pubkey
        self.network = NetworkType(network)
        self.script_type = ScriptType.parse(script_type)
        self.type = type
        self.signer = signer

        self._output_script: bytes | None = None
        self._address: str | None = None

    @property
    def definition(self) -> AccountDefinition:
        return get_account_definition(self.script_type)

    @property
    def pubkey_bytes(self) -> bytes:
        try:
            return bytes.fromhex(self.pubkey)
        except ValueError as e:
            raise ValueError("Public key is invalid") from e

    @property
    def output_script(self) -> bytes:
        if self._output_script is None:
            self._output_script = self.definition.build_script(self.pubkey_bytes)
        return self._output_script

    @property
    def address(self) -> str:
        if self._address is None:
            address = scriptpubkey_to_address(self.output_script, self.network)
            if not address:
                raise ValueError("Payment address is missing")
            self._address = address
        return self._address

    @property
    def redeem_script(self) -> bytes | None:
        """P2WPKH program wrapped by a P2SH-P2WPKH account, None otherwise"""
        if self.script_type is ScriptType.P2SH_P2WPKH:
            return p2wpkh_script(self.pubkey_bytes)
        return None

    async def sign(self, message: bytes) -> bytes:
        return await self.signer.sign(message)

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "address": self.address,
            "index": self.index,
            "hd_path": self.hd_path,
            "master_fingerprint": self.master_fingerprint,
            "pubkey": self.pubkey,
            "script_type": self.script_type.value,
            "network": self.network.value,
        }

    def __repr__(self) -> str:
        return f"Account(type={self.type!r}, index={self.index}, network={self.network.value!r})"


def create_account(
    definition: AccountDefinition,
    master_fingerprint: bytes,
    index: int,
    hd_path: str,
    pubkey: bytes,
    network: NetworkType,
    signer: AccountSigner,
) -> Account:
    """Shared constructor used for every script type."""
    return Account(
        master_fingerprint=master_fingerprint.hex(),
        index=index,
        hd_path=hd_path,
        pubkey=pubkey.hex(),
        network=network,
        script_type=definition.script_type,
        type=definition.type,
        signer=signer,
    )
