"""
Account root derivation from host-provided entropy.

The host (hardware signer, plugin runtime, or an in-process seed) hands out
key material through a HostEntropyProvider. Two derivers turn that material
into an HDKey root for an account path:

- Bip32Deriver: asks for the node at the exact path (e.g. m/84'/0') and
  reconstructs it locally from private key + chain code.
- Bip44Deriver: asks for a seed tied to a coin type and derives the
  purpose/coin-type levels itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol

from loguru import logger
from pydantic import BaseModel

from btcwallet.models import NetworkType
from btcwallet.wallet.bip32 import HDKey, parse_path_segment


class DeriverError(Exception):
    pass


class EntropyNode(BaseModel):
    """Key material returned by the host. Hex strings may carry a 0x prefix."""

    private_key: str | None = None
    chain_code: str
    public_key: str | None = None
    depth: int = 0
    index: int = 0
    parent_fingerprint: int = 0
    master_fingerprint: int | None = None


class HostEntropyProvider(Protocol):
    async def get_bip32_entropy(self, path: list[str], curve: str) -> EntropyNode | None:
        """Return the node at ``path`` or None if the host denies the request"""
        ...

    async def get_bip44_entropy(self, coin_type: int) -> EntropyNode | None:
        """Return the coin-type node m/44'/coin_type' or None if denied"""
        ...


def _to_entropy_node(key: HDKey, master_fingerprint: bytes) -> EntropyNode:
    return EntropyNode(
        private_key="0x" + key.get_private_key_bytes().hex(),
        chain_code="0x" + key.chain_code.hex(),
        public_key="0x" + key.get_public_key_bytes().hex(),
        depth=key.depth,
        index=key.index,
        parent_fingerprint=int.from_bytes(key.parent_fingerprint, "big"),
        master_fingerprint=int.from_bytes(master_fingerprint, "big"),
    )


class SeedEntropyProvider:
    """
    In-process entropy provider backed by a BIP39 seed.

    Material is derived on every request and never cached.
    """

    def __init__(self, seed: bytes):
        self._seed = seed

    async def get_bip32_entropy(self, path: list[str], curve: str) -> EntropyNode | None:
        if curve != "secp256k1":
            raise DeriverError(f"Unsupported curve: {curve}")
        master = HDKey.from_seed(self._seed)
        node = master.derive("/".join(path))
        return _to_entropy_node(node, master.fingerprint)

    async def get_bip44_entropy(self, coin_type: int) -> EntropyNode | None:
        master = HDKey.from_seed(self._seed)
        node = master.derive_hardened(44).derive_hardened(coin_type)
        return _to_entropy_node(node, master.fingerprint)


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class AccountDeriver(ABC):
    """Shared root/child derivation for account unlocking."""

    curve = "secp256k1"

    def __init__(self, provider: HostEntropyProvider, network: NetworkType | str):
        self.provider = provider
        self.network = NetworkType(network)

    @abstractmethod
    async def get_root(self, path: list[str]) -> HDKey:
        """Get the account root node for an account path such as ["m", "84'", "0'"]"""

    async def get_child(self, root: HDKey, index: int) -> HDKey:
        """Derive account 0, external chain, address ``index`` below ``root``."""
        try:
            return root.derive_hardened(0).derive_child(0).derive_child(index)
        except Exception as e:
            raise DeriverError(f"Unable to derive child node {index}: {e}") from e

    def from_seed(self, seed: bytes) -> HDKey:
        try:
            return HDKey.from_seed(seed)
        except Exception as e:
            raise DeriverError("Unable to construct BIP32 node from seed") from e

    def from_private_key(self, private_key: bytes, chain_code: bytes) -> HDKey:
        try:
            return HDKey.from_private_key(private_key, chain_code)
        except Exception as e:
            raise DeriverError("Unable to construct BIP32 node from private key") from e

    def private_key_to_bytes(self, private_key: str) -> bytes:
        try:
            return _hex_to_bytes(private_key)
        except ValueError as e:
            raise DeriverError("Private key is invalid") from e

    def chain_code_to_bytes(self, chain_code: str) -> bytes:
        try:
            return _hex_to_bytes(chain_code)
        except ValueError as e:
            raise DeriverError("Chain code is invalid") from e


class Bip32Deriver(AccountDeriver):
    async def get_root(self, path: list[str]) -> HDKey:
        try:
            node = await self.provider.get_bip32_entropy(path, self.curve)

            if node is None or not node.private_key:
                raise DeriverError("Deriver private key is missing")

            private_key = self.private_key_to_bytes(node.private_key)
            chain_code = self.chain_code_to_bytes(node.chain_code)

            local = self.from_private_key(private_key, chain_code)
            # Reconstructed nodes start at depth 0; carry the host's position over
            root = HDKey(
                local.private_key,
                local.chain_code,
                depth=node.depth,
                index=node.index,
                parent_fingerprint=node.parent_fingerprint.to_bytes(4, "big"),
            )

            logger.debug(f"Derived BIP32 root for {'/'.join(path)} at depth {root.depth}")
            return root
        except DeriverError:
            raise
        except Exception as e:
            raise DeriverError(str(e)) from e


class Bip44Deriver(AccountDeriver):
    async def get_root(self, path: list[str]) -> HDKey:
        try:
            if len(path) < 3:
                raise DeriverError(f"Invalid account path: {'/'.join(path)}")

            purpose = parse_path_segment(path[1])
            coin_type = parse_path_segment(path[2])
            # Both levels are hardened; strip the offset for derive_hardened
            purpose &= 0x7FFFFFFF
            coin_type &= 0x7FFFFFFF

            node = await self.provider.get_bip44_entropy(coin_type)
            if node is None or not node.private_key:
                raise DeriverError("Deriver private key is missing")

            seed = self.private_key_to_bytes(node.private_key)
            root = self.from_seed(seed)

            logger.debug(f"Derived BIP44 root for {'/'.join(path)}")
            return root.derive_hardened(purpose).derive_hardened(coin_type)
        except DeriverError:
            raise
        except Exception as e:
            raise DeriverError(str(e)) from e


def create_deriver(
    kind: str, provider: HostEntropyProvider, network: NetworkType | str
) -> AccountDeriver:
    """Create a deriver by name ("BIP32" or "BIP44")."""
    kind = kind.upper()
    if kind == "BIP32":
        return Bip32Deriver(provider, network)
    if kind == "BIP44":
        return Bip44Deriver(provider, network)
    raise DeriverError(f"Unknown deriver: {kind}")
