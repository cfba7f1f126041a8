"""
BIP32 HD key derivation.
Nodes are immutable; every derivation returns a new HDKey.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

from btcwallet.constants import HARDENED_OFFSET
from btcwallet.models import NetworkType, ScriptType
from btcwallet.wallet.address import hash160

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)


def parse_path_segment(segment: str) -> int:
    """
    Parse one path segment ("84'", "84h" or "5") into a child index.

    Raises:
        ValueError: If the segment is not a valid index
    """
    hardened = segment.endswith("'") or segment.endswith("h")
    index_str = segment[:-1] if hardened else segment
    if not index_str.isdigit():
        raise ValueError(f"Invalid path segment: {segment!r}")

    index = int(index_str)
    if index >= HARDENED_OFFSET:
        raise ValueError(f"Path index out of range: {segment!r}")

    return index + HARDENED_OFFSET if hardened else index


def parse_path(path: str) -> list[int]:
    """Parse "m/0'/0/5" into child indices. The leading "m" is optional."""
    parts = path.split("/")
    if parts and parts[0] == "m":
        parts = parts[1:]
    return [parse_path_segment(part) for part in parts if part]


def format_path(indices: list[int]) -> str:
    """Format child indices as "m/0'/0/5"."""
    parts = ["m"]
    for index in indices:
        if index >= HARDENED_OFFSET:
            parts.append(f"{index - HARDENED_OFFSET}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation.
    """

    def __init__(
        self,
        private_key: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        index: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
    ):
        if len(chain_code) != 32:
            raise ValueError(f"Invalid chain code length: {len(chain_code)}")
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.index = index
        self.parent_fingerprint = parent_fingerprint

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        if not 16 <= len(seed) <= 64:
            raise ValueError(f"Seed must be between 16 and 64 bytes, got {len(seed)}")

        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)

        return cls(private_key, chain_code, depth=0)

    @classmethod
    def from_private_key(cls, private_key: bytes, chain_code: bytes) -> HDKey:
        """Reconstruct a node from raw private key and chain code material."""
        if len(private_key) != 32:
            raise ValueError(f"Invalid private key length: {len(private_key)}")
        return cls(PrivateKey(private_key), chain_code)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for index in parse_path(path):
            key = key._derive_child(index)

        return key

    def derive_hardened(self, index: int) -> HDKey:
        """Derive the hardened child ``index'``."""
        if not 0 <= index < HARDENED_OFFSET:
            raise ValueError(f"Invalid hardened index: {index}")
        return self._derive_child(index + HARDENED_OFFSET)

    def derive_child(self, index: int) -> HDKey:
        """Derive child ``index``; values >= 2**31 are hardened."""
        if not 0 <= index <= 0xFFFFFFFF:
            raise ValueError(f"Invalid child index: {index}")
        return self._derive_child(index)

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED_OFFSET

        if hardened:
            priv_bytes = self._private_key.secret
            data = b"\x00" + priv_bytes + index.to_bytes(4, "big")
        else:
            pub_bytes = self._public_key.format(compressed=True)
            data = pub_bytes + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N

        if child_key_int == 0:
            raise ValueError("Invalid child key")

        child_key_bytes = child_key_int.to_bytes(32, "big")
        child_private_key = PrivateKey(child_key_bytes)

        return HDKey(
            child_private_key,
            child_chain,
            depth=self.depth + 1,
            index=index,
            parent_fingerprint=self.fingerprint,
        )

    @property
    def identifier(self) -> bytes:
        """HASH160 of the compressed public key"""
        return hash160(self.get_public_key_bytes())

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of the identifier"""
        return self.identifier[:4]

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def get_address(
        self,
        network: NetworkType | str = "mainnet",
        script_type: ScriptType = ScriptType.P2WPKH,
    ) -> str:
        """Get the address of this key for the given script type"""
        from btcwallet.wallet.account import build_address

        return build_address(self.get_public_key_bytes(), script_type, NetworkType(network))

    def sign(self, digest: bytes) -> bytes:
        """Sign a 32-byte digest, returning a DER-encoded low-S signature."""
        if len(digest) != 32:
            raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
        # hasher=None: the digest is signed as-is
        return self._private_key.sign(digest, hasher=None)

    def verify(self, digest: bytes, signature: bytes) -> bool:
        """Verify a DER signature over a 32-byte digest against this key."""
        try:
            return self._public_key.verify(signature, digest, hasher=None)
        except (ValueError, TypeError):
            return False


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.
    The mnemonic checksum is not validated.
    """
    from hashlib import pbkdf2_hmac

    mnemonic_bytes = " ".join(mnemonic.split()).encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")

    seed = pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)
    return seed
