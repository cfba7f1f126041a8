"""
HD signer used by the PSBT layer.

A PSBT may hold inputs owned by different children of one account root, so
the signer re-derives per input from the path embedded in that input.
"""

from __future__ import annotations

from btcwallet.wallet.bip32 import HDKey, parse_path


class AccountSigner:
    """Signs and verifies digests with a derived node, keeping the root's fingerprint."""

    def __init__(self, node: HDKey, master_fingerprint: bytes | None = None):
        self._node = node
        self.public_key = node.get_public_key_bytes()
        self.fingerprint = master_fingerprint if master_fingerprint is not None else node.fingerprint

    def derive_path(self, path: str) -> AccountSigner:
        """
        Derive a new signer by a relative HD path, e.g. "m/0'/0/5".

        Raises:
            ValueError: If a segment is malformed or derivation fails
        """
        try:
            node = self._node
            for index in parse_path(path):
                node = node.derive_child(index)
        except ValueError as e:
            raise ValueError("invalid path") from e
        return AccountSigner(node, self.fingerprint)

    async def sign(self, digest: bytes) -> bytes:
        """Sign a 32-byte digest, returning a DER signature"""
        return self._node.sign(digest)

    def verify(self, digest: bytes, signature: bytes) -> bool:
        return self._node.verify(digest, signature)
