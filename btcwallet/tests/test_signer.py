"""
Tests for the HD account signer.
"""

import pytest

from btcwallet.wallet.signer import AccountSigner


class TestAccountSigner:
    def test_fingerprint_defaults_to_node(self, account_root):
        signer = AccountSigner(account_root)
        assert signer.fingerprint == account_root.fingerprint
        assert signer.public_key == account_root.get_public_key_bytes()

    def test_derive_path_keeps_fingerprint(self, account_root):
        signer = AccountSigner(account_root, b"\x01\x02\x03\x04")
        child = signer.derive_path("m/0'/0/5")
        assert child.fingerprint == b"\x01\x02\x03\x04"
        assert child.public_key == account_root.derive("m/0'/0/5").get_public_key_bytes()

    def test_derive_path_without_prefix(self, account_root):
        signer = AccountSigner(account_root)
        assert signer.derive_path("0'/0/5").public_key == signer.derive_path("m/0'/0/5").public_key

    @pytest.mark.parametrize("path", ["m/x", "m/0'/-1", "m/0''"])
    def test_invalid_path(self, account_root, path):
        with pytest.raises(ValueError, match="invalid path"):
            AccountSigner(account_root).derive_path(path)

    @pytest.mark.asyncio
    async def test_sign_and_verify(self, account_root):
        signer = AccountSigner(account_root).derive_path("m/0'/0/0")
        digest = b"\x11" * 32
        signature = await signer.sign(digest)
        assert signer.verify(digest, signature)
        assert not signer.verify(b"\x22" * 32, signature)
