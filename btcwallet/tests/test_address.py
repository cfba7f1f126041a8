"""
Tests for address and output script utilities.
"""

import pytest

from btcwallet.models import NetworkType, ScriptType
from btcwallet.wallet.address import (
    address_to_scriptpubkey,
    detect_script_type,
    hash160,
    p2pkh_script,
    p2sh_p2wpkh_script,
    p2wpkh_script,
    p2wsh_script,
    scriptpubkey_to_address,
)

# BIP173 examples
P2WPKH_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
P2WPKH_PROGRAM = "751e76e8199196d454941c45d1b3a323f1433bd6"
P2WSH_TESTNET_ADDRESS = "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
P2WSH_PROGRAM = "1863143c14c5166804bd19203356da136c985678cd4d27a1b8c6329604903262"

PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")


class TestHash160:
    def test_generator_pubkey(self):
        assert hash160(PUBKEY).hex() == P2WPKH_PROGRAM


class TestScripts:
    def test_p2wpkh_script(self):
        assert p2wpkh_script(PUBKEY).hex() == "0014" + P2WPKH_PROGRAM

    def test_p2pkh_script(self):
        assert p2pkh_script(PUBKEY).hex() == "76a914" + P2WPKH_PROGRAM + "88ac"

    def test_p2sh_p2wpkh_script(self):
        script = p2sh_p2wpkh_script(PUBKEY)
        assert len(script) == 23
        assert script[:2] == bytes([0xA9, 0x14])
        assert script[-1] == 0x87
        assert script[2:22] == hash160(p2wpkh_script(PUBKEY))

    def test_hex_pubkey_accepted(self):
        assert p2wpkh_script(PUBKEY.hex()) == p2wpkh_script(PUBKEY)

    def test_uncompressed_pubkey_rejected(self):
        with pytest.raises(ValueError):
            p2wpkh_script(b"\x04" + bytes(64))

    def test_detect_script_type(self):
        assert detect_script_type(p2pkh_script(PUBKEY)) is ScriptType.P2PKH
        assert detect_script_type(p2sh_p2wpkh_script(PUBKEY)) is ScriptType.P2SH_P2WPKH
        assert detect_script_type(p2wpkh_script(PUBKEY)) is ScriptType.P2WPKH
        assert detect_script_type(p2wsh_script(b"\x51")) is ScriptType.P2WSH
        assert detect_script_type(bytes([0x51, 0x20]) + bytes(32)) is ScriptType.P2TR
        assert detect_script_type(b"\x6a\x00") is None


class TestAddressEncoding:
    def test_p2wpkh_mainnet(self):
        assert scriptpubkey_to_address(p2wpkh_script(PUBKEY), "mainnet") == P2WPKH_ADDRESS

    def test_p2wpkh_network_prefixes(self):
        script = p2wpkh_script(PUBKEY)
        assert scriptpubkey_to_address(script, NetworkType.TESTNET).startswith("tb1q")
        assert scriptpubkey_to_address(script, NetworkType.SIGNET).startswith("tb1q")
        assert scriptpubkey_to_address(script, NetworkType.REGTEST).startswith("bcrt1q")

    def test_p2pkh_prefixes(self):
        script = p2pkh_script(PUBKEY)
        assert scriptpubkey_to_address(script, "mainnet").startswith("1")
        assert scriptpubkey_to_address(script, "testnet")[0] in "mn"

    def test_p2sh_prefixes(self):
        script = p2sh_p2wpkh_script(PUBKEY)
        assert scriptpubkey_to_address(script, "mainnet").startswith("3")
        assert scriptpubkey_to_address(script, "testnet").startswith("2")

    def test_p2tr_has_no_address(self):
        assert scriptpubkey_to_address(bytes([0x51, 0x20]) + bytes(32), "mainnet") is None


class TestAddressDecoding:
    def test_p2wpkh(self):
        assert address_to_scriptpubkey(P2WPKH_ADDRESS).hex() == "0014" + P2WPKH_PROGRAM

    def test_p2wpkh_uppercase(self):
        assert address_to_scriptpubkey(P2WPKH_ADDRESS.upper()).hex() == "0014" + P2WPKH_PROGRAM

    def test_p2wsh(self):
        script = address_to_scriptpubkey(P2WSH_TESTNET_ADDRESS, NetworkType.TESTNET)
        assert script.hex() == "0020" + P2WSH_PROGRAM

    @pytest.mark.parametrize(
        "script",
        [p2pkh_script(PUBKEY), p2sh_p2wpkh_script(PUBKEY), p2wpkh_script(PUBKEY)],
    )
    @pytest.mark.parametrize("network", list(NetworkType))
    def test_encode_decode(self, script, network):
        address = scriptpubkey_to_address(script, network)
        assert address_to_scriptpubkey(address, network) == script

    def test_network_mismatch(self):
        with pytest.raises(ValueError, match="does not belong"):
            address_to_scriptpubkey(P2WPKH_ADDRESS, NetworkType.TESTNET)
        p2pkh_testnet = scriptpubkey_to_address(p2pkh_script(PUBKEY), "testnet")
        with pytest.raises(ValueError, match="does not belong"):
            address_to_scriptpubkey(p2pkh_testnet, NetworkType.MAINNET)

    def test_regtest_is_not_testnet(self):
        regtest = scriptpubkey_to_address(p2wpkh_script(PUBKEY), "regtest")
        with pytest.raises(ValueError):
            address_to_scriptpubkey(regtest, NetworkType.TESTNET)

    @pytest.mark.parametrize(
        "address",
        [
            "",
            "not-an-address",
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5",  # bad checksum
            "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN3",  # bad checksum
        ],
    )
    def test_invalid(self, address):
        with pytest.raises(ValueError):
            address_to_scriptpubkey(address)
