"""
Bitcoin address and output script utilities.

Supports P2PKH, P2SH (incl. P2SH-wrapped P2WPKH), P2WPKH and P2WSH.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from btcwallet.models import NetworkType, ScriptType

OP_0 = 0x00
OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def _pubkey_bytes(pubkey: bytes | str) -> bytes:
    pubkey_bytes = bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey
    if len(pubkey_bytes) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey_bytes)}")
    return pubkey_bytes


def p2pkh_script(pubkey: bytes | str) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG"""
    pubkey_hash = hash160(_pubkey_bytes(pubkey))
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(pubkey: bytes | str) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return bytes([OP_0, 0x14]) + hash160(_pubkey_bytes(pubkey))


def p2sh_script(redeem_script: bytes) -> bytes:
    """OP_HASH160 <20-byte-scripthash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL])


def p2sh_p2wpkh_script(pubkey: bytes | str) -> bytes:
    """P2SH scriptPubKey wrapping a P2WPKH redeem script (BIP49)."""
    return p2sh_script(p2wpkh_script(pubkey))


def p2wsh_script(witness_script: bytes) -> bytes:
    """Create P2WSH scriptPubKey (OP_0 <32-byte-hash>)"""
    return bytes([OP_0, 0x20]) + hashlib.sha256(witness_script).digest()


def detect_script_type(script: bytes) -> ScriptType | None:
    """Classify a scriptPubKey by its template."""
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return ScriptType.P2PKH
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL:
        # Only P2SH-P2WPKH is spent by this wallet
        return ScriptType.P2SH_P2WPKH
    if len(script) == 22 and script[:2] == bytes([OP_0, 0x14]):
        return ScriptType.P2WPKH
    if len(script) == 34 and script[:2] == bytes([OP_0, 0x20]):
        return ScriptType.P2WSH
    if len(script) == 34 and script[:2] == bytes([0x51, 0x20]):
        return ScriptType.P2TR
    return None


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkType | str) -> str | None:
    """
    Convert scriptPubKey to address.

    Returns None when the script has no address form this module can encode.
    """
    network = NetworkType(network)
    script_type = detect_script_type(scriptpubkey)

    if script_type is ScriptType.P2PKH:
        payload = bytes([network.p2pkh_version]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    if script_type is ScriptType.P2SH_P2WPKH:
        payload = bytes([network.p2sh_version]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    if script_type in (ScriptType.P2WPKH, ScriptType.P2WSH):
        return bech32.encode(network.bech32_hrp, 0, scriptpubkey[2:])

    return None


def address_to_scriptpubkey(address: str, network: NetworkType | str | None = None) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH (bc1q..., tb1q..., bcrt1q...)
    - P2WSH (bc1q... 62 chars, tb1q... 62 chars)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)

    Args:
        address: Address string
        network: When given, the address must belong to this network

    Raises:
        ValueError: If the address is malformed, unsupported or for another network
    """
    net = NetworkType(network) if network is not None else None

    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = "bcrt" if lowered.startswith("bcrt1") else lowered[:2]
        if net is not None and net.bech32_hrp != hrp:
            raise ValueError(f"Address {address} does not belong to {net.value}")

        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            return bytes([OP_0, len(program)]) + program

        raise ValueError(f"Unsupported witness version: {witver}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):  # Mainnet/Testnet P2PKH
        if net is not None and net.p2pkh_version != version:
            raise ValueError(f"Address {address} does not belong to {net.value}")
        return bytes([OP_DUP, OP_HASH160, 0x14]) + payload + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    elif version in (0x05, 0xC4):  # Mainnet/Testnet P2SH
        if net is not None and net.p2sh_version != version:
            raise ValueError(f"Address {address} does not belong to {net.value}")
        return bytes([OP_HASH160, 0x14]) + payload + bytes([OP_EQUAL])

    raise ValueError(f"Unknown address version: {version}")

