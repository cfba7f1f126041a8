"""
Bitcoin transaction model, wire serialization and signature hashing.

Sighash algorithms:
- BIP143 for P2WPKH and P2SH-P2WPKH inputs
- Legacy (pre-segwit) for P2PKH inputs
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from btcwallet.constants import DEFAULT_SEQUENCE, SIGHASH_ALL, TX_VERSION


class TransactionError(Exception):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    if offset >= len(data):
        raise TransactionError("Unexpected end of data reading varint")
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        size = 2
    elif first == 0xFE:
        size = 4
    else:
        size = 8
    if offset + size > len(data):
        raise TransactionError("Unexpected end of data reading varint")
    value = int.from_bytes(data[offset : offset + size], "little")
    return value, offset + size


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def push_data(data: bytes) -> bytes:
    """Script push opcode for ``data`` followed by the data itself."""
    length = len(data)
    if length < 0x4C:
        return bytes([length]) + data
    if length <= 0xFF:
        return b"\x4c" + bytes([length]) + data
    if length <= 0xFFFF:
        return b"\x4d" + length.to_bytes(2, "little") + data
    return b"\x4e" + length.to_bytes(4, "little") + data


@dataclass
class TxInput:
    txid: str  # RPC byte order (big-endian hex)
    vout: int
    sequence: int = DEFAULT_SEQUENCE
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    def serialize_outpoint(self) -> bytes:
        # txid is in RPC format (big-endian), need to reverse for raw tx
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_varint(len(self.script)) + self.script


@dataclass
class Transaction:
    version: int = TX_VERSION
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if with_witness:
            # Marker and flag for SegWit
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize_outpoint()
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, in RPC byte order"""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        """BIP141 weight: 3 * base size + total size"""
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize(include_witness=True))
        return base_size * 3 + total_size

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    def copy(self) -> Transaction:
        return Transaction(
            version=self.version,
            inputs=[
                TxInput(i.txid, i.vout, i.sequence, i.script_sig, list(i.witness))
                for i in self.inputs
            ],
            outputs=[TxOutput(o.value, o.script) for o in self.outputs],
            locktime=self.locktime,
        )


def deserialize_transaction(tx_bytes: bytes, allow_witness: bool = True) -> Transaction:
    """
    Parse a raw transaction.

    With allow_witness=False the bytes are read in the legacy format, which is
    how a PSBT stores its unsigned transaction (a zero-input transaction would
    otherwise look like a segwit marker).
    """
    try:
        offset = 0
        version = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4

        marker_flag = False
        if allow_witness and tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            marker_flag = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []

        for _ in range(input_count):
            txid = tx_bytes[offset : offset + 32][::-1].hex()
            offset += 32

            vout = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4

            script_len, offset = read_varint(tx_bytes, offset)
            script_sig = tx_bytes[offset : offset + script_len]
            offset += script_len

            sequence = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4

            inputs.append(TxInput(txid, vout, sequence, script_sig))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []

        for _ in range(output_count):
            value = struct.unpack("<Q", tx_bytes[offset : offset + 8])[0]
            offset += 8

            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len

            outputs.append(TxOutput(value, script))

        if marker_flag:
            for inp in inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    inp.witness.append(tx_bytes[offset : offset + item_len])
                    offset += item_len

        locktime = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4

        if offset != len(tx_bytes):
            raise TransactionError("Trailing data after transaction")

        return Transaction(version, inputs, outputs, locktime)

    except TransactionError:
        raise
    except Exception as e:
        raise TransactionError(f"Failed to parse transaction: {e}") from e



def p2wpkh_program_script_code(program: bytes) -> bytes:
    """scriptCode for a 20-byte witness program (the pubkey hash)."""
    # OP_DUP OP_HASH160 PUSH20 <pkh> OP_EQUALVERIFY OP_CHECKSIG
    return b"\x76\xa9\x14" + program + b"\x88\xac"


class SighashCache:
    """BIP143 intermediate hashes, computed once per transaction."""

    def __init__(self, tx: Transaction):
        self.hash_prevouts = hash256(b"".join(inp.serialize_outpoint() for inp in tx.inputs))
        self.hash_sequence = hash256(
            b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs)
        )
        self.hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
    cache: SighashCache | None = None,
) -> bytes:
    if sighash_type != SIGHASH_ALL:
        raise TransactionError(f"Unsupported sighash type: {sighash_type}")
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    cache = cache or SighashCache(tx)
    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<I", tx.version)
        + cache.hash_prevouts
        + cache.hash_sequence
        + target_input.serialize_outpoint()
        + encode_varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target_input.sequence)
        + cache.hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


def compute_sighash_legacy(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Pre-segwit SIGHASH_ALL: every scriptSig emptied except the signed input's."""
    if sighash_type != SIGHASH_ALL:
        raise TransactionError(f"Unsupported sighash type: {sighash_type}")
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    stripped = tx.copy()
    for i, inp in enumerate(stripped.inputs):
        inp.witness = []
        inp.script_sig = script_code if i == input_index else b""

    preimage = stripped.serialize(include_witness=False) + struct.pack("<I", sighash_type)
    return hash256(preimage)
