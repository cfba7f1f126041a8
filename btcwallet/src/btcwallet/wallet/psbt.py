"""
Partially Signed Bitcoin Transactions (BIP174).

Psbt is the wire container (parse/serialize, base64). PsbtBuilder drives one
transaction build attempt through its lifecycle:

    draft -> inputs_added / outputs_added -> ready -> signed -> verified -> finalized

Any failure moves the builder to "errored"; finalized and errored builders
reject further changes.
"""

from __future__ import annotations

import base64
import binascii
import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from coincurve import PublicKey
from loguru import logger

from btcwallet.constants import (
    DEFAULT_SEQUENCE,
    MAX_STANDARD_TX_WEIGHT,
    REPLACEABLE_SEQUENCE,
    SIGHASH_ALL,
)
from btcwallet.models import NetworkType, ScriptType, SpendTarget, Utxo
from btcwallet.wallet.address import (
    address_to_scriptpubkey,
    detect_script_type,
    hash160,
    p2sh_script,
    p2wpkh_script,
    scriptpubkey_to_address,
)
from btcwallet.wallet.bip32 import format_path, parse_path
from btcwallet.wallet.signer import AccountSigner
from btcwallet.wallet.transaction import (
    SighashCache,
    Transaction,
    TransactionError,
    TxInput,
    TxOutput,
    compute_sighash_legacy,
    compute_sighash_segwit,
    deserialize_transaction,
    encode_varint,
    p2wpkh_program_script_code,
    push_data,
    read_varint,
)

PSBT_MAGIC = b"psbt\xff"

# Global key types
PSBT_GLOBAL_UNSIGNED_TX = 0x00

# Input key types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

# Output key types
PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02

MAX_MONEY = 21_000_000 * 100_000_000


class PsbtFormatError(ValueError):
    pass


class PsbtServiceError(Exception):
    pass


@dataclass
class Bip32Derivation:
    pubkey: bytes
    master_fingerprint: bytes
    path: list[int]

    @property
    def hd_path(self) -> str:
        return format_path(self.path)

    def serialize_value(self) -> bytes:
        return self.master_fingerprint + b"".join(struct.pack("<I", i) for i in self.path)

    @classmethod
    def parse(cls, pubkey: bytes, value: bytes) -> Bip32Derivation:
        if len(value) < 4 or len(value) % 4:
            raise PsbtFormatError("Invalid BIP32 derivation length")
        path = [struct.unpack("<I", value[i : i + 4])[0] for i in range(4, len(value), 4)]
        return cls(pubkey, value[:4], path)


@dataclass
class PsbtInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: list[Bip32Derivation] = field(default_factory=list)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None


@dataclass
class PsbtOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: list[Bip32Derivation] = field(default_factory=list)
    unknown: dict[bytes, bytes] = field(default_factory=dict)


def _write_pair(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    """Read key-value pairs up to the 0x00 separator."""
    pairs: list[tuple[bytes, bytes]] = []
    seen: set[bytes] = set()
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return pairs, offset
        key = data[offset : offset + key_len]
        offset += key_len
        value_len, offset = read_varint(data, offset)
        value = data[offset : offset + value_len]
        offset += value_len
        if len(key) != key_len or len(value) != value_len:
            raise PsbtFormatError("Unexpected end of PSBT data")
        if key in seen:
            raise PsbtFormatError(f"Duplicate key in PSBT: {key.hex()}")
        seen.add(key)
        pairs.append((key, value))


def _expect_bare_key(key: bytes) -> None:
    if len(key) != 1:
        raise PsbtFormatError(f"Invalid key length for type {key[0]:#04x}")


def _parse_witness_utxo(value: bytes) -> TxOutput:
    if len(value) < 9:
        raise PsbtFormatError("Invalid witness UTXO")
    amount = struct.unpack("<Q", value[:8])[0]
    script_len, offset = read_varint(value, 8)
    script = value[offset : offset + script_len]
    if len(script) != script_len or offset + script_len != len(value):
        raise PsbtFormatError("Invalid witness UTXO")
    return TxOutput(amount, script)


def _parse_witness_stack(value: bytes) -> list[bytes]:
    count, offset = read_varint(value, 0)
    items = []
    for _ in range(count):
        item_len, offset = read_varint(value, offset)
        items.append(value[offset : offset + item_len])
        offset += item_len
    if offset != len(value):
        raise PsbtFormatError("Invalid final script witness")
    return items


def _serialize_witness_stack(items: list[bytes]) -> bytes:
    return encode_varint(len(items)) + b"".join(encode_varint(len(i)) + i for i in items)


class Psbt:
    """BIP174 (version 0) container."""

    def __init__(self, tx: Transaction | None = None):
        self.tx = tx or Transaction()
        self.inputs: list[PsbtInput] = [PsbtInput() for _ in self.tx.inputs]
        self.outputs: list[PsbtOutput] = [PsbtOutput() for _ in self.tx.outputs]
        self.unknown: dict[bytes, bytes] = {}

    def add_input(self, tx_input: TxInput, psbt_input: PsbtInput) -> None:
        for existing in self.tx.inputs:
            if (existing.txid, existing.vout) == (tx_input.txid, tx_input.vout):
                raise PsbtFormatError(f"Duplicate input {tx_input.txid}:{tx_input.vout}")
        self.tx.inputs.append(tx_input)
        self.inputs.append(psbt_input)

    def add_output(self, tx_output: TxOutput, psbt_output: PsbtOutput | None = None) -> None:
        self.tx.outputs.append(tx_output)
        self.outputs.append(psbt_output or PsbtOutput())

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        result += _write_pair(bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False))
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        result += b"\x00"

        for inp in self.inputs:
            if inp.non_witness_utxo is not None:
                result += _write_pair(bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo)
            if inp.witness_utxo is not None:
                result += _write_pair(bytes([PSBT_IN_WITNESS_UTXO]), inp.witness_utxo.serialize())
            for pubkey, signature in inp.partial_sigs.items():
                result += _write_pair(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, signature)
            if inp.sighash_type is not None:
                result += _write_pair(
                    bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", inp.sighash_type)
                )
            if inp.redeem_script is not None:
                result += _write_pair(bytes([PSBT_IN_REDEEM_SCRIPT]), inp.redeem_script)
            if inp.witness_script is not None:
                result += _write_pair(bytes([PSBT_IN_WITNESS_SCRIPT]), inp.witness_script)
            for derivation in inp.bip32_derivations:
                result += _write_pair(
                    bytes([PSBT_IN_BIP32_DERIVATION]) + derivation.pubkey,
                    derivation.serialize_value(),
                )
            if inp.final_script_sig is not None:
                result += _write_pair(bytes([PSBT_IN_FINAL_SCRIPTSIG]), inp.final_script_sig)
            if inp.final_script_witness is not None:
                result += _write_pair(
                    bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                    _serialize_witness_stack(inp.final_script_witness),
                )
            for key, value in inp.unknown.items():
                result += _write_pair(key, value)
            result += b"\x00"

        for out in self.outputs:
            if out.redeem_script is not None:
                result += _write_pair(bytes([PSBT_OUT_REDEEM_SCRIPT]), out.redeem_script)
            if out.witness_script is not None:
                result += _write_pair(bytes([PSBT_OUT_WITNESS_SCRIPT]), out.witness_script)
            for derivation in out.bip32_derivations:
                result += _write_pair(
                    bytes([PSBT_OUT_BIP32_DERIVATION]) + derivation.pubkey,
                    derivation.serialize_value(),
                )
            for key, value in out.unknown.items():
                result += _write_pair(key, value)
            result += b"\x00"

        return result

    @classmethod
    def parse(cls, data: bytes) -> Psbt:
        """
        Parse serialized PSBT bytes.

        Raises:
            PsbtFormatError: If the data is not a valid PSBT
        """
        if not data.startswith(PSBT_MAGIC):
            raise PsbtFormatError("Invalid PSBT magic bytes")

        try:
            global_pairs, offset = _read_map(data, len(PSBT_MAGIC))

            tx: Transaction | None = None
            unknown: dict[bytes, bytes] = {}
            for key, value in global_pairs:
                if key[0] == PSBT_GLOBAL_UNSIGNED_TX:
                    _expect_bare_key(key)
                    tx = deserialize_transaction(value, allow_witness=False)
                else:
                    unknown[key] = value

            if tx is None:
                raise PsbtFormatError("PSBT is missing the unsigned transaction")
            if any(inp.script_sig or inp.witness for inp in tx.inputs):
                raise PsbtFormatError("Unsigned transaction has non-empty scriptSig")

            psbt = cls(tx)
            psbt.unknown = unknown

            for index in range(len(tx.inputs)):
                pairs, offset = _read_map(data, offset)
                psbt.inputs[index] = cls._parse_input(pairs)

            for index in range(len(tx.outputs)):
                pairs, offset = _read_map(data, offset)
                psbt.outputs[index] = cls._parse_output(pairs)
        except TransactionError as e:
            raise PsbtFormatError(str(e)) from e

        if offset != len(data):
            raise PsbtFormatError("Trailing data after PSBT")

        return psbt

    @staticmethod
    def _parse_input(pairs: list[tuple[bytes, bytes]]) -> PsbtInput:
        inp = PsbtInput()
        for key, value in pairs:
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO:
                _expect_bare_key(key)
                inp.non_witness_utxo = value
            elif key_type == PSBT_IN_WITNESS_UTXO:
                _expect_bare_key(key)
                inp.witness_utxo = _parse_witness_utxo(value)
            elif key_type == PSBT_IN_PARTIAL_SIG:
                inp.partial_sigs[key[1:]] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE:
                _expect_bare_key(key)
                if len(value) != 4:
                    raise PsbtFormatError("Invalid sighash type")
                inp.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT:
                _expect_bare_key(key)
                inp.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT:
                _expect_bare_key(key)
                inp.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                inp.bip32_derivations.append(Bip32Derivation.parse(key[1:], value))
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
                _expect_bare_key(key)
                inp.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                _expect_bare_key(key)
                inp.final_script_witness = _parse_witness_stack(value)
            else:
                inp.unknown[key] = value
        return inp

    @staticmethod
    def _parse_output(pairs: list[tuple[bytes, bytes]]) -> PsbtOutput:
        out = PsbtOutput()
        for key, value in pairs:
            key_type = key[0]
            if key_type == PSBT_OUT_REDEEM_SCRIPT:
                _expect_bare_key(key)
                out.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT:
                _expect_bare_key(key)
                out.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                out.bip32_derivations.append(Bip32Derivation.parse(key[1:], value))
            else:
                out.unknown[key] = value
        return out

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def from_base64(cls, data: str) -> Psbt:
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PsbtFormatError("Invalid base64 PSBT") from e
        return cls.parse(raw)


def verify_with_public_key(pubkey: bytes, msghash: bytes, signature: bytes) -> bool:
    """
    Check a DER signature using only the public key embedded in the PSBT.

    Independent of the signer that produced the signature.
    """
    try:
        return PublicKey(pubkey).verify(signature, msghash, hasher=None)
    except (ValueError, TypeError):
        return False


SignatureValidator = Callable[[bytes, bytes, bytes], bool]


class PsbtState(str, Enum):
    DRAFT = "draft"
    INPUTS_ADDED = "inputs_added"
    OUTPUTS_ADDED = "outputs_added"
    READY = "ready"
    SIGNED = "signed"
    VERIFIED = "verified"
    FINALIZED = "finalized"
    ERRORED = "errored"


def _as_bytes(value: bytes | str) -> bytes:
    return bytes.fromhex(value) if isinstance(value, str) else value


class PsbtBuilder:
    """Builds, signs, verifies and finalizes one PSBT."""

    def __init__(self, network: NetworkType | str, psbt: Psbt | None = None):
        self._network = NetworkType(network)
        self._psbt = psbt if psbt is not None else Psbt()
        self._state = self._infer_state()
        self._final_tx: Transaction | None = None

    @property
    def psbt(self) -> Psbt:
        return self._psbt

    @property
    def network(self) -> NetworkType:
        return self._network

    @property
    def state(self) -> PsbtState:
        return self._state

    @classmethod
    def from_base64(cls, network: NetworkType | str, data: str) -> PsbtBuilder:
        try:
            psbt = Psbt.from_base64(data)
        except PsbtFormatError as e:
            logger.error(f"Failed to parse PSBT: {e}")
            raise PsbtServiceError(f"Failed to parse PSBT: {e}") from e
        return cls(network, psbt)

    def to_base64(self) -> str:
        try:
            return self._psbt.to_base64()
        except Exception as e:
            logger.error(f"Failed to convert PSBT to base64: {e}")
            raise PsbtServiceError("Failed to output PSBT string") from e

    def _infer_state(self) -> PsbtState:
        has_inputs = bool(self._psbt.inputs)
        has_outputs = bool(self._psbt.outputs)
        if any(inp.partial_sigs for inp in self._psbt.inputs):
            return PsbtState.SIGNED
        if has_inputs and has_outputs:
            return PsbtState.READY
        if has_inputs:
            return PsbtState.INPUTS_ADDED
        if has_outputs:
            return PsbtState.OUTPUTS_ADDED
        return PsbtState.DRAFT

    def _fail(self, error: PsbtServiceError) -> PsbtServiceError:
        self._state = PsbtState.ERRORED
        return error

    def _require_active(self) -> None:
        if self._state is PsbtState.FINALIZED:
            raise PsbtServiceError("PSBT is already finalized")
        if self._state is PsbtState.ERRORED:
            raise PsbtServiceError("PSBT is in an errored state")

    def _require_editable(self) -> None:
        self._require_active()
        if self._state in (PsbtState.SIGNED, PsbtState.VERIFIED):
            raise PsbtServiceError("PSBT is already signed")

    def add_input(
        self,
        utxo: Utxo,
        master_fingerprint: bytes | str,
        pubkey: bytes | str,
        change_script: bytes,
        hd_path: str,
        replaceable: bool = False,
    ) -> None:
        """
        Add one input spending ``utxo`` with witness UTXO and BIP32 derivation data.

        The derivation record lets any BIP174 signer holding the master
        fingerprint's key find and sign this input.

        P2PKH inputs also carry only the witness UTXO, never the full previous
        transaction. BIP174 requires the latter for legacy inputs, so PSBTs
        spending P2PKH coins can only be signed by this engine.
        """
        self._require_editable()
        try:
            fingerprint = _as_bytes(master_fingerprint)
            pubkey_bytes = _as_bytes(pubkey)
            if len(fingerprint) != 4:
                raise ValueError(f"Invalid master fingerprint length: {len(fingerprint)}")
            if len(pubkey_bytes) != 33:
                raise ValueError(f"Invalid public key length: {len(pubkey_bytes)}")
            if len(bytes.fromhex(utxo.tx_hash)) != 32:
                raise ValueError(f"Invalid transaction hash: {utxo.tx_hash}")
            if not 0 <= utxo.value <= MAX_MONEY:
                raise ValueError(f"Invalid UTXO value: {utxo.value}")

            script_type = detect_script_type(change_script)
            redeem_script: bytes | None = None
            if script_type is ScriptType.P2SH_P2WPKH:
                redeem_script = p2wpkh_script(pubkey_bytes)
                if p2sh_script(redeem_script) != change_script:
                    raise ValueError("P2SH script does not wrap the public key")
            elif script_type not in (ScriptType.P2WPKH, ScriptType.P2PKH):
                raise ValueError(f"Unsupported input script: {change_script.hex()}")

            # reference: https://en.bitcoin.it/wiki/BIP_0125
            sequence = REPLACEABLE_SEQUENCE if replaceable else DEFAULT_SEQUENCE

            self._psbt.add_input(
                TxInput(utxo.tx_hash, utxo.output_index, sequence),
                PsbtInput(
                    witness_utxo=TxOutput(utxo.value, change_script),
                    redeem_script=redeem_script,
                    bip32_derivations=[
                        Bip32Derivation(pubkey_bytes, fingerprint, parse_path(hd_path))
                    ],
                ),
            )
        except ValueError as e:
            logger.error(f"Failed to add input {utxo.outpoint}: {e}")
            raise self._fail(PsbtServiceError("Failed to add inputs in PSBT")) from e

        if self._state in (PsbtState.OUTPUTS_ADDED, PsbtState.READY):
            self._state = PsbtState.READY
        else:
            self._state = PsbtState.INPUTS_ADDED

    def add_inputs(
        self,
        utxos: list[Utxo],
        master_fingerprint: bytes | str,
        pubkey: bytes | str,
        change_script: bytes,
        hd_path: str,
        replaceable: bool = False,
    ) -> None:
        for utxo in utxos:
            self.add_input(utxo, master_fingerprint, pubkey, change_script, hd_path, replaceable)

    def add_output(self, target: SpendTarget) -> None:
        self._require_editable()
        try:
            if not 0 <= target.value <= MAX_MONEY:
                raise ValueError(f"Invalid output value: {target.value}")
            script = address_to_scriptpubkey(target.address, self._network)
            self._psbt.add_output(TxOutput(target.value, script))
        except ValueError as e:
            logger.error(f"Failed to add output to {target.address}: {e}")
            raise self._fail(PsbtServiceError("Failed to add outputs in PSBT")) from e

        if self._state in (PsbtState.INPUTS_ADDED, PsbtState.READY):
            self._state = PsbtState.READY
        else:
            self._state = PsbtState.OUTPUTS_ADDED

    def add_outputs(self, targets: list[SpendTarget]) -> None:
        for target in targets:
            self.add_output(target)

    def _spent_output(self, index: int) -> TxOutput:
        inp = self._psbt.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo
        if inp.non_witness_utxo is not None:
            tx_input = self._psbt.tx.inputs[index]
            prev_tx = deserialize_transaction(inp.non_witness_utxo)
            if prev_tx.txid != tx_input.txid or tx_input.vout >= len(prev_tx.outputs):
                raise PsbtServiceError(f"Non-witness UTXO does not match input {index}")
            return prev_tx.outputs[tx_input.vout]
        raise PsbtServiceError(f"Missing UTXO data for input {index}")

    def get_fee(self) -> int:
        try:
            spent = sum(self._spent_output(i).value for i in range(len(self._psbt.inputs)))
        except (PsbtServiceError, TransactionError) as e:
            raise PsbtServiceError("Failed to get fee from PSBT") from e
        return spent - sum(out.value for out in self._psbt.tx.outputs)

    def _sighash(self, index: int, sighash_type: int, cache: SighashCache) -> bytes:
        spent = self._spent_output(index)
        inp = self._psbt.inputs[index]
        tx = self._psbt.tx
        script_type = detect_script_type(spent.script)

        if script_type is ScriptType.P2WPKH:
            script_code = p2wpkh_program_script_code(spent.script[2:22])
            return compute_sighash_segwit(tx, index, script_code, spent.value, sighash_type, cache)

        if script_type is ScriptType.P2SH_P2WPKH:
            redeem = inp.redeem_script
            if (
                redeem is None
                or detect_script_type(redeem) is not ScriptType.P2WPKH
                or p2sh_script(redeem) != spent.script
            ):
                raise PsbtServiceError(f"Missing or invalid redeem script for input {index}")
            script_code = p2wpkh_program_script_code(redeem[2:22])
            return compute_sighash_segwit(tx, index, script_code, spent.value, sighash_type, cache)

        if script_type is ScriptType.P2PKH:
            return compute_sighash_legacy(tx, index, spent.script, sighash_type)

        raise PsbtServiceError(f"Unsupported script type for input {index}")

    async def sign_all_inputs_hd(
        self, signer: AccountSigner, sighash_type: int = SIGHASH_ALL
    ) -> None:
        """
        Sign every input whose BIP32 derivation matches the signer's fingerprint.

        The signer is re-derived per input from the embedded path and must
        reproduce the embedded public key.
        """
        self._require_active()
        try:
            if not self._psbt.inputs:
                raise PsbtServiceError("PSBT has no inputs to sign")

            cache = SighashCache(self._psbt.tx)
            for index, inp in enumerate(self._psbt.inputs):
                if inp.sighash_type is not None and inp.sighash_type != sighash_type:
                    raise PsbtServiceError(f"Sighash type mismatch for input {index}")

                derivations = [
                    d for d in inp.bip32_derivations if d.master_fingerprint == signer.fingerprint
                ]
                if not derivations:
                    raise PsbtServiceError(
                        "Need one bip32Derivation masterFingerprint to match the HD signer "
                        "fingerprint"
                    )

                sighash = self._sighash(index, sighash_type, cache)
                for derivation in derivations:
                    child = signer.derive_path(derivation.hd_path)
                    if child.public_key != derivation.pubkey:
                        raise PsbtServiceError("pubkey did not match bip32Derivation")
                    signature = await child.sign(sighash)
                    inp.partial_sigs[derivation.pubkey] = signature + bytes([sighash_type])

                logger.debug(f"Signed input {index} with {len(derivations)} key(s)")
        except PsbtServiceError:
            self._state = PsbtState.ERRORED
            raise
        except Exception as e:
            logger.error(f"Failed to sign PSBT inputs: {e}")
            raise self._fail(PsbtServiceError(f"Failed to sign PSBT inputs: {e}")) from e

        self._state = PsbtState.SIGNED

    def validate_signatures_of_all_inputs(
        self, validator: SignatureValidator | None = None
    ) -> bool:
        """
        Recompute each input's sighash and check every partial signature.

        ``validator(pubkey, msghash, der_signature)`` defaults to a check with a
        key built from the embedded public key.
        """
        validator = validator or verify_with_public_key
        cache = SighashCache(self._psbt.tx)

        for index, inp in enumerate(self._psbt.inputs):
            if not inp.partial_sigs:
                if inp.is_finalized:
                    continue
                raise PsbtServiceError(f"No signatures to validate for input {index}")

            for pubkey, signature in inp.partial_sigs.items():
                if len(signature) < 2:
                    return False
                try:
                    msghash = self._sighash(index, signature[-1], cache)
                except TransactionError:
                    return False
                if not validator(pubkey, msghash, signature[:-1]):
                    logger.warning(f"Invalid signature for input {index}")
                    return False

        return True

    async def sign_and_verify(self, signer: AccountSigner) -> None:
        await self.sign_all_inputs_hd(signer)
        try:
            valid = self.validate_signatures_of_all_inputs()
        except PsbtServiceError:
            self._state = PsbtState.ERRORED
            raise
        except Exception as e:
            raise self._fail(PsbtServiceError(f"Failed to verify PSBT inputs: {e}")) from e

        if not valid:
            raise self._fail(PsbtServiceError("Invalid signature to sign the PSBT's inputs"))

        self._state = PsbtState.VERIFIED

    def _finalize_input(self, index: int) -> None:
        inp = self._psbt.inputs[index]
        if inp.is_finalized:
            return

        if len(inp.partial_sigs) != 1:
            raise PsbtServiceError(f"Expected one signature for input {index}")
        pubkey, signature = next(iter(inp.partial_sigs.items()))

        spent = self._spent_output(index)
        script_type = detect_script_type(spent.script)

        if script_type is ScriptType.P2WPKH:
            if hash160(pubkey) != spent.script[2:22]:
                raise PsbtServiceError(f"Signature key does not own input {index}")
            inp.final_script_witness = [signature, pubkey]
        elif script_type is ScriptType.P2SH_P2WPKH:
            redeem = inp.redeem_script
            if redeem is None or redeem != p2wpkh_script(pubkey):
                raise PsbtServiceError(f"Signature key does not own input {index}")
            inp.final_script_sig = push_data(redeem)
            inp.final_script_witness = [signature, pubkey]
        elif script_type is ScriptType.P2PKH:
            if hash160(pubkey) != spent.script[3:23]:
                raise PsbtServiceError(f"Signature key does not own input {index}")
            inp.final_script_sig = push_data(signature) + push_data(pubkey)
        else:
            raise PsbtServiceError(f"Unsupported script type for input {index}")

        # Finalized inputs drop everything but UTXO data and the final scripts
        inp.partial_sigs = {}
        inp.sighash_type = None
        inp.redeem_script = None
        inp.witness_script = None
        inp.bip32_derivations = []

    def extract_transaction(self) -> Transaction:
        """Build the network transaction from finalized inputs."""
        tx = self._psbt.tx.copy()
        for index, (tx_input, inp) in enumerate(zip(tx.inputs, self._psbt.inputs, strict=True)):
            if not inp.is_finalized:
                raise PsbtServiceError(f"Input {index} is not finalized")
            tx_input.script_sig = inp.final_script_sig or b""
            tx_input.witness = list(inp.final_script_witness or [])
        return tx

    @property
    def final_transaction(self) -> Transaction | None:
        return self._final_tx

    def finalize(self) -> str:
        """
        Finalize all inputs and return the raw transaction hex.

        Signatures are validated first unless sign_and_verify already did so.

        Raises:
            PsbtServiceError: "Transaction is too large" above the standard
                weight limit, or any other finalization failure
        """
        self._require_active()
        try:
            if self._state is not PsbtState.VERIFIED:
                if not self.validate_signatures_of_all_inputs():
                    raise PsbtServiceError("Invalid signature to sign the PSBT's inputs")

            for index in range(len(self._psbt.inputs)):
                self._finalize_input(index)

            tx = self.extract_transaction()
            weight = tx.weight
            if weight > MAX_STANDARD_TX_WEIGHT:
                raise PsbtServiceError("Transaction is too large")
        except PsbtServiceError as e:
            logger.error(f"Failed to finalize PSBT: {e}")
            self._state = PsbtState.ERRORED
            raise
        except Exception as e:
            logger.error(f"Failed to finalize PSBT: {e}")
            raise self._fail(PsbtServiceError(f"Failed to finalize PSBT: {e}")) from e

        self._final_tx = tx
        self._state = PsbtState.FINALIZED
        logger.debug(f"Finalized transaction {tx.txid} ({weight} WU)")
        return tx.to_hex()

    def to_json(self) -> dict[str, Any]:
        """Summary of inputs and outputs for display."""
        inputs = []
        for tx_input, inp in zip(self._psbt.tx.inputs, self._psbt.inputs, strict=True):
            utxo = inp.witness_utxo
            inputs.append(
                {
                    "txid": tx_input.txid,
                    "vout": tx_input.vout,
                    "sequence": tx_input.sequence,
                    "value": utxo.value if utxo else None,
                    "signed": bool(inp.partial_sigs) or inp.is_finalized,
                }
            )
        outputs = [
            {
                "address": scriptpubkey_to_address(out.script, self._network),
                "script": out.script.hex(),
                "value": out.value,
            }
            for out in self._psbt.tx.outputs
        ]
        try:
            fee: int | None = self.get_fee()
        except PsbtServiceError:
            fee = None
        return {"state": self._state.value, "inputs": inputs, "outputs": outputs, "fee": fee}
