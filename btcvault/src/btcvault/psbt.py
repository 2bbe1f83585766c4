"""
BIP-174 (v0) PSBT codec with BIP-371 Taproot fields.

Only the fields the vault flows exchange with wallets are decoded; every
other key is preserved verbatim so a wallet's additions survive a round trip.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass, field

from btcvault.errors import InvalidTransaction, PsbtError
from btcvault.transaction import Transaction, TxOut, read_varint, varint

PSBT_MAGIC = b"psbt\xff"

# Global
PSBT_GLOBAL_UNSIGNED_TX = 0x00

# Per-input
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18


def _kv(key: bytes, value: bytes) -> bytes:
    return varint(len(key)) + key + varint(len(value)) + value


def _serialize_txout(out: TxOut) -> bytes:
    return struct.pack("<Q", out.value) + varint(len(out.scriptpubkey)) + out.scriptpubkey


def _parse_txout(data: bytes) -> TxOut:
    value = struct.unpack("<Q", data[:8])[0]
    script_len, offset = read_varint(data, 8)
    script = data[offset : offset + script_len]
    if len(script) != script_len or offset + script_len != len(data):
        raise PsbtError("Malformed witness UTXO")
    return TxOut(value, script)


def serialize_witness(stack: list[bytes]) -> bytes:
    return varint(len(stack)) + b"".join(varint(len(item)) + item for item in stack)


def parse_witness(data: bytes) -> list[bytes]:
    count, offset = read_varint(data, 0)
    stack: list[bytes] = []
    for _ in range(count):
        item_len, offset = read_varint(data, offset)
        stack.append(data[offset : offset + item_len])
        offset += item_len
    if offset != len(data):
        raise PsbtError("Malformed witness stack")
    return stack


@dataclass
class PsbtInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    tap_key_sig: bytes | None = None
    # (x-only key, leaf hash) -> signature
    tap_script_sigs: dict[tuple[bytes, bytes], bytes] = field(default_factory=dict)
    # control block -> (script, leaf version)
    tap_leaf_scripts: dict[bytes, tuple[bytes, int]] = field(default_factory=dict)
    tap_internal_key: bytes | None = None
    tap_merkle_root: bytes | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_witness is not None or self.final_script_sig is not None

    def serialize(self) -> bytes:
        result = b""
        if self.non_witness_utxo is not None:
            result += _kv(bytes([PSBT_IN_NON_WITNESS_UTXO]), self.non_witness_utxo)
        if self.witness_utxo is not None:
            result += _kv(bytes([PSBT_IN_WITNESS_UTXO]), _serialize_txout(self.witness_utxo))
        for pubkey, sig in self.partial_sigs.items():
            result += _kv(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if self.sighash_type is not None:
            result += _kv(bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", self.sighash_type))
        if self.final_script_sig is not None:
            result += _kv(bytes([PSBT_IN_FINAL_SCRIPTSIG]), self.final_script_sig)
        if self.final_script_witness is not None:
            result += _kv(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                serialize_witness(self.final_script_witness),
            )
        if self.tap_key_sig is not None:
            result += _kv(bytes([PSBT_IN_TAP_KEY_SIG]), self.tap_key_sig)
        for (xonly, leaf_hash), sig in self.tap_script_sigs.items():
            result += _kv(bytes([PSBT_IN_TAP_SCRIPT_SIG]) + xonly + leaf_hash, sig)
        for control_block, (script, leaf_version) in self.tap_leaf_scripts.items():
            result += _kv(
                bytes([PSBT_IN_TAP_LEAF_SCRIPT]) + control_block, script + bytes([leaf_version])
            )
        if self.tap_internal_key is not None:
            result += _kv(bytes([PSBT_IN_TAP_INTERNAL_KEY]), self.tap_internal_key)
        if self.tap_merkle_root is not None:
            result += _kv(bytes([PSBT_IN_TAP_MERKLE_ROOT]), self.tap_merkle_root)
        for key, value in self.unknown.items():
            result += _kv(key, value)
        return result + b"\x00"

    def set_field(self, key: bytes, value: bytes) -> None:
        key_type = key[0]
        key_data = key[1:]

        if key_type == PSBT_IN_NON_WITNESS_UTXO and not key_data:
            self.non_witness_utxo = value
        elif key_type == PSBT_IN_WITNESS_UTXO and not key_data:
            self.witness_utxo = _parse_txout(value)
        elif key_type == PSBT_IN_PARTIAL_SIG:
            self.partial_sigs[key_data] = value
        elif key_type == PSBT_IN_SIGHASH_TYPE and len(value) == 4:
            self.sighash_type = struct.unpack("<I", value)[0]
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG and not key_data:
            self.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and not key_data:
            self.final_script_witness = parse_witness(value)
        elif key_type == PSBT_IN_TAP_KEY_SIG and not key_data:
            self.tap_key_sig = value
        elif key_type == PSBT_IN_TAP_SCRIPT_SIG and len(key_data) == 64:
            self.tap_script_sigs[(key_data[:32], key_data[32:])] = value
        elif key_type == PSBT_IN_TAP_LEAF_SCRIPT and value:
            self.tap_leaf_scripts[key_data] = (value[:-1], value[-1])
        elif key_type == PSBT_IN_TAP_INTERNAL_KEY and len(value) == 32:
            self.tap_internal_key = value
        elif key_type == PSBT_IN_TAP_MERKLE_ROOT and len(value) == 32:
            self.tap_merkle_root = value
        else:
            self.unknown[key] = value


@dataclass
class PsbtOutput:
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        return b"".join(_kv(k, v) for k, v in self.unknown.items()) + b"\x00"


@dataclass
class Psbt:
    tx: Transaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: Transaction) -> Psbt:
        """Create an empty PSBT around an unsigned transaction."""
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise PsbtError("PSBT transaction must be unsigned")
        return cls(
            tx=tx.copy(),
            inputs=[PsbtInput() for _ in tx.inputs],
            outputs=[PsbtOutput() for _ in tx.outputs],
        )

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        result += _kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False))
        for key, value in self.unknown.items():
            result += _kv(key, value)
        result += b"\x00"
        for inp in self.inputs:
            result += inp.serialize()
        for out in self.outputs:
            result += out.serialize()
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode()

    @classmethod
    def from_string(cls, data: str) -> Psbt:
        """Parse a PSBT given as hex or base64."""
        data = data.strip()
        try:
            if data.lower().startswith(PSBT_MAGIC.hex()):
                raw = bytes.fromhex(data)
            else:
                raw = base64.b64decode(data, validate=True)
        except (ValueError, binascii.Error) as e:
            raise PsbtError(f"PSBT is neither hex nor base64: {e}") from e
        return cls.parse(raw)

    @classmethod
    def parse(cls, raw: bytes) -> Psbt:
        if not raw.startswith(PSBT_MAGIC):
            raise PsbtError("Bad PSBT magic")
        try:
            return cls._parse(raw)
        except (IndexError, struct.error, InvalidTransaction) as e:
            raise PsbtError(f"Failed to parse PSBT: {e}") from e

    @classmethod
    def _parse(cls, raw: bytes) -> Psbt:
        offset = len(PSBT_MAGIC)

        def read_map() -> list[tuple[bytes, bytes]]:
            nonlocal offset
            entries: list[tuple[bytes, bytes]] = []
            while True:
                key_len, offset = read_varint(raw, offset)
                if key_len == 0:
                    return entries
                key = raw[offset : offset + key_len]
                offset += key_len
                value_len, offset = read_varint(raw, offset)
                value = raw[offset : offset + value_len]
                if len(value) != value_len:
                    raise PsbtError("Truncated PSBT value")
                offset += value_len
                entries.append((key, value))

        tx: Transaction | None = None
        global_unknown: dict[bytes, bytes] = {}
        for key, value in read_map():
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = Transaction.parse(value)
            else:
                global_unknown[key] = value
        if tx is None:
            raise PsbtError("Missing unsigned transaction in PSBT")

        inputs: list[PsbtInput] = []
        for _ in tx.inputs:
            psbt_input = PsbtInput()
            for key, value in read_map():
                psbt_input.set_field(key, value)
            inputs.append(psbt_input)

        outputs = [PsbtOutput(unknown=dict(read_map())) for _ in tx.outputs]
        return cls(tx=tx, inputs=inputs, outputs=outputs, unknown=global_unknown)

    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)

    def extract_transaction(self) -> Transaction:
        """Build the network transaction from a fully finalized PSBT."""
        if not self.is_finalized():
            missing = [i for i, inp in enumerate(self.inputs) if not inp.is_finalized]
            raise PsbtError(f"Inputs not finalized: {missing}")
        tx = self.tx.copy()
        for tx_in, psbt_in in zip(tx.inputs, self.inputs):
            tx_in.script_sig = psbt_in.final_script_sig or b""
            tx_in.witness = list(psbt_in.final_script_witness or [])
        return tx


def is_psbt_string(data: str) -> bool:
    """True if data looks like a hex or base64 encoded PSBT."""
    stripped = data.strip()
    return stripped.lower().startswith(PSBT_MAGIC.hex()) or stripped.startswith("cHNidP")
