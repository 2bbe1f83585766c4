"""
Bitcoin transaction model, codec and address helpers.

Transactions are parsed into plain dataclasses and serialized back
byte-for-byte. Serialization uses the segwit (BIP-144) layout whenever any
input carries witness data, and also for transactions with no inputs, since
that is how the peg-in skeleton constructor emits them.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from btcvault.constants import DEFAULT_SEQUENCE
from btcvault.crypto import hash256
from btcvault.errors import InvalidTransaction
from btcvault.models import NetworkType


def varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a varint, returning (value, new_offset)."""
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return struct.unpack("<H", data[offset : offset + 2])[0], offset + 2
    if first == 0xFE:
        return struct.unpack("<I", data[offset : offset + 4])[0], offset + 4
    return struct.unpack("<Q", data[offset : offset + 8])[0], offset + 8


def _read(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    end = offset + length
    if end > len(data):
        raise ValueError(f"Unexpected end of data at offset {offset} (need {length} bytes)")
    return data[offset:end], end


@dataclass
class TxIn:
    """Transaction input. txid is in display (big-endian) hex."""

    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE
    witness: list[bytes] = field(default_factory=list)

    def serialize_outpoint(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    """Transaction output."""

    value: int
    scriptpubkey: bytes


@dataclass
class Transaction:
    version: int = 2
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and (self.has_witness or not self.inputs)

        result = struct.pack("<I", self.version)
        if segwit:
            result += bytes([0x00, 0x01])

        result += varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize_outpoint()
            result += varint(len(inp.script_sig)) + inp.script_sig
            result += struct.pack("<I", inp.sequence)

        result += varint(len(self.outputs))
        for out in self.outputs:
            result += struct.pack("<Q", out.value)
            result += varint(len(out.scriptpubkey)) + out.scriptpubkey

        if segwit:
            for inp in self.inputs:
                result += varint(len(inp.witness))
                for item in inp.witness:
                    result += varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Transaction ID: reversed double SHA256 of the non-witness serialization."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    def vsize(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        weight = base * 3 + total
        return (weight + 3) // 4

    def copy(self) -> Transaction:
        return Transaction(
            version=self.version,
            inputs=[
                TxIn(i.txid, i.vout, i.script_sig, i.sequence, list(i.witness))
                for i in self.inputs
            ],
            outputs=[TxOut(o.value, o.scriptpubkey) for o in self.outputs],
            locktime=self.locktime,
        )

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        try:
            raw = bytes.fromhex(tx_hex.strip())
        except ValueError as e:
            raise InvalidTransaction(f"Transaction is not valid hex: {e}") from e
        return cls.parse(raw)

    @classmethod
    def parse(cls, raw: bytes) -> Transaction:
        """
        Parse a serialized transaction.

        The segwit layout is tried first when the marker/flag bytes are
        present, and accepted only if it consumes the input exactly. This
        keeps zero-input transactions (whose legacy encoding also begins with
        00 01) unambiguous.
        """
        if len(raw) >= 6 and raw[4] == 0x00 and raw[5] == 0x01:
            try:
                tx, consumed = cls._parse(raw, segwit=True)
                if consumed == len(raw):
                    return tx
            except (ValueError, IndexError, struct.error):
                pass

        try:
            tx, consumed = cls._parse(raw, segwit=False)
        except (ValueError, IndexError, struct.error) as e:
            raise InvalidTransaction(f"Failed to parse transaction: {e}") from e
        if consumed != len(raw):
            raise InvalidTransaction(
                f"Trailing data after transaction: {len(raw) - consumed} bytes"
            )
        return tx

    @classmethod
    def _parse(cls, raw: bytes, segwit: bool) -> tuple[Transaction, int]:
        offset = 0
        version_bytes, offset = _read(raw, offset, 4)
        version = struct.unpack("<I", version_bytes)[0]
        if segwit:
            offset += 2

        input_count, offset = read_varint(raw, offset)
        inputs: list[TxIn] = []
        for _ in range(input_count):
            txid_le, offset = _read(raw, offset, 32)
            vout_bytes, offset = _read(raw, offset, 4)
            script_len, offset = read_varint(raw, offset)
            script_sig, offset = _read(raw, offset, script_len)
            sequence_bytes, offset = _read(raw, offset, 4)
            inputs.append(
                TxIn(
                    txid=txid_le[::-1].hex(),
                    vout=struct.unpack("<I", vout_bytes)[0],
                    script_sig=script_sig,
                    sequence=struct.unpack("<I", sequence_bytes)[0],
                )
            )

        output_count, offset = read_varint(raw, offset)
        outputs: list[TxOut] = []
        for _ in range(output_count):
            value_bytes, offset = _read(raw, offset, 8)
            script_len, offset = read_varint(raw, offset)
            scriptpubkey, offset = _read(raw, offset, script_len)
            outputs.append(TxOut(struct.unpack("<Q", value_bytes)[0], scriptpubkey))

        if segwit:
            for inp in inputs:
                stack_count, offset = read_varint(raw, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(raw, offset)
                    item, offset = _read(raw, offset, item_len)
                    inp.witness.append(item)

        locktime_bytes, offset = _read(raw, offset, 4)
        tx = cls(
            version=version,
            inputs=inputs,
            outputs=outputs,
            locktime=struct.unpack("<I", locktime_bytes)[0],
        )
        return tx, offset


def get_bech32_hrp(network: NetworkType | str) -> str:
    return {
        NetworkType.MAINNET: "bc",
        NetworkType.TESTNET: "tb",
        NetworkType.SIGNET: "tb",
        NetworkType.REGTEST: "bcrt",
    }[NetworkType(network)]


def script_type(scriptpubkey: bytes) -> str:
    """Classify a scriptPubKey: p2pkh, p2sh, p2wpkh, p2wsh, p2tr or unknown."""
    if len(scriptpubkey) == 25 and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14]) and (
        scriptpubkey[23:] == bytes([0x88, 0xAC])
    ):
        return "p2pkh"
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == bytes([0xA9, 0x14]) and (
        scriptpubkey[22] == 0x87
    ):
        return "p2sh"
    if len(scriptpubkey) == 22 and scriptpubkey[:2] == bytes([0x00, 0x14]):
        return "p2wpkh"
    if len(scriptpubkey) == 34 and scriptpubkey[:2] == bytes([0x00, 0x20]):
        return "p2wsh"
    if len(scriptpubkey) == 34 and scriptpubkey[:2] == bytes([0x51, 0x20]):
        return "p2tr"
    return "unknown"


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bech32, witness v0)
    - P2TR (bech32m, witness v1)
    - P2PKH / P2SH (base58check)
    """
    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = lowered[: lowered.rindex("1")]
        witness_char = lowered[len(hrp) + 1 : len(hrp) + 2]

        if witness_char == "q":
            import bech32

            witver, witprog_list = bech32.decode(hrp, lowered)
        else:
            from embit import bech32 as bech32m

            witver, witprog_list = bech32m.decode(hrp, lowered)

        if witver is None or witprog_list is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        witprog = bytes(witprog_list)
        if witver == 0 and len(witprog) in (20, 32):
            # P2WPKH / P2WSH: OP_0 <program>
            return bytes([0x00, len(witprog)]) + witprog
        if witver == 1 and len(witprog) == 32:
            # P2TR: OP_1 <32-byte-output-key>
            return bytes([0x51, 0x20]) + witprog
        raise ValueError(f"Unsupported witness program: v{witver} ({len(witprog)} bytes)")

    import base58

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e
    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):  # Mainnet/Testnet P2PKH
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):  # Mainnet/Testnet P2SH
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkType | str = "mainnet") -> str:
    """Convert scriptPubKey to address."""
    kind = script_type(scriptpubkey)
    network = NetworkType(network)

    if kind in ("p2wpkh", "p2wsh"):
        import bech32

        result = bech32.encode(get_bech32_hrp(network), 0, scriptpubkey[2:])
    elif kind == "p2tr":
        from embit import bech32 as bech32m

        result = bech32m.encode(get_bech32_hrp(network), 1, scriptpubkey[2:])
    elif kind in ("p2pkh", "p2sh"):
        import base58

        mainnet = network == NetworkType.MAINNET
        if kind == "p2pkh":
            version = 0x00 if mainnet else 0x6F
            payload = scriptpubkey[3:23]
        else:
            version = 0x05 if mainnet else 0xC4
            payload = scriptpubkey[2:22]
        result = base58.b58encode_check(bytes([version]) + payload).decode()
    else:
        result = None

    if result is None:
        raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")
    return result
