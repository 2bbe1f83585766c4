"""
Payout leaf construction for the peg-in vault output.

The vault output is a Taproot output with a provably unspendable internal key
and a single script leaf:

    <depositor> OP_CHECKSIGVERIFY
    <vault_provider> OP_CHECKSIGVERIFY
    <liq_0> OP_CHECKSIG <liq_1> OP_CHECKSIGADD ... <liq_n> OP_CHECKSIGADD
    <n+1> OP_NUMEQUAL

With a single liquidator the multisig part collapses to <liq_0> OP_CHECKSIG.
Everything here is a pure function of the key set and network.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from btcvault.constants import (
    NUMS_INTERNAL_KEY,
    OP_1,
    OP_16,
    OP_CHECKSIG,
    OP_CHECKSIGADD,
    OP_CHECKSIGVERIFY,
    OP_NUMEQUAL,
    TAPSCRIPT_LEAF_VERSION,
    X_ONLY_PUBKEY_SIZE,
)
from btcvault.crypto import is_valid_x_only, tagged_hash, taproot_tweak_pubkey
from btcvault.errors import InvalidKeyFormat
from btcvault.models import NetworkType, ParticipantKeySet
from btcvault.transaction import scriptpubkey_to_address, varint


def encode_script_num(value: int) -> bytes:
    """Minimal CScriptNum encoding (little-endian, sign bit in the last byte)."""
    if value == 0:
        return b""

    abs_value = abs(value)
    result = bytearray(abs_value.to_bytes((abs_value.bit_length() + 7) // 8, "little"))
    if result[-1] & 0x80:
        result.append(0x80 if value < 0 else 0x00)
    elif value < 0:
        result[-1] |= 0x80
    return bytes(result)


def push_data(data: bytes) -> bytes:
    """Minimal push of a byte string."""
    length = len(data)
    if length < 0x4C:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([0x4C, length]) + data
    if length <= 0xFFFF:
        return bytes([0x4D]) + length.to_bytes(2, "little") + data
    return bytes([0x4E]) + length.to_bytes(4, "little") + data


def push_int(value: int) -> bytes:
    """Minimal push of a small integer (OP_0, OP_1..OP_16, or a CScriptNum)."""
    if value == 0:
        return bytes([0x00])
    if 1 <= value <= 16:
        return bytes([OP_1 + value - 1])
    return push_data(encode_script_num(value))


def _push_key(key: bytes) -> bytes:
    if len(key) != X_ONLY_PUBKEY_SIZE:
        raise InvalidKeyFormat(f"Script keys must be x-only, got {len(key)} bytes")
    return push_data(key)


def build_payout_script(keys: ParticipantKeySet) -> bytes:
    """Assemble the payout leaf script for a key set."""
    script = _push_key(keys.depositor_bytes) + bytes([OP_CHECKSIGVERIFY])
    script += _push_key(keys.vault_provider_bytes) + bytes([OP_CHECKSIGVERIFY])

    liquidators = keys.liquidator_bytes
    script += _push_key(liquidators[0]) + bytes([OP_CHECKSIG])
    if len(liquidators) > 1:
        for key in liquidators[1:]:
            script += _push_key(key) + bytes([OP_CHECKSIGADD])
        script += push_int(len(liquidators)) + bytes([OP_NUMEQUAL])
    return script


def tapleaf_hash(script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> bytes:
    """TapLeaf hash: tagged_hash("TapLeaf", leaf_version || compact_size(script) || script)."""
    return tagged_hash("TapLeaf", bytes([leaf_version]) + varint(len(script)) + script)


@dataclass(frozen=True)
class ControlBlock:
    """Script-path proof for a single-leaf tree (no merkle path)."""

    leaf_version: int
    output_key_parity: int
    internal_key: bytes

    def serialize(self) -> bytes:
        return bytes([self.leaf_version | self.output_key_parity]) + self.internal_key

    def hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def parse(cls, data: bytes) -> ControlBlock:
        if len(data) < 33 or (len(data) - 33) % 32 != 0:
            raise ValueError(f"Invalid control block length: {len(data)}")
        if len(data) != 33:
            raise ValueError("Control block carries a merkle path; expected a single leaf")
        return cls(
            leaf_version=data[0] & 0xFE,
            output_key_parity=data[0] & 0x01,
            internal_key=bytes(data[1:33]),
        )


@dataclass(frozen=True)
class PayoutConnector:
    """Spending conditions of the peg-in vault output."""

    script: bytes
    leaf_hash: bytes
    internal_key: bytes
    output_key: bytes
    output_key_parity: int
    network: NetworkType

    @property
    def scriptpubkey(self) -> bytes:
        return bytes([0x51, 0x20]) + self.output_key

    @property
    def address(self) -> str:
        return scriptpubkey_to_address(self.scriptpubkey, self.network)

    @property
    def control_block(self) -> ControlBlock:
        return ControlBlock(
            leaf_version=TAPSCRIPT_LEAF_VERSION,
            output_key_parity=self.output_key_parity,
            internal_key=self.internal_key,
        )


def build_payout_connector(
    keys: ParticipantKeySet,
    network: NetworkType | str = NetworkType.MAINNET,
    internal_key: bytes = NUMS_INTERNAL_KEY,
) -> PayoutConnector:
    """
    Derive the payout leaf, its hash and the Taproot output it commits to.

    For a single-leaf tree the merkle root is the leaf hash itself.
    """
    for key in [keys.depositor_bytes, keys.vault_provider_bytes, *keys.liquidator_bytes]:
        if not is_valid_x_only(key):
            raise InvalidKeyFormat(f"Not a valid x-only public key: {key.hex()}")

    script = build_payout_script(keys)
    leaf_hash = tapleaf_hash(script)
    output_key, parity = taproot_tweak_pubkey(internal_key, leaf_hash)

    connector = PayoutConnector(
        script=script,
        leaf_hash=leaf_hash,
        internal_key=internal_key,
        output_key=output_key,
        output_key_parity=parity,
        network=NetworkType(network),
    )
    logger.bind(
        event="payout_connector",
        script=script.hex(),
        leaf_hash=leaf_hash.hex(),
        output_key=output_key.hex(),
        parity=parity,
        liquidators=len(keys.liquidators),
    ).debug(f"Payout connector derived, leaf hash {leaf_hash.hex()}")
    return connector
