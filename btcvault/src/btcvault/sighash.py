"""
BIP-341 signature message and sighash for Taproot inputs.
"""

from __future__ import annotations

import struct

from btcvault.constants import (
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_DEFAULT,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
)
from btcvault.crypto import sha256, tagged_hash
from btcvault.transaction import Transaction, varint

VALID_HASH_TYPES = frozenset(
    {
        SIGHASH_DEFAULT,
        SIGHASH_ALL,
        SIGHASH_NONE,
        SIGHASH_SINGLE,
        SIGHASH_ALL | SIGHASH_ANYONECANPAY,
        SIGHASH_NONE | SIGHASH_ANYONECANPAY,
        SIGHASH_SINGLE | SIGHASH_ANYONECANPAY,
    }
)


def _serialize_output(value: int, scriptpubkey: bytes) -> bytes:
    return struct.pack("<Q", value) + varint(len(scriptpubkey)) + scriptpubkey


def taproot_sighash(
    tx: Transaction,
    input_index: int,
    prevout_scripts: list[bytes],
    prevout_amounts: list[int],
    hash_type: int = SIGHASH_DEFAULT,
    leaf_hash: bytes | None = None,
) -> bytes:
    """
    Compute the BIP-341 sighash for one input.

    Args:
        tx: Transaction being signed
        input_index: Index of the input being signed
        prevout_scripts: scriptPubKey of every spent output, in input order
        prevout_amounts: value of every spent output, in input order
        hash_type: Sighash flag (SIGHASH_DEFAULT commits like SIGHASH_ALL)
        leaf_hash: TapLeaf hash for a script-path spend, None for key path

    Returns:
        32-byte TapSighash message
    """
    if hash_type not in VALID_HASH_TYPES:
        raise ValueError(f"Invalid taproot sighash type: {hash_type:#04x}")
    if not 0 <= input_index < len(tx.inputs):
        raise ValueError(f"Input index {input_index} out of range")
    if len(prevout_scripts) != len(tx.inputs) or len(prevout_amounts) != len(tx.inputs):
        raise ValueError("Prevout data must be supplied for every input")

    output_type = SIGHASH_ALL if hash_type == SIGHASH_DEFAULT else hash_type & 0x03
    anyone_can_pay = bool(hash_type & SIGHASH_ANYONECANPAY)

    msg = bytes([0x00, hash_type])
    msg += struct.pack("<I", tx.version)
    msg += struct.pack("<I", tx.locktime)

    if not anyone_can_pay:
        msg += sha256(b"".join(inp.serialize_outpoint() for inp in tx.inputs))
        msg += sha256(b"".join(struct.pack("<Q", amount) for amount in prevout_amounts))
        msg += sha256(b"".join(varint(len(s)) + s for s in prevout_scripts))
        msg += sha256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))

    if output_type == SIGHASH_ALL:
        msg += sha256(
            b"".join(_serialize_output(out.value, out.scriptpubkey) for out in tx.outputs)
        )

    ext_flag = 1 if leaf_hash is not None else 0
    # annex is never present
    msg += bytes([ext_flag * 2])

    if anyone_can_pay:
        inp = tx.inputs[input_index]
        msg += inp.serialize_outpoint()
        msg += struct.pack("<Q", prevout_amounts[input_index])
        script = prevout_scripts[input_index]
        msg += varint(len(script)) + script
        msg += struct.pack("<I", inp.sequence)
    else:
        msg += struct.pack("<I", input_index)

    if output_type == SIGHASH_SINGLE:
        if input_index >= len(tx.outputs):
            raise ValueError("SIGHASH_SINGLE without a matching output")
        out = tx.outputs[input_index]
        msg += sha256(_serialize_output(out.value, out.scriptpubkey))

    if leaf_hash is not None:
        msg += leaf_hash
        msg += bytes([0x00])  # key_version
        msg += struct.pack("<I", 0xFFFFFFFF)  # codesep_pos

    return tagged_hash("TapSighash", msg)
