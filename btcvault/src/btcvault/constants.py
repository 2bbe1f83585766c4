"""
Bitcoin and vault protocol constants.

Transaction size figures are virtual bytes (vB) and are intentionally
conservative so fee estimates never undershoot what a wallet will produce.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
DUST_THRESHOLD = 546  # satoshis

# P2TR input: 32 txid + 4 vout + 1 script len + 4 sequence + 16.25 witness (rounded up)
P2TR_INPUT_SIZE = 58

# Largest standard segwit output (P2WSH / P2TR): 8 value + 1 len + 34 script
MAX_NON_LEGACY_OUTPUT_SIZE = 43

# version + locktime + varint counts + segwit marker/flag
TX_BUFFER_SIZE_OVERHEAD = 11

# Multiplier applied to the conservative maximum fee
FEE_SAFETY_MARGIN = 1.1

# At or below this rate wallets tend to undershoot relay minimums
WALLET_RELAY_FEE_RATE_THRESHOLD = 2
LOW_RATE_ESTIMATION_ACCURACY_BUFFER = 30  # satoshis

# Taproot (BIP-341 / BIP-342)
TAPSCRIPT_LEAF_VERSION = 0xC0
SCHNORR_SIGNATURE_SIZE = 64
X_ONLY_PUBKEY_SIZE = 32
COMPRESSED_PUBKEY_SIZE = 33

# BIP-341 provably unspendable internal key (H = lift_x(SHA256(G)))
NUMS_INTERNAL_KEY = bytes.fromhex(
    "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)

# Sighash flags
SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

# Script opcodes used by the payout leaf
OP_0 = 0x00
OP_1 = 0x51
OP_16 = 0x60
OP_NUMEQUAL = 0x9C
OP_CHECKSIG = 0xAC
OP_CHECKSIGVERIFY = 0xAD
OP_CHECKSIGADD = 0xBA

DEFAULT_SEQUENCE = 0xFFFFFFFF
