"""
Hashing, key normalization and Schnorr primitives.
"""

from __future__ import annotations

import hashlib

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from btcvault.constants import COMPRESSED_PUBKEY_SIZE, X_ONLY_PUBKEY_SIZE
from btcvault.errors import InvalidKeyFormat


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA256."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = sha256(tag.encode())
    return sha256(tag_digest + tag_digest + data)


def strip_hex_prefix(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def to_x_only(pubkey: bytes) -> bytes:
    """
    Reduce a public key to its 32-byte x-only form.

    Accepts 32-byte x-only keys unchanged and 33-byte compressed keys with a
    0x02/0x03 prefix. Anything else raises InvalidKeyFormat.
    """
    if len(pubkey) == X_ONLY_PUBKEY_SIZE:
        return bytes(pubkey)
    if len(pubkey) == COMPRESSED_PUBKEY_SIZE:
        if pubkey[0] not in (0x02, 0x03):
            raise InvalidKeyFormat(f"Invalid compressed key prefix: {pubkey[0]:#04x}")
        return bytes(pubkey[1:])
    raise InvalidKeyFormat(
        f"Public key must be 32 or 33 bytes, got {len(pubkey)} bytes"
    )


def process_public_key_to_x_only(pubkey_hex: str) -> str:
    """
    Normalize a hex public key (x-only, compressed or uncompressed) to x-only hex.

    Accepts 64, 66 or 130 hex characters with an optional 0x prefix.
    """
    cleaned = strip_hex_prefix(pubkey_hex.strip()).lower()
    try:
        raw = bytes.fromhex(cleaned)
    except ValueError as e:
        raise InvalidKeyFormat(f"Public key is not valid hex: {pubkey_hex!r}") from e

    if len(raw) == 65:
        if raw[0] != 0x04:
            raise InvalidKeyFormat("Uncompressed key must start with 0x04")
        return raw[1:33].hex()
    return to_x_only(raw).hex()


def validate_wallet_pubkey(wallet_pubkey: str, depositor_pubkey: str) -> str:
    """
    Check that the connected wallet's key is the vault's depositor key.

    Returns the x-only hex of the wallet key.
    """
    wallet_x_only = process_public_key_to_x_only(wallet_pubkey)
    depositor_x_only = process_public_key_to_x_only(depositor_pubkey)
    if wallet_x_only != depositor_x_only:
        raise InvalidKeyFormat(
            f"Wallet public key {wallet_x_only} does not match vault depositor "
            f"{depositor_x_only}"
        )
    return wallet_x_only


def is_valid_x_only(pubkey: bytes) -> bool:
    """True if pubkey is an x coordinate on the curve."""
    if len(pubkey) != X_ONLY_PUBKEY_SIZE:
        return False
    try:
        PublicKey(b"\x02" + pubkey)
    except ValueError:
        return False
    return True


def taproot_tweak_pubkey(internal_key: bytes, merkle_root: bytes | None) -> tuple[bytes, int]:
    """
    Compute the BIP-341 output key Q = P + H_TapTweak(P || root) * G.

    Returns:
        (x-only output key, parity of its Y coordinate)
    """
    tweak = tagged_hash("TapTweak", internal_key + (merkle_root or b""))
    try:
        output_point = PublicKey(b"\x02" + internal_key).add(tweak)
    except ValueError as e:
        raise InvalidKeyFormat(f"Cannot tweak internal key {internal_key.hex()}: {e}") from e
    compressed = output_point.format(compressed=True)
    return compressed[1:], compressed[0] & 1


def tweak_private_key(secret: bytes, merkle_root: bytes | None) -> bytes:
    """Tweak a private key to match taproot_tweak_pubkey of its x-only key."""
    key = PrivateKey(secret)
    compressed = key.public_key.format(compressed=True)
    if compressed[0] == 0x03:
        # BIP-340 keys use the even-Y representative
        key = PrivateKey(
            (
                0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
                - int.from_bytes(secret, "big")
            ).to_bytes(32, "big")
        )
    tweak = tagged_hash("TapTweak", compressed[1:] + (merkle_root or b""))
    return key.add(tweak).secret


def sign_schnorr(secret: bytes, message: bytes, aux_randomness: bytes = b"\x00" * 32) -> bytes:
    """BIP-340 signature over a 32-byte message."""
    return PrivateKey(secret).sign_schnorr(message, aux_randomness)


def verify_schnorr(message: bytes, pubkey: bytes, signature: bytes) -> bool:
    """Verify a 64-byte BIP-340 signature against an x-only public key."""
    if len(signature) != 64 or len(pubkey) != X_ONLY_PUBKEY_SIZE:
        return False
    try:
        return bool(PublicKeyXOnly(pubkey).verify(signature, message))
    except ValueError:
        return False


def x_only_pubkey_from_secret(secret: bytes) -> bytes:
    return PrivateKey(secret).public_key.format(compressed=True)[1:]
